"""
Assembly of force-constant tensors from displaced energies.

Each stencil entry is evaluated from the energies of its signatures. A
signature that was deduplicated onto another target looks up that target's
energy; because the signature keeps its own signed steps, the energy enters
the stencil with the coefficient of the signature's position, which is the
symmetry transform of the representative displacement, not a copy of a
neighbouring tensor element.

Units: energies in hartree, steps in bohr, so fc2/fc3/fc4 are in
hartree/bohr^2, hartree/bohr^3 and hartree/bohr^4.
"""

import itertools
import logging
import os

import numpy as np

from qffsmart.fcs.stencils import (
    REFERENCE,
    fc3_index,
    fc4_index,
    nfc2,
    nfc3,
    nfc4,
)
from qffsmart.symmetry.registry import REFERENCE_ID

logger = logging.getLogger(__name__)


class ForceConstants:
    """Second, third and fourth derivatives of the energy.

    Attributes:
        n (int): Number of Cartesian coordinates.
        fc2 (np.ndarray): (n, n) symmetric matrix; `fc2.size == n**2`.
        fc3 (np.ndarray): packed over sorted (i, j, k), length nfc3(n).
        fc4 (np.ndarray): packed over sorted (i, j, k, l), length nfc4(n).
    """

    def __init__(self, n, fc2, fc3=None, fc4=None):
        self.n = n
        self.fc2 = np.asarray(fc2, dtype=float).reshape(n, n)
        self.fc3 = np.zeros(0) if fc3 is None else np.asarray(fc3)
        self.fc4 = np.zeros(0) if fc4 is None else np.asarray(fc4)

    def __repr__(self):
        return (
            f"{self.__class__.__qualname__}<n={self.n}, "
            f"nfc3={self.fc3.size}, nfc4={self.fc4.size}>"
        )

    def fc3_value(self, i, j, k):
        return self.fc3[fc3_index(i, j, k)]

    def fc4_value(self, i, j, k, l):  # noqa: E741
        return self.fc4[fc4_index(i, j, k, l)]

    def fc3_dense(self):
        return _unpack(self.fc3, self.n, 3)

    def fc4_dense(self):
        return _unpack(self.fc4, self.n, 4)


def _unpack(packed, n, order):
    if packed.size == 0:
        return np.zeros((0,) * order)
    index = fc3_index if order == 3 else fc4_index
    dense = np.zeros((n,) * order)
    for indices in itertools.combinations_with_replacement(range(n), order):
        value = packed[index(*indices)]
        for perm in set(itertools.permutations(indices)):
            dense[perm] = value
    return dense


def _pack(dense, order):
    n = dense.shape[0]
    index = fc3_index if order == 3 else fc4_index
    size = nfc3(n) if order == 3 else nfc4(n)
    packed = np.zeros(size)
    for indices in itertools.combinations_with_replacement(range(n), order):
        packed[index(*indices)] = dense[indices]
    return packed


def _lookup(targets):
    if hasattr(targets, "resolve"):
        return targets.resolve
    return targets.__getitem__


def make_fcs(
    targets,
    energies,
    fc_buffer,
    n,
    derivative_order,
    debug_dir=None,
    point_group=None,
    executor=None,
):
    """Build fc2, fc3 and fc4 from the energies of the unique targets.

    Args:
        targets (TargetRegistry | Mapping): Resolves signatures to ids.
        energies (Sequence[float]): One energy per target id; NaN marks a
            failed job.
        fc_buffer (ForceConstantBuffer): Buffer filled by `build_points`.
        n (int): Number of Cartesian coordinates.
        derivative_order (int): Highest order to assemble.
        debug_dir (str, optional): If given, write fort.15/30/40 there.
        point_group (PointGroup, optional): Project the tensors onto the
            totally symmetric part under this group.
        executor (concurrent.futures.Executor, optional): Pool used to
            evaluate the stencil entries.

    Returns:
        ForceConstants: fully populated, permutation-symmetric tensors.
    """
    if fc_buffer.n != n:
        raise ValueError(f"Buffer sized for n={fc_buffer.n}, not n={n}")
    if fc_buffer.ref_energy is None or fc_buffer.step_size is None:
        raise ValueError("build_points must run before make_fcs")
    energies = np.asarray(energies, dtype=float)
    if hasattr(targets, "__len__") and hasattr(targets, "resolve"):
        if len(energies) != len(targets):
            raise ValueError(
                f"{len(energies)} energies for {len(targets)} targets"
            )

    resolve = _lookup(targets)
    ref_energy = fc_buffer.ref_energy
    step_size = fc_buffer.step_size
    entries = [e for e in fc_buffer.entries if e.order <= derivative_order]

    def evaluate(entry):
        total = 0.0
        for coeff, sig in entry.terms:
            if sig == REFERENCE:
                energy = ref_energy
            else:
                target_id = resolve(sig)
                energy = (
                    ref_energy
                    if target_id == REFERENCE_ID
                    else energies[target_id]
                )
            total += coeff * energy
        return total / entry.denominator(step_size)

    if executor is not None:
        values = list(executor.map(evaluate, entries))
    else:
        values = [evaluate(entry) for entry in entries]

    fc_buffer.reset()
    for entry, value in zip(entries, values):
        fc_buffer.storage(entry.order)[entry.flat_index(n)] = value

    fc2 = fc_buffer.fc2.reshape(n, n)
    # entries were filled for i <= j only
    fc2 = np.triu(fc2) + np.triu(fc2, 1).T
    fc3 = fc_buffer.fc3.copy() if derivative_order >= 3 else None
    fc4 = fc_buffer.fc4.copy() if derivative_order >= 4 else None

    if point_group is not None and not point_group.is_trivial:
        fc2 = point_group.symmetrize_tensor(fc2)
        if fc3 is not None:
            fc3 = _pack(point_group.symmetrize_tensor(_unpack(fc3, n, 3)), 3)
        if fc4 is not None:
            fc4 = _pack(point_group.symmetrize_tensor(_unpack(fc4, n, 4)), 4)

    missing = int(np.isnan(values).sum()) if values else 0
    if missing:
        logger.warning(
            f"{missing} force-constant entries depend on failed jobs and "
            f"are NaN"
        )

    fcs = ForceConstants(n, fc2, fc3, fc4)
    logger.info(
        f"Assembled force constants: nfc2={nfc2(n)}, "
        f"nfc3={fcs.fc3.size}, nfc4={fcs.fc4.size}"
    )
    if debug_dir is not None:
        write_fcs(debug_dir, fcs, natoms=n // 3)
    return fcs


def _write_fort(filename, natoms, values):
    with open(filename, "w") as f:
        f.write(f"{natoms:5d}{len(values):5d}\n")
        for start in range(0, len(values), 3):
            chunk = values[start : start + 3]
            f.write("".join(f"{v:20.10f}" for v in chunk) + "\n")


def write_fcs(folder, fcs, natoms):
    """Write force constants as fort.15 (fc2), fort.30 (fc3), fort.40 (fc4)."""
    os.makedirs(folder, exist_ok=True)
    _write_fort(os.path.join(folder, "fort.15"), natoms, fcs.fc2.ravel())
    if fcs.fc3.size:
        _write_fort(os.path.join(folder, "fort.30"), natoms, fcs.fc3)
    if fcs.fc4.size:
        _write_fort(os.path.join(folder, "fort.40"), natoms, fcs.fc4)
    logger.debug(f"Wrote force constants to {folder}")
