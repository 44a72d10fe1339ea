"""
Point building: the unique displaced geometries of a finite-difference run.
"""

import logging

import numpy as np

from qffsmart.fcs.stencils import (
    enumerate_entries,
    nfc2,
    nfc3,
    nfc4,
    required_signatures,
)

logger = logging.getLogger(__name__)


class ForceConstantBuffer:
    """Flat force-constant storage plus the stencil entries that fill it.

    Args:
        n (int): Number of Cartesian coordinates, 3 * (atoms - dummies).
        derivative_order (int): Highest derivative order stored (2, 3 or 4).
    """

    def __init__(self, n, derivative_order=4):
        if derivative_order not in (2, 3, 4):
            raise ValueError(
                f"derivative_order must be 2, 3 or 4, got {derivative_order}"
            )
        self.n = n
        self.derivative_order = derivative_order
        self.fc2 = np.zeros(nfc2(n))
        self.fc3 = np.zeros(nfc3(n) if derivative_order >= 3 else 0)
        self.fc4 = np.zeros(nfc4(n) if derivative_order >= 4 else 0)
        self.entries = []
        self.ref_energy = None
        self.step_size = None

    def __repr__(self):
        return (
            f"{self.__class__.__qualname__}<n={self.n}, "
            f"order={self.derivative_order}, entries={len(self.entries)}>"
        )

    def storage(self, order):
        return {2: self.fc2, 3: self.fc3, 4: self.fc4}[order]

    def reset(self):
        self.fc2[:] = 0.0
        self.fc3[:] = 0.0
        self.fc4[:] = 0.0


def build_points(
    ref_geometry,
    step_size,
    ref_energy,
    derivative_order,
    fc_buffer,
    registry,
    executor=None,
):
    """Enumerate the displacements for `derivative_order` and deduplicate.

    Every signature required by the stencils is canonicalized under the
    registry's point group and resolved to a target. The reference
    signature is never a target: its energy is `ref_energy`.

    Args:
        ref_geometry (Molecule): Reference geometry; must be the registry's.
        step_size (float): Finite-difference step in bohr.
        ref_energy (float): Energy of the reference geometry.
        derivative_order (int): 2 (harmonic), 3 (cubic) or 4 (quartic).
        fc_buffer (ForceConstantBuffer): Receives the stencil entries.
        registry (TargetRegistry): Receives the signature -> id map.
        executor (concurrent.futures.Executor, optional): Pool used to
            compute canonical keys in parallel.

    Returns:
        list[Molecule]: Unique geometries ordered by target id.
    """
    n = ref_geometry.ncoords
    if fc_buffer.n != n:
        raise ValueError(
            f"Force-constant buffer sized for n={fc_buffer.n}, "
            f"geometry has n={n}"
        )
    if derivative_order > fc_buffer.derivative_order:
        raise ValueError(
            f"Buffer holds derivatives up to order "
            f"{fc_buffer.derivative_order}, {derivative_order} requested"
        )
    if not np.allclose(registry.reference.positions, ref_geometry.positions):
        raise ValueError("Registry was built for a different reference")
    if not np.isclose(registry.step_size, step_size):
        raise ValueError(
            f"Registry step {registry.step_size} differs from {step_size}"
        )

    entries = enumerate_entries(n, derivative_order)
    fc_buffer.entries = entries
    fc_buffer.ref_energy = ref_energy
    fc_buffer.step_size = step_size

    signatures = required_signatures(entries)
    if executor is not None:
        keys = list(executor.map(registry.canonical_key, signatures))
    else:
        keys = [registry.canonical_key(sig) for sig in signatures]

    # registration in enumeration order keeps target ids reproducible
    for sig, key in zip(signatures, keys):
        registry.register(sig, key=key)

    targets = registry.targets
    logger.info(
        f"{len(signatures)} displacements reduced to {len(targets)} unique "
        f"geometries under {registry.point_group.symbol}"
    )
    return [target.geometry for target in targets]
