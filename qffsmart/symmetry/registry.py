"""
Registry of unique displaced geometries.

Displacement signatures that are related by an operation of the molecule's
point group produce geometries with identical energies. The registry maps
each signature onto one representative `Target`, so that only one job is
ever submitted per orbit.
"""

import logging
import threading
from dataclasses import dataclass, field

import numpy as np
from ase import units

from qffsmart.fcs.stencils import REFERENCE, signature_vector

logger = logging.getLogger(__name__)

REFERENCE_ID = -1


@dataclass
class Target:
    """Representative of one symmetry orbit of displacement signatures.

    Attributes:
        id (int): Dense sequential id, also the index into the energies.
        signature (tuple): The first signature registered for the orbit;
            its (untransformed) geometry is the one submitted.
        geometry (Molecule): Displaced geometry for `signature`.
        members (set): Every signature that resolves to this target.
    """

    id: int
    signature: tuple
    geometry: object
    members: set = field(default_factory=set)


class TargetRegistry:
    """Canonicalize displacement signatures and deduplicate them.

    The canonical key of a signature is the lexicographically smallest
    rounded displacement obtained by applying every group operation to the
    displacement pattern. Rounding to `key_decimals` (in units of the step)
    absorbs floating-point noise in the detected operations.

    Insertions and lookups are serialized by a lock, so two threads can never
    allocate two targets for the same orbit.

    Args:
        reference (Molecule): Reference geometry.
        step_size (float): Finite-difference step in bohr.
        point_group (PointGroup, optional): Defaults to the point group of
            `reference`.
        key_decimals (int): Rounding of canonical keys.
    """

    def __init__(
        self, reference, step_size, point_group=None, key_decimals=4
    ):
        self.reference = reference
        self.step_size = step_size
        if point_group is None:
            point_group = reference.point_group()
        self.point_group = point_group
        self.key_decimals = key_decimals
        self.ncoords = reference.ncoords
        self._targets = []
        self._by_key = {}
        self._by_signature = {REFERENCE: REFERENCE_ID}
        self._lock = threading.Lock()

    def __repr__(self):
        return (
            f"{self.__class__.__qualname__}<{self.point_group.symbol}, "
            f"targets={len(self._targets)}, "
            f"signatures={self.num_signatures}>"
        )

    def __len__(self):
        return len(self._targets)

    @property
    def targets(self):
        with self._lock:
            return list(self._targets)

    @property
    def num_signatures(self):
        """Number of non-reference signatures seen so far."""
        return len(self._by_signature) - 1

    @property
    def signature_map(self):
        with self._lock:
            return dict(self._by_signature)

    def canonical_key(self, sig):
        """Orbit key of a signature; independent of registry state."""
        displacement = signature_vector(sig, self.ncoords).reshape(-1, 3)
        keys = []
        for op in self.point_group.operations:
            transformed = op.apply(displacement).ravel()
            rounded = np.round(transformed, self.key_decimals) + 0.0
            keys.append(tuple(rounded.tolist()))
        return min(keys)

    def displacement(self, sig):
        """Cartesian displacement in Angstrom for a signature."""
        return (
            signature_vector(sig, self.ncoords) * self.step_size * units.Bohr
        )

    def geometry(self, sig):
        return self.reference.displaced(self.displacement(sig))

    def register(self, sig, key=None):
        """Resolve `sig` to a target id, creating a target if needed.

        Args:
            sig (tuple): Displacement signature.
            key (tuple, optional): Precomputed canonical key.

        Returns:
            tuple[int, bool]: the target id and whether it was newly created.
        """
        if sig == REFERENCE:
            return REFERENCE_ID, False
        if key is None:
            key = self.canonical_key(sig)
        with self._lock:
            if sig in self._by_signature:
                return self._by_signature[sig], False
            target_id = self._by_key.get(key)
            created = target_id is None
            if created:
                target_id = len(self._targets)
                self._targets.append(
                    Target(
                        id=target_id,
                        signature=sig,
                        geometry=self.geometry(sig),
                        members={sig},
                    )
                )
                self._by_key[key] = target_id
            else:
                self._targets[target_id].members.add(sig)
            self._by_signature[sig] = target_id
        return target_id, created

    def resolve(self, sig):
        """Target id of an already registered signature."""
        try:
            return self._by_signature[sig]
        except KeyError:
            raise KeyError(f"Signature {sig} was never registered") from None
