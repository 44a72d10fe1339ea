"""
Point groups of molecules as atom permutations plus rotations.

Symmetry detection is delegated to pymatgen's PointGroupAnalyzer. Each
operation it finds is converted into a `SymmetryOperation` that acts on
Cartesian displacements of the real (non-dummy) atoms: the rotation is
applied to every atom's displacement vector and the result is moved to the
image atom.
"""

import logging

import numpy as np

logger = logging.getLogger(__name__)


class SymmetryOperation:
    """A point-group operation acting on atomic displacements.

    Args:
        rotation (np.ndarray): 3x3 orthogonal matrix (proper or improper).
        permutation (Sequence[int]): `permutation[a]` is the atom that atom
            `a` is mapped onto.
    """

    def __init__(self, rotation, permutation):
        self.rotation = np.array(rotation, dtype=float)
        self.permutation = tuple(int(p) for p in permutation)

    def __repr__(self):
        return (
            f"{self.__class__.__qualname__}<det={self.determinant:+.0f}, "
            f"permutation={self.permutation}>"
        )

    @property
    def determinant(self):
        return float(np.linalg.det(self.rotation))

    @property
    def is_identity(self):
        identity = tuple(range(len(self.permutation)))
        return (
            np.allclose(self.rotation, np.eye(3))
            and self.permutation == identity
        )

    def apply(self, displacement):
        """Transform a (natoms, 3) displacement array."""
        displacement = np.asarray(displacement, dtype=float)
        transformed = np.zeros_like(displacement)
        transformed[list(self.permutation)] = displacement @ self.rotation.T
        return transformed

    def representation(self):
        """Matrix of the operation on the flat 3N displacement space."""
        natoms = len(self.permutation)
        gamma = np.zeros((3 * natoms, 3 * natoms))
        for a, b in enumerate(self.permutation):
            gamma[3 * b : 3 * b + 3, 3 * a : 3 * a + 3] = self.rotation
        return gamma

    def key(self, decimals=6):
        return (
            tuple(np.round(self.rotation, decimals).ravel() + 0.0),
            self.permutation,
        )


class PointGroup:
    """Schoenflies symbol plus the operations acting on real atoms.

    The identity is always the first operation.
    """

    def __init__(self, symbol, operations):
        self.symbol = symbol
        self.operations = list(operations)

    def __repr__(self):
        return f"{self.__class__.__qualname__}<{self.symbol}, order={self.order}>"

    def __len__(self):
        return len(self.operations)

    @property
    def order(self):
        return len(self.operations)

    @property
    def is_trivial(self):
        return self.order == 1

    @classmethod
    def trivial(cls, natoms):
        return cls("C1", [SymmetryOperation(np.eye(3), range(natoms))])

    @classmethod
    def from_molecule(cls, molecule, tolerance=0.3):
        """Detect the point group of the real atoms of `molecule`.

        Operations whose atom mapping cannot be established within
        `tolerance` are dropped, which can only lower the symmetry used for
        deduplication.
        """
        from pymatgen.symmetry.analyzer import PointGroupAnalyzer

        natoms = molecule.num_real_atoms
        if natoms < 2:
            return cls.trivial(natoms)

        analyzer = PointGroupAnalyzer(
            molecule.to_pymatgen(), tolerance=tolerance
        )
        centered = np.array(analyzer.centered_mol.cart_coords)
        species = molecule.real_symbols

        operations = [SymmetryOperation(np.eye(3), range(natoms))]
        seen = {operations[0].key()}
        for symmop in analyzer.get_symmetry_operations():
            images = symmop.operate_multi(centered)
            permutation = cls._match_atoms(
                images, centered, species, tolerance
            )
            if permutation is None:
                logger.debug(
                    f"Dropping operation without an atom mapping:\n{symmop}"
                )
                continue
            operation = SymmetryOperation(
                symmop.rotation_matrix, permutation
            )
            if operation.key() in seen:
                continue
            seen.add(operation.key())
            operations.append(operation)

        symbol = str(analyzer.sch_symbol)
        logger.info(
            f"Detected point group {symbol} with {len(operations)} "
            f"operations for {molecule.chemical_formula}"
        )
        return cls(symbol, operations)

    @staticmethod
    def _match_atoms(images, positions, species, tolerance):
        permutation = []
        for a, image in enumerate(images):
            distances = np.linalg.norm(positions - image, axis=1)
            candidates = [
                b
                for b in np.argsort(distances)
                if species[b] == species[a] and distances[b] < tolerance
            ]
            if not candidates:
                return None
            permutation.append(int(candidates[0]))
        if len(set(permutation)) != len(permutation):
            return None
        return permutation

    def symmetrize_tensor(self, tensor):
        """Average a dense rank-k tensor over the group representation.

        For a matrix this is the mean of `G M G^T` over all operations.
        """
        rank = tensor.ndim
        result = np.zeros_like(tensor)
        for op in self.operations:
            gamma = op.representation()
            transformed = tensor
            for axis in range(rank):
                transformed = np.moveaxis(
                    np.tensordot(gamma, transformed, axes=([1], [axis])),
                    0,
                    axis,
                )
            result += transformed
        logger.debug(
            f"Symmetrized rank-{rank} tensor over {self.order} "
            f"operations"
        )
        return result / self.order
