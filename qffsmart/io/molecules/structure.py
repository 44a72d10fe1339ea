import logging
import re
from dataclasses import dataclass
from typing import Optional

import numpy as np
from ase.data import atomic_masses, atomic_numbers

logger = logging.getLogger(__name__)

DUMMY_SYMBOLS = ("X", "XX", "Q")

REORIENT_POLICIES = ("none", "com", "principal")


@dataclass(frozen=True)
class Atom:
    """A single atom of a molecule.

    Parameters:

    symbol: element symbol, or X for a dummy atom.
    position: Cartesian position in Angstrom.
    mass: optional mass override in amu; defaults to the ase mass of the
        element.
    dummy: dummy atoms are carried through to the program input but are
        never displaced and do not count towards the coordinates.
    """

    symbol: str
    position: tuple
    mass: Optional[float] = None
    dummy: bool = False

    @property
    def weight(self):
        if self.mass is not None:
            return float(self.mass)
        return float(atomic_masses[atomic_numbers[self.symbol]])


class Molecule:
    """Ordered collection of atoms with a derived point group.

    A Molecule is not modified after construction: `positions` returns a
    copy and every geometric operation returns a new Molecule.

    Args:
        atoms (list[Atom]): Atoms in input order.
        charge (int): Molecular charge.
    """

    def __init__(self, atoms, charge=0):
        if not atoms:
            raise ValueError("A molecule needs at least one atom.")
        self._atoms = tuple(atoms)
        self.charge = charge
        self._positions = np.array(
            [atom.position for atom in self._atoms], dtype=float
        )
        if self._positions.shape != (len(self._atoms), 3):
            raise ValueError(
                f"Positions must have shape ({len(self._atoms)}, 3), "
                f"got {self._positions.shape}."
            )
        self._positions.setflags(write=False)
        self._point_groups = {}

    def __len__(self):
        return len(self._atoms)

    def __iter__(self):
        return iter(self._atoms)

    def __getitem__(self, idx):
        return self._atoms[idx]

    def __repr__(self):
        return (
            f"{self.__class__.__qualname__}<{self.chemical_formula}, "
            f"charge={self.charge}>"
        )

    @property
    def atoms(self):
        return self._atoms

    @property
    def symbols(self):
        return [atom.symbol for atom in self._atoms]

    @property
    def positions(self):
        return np.array(self._positions)

    @property
    def num_atoms(self):
        return len(self._atoms)

    @property
    def real_indices(self):
        """Indices of the atoms that are not dummies."""
        return [i for i, atom in enumerate(self._atoms) if not atom.dummy]

    @property
    def num_real_atoms(self):
        return len(self.real_indices)

    @property
    def num_dummies(self):
        return self.num_atoms - self.num_real_atoms

    @property
    def ncoords(self):
        """Number of Cartesian coordinates, 3 * (atoms - dummy atoms)."""
        return 3 * self.num_real_atoms

    @property
    def real_symbols(self):
        return [self._atoms[i].symbol for i in self.real_indices]

    @property
    def real_positions(self):
        return self._positions[self.real_indices].copy()

    @property
    def masses(self):
        """Masses in amu of the real atoms."""
        return np.array([self._atoms[i].weight for i in self.real_indices])

    @property
    def chemical_formula(self):
        counts = {}
        for symbol in self.real_symbols:
            counts[symbol] = counts.get(symbol, 0) + 1
        return "".join(
            f"{symbol}{count if count > 1 else ''}"
            for symbol, count in counts.items()
        )

    @property
    def center_of_mass(self):
        masses = self.masses
        return masses @ self.real_positions / masses.sum()

    @property
    def is_linear(self):
        """True if all real atoms lie on a line (includes diatomics)."""
        positions = self.real_positions
        if len(positions) < 3:
            return True
        centered = positions - positions.mean(axis=0)
        singular_values = np.linalg.svd(centered, compute_uv=False)
        return singular_values[1] < 1e-6

    def point_group(self, tolerance=0.3, use_symmetry=True):
        """Return the point group of the real atoms.

        Args:
            tolerance (float): Distance tolerance in Angstrom used to decide
                whether two atoms are symmetry equivalent.
            use_symmetry (bool): If False, the trivial group C1 is returned.

        Returns:
            PointGroup: symbol and operations.
        """
        from qffsmart.symmetry.pointgroup import PointGroup

        key = (tolerance, use_symmetry)
        if key not in self._point_groups:
            if use_symmetry:
                pg = PointGroup.from_molecule(self, tolerance=tolerance)
            else:
                pg = PointGroup.trivial(self.num_real_atoms)
            self._point_groups[key] = pg
        return self._point_groups[key]

    def displaced(self, displacement):
        """Return a new molecule with the real atoms displaced.

        Args:
            displacement (np.ndarray): Flat array of length `ncoords` or an
                array of shape (num_real_atoms, 3), in Angstrom.
        """
        displacement = np.asarray(displacement, dtype=float).reshape(-1, 3)
        if displacement.shape[0] != self.num_real_atoms:
            raise ValueError(
                f"Displacement for {displacement.shape[0]} atoms does not "
                f"match {self.num_real_atoms} real atoms."
            )
        positions = self.positions
        positions[self.real_indices] += displacement
        return self.with_positions(positions)

    def with_positions(self, positions):
        positions = np.asarray(positions, dtype=float)
        atoms = [
            Atom(
                symbol=atom.symbol,
                position=tuple(float(x) for x in position),
                mass=atom.mass,
                dummy=atom.dummy,
            )
            for atom, position in zip(self._atoms, positions)
        ]
        return type(self)(atoms, charge=self.charge)

    def with_atom_position(self, index, position):
        """Return a new molecule with atom `index` (0-based) moved."""
        positions = self.positions
        positions[index] = np.asarray(position, dtype=float)
        return self.with_positions(positions)

    def normalized(self, policy="none"):
        """Apply a reorientation policy to the molecule.

        Args:
            policy (str): "none" keeps the geometry as given, "com" moves the
                center of mass of the real atoms to the origin, "principal"
                additionally rotates onto the principal axes of inertia.

        Returns:
            Molecule: the reoriented molecule.
        """
        if policy not in REORIENT_POLICIES:
            raise ValueError(
                f"Unknown reorientation policy {policy!r}; "
                f"expected one of {REORIENT_POLICIES}."
            )
        if policy == "none":
            return self
        positions = self.positions - self.center_of_mass
        if policy == "principal":
            real = positions[self.real_indices]
            masses = self.masses
            inertia = np.zeros((3, 3))
            for m, r in zip(masses, real):
                inertia += m * (np.dot(r, r) * np.eye(3) - np.outer(r, r))
            _, axes = np.linalg.eigh(inertia)
            if np.linalg.det(axes) < 0:
                axes[:, 2] *= -1
            positions = positions @ axes
        # clean up numerical noise so that symmetric atoms stay symmetric
        positions[np.abs(positions) < 1e-10] = 0.0
        return self.with_positions(positions)

    def to_geometry_string(self, precision=12):
        """Cartesian geometry block, one `symbol x y z` line per atom."""
        lines = []
        for atom in self._atoms:
            x, y, z = atom.position
            lines.append(
                f"{atom.symbol} {x:.{precision}f} {y:.{precision}f} "
                f"{z:.{precision}f}"
            )
        return "\n".join(lines)

    def to_pymatgen(self):
        """Real atoms as a pymatgen Molecule, used for symmetry analysis."""
        from pymatgen.core import Molecule as PymatgenMolecule

        return PymatgenMolecule(self.real_symbols, self.real_positions)

    def to_dict(self):
        return {
            "charge": self.charge,
            "atoms": [
                {
                    "symbol": atom.symbol,
                    "position": list(atom.position),
                    "mass": atom.mass,
                    "dummy": atom.dummy,
                }
                for atom in self._atoms
            ],
        }

    @classmethod
    def from_dict(cls, d):
        atoms = [
            Atom(
                symbol=a["symbol"],
                position=tuple(a["position"]),
                mass=a.get("mass"),
                dummy=a.get("dummy", False),
            )
            for a in d["atoms"]
        ]
        return cls(atoms, charge=d.get("charge", 0))

    @classmethod
    def from_symbols_and_positions(
        cls, symbols, positions, masses=None, charge=0
    ):
        if masses is None:
            masses = [None] * len(symbols)
        atoms = [
            Atom(
                symbol=symbol,
                position=tuple(float(x) for x in position),
                mass=mass,
                dummy=symbol.upper() in DUMMY_SYMBOLS,
            )
            for symbol, position, mass in zip(symbols, positions, masses)
        ]
        return cls(atoms, charge=charge)

    @classmethod
    def from_geometry_string(cls, text, charge=0):
        """Parse a Cartesian geometry block in Angstrom.

        Accepts either bare `symbol x y z` lines or an XYZ file body (atom
        count and comment lines are skipped). Symbols may carry a numeric
        label (`H1`), which is stripped.
        """
        symbols = []
        positions = []
        lines = [line.strip() for line in text.strip().splitlines()]
        if lines and re.fullmatch(r"\d+", lines[0]):
            lines = lines[2:]
        for line in lines:
            if not line:
                continue
            fields = line.replace(",", " ").split()
            if len(fields) != 4:
                raise ValueError(f"Cannot parse geometry line: {line!r}")
            symbol = re.sub(r"\d+$", "", fields[0])
            symbol = symbol[0].upper() + symbol[1:].lower()
            symbols.append(symbol)
            positions.append([float(x) for x in fields[1:]])
        if not symbols:
            raise ValueError("Geometry contains no atoms.")
        return cls.from_symbols_and_positions(
            symbols, positions, charge=charge
        )
