import numpy as np
import pytest

from qffsmart.io.molecules.structure import Atom, Molecule


class TestMolecule:
    def test_basic_properties(self, water):
        assert water.num_atoms == 3
        assert water.ncoords == 9
        assert water.chemical_formula == "OH2"
        assert water.symbols == ["O", "H", "H"]
        assert np.allclose(water.masses, [15.999, 1.008, 1.008], atol=1e-2)
        assert not water.is_linear

    def test_positions_are_copies(self, water):
        positions = water.positions
        positions[0, 0] = 10.0
        assert water.positions[0, 0] == 0.0
        with pytest.raises(ValueError):
            water._positions[0, 0] = 1.0

    def test_displaced_returns_new_molecule(self, water):
        displacement = np.zeros(9)
        displacement[5] = 0.1
        displaced = water.displaced(displacement)
        assert displaced is not water
        assert np.isclose(displaced.positions[1, 2], -0.4692 + 0.1)
        assert np.isclose(water.positions[1, 2], -0.4692)

    def test_displaced_checks_size(self, water):
        with pytest.raises(ValueError):
            water.displaced(np.zeros(6))

    def test_dummy_atoms(self, water_with_dummy):
        assert water_with_dummy.num_atoms == 4
        assert water_with_dummy.num_dummies == 1
        assert water_with_dummy.ncoords == 9
        assert water_with_dummy.real_indices == [0, 1, 2]

        displaced = water_with_dummy.displaced(np.full(9, 0.01))
        assert np.allclose(displaced.positions[3], [0.0, 0.0, 2.0])
        assert np.allclose(displaced.positions[0], [0.01, 0.01, 0.1273])

    def test_mass_override(self):
        atom = Atom("H", (0.0, 0.0, 0.0), mass=2.014)
        assert atom.weight == 2.014
        assert Atom("H", (0.0, 0.0, 0.0)).weight == pytest.approx(1.008)

    def test_from_geometry_string_xyz_and_labels(self):
        molecule = Molecule.from_geometry_string(
            "2\ncomment line\nh1 0.0 0.0 0.0\nH2 0.0 0.0 0.74\n", charge=1
        )
        assert molecule.symbols == ["H", "H"]
        assert molecule.charge == 1
        assert molecule.is_linear

    def test_from_geometry_string_rejects_garbage(self):
        with pytest.raises(ValueError):
            Molecule.from_geometry_string("O 0.0 0.0")
        with pytest.raises(ValueError):
            Molecule.from_geometry_string("")

    def test_dict_round_trip_keeps_dummies(self, water_with_dummy):
        molecule = Molecule.from_dict(water_with_dummy.to_dict())
        assert molecule.num_dummies == 1
        assert np.allclose(molecule.positions, water_with_dummy.positions)

    def test_geometry_string(self, water):
        lines = water.to_geometry_string(precision=4).splitlines()
        assert lines[1] == "H 0.0000 0.7572 -0.4692"


class TestReorientation:
    def test_none_keeps_geometry(self, water):
        assert water.normalized("none") is water

    def test_com_moves_center_of_mass(self, water):
        centered = water.normalized("com")
        assert np.allclose(centered.center_of_mass, 0.0)
        # pure translation
        assert np.allclose(
            centered.positions - water.positions,
            centered.positions[0] - water.positions[0],
        )

    def test_principal_axes(self, asymmetric_triatomic):
        oriented = asymmetric_triatomic.normalized("principal")
        positions = oriented.real_positions
        masses = oriented.masses
        inertia = np.zeros((3, 3))
        for m, r in zip(masses, positions):
            inertia += m * (np.dot(r, r) * np.eye(3) - np.outer(r, r))
        off_diagonal = inertia - np.diag(np.diag(inertia))
        assert np.allclose(off_diagonal, 0.0, atol=1e-8)
        # distances are preserved
        before = np.linalg.norm(
            asymmetric_triatomic.positions[0] - asymmetric_triatomic.positions[2]
        )
        after = np.linalg.norm(positions[0] - positions[2])
        assert np.isclose(before, after)

    def test_unknown_policy(self, water):
        with pytest.raises(ValueError):
            water.normalized("upside-down")
