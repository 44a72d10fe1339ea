import os

import numpy as np
import pytest

from qffsmart.io.molecules.structure import Molecule
from qffsmart.jobs.job import Job
from qffsmart.jobs.program import FakeProgram, MorsePotential, Template
from qffsmart.settings.scheduler import FakeQueue
from qffsmart.symmetry.pointgroup import PointGroup, SymmetryOperation


############ Molecule Fixtures ##################
# water in the yz plane with the C2 axis along z
@pytest.fixture()
def water():
    return Molecule.from_symbols_and_positions(
        ["O", "H", "H"],
        [
            [0.0, 0.0, 0.1173],
            [0.0, 0.7572, -0.4692],
            [0.0, -0.7572, -0.4692],
        ],
    )


# equilibrium of the Morse model potential: O-H 0.97, H-H 0.62 Angstrom
@pytest.fixture()
def morse_water():
    height = np.sqrt(0.97**2 - 0.31**2)
    return Molecule.from_symbols_and_positions(
        ["O", "H", "H"],
        [
            [0.0, 0.0, 0.0],
            [0.0, 0.31, -height],
            [0.0, -0.31, -height],
        ],
    ).normalized("com")


# three different atoms; only the molecular plane is a symmetry element
@pytest.fixture()
def asymmetric_triatomic():
    return Molecule.from_symbols_and_positions(
        ["O", "H", "F"],
        [
            [0.0, 0.0, 0.0],
            [0.96, 0.0, 0.0],
            [-0.35, 1.32, 0.0],
        ],
    )


@pytest.fixture()
def water_with_dummy():
    return Molecule.from_geometry_string(
        """
        O 0.0 0.0 0.1173
        H 0.0 0.7572 -0.4692
        H 0.0 -0.7572 -0.4692
        X 0.0 0.0 2.0
        """
    )


@pytest.fixture()
def c2v_operations():
    """The four operations of water written out by hand."""
    identity = SymmetryOperation(np.eye(3), [0, 1, 2])
    c2 = SymmetryOperation(np.diag([-1.0, -1.0, 1.0]), [0, 2, 1])
    sigma_xz = SymmetryOperation(np.diag([1.0, -1.0, 1.0]), [0, 2, 1])
    sigma_yz = SymmetryOperation(np.diag([-1.0, 1.0, 1.0]), [0, 1, 2])
    return [identity, c2, sigma_xz, sigma_yz]


@pytest.fixture()
def c2v(c2v_operations):
    return PointGroup("C2v", c2v_operations)


############ Job Fixtures ##################
@pytest.fixture()
def template():
    return Template("memory,1,g\ngeometry={\n{{.geom}}\n}\nset,charge={{.charge}}\nhf\n")


@pytest.fixture()
def fake_program():
    return FakeProgram()


@pytest.fixture()
def morse():
    return MorsePotential()


@pytest.fixture()
def fake_queue(fake_program):
    return FakeQueue(chunk_size=4, job_limit=2, program=fake_program)


@pytest.fixture()
def make_jobs(template):
    """Jobs for `count` displaced copies of a molecule in `folder`."""

    def _make_jobs(folder, molecule, count, optimize=False):
        rng = np.random.default_rng(7)
        geometries = [
            molecule.displaced(0.02 * rng.standard_normal(molecule.ncoords))
            for _ in range(count)
        ]
        os.makedirs(folder, exist_ok=True)
        return Job.from_geometries(
            folder, geometries, template, charge=0, optimize=optimize
        )

    return _make_jobs


@pytest.fixture()
def fake_config(tmpdir):
    """Configuration dict of a fake run in tmpdir."""
    return {
        "geometry": (
            "3\nwater\n"
            "O 0.0 0.0 0.1173\n"
            "H 0.0 0.7572 -0.4692\n"
            "H 0.0 -0.7572 -0.4692\n"
        ),
        "program": "fake",
        "queue": "fake",
        "derivative_order": 2,
        "step_size": 0.005,
        "sleep_int": 0,
        "chunk_size": 16,
        "job_limit": 4,
        "workers": 2,
        "work_dir": str(tmpdir),
    }
