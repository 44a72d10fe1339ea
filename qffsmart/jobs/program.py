"""
Adapters for the external quantum-chemistry program.

A program adapter knows how to write a job's input from its template, which
command runs it, and how to parse the output into a `JobResult`. Parsing
distinguishes three situations so that the draining engine can react:

- `OutputNotReady`: no (complete) output yet;
- `MalformedOutput`: the program finished but no energy could be read;
- `ProgramError`: the program reported an error; resubmitting will not help.
"""

import json
import logging
import os
import re
import time
from abc import abstractmethod
from contextlib import suppress

import numpy as np
from ase.data import covalent_radii
from ase.data import atomic_numbers

from qffsmart.io.molecules.structure import Molecule
from qffsmart.jobs.job import JobResult
from qffsmart.utils.errors import (
    ConfigError,
    MalformedOutput,
    OutputNotReady,
    ProgramError,
)
from qffsmart.utils.mixins import RegistryMixin

logger = logging.getLogger(__name__)


class Template:
    """Program input template with `{{.name}}` placeholders.

    `{{.geom}}` is required and replaced by the geometry block.
    `{{.charge}}` is replaced by the molecular charge. `{{.optg}}` marks
    where the optimization directive goes; without it the directive is
    appended at the end for optimization jobs.
    """

    GEOM = "{{.geom}}"
    CHARGE = "{{.charge}}"
    OPT = "{{.optg}}"

    def __init__(self, text):
        if not isinstance(text, str) or not text.strip():
            raise ConfigError("Program template is empty.")
        if self.GEOM not in text:
            raise ConfigError(
                f"Program template has no {self.GEOM} placeholder."
            )
        unknown = set(re.findall(r"\{\{\.(\w+)\}\}", text)) - {
            "geom",
            "charge",
            "optg",
        }
        if unknown:
            raise ConfigError(
                f"Unknown template placeholders: {sorted(unknown)}"
            )
        self.text = text

    def __repr__(self):
        return f"{self.__class__.__qualname__}<{len(self.text)} chars>"

    def __eq__(self, other):
        return isinstance(other, Template) and self.text == other.text

    def __hash__(self):
        return hash(self.text)

    @property
    def has_charge(self):
        return self.CHARGE in self.text

    @classmethod
    def from_file(cls, filename):
        try:
            with open(filename) as f:
                return cls(f.read())
        except OSError as e:
            raise ConfigError(f"Cannot read template {filename}: {e}") from e

    def render(self, geometry, charge, opt_directive=None):
        """Fill the placeholders.

        Args:
            geometry (str): Geometry block.
            charge (int): Molecular charge.
            opt_directive (str, optional): Optimization directive; None for
                single points.
        """
        text = self.text.replace(self.GEOM, geometry)
        text = text.replace(self.CHARGE, str(charge))
        if self.OPT in text:
            text = text.replace(self.OPT, opt_directive or "")
        elif opt_directive:
            text = text.rstrip("\n") + "\n" + opt_directive + "\n"
        return text


class Program(RegistryMixin):
    """Base class for external program adapters."""

    NAME = NotImplemented
    INPUT_SUFFIX = ".inp"
    OUTPUT_SUFFIX = ".out"

    def __repr__(self):
        return f"{self.__class__.__qualname__}()"

    def infile(self, job):
        return job.basename + self.INPUT_SUFFIX

    def outfile(self, job):
        return job.basename + self.OUTPUT_SUFFIX

    def associated_files(self, job):
        """Files that belong to a job, removed on cleanup."""
        return [self.infile(job), self.outfile(job)]

    def remove_files(self, job):
        for filename in self.associated_files(job):
            with suppress(FileNotFoundError):
                os.remove(filename)

    def remove_output(self, job):
        with suppress(FileNotFoundError):
            os.remove(self.outfile(job))

    @abstractmethod
    def write_input(self, job):
        raise NotImplementedError

    @abstractmethod
    def read_output(self, job):
        raise NotImplementedError

    @abstractmethod
    def command(self, job):
        raise NotImplementedError

    @classmethod
    def from_name(cls, name, **kwargs):
        for program_cls in cls.subclasses():
            if program_cls.NAME == name.lower():
                return program_cls(**kwargs)
        raise ConfigError(
            f"No program named {name!r}. Available programs: "
            f"{[p.NAME for p in cls.subclasses()]}"
        )


class MolproProgram(Program):
    """Molpro adapter.

    The geometry is written in XYZ format inside the template's geometry
    block. Completion is detected from the closing `Variable memory
    released` line; the energy is the last `energy=` value printed.
    """

    NAME = "molpro"
    OPT_DIRECTIVE = "optg,grms=1.d-8,srms=1.d-8"

    ENERGY_RE = re.compile(
        r"^\s*energy\s*=\s*(-?\d+\.\d+(?:[dDeE][-+]?\d+)?)", re.IGNORECASE
    )
    TIME_RE = re.compile(r"REAL TIME\s+\*\s+([\d.]+)\s+SEC")
    ERROR_RE = re.compile(r"^\s*\?\s*ERROR|^\s*ERROR", re.MULTILINE)
    GEOMETRY_HEADER = "Current geometry (xyz format, in Angstrom)"

    def __init__(self, executable="molpro", flags="-t 1 --no-xml-output"):
        self.executable = executable
        self.flags = flags

    def command(self, job):
        return f"{self.executable} {self.flags} {self.infile(job)}"

    def write_input(self, job):
        geometry = job.geometry
        block = f"{geometry.num_atoms}\n\n" + geometry.to_geometry_string()
        text = job.template.render(
            block,
            job.charge,
            opt_directive=self.OPT_DIRECTIVE if job.optimize else None,
        )
        with open(self.infile(job), "w") as f:
            f.write(text)

    def read_output(self, job):
        outfile = self.outfile(job)
        if not os.path.exists(outfile):
            raise OutputNotReady(f"{outfile} does not exist")
        with open(outfile) as f:
            contents = f.read()
        if self.ERROR_RE.search(contents):
            raise ProgramError(f"Molpro reported an error in {outfile}")
        if "Variable memory released" not in contents:
            raise OutputNotReady(f"{outfile} is incomplete")

        energy = None
        elapsed = 0.0
        for line in contents.splitlines():
            match = self.ENERGY_RE.match(line)
            if match:
                energy = float(match.group(1).replace("D", "E").replace("d", "e"))
            match = self.TIME_RE.search(line)
            if match:
                elapsed = float(match.group(1))
        if energy is None:
            raise MalformedOutput(f"No energy found in {outfile}")

        geometry = None
        if job.optimize:
            geometry = self._read_geometry(contents, job)
        return JobResult(energy=energy, geometry=geometry, time=elapsed)

    def _read_geometry(self, contents, job):
        lines = contents.splitlines()
        start = None
        for i, line in enumerate(lines):
            if self.GEOMETRY_HEADER in line:
                start = i
        if start is None:
            raise MalformedOutput(
                f"No optimized geometry found in {self.outfile(job)}"
            )
        # header, blank, atom count, title, then atoms
        block = []
        for line in lines[start + 1 :]:
            fields = line.split()
            if not fields and block:
                break
            if len(fields) == 4 and not fields[0].isdigit():
                block.append(line)
        if not block:
            raise MalformedOutput(
                f"Empty optimized geometry in {self.outfile(job)}"
            )
        try:
            return Molecule.from_geometry_string(
                "\n".join(block), charge=job.charge
            )
        except ValueError as e:
            raise MalformedOutput(str(e)) from e


class MorsePotential:
    """Sum of Morse pair potentials between all real atoms.

    The equilibrium distance of a pair is the sum of the covalent radii of
    the two elements; energies are in hartree, distances in Angstrom.
    """

    def __init__(self, depth=0.1, alpha=1.8):
        self.depth = depth
        self.alpha = alpha

    def _pairs(self, symbols):
        radii = [covalent_radii[atomic_numbers[s]] for s in symbols]
        for a in range(len(symbols)):
            for b in range(a + 1, len(symbols)):
                yield a, b, radii[a] + radii[b]

    def energy(self, symbols, positions):
        positions = np.asarray(positions, dtype=float).reshape(-1, 3)
        energy = 0.0
        for a, b, re_ab in self._pairs(symbols):
            r = np.linalg.norm(positions[a] - positions[b])
            x = 1.0 - np.exp(-self.alpha * (r - re_ab))
            energy += self.depth * (x * x - 1.0)
        return energy

    def gradient(self, symbols, positions):
        positions = np.asarray(positions, dtype=float).reshape(-1, 3)
        grad = np.zeros_like(positions)
        for a, b, re_ab in self._pairs(symbols):
            diff = positions[a] - positions[b]
            r = np.linalg.norm(diff)
            e = np.exp(-self.alpha * (r - re_ab))
            dedr = 2.0 * self.depth * self.alpha * (1.0 - e) * e
            grad[a] += dedr * diff / r
            grad[b] -= dedr * diff / r
        return grad.ravel()

    def minimize(self, symbols, positions, gtol=1e-9):
        """BFGS minimization; converged when the gradient norm is below
        `100 * gtol` (BFGS may stop on precision loss just short of `gtol`).
        """
        from scipy.optimize import minimize

        result = minimize(
            lambda x: self.energy(symbols, x),
            np.asarray(positions, dtype=float).ravel(),
            jac=lambda x: self.gradient(symbols, x),
            method="BFGS",
            options={"gtol": gtol, "maxiter": 2000},
        )
        converged = (
            np.linalg.norm(self.gradient(symbols, result.x)) < 100 * gtol
        )
        return result.x.reshape(-1, 3), float(result.fun), converged


class FakeProgram(Program):
    """In-process program backed by a model potential, for testing.

    Inputs and outputs are small JSON documents. `execute` plays the role
    of the external executable and is called by the fake and local queues.
    """

    NAME = "fake"
    INPUT_SUFFIX = ".json"
    OUTPUT_SUFFIX = ".out.json"

    def __init__(self, potential=None):
        self.potential = potential or MorsePotential()

    def command(self, job):
        return f"qffsmart fake-program {self.infile(job)}"

    def write_input(self, job):
        payload = {
            "geometry": job.geometry.to_dict(),
            "charge": job.charge,
            "optimize": job.optimize,
            "template": job.template.text if job.template else None,
        }
        with open(self.infile(job), "w") as f:
            json.dump(payload, f)

    def execute(self, infile):
        """Compute the job described by `infile` and write its output."""
        start = time.perf_counter()
        with open(infile) as f:
            payload = json.load(f)
        molecule = Molecule.from_dict(payload["geometry"])
        outfile = infile[: -len(self.INPUT_SUFFIX)] + self.OUTPUT_SUFFIX
        output = {}
        symbols = molecule.real_symbols
        if payload.get("optimize"):
            positions, energy, success = self.potential.minimize(
                symbols, molecule.real_positions
            )
            if not success:
                output["error"] = "optimization did not converge"
            full = molecule.positions
            full[molecule.real_indices] = positions
            output["geometry"] = molecule.with_positions(full).to_dict()
        else:
            energy = self.potential.energy(symbols, molecule.real_positions)
        output["energy"] = float(energy)
        output["time"] = time.perf_counter() - start
        with open(outfile, "w") as f:
            json.dump(output, f)
        return outfile

    def read_output(self, job):
        outfile = self.outfile(job)
        if not os.path.exists(outfile):
            raise OutputNotReady(f"{outfile} does not exist")
        try:
            with open(outfile) as f:
                output = json.load(f)
        except json.JSONDecodeError as e:
            raise MalformedOutput(f"Cannot parse {outfile}: {e}") from e
        if "error" in output:
            raise ProgramError(f"{outfile}: {output['error']}")
        if "energy" not in output:
            raise MalformedOutput(f"No energy in {outfile}")
        geometry = output.get("geometry")
        return JobResult(
            energy=float(output["energy"]),
            geometry=Molecule.from_dict(geometry) if geometry else None,
            time=float(output.get("time", 0.0)),
        )
