"""
Single force-field run: reference, points, drain, assembly, frequencies.
"""

import asyncio
import logging
import os
import shutil
import time
from dataclasses import dataclass, field
from typing import Optional

import numpy as np

from qffsmart.analysis.frequencies import freqs
from qffsmart.fcs.assemble import make_fcs
from qffsmart.fcs.points import ForceConstantBuffer, build_points
from qffsmart.io.checkpoint import inputs_digest
from qffsmart.io.molecules.structure import Molecule
from qffsmart.jobs.drain import CheckPolicy, Drainer
from qffsmart.jobs.job import Job
from qffsmart.symmetry.registry import TargetRegistry
from qffsmart.workflow.optimize import Optimizer

logger = logging.getLogger(__name__)

REFERENCE_STAGE = "reference"


def cleanup(folder):
    """Remove everything inside `folder`, keeping the folder itself."""
    if not os.path.isdir(folder):
        return
    removed = 0
    for entry in os.scandir(folder):
        if entry.is_dir(follow_symlinks=False):
            shutil.rmtree(entry.path)
        else:
            os.remove(entry.path)
        removed += 1
    if removed:
        logger.info(f"Removed {removed} stale entries from {folder}")


@dataclass
class QFFResult:
    """Outcome of one force-field computation."""

    reference: Molecule
    ref_energy: float
    point_group: str
    fcs: object
    num_signatures: int
    num_targets: int
    failed: set = field(default_factory=set)
    report: str = ""
    summary: dict = field(default_factory=dict)
    elapsed: float = 0.0
    coords: Optional[tuple] = None

    @property
    def frequencies(self):
        return self.summary.get("frequencies")


class QFFRun:
    """Wire the point builder, draining engine and assembler for one run.

    Args:
        config (QFFConfig): Run settings.
        executor (concurrent.futures.Executor, optional): Pool for the
            local CPU work (orbit keys and stencil evaluation).
        resume (bool): Trust complete outputs and checkpoints on disk.
        token (CancellationToken, optional): Cancels the drains.
        program (Program, optional): Overrides the configured program.
        queue (Queue, optional): Overrides the configured queue.
    """

    def __init__(
        self,
        config,
        executor=None,
        resume=False,
        token=None,
        program=None,
        queue=None,
    ):
        self.config = config
        self.executor = executor
        self.resume = resume
        self.token = token
        self.template = config.make_template()
        self.program = program if program is not None else config.make_program()
        self.queue = (
            queue
            if queue is not None
            else config.make_queue(program=self.program)
        )
        self.drainer = Drainer(
            self.program,
            self.queue,
            max_retries=config.max_retries,
            job_timeout=config.job_timeout,
            cleanup=config.delete_outputs,
        )
        self.store = config.make_store()
        self.check = CheckPolicy(resume=resume)

    def __repr__(self):
        return f"{self.__class__.__qualname__}<{self.config}>"

    @property
    def pts_folder(self):
        return os.path.join(self.config.work_dir, self.config.pts_dir)

    @property
    def opt_folder(self):
        return os.path.join(self.config.work_dir, self.config.opt_dir)

    @property
    def optimizer(self):
        return Optimizer(
            self.drainer, self.opt_folder, check=self.check, token=self.token
        )

    def prepare(self):
        """Create the work folders; without resume, remove stale job files."""
        for folder in (self.pts_folder, self.opt_folder):
            if not self.resume:
                cleanup(folder)
            os.makedirs(folder, exist_ok=True)

    def inputs_digest(self, molecule):
        return inputs_digest(
            molecule, self.config.charge, self.template, self.config.optimize
        )

    def _load_reference(self, digest):
        if not self.resume:
            return None
        stage = self.store.load_stage(REFERENCE_STAGE)
        if stage is None or not stage.get("geometry"):
            return None
        if stage.get("inputs") != digest:
            self.start_over(
                "the reference was computed for different inputs"
            )
            return None
        return stage

    def start_over(self, reason):
        """Drop resumability: clear the job folders and rerun every job."""
        logger.warning(f"Not resuming: {reason}")
        self.check = CheckPolicy(resume=False)
        for folder in (self.pts_folder, self.opt_folder):
            cleanup(folder)

    def reference(self):
        """Converged, reoriented reference geometry and its energy.

        On resume the checkpointed reference is reused only when the
        geometry, charge, template and optimize flag it was computed from
        are unchanged.
        """
        config = self.config
        molecule = config.molecule
        digest = self.inputs_digest(molecule)
        stage = self._load_reference(digest)
        if stage is not None:
            molecule = Molecule.from_dict(stage["geometry"])
            energy = float(stage["energy"])
        else:
            if config.optimize:
                result = self.optimizer.optimize(
                    molecule, self.template, config.charge
                )
                molecule = result.geometry
            else:
                result = self.optimizer.energy(
                    molecule, self.template, config.charge
                )
            energy = result.energy
            self.store.save_stage(
                REFERENCE_STAGE,
                {
                    "coords": [],
                    "energy": float(energy),
                    "geometry": molecule.to_dict(),
                    "inputs": digest,
                },
            )
        return molecule.normalized(config.reorient), energy

    def point_group(self, molecule):
        return molecule.point_group(
            tolerance=self.config.symmetry_tolerance,
            use_symmetry=self.config.use_symmetry,
        )

    async def acompute(
        self, reference, ref_energy, folder, debug_dir=None, coords=None
    ):
        """Force field of one converged reference geometry.

        Point building and assembly run synchronously (on the executor when
        given); the drain in between yields to the event loop, so several
        references can be computed concurrently.
        """
        config = self.config
        start = time.perf_counter()
        os.makedirs(folder, exist_ok=True)
        n = reference.ncoords
        order = config.derivative_order
        point_group = self.point_group(reference)

        fc_buffer = ForceConstantBuffer(n, order)
        registry = TargetRegistry(
            reference,
            config.step_size,
            point_group=point_group,
            key_decimals=config.key_decimals,
        )
        geometries = build_points(
            reference,
            config.step_size,
            ref_energy,
            order,
            fc_buffer,
            registry,
            executor=self.executor,
        )
        jobs = Job.from_geometries(
            folder, geometries, self.template, config.charge
        )
        dst = [None] * len(jobs)
        report = await self.drainer.adrain(
            folder, jobs, dst, self.check, self.token
        )
        energies = [np.nan if r is None else r.energy for r in dst]

        fcs = make_fcs(
            registry,
            energies,
            fc_buffer,
            n,
            order,
            debug_dir=debug_dir,
            point_group=point_group if config.project_symmetry else None,
            executor=self.executor,
        )
        text, summary = freqs(folder, reference, fcs.fc2, fcs.fc3, fcs.fc4)
        return QFFResult(
            reference=reference,
            ref_energy=ref_energy,
            point_group=point_group.symbol,
            fcs=fcs,
            num_signatures=registry.num_signatures,
            num_targets=len(registry),
            failed=report.failed,
            report=text,
            summary=summary,
            elapsed=time.perf_counter() - start,
            coords=coords,
        )

    def run(self):
        self.prepare()
        reference, ref_energy = self.reference()
        logger.info(
            f"Reference {reference.chemical_formula}: E = {ref_energy:.12f}"
        )
        result = asyncio.run(
            self.acompute(
                reference,
                ref_energy,
                self.pts_folder,
                debug_dir=self.config.debug_dir,
            )
        )
        logger.info(
            f"Computed {result.num_targets} points for "
            f"{result.num_signatures} displacements in {result.elapsed:.1f} s"
        )
        return result
