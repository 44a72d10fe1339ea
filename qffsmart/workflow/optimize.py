import logging
import os

from qffsmart.jobs.drain import CheckPolicy
from qffsmart.jobs.job import Job
from qffsmart.utils.errors import JobFailure, OptimizationFailure

logger = logging.getLogger(__name__)


class Optimizer:
    """Reference-geometry optimizations through the draining engine.

    Args:
        drainer (Drainer): Engine used to run the optimization jobs.
        folder (str): Directory for the optimization job files.
        check (CheckPolicy, optional): Resume policy.
        token (CancellationToken, optional): Cancels the drains.
    """

    def __init__(self, drainer, folder, check=None, token=None):
        self.drainer = drainer
        self.folder = folder
        self.check = check or CheckPolicy()
        self.token = token

    def __repr__(self):
        return f"{self.__class__.__qualname__}<folder={self.folder}>"

    def _job(self, geometry, template, charge, optimize, name):
        os.makedirs(self.folder, exist_ok=True)
        return Job(
            basename=os.path.join(self.folder, name),
            template=template,
            charge=charge,
            geometry=geometry,
            id=0,
            optimize=optimize,
        )

    def optimize(self, geometry, template, charge):
        """Optimize one geometry; raise OptimizationFailure if it fails.

        Returns:
            JobResult: energy and optimized geometry.
        """
        job = self._job(geometry, template, charge, True, "opt")
        dst = [None]
        try:
            self.drainer.energize(
                self.folder, [job], dst, self.check, self.token
            )
        except JobFailure as e:
            raise OptimizationFailure(
                f"Optimization of {geometry.chemical_formula} failed"
            ) from e
        result = dst[0]
        if result.geometry is None:
            raise OptimizationFailure(
                f"Optimization of {geometry.chemical_formula} returned no "
                f"geometry"
            )
        logger.info(f"Optimized reference energy: {result.energy:.12f}")
        return result

    def energy(self, geometry, template, charge):
        """Single-point energy of an already converged reference."""
        job = self._job(geometry, template, charge, False, "ref")
        dst = [None]
        try:
            self.drainer.energize(
                self.folder, [job], dst, self.check, self.token
            )
        except JobFailure as e:
            raise OptimizationFailure(
                f"Reference energy of {geometry.chemical_formula} failed"
            ) from e
        return dst[0]

    async def aoptimize_all(
        self, geometries, template, charge, optimize=True, labels=None
    ):
        """Run every reference job of an outer grid in a single drain.

        Args:
            labels (list[int], optional): Grid index of each geometry, used
                to name its job files so that a resumed run finds them again.
                Defaults to the positions.

        Returns:
            tuple[list, set]: results by position (None where failed) and the
                failed positions.
        """
        os.makedirs(self.folder, exist_ok=True)
        prefix = "opt" if optimize else "ref"
        if labels is None:
            labels = range(len(geometries))
        jobs = [
            Job(
                basename=os.path.join(self.folder, f"{prefix}.{label:08d}"),
                template=template,
                charge=charge,
                geometry=geometry,
                id=k,
                optimize=optimize,
            )
            for k, (label, geometry) in enumerate(zip(labels, geometries))
        ]
        dst = [None] * len(jobs)
        report = await self.drainer.adrain(
            self.folder, jobs, dst, self.check, self.token
        )
        failed = set(report.failed)
        for i, result in enumerate(dst):
            if result is None or (optimize and result.geometry is None):
                failed.add(i)
        if failed:
            logger.warning(
                f"{len(failed)} of {len(jobs)} reference jobs failed: "
                f"{sorted(failed)}"
            )
        return dst, failed
