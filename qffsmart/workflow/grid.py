"""
Force fields over an outer grid of probe-atom positions.

All reference jobs of the grid go through one drain before any point
building starts; grid points whose reference failed are dropped from every
parallel array. The per-point single-point drains then run concurrently on
one event loop.
"""

import asyncio
import logging
import os

import numpy as np

from qffsmart.io.checkpoint import optimization_records
from qffsmart.io.molecules.structure import Molecule
from qffsmart.jobs.drain import filter_failed
from qffsmart.jobs.job import JobResult
from qffsmart.workflow.run import QFFRun

logger = logging.getLogger(__name__)

OPTIMIZATION_STAGE = "optimizations"


def _coords_key(coords):
    return tuple(np.round(np.asarray(coords, dtype=float), 8).tolist())


class GridRun(QFFRun):
    """Repeat the force-field computation for every grid point."""

    def geometries(self):
        """Reference geometry of every grid point, in grid order."""
        atom = self.config.grid["atom"]
        molecule = self.config.molecule
        return [
            molecule.with_atom_position(atom, coords)
            for coords in self.config.grid_points
        ]

    def _load_records(self, digests):
        """Checkpointed references by grid coordinates.

        A record computed from other inputs than `digests` (keyed like the
        records) means the molecule, charge, template or optimize flag has
        changed since, so nothing on disk is reused.
        """
        if not self.resume:
            return {}
        records = self.store.load_stage(OPTIMIZATION_STAGE) or []
        loaded = {}
        for record in records:
            try:
                key = _coords_key(record["coords"])
                if key in digests and record.get("inputs") != digests[key]:
                    self.start_over(
                        f"grid point {key} was computed for different inputs"
                    )
                    return {}
                result = JobResult(
                    energy=float(record["energy"]),
                    geometry=(
                        Molecule.from_dict(record["geometry"])
                        if record.get("geometry")
                        else None
                    ),
                )
                loaded[key] = result
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Ignoring unreadable checkpoint record: {e}")
        return loaded

    async def areferences(self):
        """Optimize (or single-point) every grid point in one drain.

        Returns:
            tuple[list, list, list]: grid indices, coordinates and results of
                the surviving grid points, aligned.
        """
        config = self.config
        coords = config.grid_points
        geometries = self.geometries()
        results = [None] * len(coords)

        digests = [self.inputs_digest(g) for g in geometries]
        loaded = self._load_records(
            {_coords_key(c): d for c, d in zip(coords, digests)}
        )
        todo = []
        for i, c in enumerate(coords):
            result = loaded.get(_coords_key(c))
            if result is not None:
                results[i] = result
            else:
                todo.append(i)
        if loaded:
            logger.info(
                f"Reusing {len(coords) - len(todo)} checkpointed references"
            )

        failed = set()
        if todo:
            new_results, new_failed = await self.optimizer.aoptimize_all(
                [geometries[i] for i in todo],
                self.template,
                config.charge,
                optimize=config.optimize,
                labels=todo,
            )
            for k, i in enumerate(todo):
                if k in new_failed:
                    failed.add(i)
                    continue
                result = new_results[k]
                if not config.optimize:
                    result.geometry = geometries[i]
                results[i] = result

        indices, coords, results, digests = filter_failed(
            failed, list(range(len(coords))), coords, results, digests
        )
        self.store.save_stage(
            OPTIMIZATION_STAGE,
            optimization_records(coords, results, digests=digests),
        )
        if failed:
            logger.warning(
                f"Dropped {len(failed)} grid points whose reference failed"
            )
        return indices, coords, results

    def point_folder(self, index):
        return os.path.join(self.pts_folder, f"point.{index:04d}")

    async def arun(self):
        indices, coords, references = await self.areferences()
        tasks = []
        for index, c, reference in zip(indices, coords, references):
            debug_dir = None
            if self.config.debug_dir is not None:
                debug_dir = os.path.join(
                    self.config.debug_dir, f"point.{index:04d}"
                )
            tasks.append(
                self.acompute(
                    reference.geometry.normalized(self.config.reorient),
                    reference.energy,
                    self.point_folder(index),
                    debug_dir=debug_dir,
                    coords=tuple(c),
                )
            )
        return list(await asyncio.gather(*tasks))

    def run(self):
        self.prepare()
        results = asyncio.run(self.arun())
        logger.info(f"Computed force fields for {len(results)} grid points")
        return results
