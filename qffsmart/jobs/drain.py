"""
Job-draining engine.

Jobs are grouped into chunks of `queue.chunk_size` and submitted with at most
`queue.job_limit` chunks outstanding. The drain loop is a coroutine that
sleeps `queue.sleep_int` seconds between polls; on each poll it asks the
scheduler which chunks are still alive and then reads every pending output.
Results are written to `dst[job.id]`, so completion order never matters.

Failure handling:

- a program-reported error fails the job at once;
- missing or malformed output once the scheduler has dropped the chunk, or a
  chunk that outlives `job_timeout`, sends the job back for resubmission up
  to `max_retries` times before it is recorded as failed;
- a strict drain (`energize`) cancels the outstanding chunks and raises
  JobFailure on the first poll that records a failed job.
"""

import asyncio
import itertools
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field

from qffsmart.utils.errors import (
    DrainCancelled,
    JobFailure,
    MalformedOutput,
    OutputNotReady,
    ProgramError,
)

logger = logging.getLogger(__name__)


@dataclass
class CheckPolicy:
    """Whether complete outputs already in the folder are trusted."""

    resume: bool = False


@dataclass
class DrainReport:
    """Outcome of a drain: wall time in seconds and the failed job ids."""

    elapsed: float
    failed: set = field(default_factory=set)

    @property
    def ok(self):
        return not self.failed


class CancellationToken:
    """Thread-safe flag checked by the drain loop before every poll."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self):
        return self._event.is_set()


class _Chunk:
    def __init__(self, jobs, name):
        self.jobs = list(jobs)
        self.name = name
        self.handle = None
        self.submitted = None


def _unfinished(*chunk_lists):
    return sum(len(c.jobs) for chunks in chunk_lists for c in chunks)


class Drainer:
    """Run jobs through a program adapter and a scheduler adapter.

    Args:
        program (Program): Writes inputs and parses outputs.
        queue (Queue): Submits chunk scripts and reports their state.
        max_retries (int): Resubmissions allowed per job.
        job_timeout (float, optional): Seconds after which an outstanding
            chunk is cancelled and its unfinished jobs retried.
        cleanup (bool): Remove the job files once a result has been read.
    """

    def __init__(
        self, program, queue, max_retries=2, job_timeout=None, cleanup=False
    ):
        self.program = program
        self.queue = queue
        self.max_retries = max_retries
        self.job_timeout = job_timeout
        self.cleanup = cleanup
        self._names = itertools.count()

    def __repr__(self):
        return (
            f"{self.__class__.__qualname__}<program={self.program}, "
            f"queue={self.queue}, max_retries={self.max_retries}>"
        )

    async def adrain(
        self, folder, jobs, dst, check=None, token=None, strict=False
    ):
        """Drain `jobs`, writing each `JobResult` to `dst[job.id]`.

        Args:
            folder (str): Directory holding job files and chunk scripts.
            jobs (list[Job]): Jobs to run; ids must be unique.
            dst (MutableSequence | MutableMapping): Receives the results.
            check (CheckPolicy, optional): Resume policy.
            token (CancellationToken, optional): Stops the drain at the next
                poll with DrainCancelled.
            strict (bool): Cancel the outstanding chunks and raise
                JobFailure as soon as a poll records a failed job.

        Returns:
            DrainReport: elapsed time and the ids that failed.
        """
        check = check or CheckPolicy()
        start = time.perf_counter()
        ids = [job.id for job in jobs]
        if len(set(ids)) != len(ids):
            raise ValueError("Job ids passed to a drain must be unique")

        pending = self._prepare(jobs, dst, check)
        failed = set()
        retries = {}
        waiting = deque(self._chunks(pending))
        outstanding = []

        logger.info(
            f"Draining {len(pending)} of {len(jobs)} jobs in "
            f"{len(waiting)} chunks from {folder}"
        )
        while waiting or outstanding:
            if token is not None and token.cancelled:
                self.queue.cancel([c.handle for c in outstanding])
                raise DrainCancelled(
                    f"Drain of {folder} cancelled with "
                    f"{_unfinished(waiting, outstanding)} jobs unfinished"
                )

            while waiting and len(outstanding) < self.queue.job_limit:
                chunk = waiting.popleft()
                self._submit(folder, chunk)
                outstanding.append(chunk)

            alive = self.queue.stat([c.handle for c in outstanding])
            now = time.perf_counter()
            resubmit = []
            for chunk in list(outstanding):
                dropped = chunk.handle not in alive
                timed_out = (
                    self.job_timeout is not None
                    and now - chunk.submitted > self.job_timeout
                )
                if timed_out and not dropped:
                    logger.warning(
                        f"Chunk {chunk.name} exceeded {self.job_timeout}s"
                    )
                    self.queue.cancel([chunk.handle])
                    dropped = True
                for job in list(chunk.jobs):
                    outcome = self._collect(job, dst, dropped)
                    if outcome is None:
                        continue
                    chunk.jobs.remove(job)
                    if outcome == "failed":
                        failed.add(job.id)
                    elif outcome == "retry":
                        retries[job.id] = retries.get(job.id, 0) + 1
                        if retries[job.id] > self.max_retries:
                            logger.error(
                                f"Job {job.label} failed after "
                                f"{self.max_retries} retries"
                            )
                            failed.add(job.id)
                        else:
                            logger.info(
                                f"Retrying {job.label} "
                                f"({retries[job.id]}/{self.max_retries})"
                            )
                            self.program.remove_output(job)
                            resubmit.append(job)
                if not chunk.jobs or dropped:
                    outstanding.remove(chunk)

            if strict and failed:
                self.queue.cancel([c.handle for c in outstanding])
                logger.error(
                    f"Aborting drain of {folder} with "
                    f"{_unfinished(waiting, outstanding)} jobs unfinished"
                )
                raise JobFailure(failed)

            waiting.extend(self._chunks(resubmit))
            if waiting or outstanding:
                logger.debug(
                    f"{_unfinished(waiting, outstanding)} jobs remaining in "
                    f"{folder}",
                    extra={"once": True},
                )
                await asyncio.sleep(self.queue.sleep_int)

        elapsed = time.perf_counter() - start
        if failed:
            logger.warning(
                f"{len(failed)} of {len(jobs)} jobs failed in {folder}"
            )
        logger.info(f"Drained {len(jobs)} jobs in {elapsed:.1f} s")
        return DrainReport(elapsed=elapsed, failed=failed)

    def drain(self, folder, jobs, dst, check=None, token=None):
        """Tolerant drain: failures are reported, not raised."""
        return asyncio.run(self.adrain(folder, jobs, dst, check, token))

    async def aenergize(self, folder, jobs, dst, check=None, token=None):
        report = await self.adrain(
            folder, jobs, dst, check, token, strict=True
        )
        return report.elapsed

    def energize(self, folder, jobs, dst, check=None, token=None):
        """Strict drain: any failed job raises JobFailure."""
        return asyncio.run(self.aenergize(folder, jobs, dst, check, token))

    def _prepare(self, jobs, dst, check):
        pending = []
        reused = 0
        for job in jobs:
            if check.resume:
                try:
                    dst[job.id] = self.program.read_output(job)
                except (OutputNotReady, MalformedOutput, ProgramError):
                    pass
                else:
                    reused += 1
                    continue
            self.program.remove_output(job)
            pending.append(job)
        if reused:
            logger.info(f"Reusing {reused} complete outputs")
        return pending

    def _chunks(self, jobs):
        size = self.queue.chunk_size
        return [
            _Chunk(jobs[i : i + size], f"chunk.{next(self._names):06d}")
            for i in range(0, len(jobs), size)
        ]

    def _submit(self, folder, chunk):
        for job in chunk.jobs:
            self.program.write_input(job)
        script = self.queue.write_submit_script(
            folder, chunk.name, chunk.jobs, self.program
        )
        chunk.handle = self.queue.submit(script)
        chunk.submitted = time.perf_counter()
        logger.debug(
            f"Submitted {chunk.name} ({len(chunk.jobs)} jobs) as "
            f"{chunk.handle}"
        )

    def _collect(self, job, dst, dropped):
        """Read one output; None while the job is still in flight."""
        try:
            result = self.program.read_output(job)
        except ProgramError as e:
            logger.error(f"Job {job.label} failed: {e}")
            return "failed"
        except (OutputNotReady, MalformedOutput) as e:
            if not dropped:
                return None
            logger.warning(f"Job {job.label} left no usable output: {e}")
            return "retry"
        dst[job.id] = result
        if self.cleanup:
            self.program.remove_files(job)
        return "done"


def filter_failed(failed, *arrays):
    """Drop the positions in `failed` from every parallel array.

    Returns:
        list[list]: one filtered list per input array, in the same order.
    """
    failed = set(failed)
    lengths = {len(array) for array in arrays}
    if len(lengths) > 1:
        raise ValueError(f"Parallel arrays differ in length: {sorted(lengths)}")
    return [
        [item for i, item in enumerate(array) if i not in failed]
        for array in arrays
    ]
