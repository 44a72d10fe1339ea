import asyncio
import os
import shutil

import numpy as np
import pytest

from qffsmart.jobs.drain import (
    CancellationToken,
    CheckPolicy,
    Drainer,
    filter_failed,
)
from qffsmart.settings.scheduler import FakeQueue, LocalQueue
from qffsmart.utils.errors import (
    DrainCancelled,
    JobFailure,
    ProgramError,
    SchedulerUnavailable,
)


def _expected_energies(jobs, morse):
    return [
        morse.energy(job.geometry.real_symbols, job.geometry.real_positions)
        for job in jobs
    ]


class TestDrain:
    def test_all_jobs_complete(
        self, tmpdir, water, make_jobs, fake_program, fake_queue, morse
    ):
        folder = str(tmpdir)
        jobs = make_jobs(folder, water, 10)
        dst = [None] * len(jobs)
        report = Drainer(fake_program, fake_queue).drain(folder, jobs, dst)
        assert report.ok
        assert report.failed == set()
        assert report.elapsed >= 0.0
        energies = [r.energy for r in dst]
        assert np.allclose(energies, _expected_energies(jobs, morse))
        # 10 jobs in chunks of 4
        assert len(fake_queue.submissions) == 3

    def test_job_limit_caps_outstanding_chunks(
        self, tmpdir, water, make_jobs, fake_program, mocker
    ):
        folder = str(tmpdir)
        queue = FakeQueue(
            chunk_size=2, job_limit=2, program=fake_program, delay=2
        )
        stat = mocker.spy(queue, "stat")
        jobs = make_jobs(folder, water, 11)
        dst = [None] * len(jobs)
        report = Drainer(fake_program, queue).drain(folder, jobs, dst)
        assert report.ok
        assert len(queue.submissions) == 6
        assert max(len(call.args[0]) for call in stat.call_args_list) == 2
        assert all(r is not None for r in dst)

    def test_out_of_order_completion(
        self, tmpdir, water, make_jobs, fake_program, morse
    ):
        folder = str(tmpdir)
        queue = FakeQueue(
            chunk_size=3, job_limit=4, program=fake_program, delays=[4, 1, 2]
        )
        jobs = make_jobs(folder, water, 9)
        dst = [None] * len(jobs)
        Drainer(fake_program, queue).drain(folder, jobs, dst)
        # the first chunk finished last
        assert queue.runs[:3] == [job.label for job in jobs[3:6]]
        energies = [r.energy for r in dst]
        assert np.allclose(energies, _expected_energies(jobs, morse))

    def test_transient_failure_is_retried(
        self, tmpdir, water, make_jobs, fake_program, morse
    ):
        folder = str(tmpdir)
        jobs = make_jobs(folder, water, 6)
        flaky = jobs[2].label
        queue = FakeQueue(
            chunk_size=4, job_limit=2, program=fake_program, flaky={flaky: 1}
        )
        dst = [None] * len(jobs)
        report = Drainer(fake_program, queue, max_retries=2).drain(
            folder, jobs, dst
        )
        assert 2 not in report.failed
        assert report.ok
        assert dst[2].energy == pytest.approx(
            _expected_energies(jobs, morse)[2]
        )
        # two chunks plus one resubmission
        assert len(queue.submissions) == 3
        assert queue.runs.count(flaky) == 1

    def test_persistent_failure_is_reported(
        self, tmpdir, water, make_jobs, fake_program
    ):
        folder = str(tmpdir)
        jobs = make_jobs(folder, water, 5)
        queue = FakeQueue(
            chunk_size=4,
            job_limit=2,
            program=fake_program,
            flaky={jobs[1].label: 10},
        )
        dst = [None] * len(jobs)
        report = Drainer(fake_program, queue, max_retries=2).drain(
            folder, jobs, dst
        )
        assert report.failed == {1}
        assert dst[1] is None
        assert all(dst[i] is not None for i in (0, 2, 3, 4))
        # two chunks plus two retries of the failing job
        assert len(queue.submissions) == 4

    def test_program_error_is_not_retried(
        self, tmpdir, water, make_jobs, fake_program, fake_queue, mocker
    ):
        folder = str(tmpdir)
        jobs = make_jobs(folder, water, 4)
        read_output = fake_program.read_output

        def failing_read_output(job):
            if job.id == 3:
                raise ProgramError("SCF did not converge")
            return read_output(job)

        mocker.patch.object(
            fake_program, "read_output", side_effect=failing_read_output
        )
        dst = [None] * len(jobs)
        report = Drainer(fake_program, fake_queue, max_retries=3).drain(
            folder, jobs, dst
        )
        assert report.failed == {3}
        assert len(fake_queue.submissions) == 1

    def test_timeout_retries_then_fails(
        self, tmpdir, water, make_jobs, fake_program
    ):
        folder = str(tmpdir)
        queue = FakeQueue(
            chunk_size=2,
            job_limit=2,
            program=fake_program,
            delay=10**6,
            sleep_int=0.01,
        )
        jobs = make_jobs(folder, water, 2)
        dst = [None] * len(jobs)
        report = Drainer(
            fake_program, queue, max_retries=1, job_timeout=0.001
        ).drain(folder, jobs, dst)
        assert report.failed == {0, 1}
        assert len(queue.submissions) == 2

    def test_energize_raises_job_failure(
        self, tmpdir, water, make_jobs, fake_program
    ):
        folder = str(tmpdir)
        jobs = make_jobs(folder, water, 3)
        queue = FakeQueue(
            program=fake_program, flaky={jobs[0].label: 5, jobs[2].label: 5}
        )
        drainer = Drainer(fake_program, queue, max_retries=0)
        with pytest.raises(JobFailure) as excinfo:
            drainer.energize(folder, jobs, [None] * 3)
        assert excinfo.value.failed_ids == {0, 2}

    def test_energize_stops_at_first_failure(
        self, tmpdir, water, make_jobs, fake_program
    ):
        folder = str(tmpdir)
        jobs = make_jobs(folder, water, 6)
        queue = FakeQueue(
            chunk_size=1,
            job_limit=1,
            program=fake_program,
            flaky={jobs[0].label: 1},
        )
        drainer = Drainer(fake_program, queue, max_retries=0)
        with pytest.raises(JobFailure) as excinfo:
            drainer.energize(folder, jobs, [None] * 6)
        assert excinfo.value.failed_ids == {0}
        assert len(queue.submissions) == 1
        assert queue.runs == []

    def test_energize_cancels_outstanding_chunks(
        self, tmpdir, water, make_jobs, fake_program, mocker
    ):
        folder = str(tmpdir)
        jobs = make_jobs(folder, water, 4)
        queue = FakeQueue(
            chunk_size=1,
            job_limit=2,
            program=fake_program,
            delays=[0, 5],
            flaky={jobs[0].label: 1},
        )
        cancel = mocker.spy(queue, "cancel")
        drainer = Drainer(fake_program, queue, max_retries=0)
        with pytest.raises(JobFailure):
            drainer.energize(folder, jobs, [None] * 4)
        assert len(queue.submissions) == 2
        cancel.assert_called_once_with(["2.fake"])

    def test_drain_keeps_going_after_a_failure(
        self, tmpdir, water, make_jobs, fake_program
    ):
        folder = str(tmpdir)
        jobs = make_jobs(folder, water, 6)
        queue = FakeQueue(
            chunk_size=1,
            job_limit=1,
            program=fake_program,
            flaky={jobs[0].label: 1},
        )
        dst = [None] * 6
        report = Drainer(fake_program, queue, max_retries=0).drain(
            folder, jobs, dst
        )
        assert report.failed == {0}
        assert len(queue.submissions) == 6
        assert all(r is not None for r in dst[1:])

    def test_energize_returns_elapsed(
        self, tmpdir, water, make_jobs, fake_program, fake_queue
    ):
        folder = str(tmpdir)
        jobs = make_jobs(folder, water, 3)
        elapsed = Drainer(fake_program, fake_queue).energize(
            folder, jobs, [None] * 3
        )
        assert isinstance(elapsed, float)

    def test_scheduler_unavailable(
        self, tmpdir, water, make_jobs, fake_program
    ):
        folder = str(tmpdir)
        jobs = make_jobs(folder, water, 2)
        queue = FakeQueue(program=fake_program, available=False)
        with pytest.raises(SchedulerUnavailable):
            Drainer(fake_program, queue).drain(folder, jobs, [None] * 2)

    def test_duplicate_ids_rejected(
        self, tmpdir, water, make_jobs, fake_program, fake_queue
    ):
        folder = str(tmpdir)
        jobs = make_jobs(folder, water, 2)
        jobs[1].id = 0
        with pytest.raises(ValueError):
            Drainer(fake_program, fake_queue).drain(folder, jobs, [None] * 2)

    def test_optimization_jobs_return_geometries(
        self, tmpdir, water, make_jobs, fake_program, fake_queue
    ):
        folder = str(tmpdir)
        jobs = make_jobs(folder, water, 2, optimize=True)
        dst = [None] * 2
        Drainer(fake_program, fake_queue).energize(folder, jobs, dst)
        for result in dst:
            assert result.geometry is not None
            assert result.energy == pytest.approx(-0.3, abs=1e-8)

    def test_cleanup_removes_job_files(
        self, tmpdir, water, make_jobs, fake_program, fake_queue
    ):
        folder = str(tmpdir)
        jobs = make_jobs(folder, water, 2)
        Drainer(fake_program, fake_queue, cleanup=True).drain(
            folder, jobs, [None] * 2
        )
        for job in jobs:
            assert not os.path.exists(fake_program.infile(job))
            assert not os.path.exists(fake_program.outfile(job))


class TestResume:
    def test_resume_is_idempotent(
        self, tmpdir, water, make_jobs, fake_program, fake_queue
    ):
        folder = str(tmpdir)
        jobs = make_jobs(folder, water, 7)
        first = [None] * len(jobs)
        Drainer(fake_program, fake_queue).drain(folder, jobs, first)

        queue = FakeQueue(program=fake_program)
        second = [None] * len(jobs)
        report = Drainer(fake_program, queue).drain(
            folder, jobs, second, check=CheckPolicy(resume=True)
        )
        assert report.ok
        assert queue.submissions == []
        assert [r.energy for r in first] == [r.energy for r in second]

    def test_resume_submits_only_missing(
        self, tmpdir, water, make_jobs, fake_program, fake_queue
    ):
        folder = str(tmpdir)
        jobs = make_jobs(folder, water, 6)
        Drainer(fake_program, fake_queue).drain(folder, jobs, [None] * 6)
        os.remove(fake_program.outfile(jobs[4]))

        queue = FakeQueue(chunk_size=4, program=fake_program)
        dst = [None] * 6
        Drainer(fake_program, queue).drain(
            folder, jobs, dst, check=CheckPolicy(resume=True)
        )
        assert queue.runs == [jobs[4].label]
        assert all(r is not None for r in dst)

    def test_without_resume_everything_is_resubmitted(
        self, tmpdir, water, make_jobs, fake_program, fake_queue
    ):
        folder = str(tmpdir)
        jobs = make_jobs(folder, water, 3)
        Drainer(fake_program, fake_queue).drain(folder, jobs, [None] * 3)

        queue = FakeQueue(program=fake_program)
        Drainer(fake_program, queue).drain(folder, jobs, [None] * 3)
        assert sorted(queue.runs) == sorted(job.label for job in jobs)


class TestConcurrency:
    def test_cancellation(self, tmpdir, water, make_jobs, fake_program, mocker):
        folder = str(tmpdir)
        queue = FakeQueue(program=fake_program, delay=100)
        token = CancellationToken()
        stat = queue.stat

        def stat_then_cancel(handles):
            token.cancel()
            return stat(handles)

        mocker.patch.object(queue, "stat", side_effect=stat_then_cancel)
        cancel = mocker.spy(queue, "cancel")
        jobs = make_jobs(folder, water, 3)
        with pytest.raises(DrainCancelled):
            Drainer(fake_program, queue).drain(
                folder, jobs, [None] * 3, token=token
            )
        assert cancel.call_count == 1

    def test_concurrent_drains_on_one_loop(
        self, tmpdir, water, make_jobs, fake_program, morse
    ):
        queue = FakeQueue(
            chunk_size=2, job_limit=4, program=fake_program, delay=2
        )
        drainer = Drainer(fake_program, queue)
        folders = [os.path.join(tmpdir, name) for name in ("a", "b")]
        batches = [make_jobs(folder, water, 5) for folder in folders]
        results = [[None] * 5, [None] * 5]

        async def both():
            return await asyncio.gather(
                *[
                    drainer.adrain(folder, jobs, dst)
                    for folder, jobs, dst in zip(folders, batches, results)
                ]
            )

        reports = asyncio.run(both())
        assert all(report.ok for report in reports)
        for jobs, dst in zip(batches, results):
            assert np.allclose(
                [r.energy for r in dst], _expected_energies(jobs, morse)
            )

    def test_dict_destination(
        self, tmpdir, water, make_jobs, fake_program, fake_queue
    ):
        folder = str(tmpdir)
        jobs = make_jobs(folder, water, 3)
        dst = {}
        Drainer(fake_program, fake_queue).drain(folder, jobs, dst)
        assert sorted(dst) == [0, 1, 2]


class TestRelativeFolder:
    def test_scripts_use_absolute_job_paths(
        self, tmpdir, water, make_jobs, fake_program, monkeypatch
    ):
        monkeypatch.chdir(tmpdir)
        jobs = make_jobs("pts", water, 2)
        for job in jobs:
            fake_program.write_input(job)
        script = LocalQueue().write_submit_script(
            "pts", "chunk", jobs, fake_program
        )
        with open(script) as f:
            lines = f.read().splitlines()
        assert lines[1] == f"cd {os.path.abspath('pts')}"
        for line in lines[2:]:
            infile = line.split()[-1]
            assert os.path.isabs(infile)
            assert os.path.exists(infile)

    @pytest.mark.skipif(
        shutil.which("qffsmart") is None, reason="qffsmart is not installed"
    )
    def test_local_queue_drain(
        self, tmpdir, water, make_jobs, fake_program, monkeypatch, morse
    ):
        monkeypatch.chdir(tmpdir)
        jobs = make_jobs("pts", water, 2)
        dst = [None] * len(jobs)
        report = Drainer(
            fake_program, LocalQueue(sleep_int=0.2), max_retries=0
        ).drain("pts", jobs, dst)
        assert report.ok
        assert np.allclose(
            [r.energy for r in dst], _expected_energies(jobs, morse)
        )


class TestFilterFailed:
    def test_alignment_is_preserved(self):
        ids = list(range(8))
        geometries = [f"geom{i}" for i in ids]
        energies = [float(i) for i in ids]
        failed = {1, 4, 7}
        kept_ids, kept_geometries, kept_energies = filter_failed(
            failed, ids, geometries, energies
        )
        assert kept_ids == [0, 2, 3, 5, 6]
        for k, i in enumerate(kept_ids):
            assert kept_geometries[k] == f"geom{i}"
            assert kept_energies[k] == float(i)

    def test_no_failures(self):
        assert filter_failed(set(), [1, 2], ["a", "b"]) == [[1, 2], ["a", "b"]]

    def test_length_mismatch(self):
        with pytest.raises(ValueError):
            filter_failed({0}, [1, 2], ["a"])
