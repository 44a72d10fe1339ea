"""
Batch-scheduler adapters.

A queue groups jobs into chunks: one chunk is one submission script that runs
the command of each of its jobs in turn. The draining engine only needs three
things from a queue: write a script, submit it (returning a handle), and
report which handles the scheduler still knows about.
"""

import getpass
import logging
import os
import shlex
import subprocess
from abc import abstractmethod

from qffsmart.utils.errors import ConfigError, SchedulerUnavailable
from qffsmart.utils.mixins import RegistryMixin

logger = logging.getLogger(__name__)


class Queue(RegistryMixin):
    """Shared submission logic of the scheduler adapters.

    Args:
        chunk_size (int): Jobs per submission script.
        job_limit (int): Maximum number of chunks outstanding at once.
        sleep_int (float): Seconds between completion polls.
        template (str, optional): Script header; `{{.basename}}` is replaced
            by the chunk name. Defaults to `DEFAULT_TEMPLATE`.
    """

    NAME = NotImplemented
    SCRIPT_SUFFIX = ".sh"
    DEFAULT_TEMPLATE = "#!/bin/bash\n"

    def __init__(self, chunk_size=128, job_limit=1024, sleep_int=5, template=None):
        if chunk_size < 1:
            raise ConfigError(f"chunk_size must be positive, got {chunk_size}")
        if job_limit < 1:
            raise ConfigError(f"job_limit must be positive, got {job_limit}")
        if sleep_int < 0:
            raise ConfigError(f"sleep_int must be >= 0, got {sleep_int}")
        self.chunk_size = int(chunk_size)
        self.job_limit = int(job_limit)
        self.sleep_int = sleep_int
        self.template = template if template is not None else self.DEFAULT_TEMPLATE

    def __repr__(self):
        return (
            f"{self.__class__.__qualname__}<chunk_size={self.chunk_size}, "
            f"job_limit={self.job_limit}, sleep_int={self.sleep_int}>"
        )

    def header(self, name):
        return self.template.replace("{{.basename}}", name).rstrip("\n") + "\n"

    def write_submit_script(self, folder, name, jobs, program):
        """Write the script for one chunk and return its path."""
        script = os.path.join(folder, name + self.SCRIPT_SUFFIX)
        with open(script, "w") as f:
            logger.debug(f"Writing submission script to: {script}")
            f.write(self.header(name))
            f.write(f"cd {shlex.quote(os.path.abspath(folder))}\n")
            for job in jobs:
                f.write(program.command(job) + "\n")
        return script

    def submit(self, script):
        """Submit a script; return the scheduler's handle for it."""
        folder = os.path.dirname(os.path.abspath(script))
        command = self._submit_command(os.path.basename(script))
        try:
            result = subprocess.run(
                shlex.split(command),
                cwd=folder,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
            )
        except OSError as e:
            raise SchedulerUnavailable(f"Cannot run {command!r}: {e}") from e
        if result.returncode != 0:
            raise SchedulerUnavailable(
                f"{command!r} failed with exit code {result.returncode}: "
                f"{result.stderr.strip()}"
            )
        handle = self._parse_handle(result.stdout)
        logger.debug(f"Submitted {script} as {handle}")
        return handle

    def stat(self, handles):
        """Subset of `handles` still queued or running.

        If the scheduler cannot be queried every handle is assumed alive, so
        a transient outage never causes jobs to be resubmitted.
        """
        handles = set(handles)
        if not handles:
            return set()
        try:
            output = subprocess.run(
                shlex.split(self._stat_command()),
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                check=True,
            ).stdout
        except (OSError, subprocess.CalledProcessError) as e:
            logger.warning(f"Cannot query {self.NAME} queue: {e}")
            return handles
        known = self._parse_stat(output)
        return {h for h in handles if self._job_number(h) in known}

    def cancel(self, handles):
        for handle in handles:
            try:
                subprocess.run(
                    shlex.split(self._cancel_command(handle)),
                    stdout=subprocess.DEVNULL,
                    stderr=subprocess.DEVNULL,
                )
            except OSError as e:
                logger.warning(f"Cannot cancel {handle}: {e}")

    @staticmethod
    def _job_number(handle):
        return str(handle).split(".")[0]

    def _parse_handle(self, output):
        return output.strip()

    def _parse_stat(self, output):
        """Job numbers present in the scheduler's listing."""
        numbers = set()
        for line in output.splitlines():
            fields = line.split()
            if fields:
                numbers.add(self._job_number(fields[0]))
        return numbers

    @abstractmethod
    def _submit_command(self, script):
        raise NotImplementedError

    @abstractmethod
    def _stat_command(self):
        raise NotImplementedError

    @abstractmethod
    def _cancel_command(self, handle):
        raise NotImplementedError

    @classmethod
    def from_name(cls, name, **kwargs):
        queue_cls = [q for q in cls.subclasses() if q.NAME == name.lower()]
        if len(queue_cls) == 0:
            raise ConfigError(
                f"No queue named {name!r}. Available queues: "
                f"{[q.NAME for q in cls.subclasses()]}"
            )
        return queue_cls[0](**kwargs)


class PBSQueue(Queue):
    """PBS/Torque: qsub, qstat and qdel."""

    NAME = "pbs"
    SCRIPT_SUFFIX = ".pbs"
    DEFAULT_TEMPLATE = """\
#!/bin/sh
#PBS -N {{.basename}}
#PBS -S /bin/bash
#PBS -j oe
#PBS -o {{.basename}}.pbsout
#PBS -W umask=022
#PBS -l walltime=1000:00:00
#PBS -l ncpus=1
#PBS -l mem=8gb
"""

    def _submit_command(self, script):
        return f"qsub {script}"

    def _stat_command(self):
        return f"qstat -u {getpass.getuser()}"

    def _cancel_command(self, handle):
        return f"qdel {handle}"

    def _parse_stat(self, output):
        numbers = set()
        for line in output.splitlines():
            fields = line.split()
            if fields and fields[0].split(".")[0].isdigit():
                numbers.add(self._job_number(fields[0]))
        return numbers


class SlurmQueue(Queue):
    """SLURM: sbatch, squeue and scancel."""

    NAME = "slurm"
    SCRIPT_SUFFIX = ".slurm"
    DEFAULT_TEMPLATE = """\
#!/bin/bash
#SBATCH --job-name={{.basename}}
#SBATCH --output={{.basename}}.slurmout
#SBATCH --ntasks=1
#SBATCH --cpus-per-task=1
#SBATCH --mem=8gb
"""

    def _submit_command(self, script):
        return f"sbatch {script}"

    def _stat_command(self):
        return f"squeue -h -o %i -u {getpass.getuser()}"

    def _cancel_command(self, handle):
        return f"scancel {handle}"

    def _parse_handle(self, output):
        # "Submitted batch job 1234"
        fields = output.split()
        if not fields:
            raise SchedulerUnavailable("sbatch printed no job id")
        return fields[-1]


class LocalQueue(Queue):
    """Run chunk scripts as background shell processes on this machine."""

    NAME = "local"

    def __init__(self, *args, sleep_int=1, **kwargs):
        super().__init__(*args, sleep_int=sleep_int, **kwargs)
        self._processes = {}

    def submit(self, script):
        folder = os.path.dirname(os.path.abspath(script))
        try:
            process = subprocess.Popen(
                ["bash", os.path.basename(script)],
                cwd=folder,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
            )
        except OSError as e:
            raise SchedulerUnavailable(f"Cannot run {script}: {e}") from e
        handle = str(process.pid)
        self._processes[handle] = process
        return handle

    def stat(self, handles):
        alive = set()
        for handle in handles:
            process = self._processes.get(handle)
            if process is not None and process.poll() is None:
                alive.add(handle)
        return alive

    def cancel(self, handles):
        for handle in handles:
            process = self._processes.pop(handle, None)
            if process is not None and process.poll() is None:
                process.kill()

    def _submit_command(self, script):
        return f"bash {script}"

    def _stat_command(self):
        return "true"

    def _cancel_command(self, handle):
        return f"kill {handle}"


class FakeQueue(Queue):
    """In-process queue that runs a FakeProgram, for tests.

    A submitted chunk finishes after `delay` polls (or the next value of
    `delays` when given, to finish chunks out of submission order). Jobs
    whose label appears in `flaky` produce no output the first
    `flaky[label]` times they are run.

    Args:
        program (FakeProgram): Executes the chunk's input files.
        delay (int): Default number of `stat` calls before a chunk finishes.
        delays (Iterable[int], optional): Per-submission delays.
        flaky (dict, optional): Job label -> number of runs without output.
        available (bool): If False, every submission raises
            SchedulerUnavailable.
    """

    NAME = "fake"

    def __init__(
        self,
        *args,
        program=None,
        delay=0,
        delays=None,
        flaky=None,
        available=True,
        sleep_int=0,
        **kwargs,
    ):
        super().__init__(*args, sleep_int=sleep_int, **kwargs)
        if program is None:
            from qffsmart.jobs.program import FakeProgram

            program = FakeProgram()
        self.program = program
        self.delay = delay
        self.delays = iter(delays) if delays is not None else None
        self.flaky = dict(flaky or {})
        self.available = available
        self.submissions = []
        self.runs = []
        self._countdown = {}
        self._scripts = {}

    def submit(self, script):
        if not self.available:
            raise SchedulerUnavailable("Fake queue is unavailable")
        handle = f"{len(self.submissions) + 1}.fake"
        delay = self.delay
        if self.delays is not None:
            delay = next(self.delays, self.delay)
        self.submissions.append(script)
        self._countdown[handle] = delay
        self._scripts[handle] = script
        if delay <= 0:
            self._run(handle)
        return handle

    def stat(self, handles):
        alive = set()
        for handle in handles:
            if handle not in self._countdown:
                continue
            self._countdown[handle] -= 1
            if self._countdown[handle] <= 0:
                self._run(handle)
            else:
                alive.add(handle)
        return alive

    def cancel(self, handles):
        for handle in handles:
            self._countdown.pop(handle, None)
            self._scripts.pop(handle, None)

    def _run(self, handle):
        script = self._scripts.pop(handle, None)
        self._countdown.pop(handle, None)
        if script is None:
            return
        suffix = self.program.INPUT_SUFFIX
        with open(script) as f:
            for line in f:
                fields = line.split()
                if len(fields) < 3 or fields[:2] != ["qffsmart", "fake-program"]:
                    continue
                infile = fields[2]
                label = os.path.basename(infile)[: -len(suffix)]
                if self.flaky.get(label, 0) > 0:
                    self.flaky[label] -= 1
                    logger.debug(f"Dropping output of {label}")
                    continue
                self.runs.append(label)
                self.program.execute(infile)

    def _submit_command(self, script):
        return None

    def _stat_command(self):
        return None

    def _cancel_command(self, handle):
        return None
