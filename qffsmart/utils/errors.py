"""Exception hierarchy for qffsmart runs.

Fatal errors (ConfigError, OptimizationFailure, SchedulerUnavailable) abort a
run; JobFailure is partial and carries the ids that failed; checkpoint I/O
problems are logged by the store and never escape it.
"""


class QFFError(Exception):
    """Base class for all qffsmart errors."""


class ConfigError(QFFError):
    """Malformed configuration or template, detected before submission."""


class OptimizationFailure(QFFError):
    """The reference geometry optimization did not converge."""


class JobFailure(QFFError):
    """One or more jobs failed.

    Args:
        failed_ids (Iterable[int]): Ids of the failed jobs.
        message (str, optional): Extra detail for the error message.
    """

    def __init__(self, failed_ids, message=None):
        self.failed_ids = set(failed_ids)
        if message is None:
            message = f"{len(self.failed_ids)} job(s) failed: " + ", ".join(
                str(i) for i in sorted(self.failed_ids)
            )
        super().__init__(message)


class SchedulerUnavailable(QFFError):
    """Jobs cannot be submitted to the scheduler at all."""


class CheckpointIOFailure(QFFError):
    """A checkpoint could not be read or written."""


class DrainCancelled(QFFError):
    """A drain was stopped through its cancellation token."""


class OutputNotReady(QFFError):
    """A job's output file does not exist or is not complete yet."""


class MalformedOutput(QFFError):
    """A job's output exists but could not be parsed."""


class ProgramError(QFFError):
    """The external program reported an error for a job."""
