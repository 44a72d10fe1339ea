"""
Logging utilities for qffsmart runs.

Provides a root logger with deduplication and configurable output streams.
Errors always go to stderr; info goes to stdout and, optionally, to a log
file inside the run folder.
"""

import logging
import os
import re
import sys


class LogOnceFilter(logging.Filter):
    """
    Logging filter that prevents duplicate messages from being logged.

    Polling loops repeat the same status lines many times. Records logged
    with `extra={"once": True}` are emitted only the first time their
    message (excluding timestamps) is seen; all other records pass. The
    filter sits on the handlers, since filters on the root logger never see
    records propagated from module loggers.
    """

    def __init__(self):
        super().__init__()
        self.logged_messages = set()

    def filter(self, record):
        """
        Filter duplicate log records.

        Args:
            record (logging.LogRecord): The log record to evaluate.

        Returns:
            bool: True if message should be logged, False if duplicate.
        """
        if not getattr(record, "once", False):
            return True
        formatted_message = self.format_record(record)
        stripped_message = self.remove_timestamp(formatted_message)

        if stripped_message in self.logged_messages:
            return False
        self.logged_messages.add(stripped_message)
        return True

    @staticmethod
    def format_record(record):
        if record.args:
            return record.msg % record.args
        return str(record.msg)

    @staticmethod
    def remove_timestamp(message):
        return re.sub(
            r"^\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2},\d{3} - ", "", message
        )


def create_logger(
    debug=True,
    folder=".",
    logfile=None,
    errfile=None,
    stream=True,
    disable=None,
):
    """
    Create and configure the root logger.

    Stream behavior:
    - Errors are always sent to stderr.
    - If `stream=True`, all messages are also sent to stdout.

    Args:
        debug (bool, optional): Enable debug level logging. Defaults to True.
        folder (str, optional): Directory for log files. Defaults to ".".
        logfile (str, optional): Name of the info/debug log file.
        errfile (str, optional): Name of the warning/error log file.
        stream (bool, optional): Enable console output to stdout.
        disable (list[str], optional): Module names to disable logging for.

    Returns:
        logging.Logger: Configured root logger instance.
    """
    if disable is None:
        disable = []

    for module in disable:
        logging.getLogger(module).disabled = True

    # pymatgen is chatty about symmetry detection at debug level
    logging.getLogger("pymatgen").setLevel(logging.WARNING)
    logger = logging.getLogger()

    level = logging.DEBUG if debug else logging.INFO
    logger.setLevel(level)
    logger.handlers = []
    logger.filters = []
    formatter = logging.Formatter(
        "{asctime} - {levelname:6s} - [{name}] {message}",
        style="{",
    )

    err_stream_handler = logging.StreamHandler(stream=sys.stderr)
    err_stream_handler.setLevel(logging.ERROR)
    err_stream_handler.setFormatter(formatter)
    err_stream_handler.addFilter(LogOnceFilter())
    logger.addHandler(err_stream_handler)

    if stream:
        stream_handler = logging.StreamHandler(stream=sys.stdout)
        stream_handler.setFormatter(formatter)
        stream_handler.addFilter(LogOnceFilter())
        logger.addHandler(stream_handler)

    if logfile:
        infofile_handler = logging.FileHandler(
            filename=os.path.join(folder, logfile)
        )
        infofile_handler.setLevel(level)
        infofile_handler.setFormatter(formatter)
        infofile_handler.addFilter(LogOnceFilter())
        logger.addHandler(infofile_handler)

    if errfile:
        errfile_handler = logging.FileHandler(
            filename=os.path.join(folder, errfile)
        )
        errfile_handler.setLevel(logging.WARNING)
        errfile_handler.setFormatter(formatter)
        errfile_handler.addFilter(LogOnceFilter())
        logger.addHandler(errfile_handler)

    return logger
