import functools
import logging

import click

logger = logging.getLogger(__name__)


def logger_options(f):
    """Logging configuration options."""

    @click.option(
        "-d",
        "--debug/--no-debug",
        default=False,
        help="Turn on debug logging.",
    )
    @click.option(
        "--stream/--no-stream",
        default=True,
        help="Turn on logging to stdout.",
    )
    @functools.wraps(f)
    def wrapper_common_options(*args, **kwargs):
        return f(*args, **kwargs)

    return wrapper_common_options


def config_option(f):
    """Path of the YAML run configuration."""

    @click.option(
        "-c",
        "--config",
        "config_file",
        type=click.Path(dir_okay=False),
        default="qffsmart.yaml",
        show_default=True,
        help="YAML configuration of the run.",
    )
    @functools.wraps(f)
    def wrapper_config_option(*args, **kwargs):
        return f(*args, **kwargs)

    return wrapper_config_option
