import logging
import os
import sys
from concurrent.futures import ThreadPoolExecutor

import click

from qffsmart.cli.logger import config_option, logger_options
from qffsmart.settings.config import QFFConfig
from qffsmart.utils.errors import (
    ConfigError,
    DrainCancelled,
    JobFailure,
    OptimizationFailure,
    SchedulerUnavailable,
)
from qffsmart.utils.logger import create_logger

logger = logging.getLogger(__name__)

FATAL_ERRORS = (
    ConfigError,
    DrainCancelled,
    JobFailure,
    OptimizationFailure,
    SchedulerUnavailable,
)


def _load_config(config_file, debug, stream):
    try:
        config = QFFConfig.from_yaml(config_file)
    except ConfigError as e:
        logger.error(f"Invalid configuration: {e}")
        sys.exit(1)
    os.makedirs(config.work_dir, exist_ok=True)
    create_logger(
        debug=debug,
        folder=config.work_dir,
        logfile="qffsmart.log",
        errfile="qffsmart.err",
        stream=stream,
    )
    return config


@click.command(name="run")
@config_option
@click.option(
    "--resume/--no-resume",
    default=False,
    help="Reuse complete outputs and checkpoints from a previous run.",
)
@click.option(
    "-t",
    "--threads",
    type=click.IntRange(min=1),
    default=None,
    help="Worker threads for local work; defaults to `workers` in the "
    "configuration.",
)
@logger_options
def run(config_file, resume, threads, debug, stream):
    """Compute the force field described by a configuration file."""
    from qffsmart.workflow.grid import GridRun
    from qffsmart.workflow.run import QFFRun

    create_logger(debug=debug, stream=stream)
    config = _load_config(config_file, debug, stream)
    workers = threads or config.workers
    logger.info(f"Running {config} with {workers} worker threads")

    run_cls = GridRun if config.grid is not None else QFFRun
    try:
        with ThreadPoolExecutor(max_workers=workers) as executor:
            qff = run_cls(config, executor=executor, resume=resume)
            results = qff.run()
    except FATAL_ERRORS as e:
        logger.error(f"{type(e).__name__}: {e}")
        sys.exit(1)

    if not isinstance(results, list):
        results = [results]
    for result in results:
        if result.coords is not None:
            click.echo(f"Grid point {result.coords}:")
        click.echo(result.report, nl=False)
        if result.failed:
            click.echo(f"Failed jobs: {len(result.failed)}")


@click.command(name="points")
@config_option
@logger_options
def points(config_file, debug, stream):
    """Report the displacements of a run without submitting anything."""
    from qffsmart.fcs.points import ForceConstantBuffer, build_points
    from qffsmart.symmetry.registry import TargetRegistry

    create_logger(debug=debug, stream=stream)
    try:
        config = QFFConfig.from_yaml(config_file)
        molecule = config.molecule.normalized(config.reorient)
    except ConfigError as e:
        logger.error(f"Invalid configuration: {e}")
        sys.exit(1)

    n = molecule.ncoords
    point_group = molecule.point_group(
        tolerance=config.symmetry_tolerance,
        use_symmetry=config.use_symmetry,
    )
    registry = TargetRegistry(
        molecule,
        config.step_size,
        point_group=point_group,
        key_decimals=config.key_decimals,
    )
    build_points(
        molecule,
        config.step_size,
        0.0,
        config.derivative_order,
        ForceConstantBuffer(n, config.derivative_order),
        registry,
    )
    click.echo(f"Point group: {point_group.symbol}")
    click.echo(f"Coordinates: {n}")
    click.echo(f"Displacements: {registry.num_signatures}")
    click.echo(f"Unique points: {len(registry)}")


@click.command(name="fake-program", hidden=True)
@click.argument("infile", type=click.Path(exists=True, dir_okay=False))
def fake_program(infile):
    """Evaluate a fake-program input with the model potential."""
    from qffsmart.jobs.program import FakeProgram

    FakeProgram().execute(infile)
