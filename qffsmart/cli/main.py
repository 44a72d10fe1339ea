"""CLI interface for qffsmart."""

import click

from qffsmart import __version__

from .run import fake_program, points, run


@click.group()
@click.version_option(__version__, prog_name="qffsmart")
@click.pass_context
def entry_point(ctx):
    ctx.ensure_object(dict)


entry_point.add_command(run)
entry_point.add_command(points)
entry_point.add_command(fake_program)


def main():  # pragma: no cover
    """
    The main function executes on commands:
    `python -m qffsmart` and `$ qffsmart `.
    """
    obj = {}
    entry_point(obj=obj)
