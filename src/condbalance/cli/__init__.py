"""
Command line interface for condbalance.

You can see a list of all available commands by executing the following
in a terminal::

    $ condbalance --help

Then, you can get further help on the specific commands. For example,
to get help on the "run" command, execute::

    $ condbalance run --help

These are the currently available commands::

    Usage: condbalance [OPTIONS] COMMAND [ARGS]...

    Options:
    --help  Show this message and exit.

    Commands:
    export
    run
    status
    template

"""


import click

from .export import export
from .run import run
from .status import status
from .template import template


@click.group()
def cli():
    pass


cli.add_command(template)
cli.add_command(run)
cli.add_command(status)
cli.add_command(export)
