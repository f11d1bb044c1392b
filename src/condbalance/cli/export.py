"""
Exports assignment records to a .csv file.

Run the command from within your study directory::

    $ condbalance export

This writes all assignments of all sessions to ``assignments.csv`` in
the current working directory. If a file of that name exists already,
an index is appended to the new file's name. Use ``--session`` to
export only a single session.
"""

from pathlib import Path

import click

from condbalance.balancer import Balancer
from condbalance.config import BalancerConfig, BalancerSecrets
from condbalance.export import Exporter


@click.command()
@click.option("--path", default=str(Path.cwd()), help="Study directory containing config.conf.")
@click.option("--session", default=None, help="Export only this session. [default: all sessions]")
@click.option(
    "--out_path",
    default=None,
    help="Directory in which the csv file will be placed. If None (default), the current working directory will be used.",
)
@click.option("--delimiter", default=";", help="Delimiter to use in the resulting csv file. Defaults to ';'")
def export(path, session, out_path, delimiter):
    config = BalancerConfig(path)
    balancer = Balancer.from_config(config, BalancerSecrets(path))
    exporter = Exporter(balancer, out_path=out_path, delimiter=delimiter)

    try:
        csvname = exporter.export_assignments(session_id=session)
    finally:
        balancer.store.close()

    click.echo(f"Assignments exported. File '{csvname}' was placed in directory '{exporter.out_path}'")
