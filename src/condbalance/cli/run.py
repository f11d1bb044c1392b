from pathlib import Path

import click

from condbalance.run import BalancerRunner


@click.command()
@click.option("--path", default=str(Path.cwd()), help="Study directory containing config.conf.")
@click.option(
    "--port",
    default=None,
    type=int,
    help="Port to start searching for a free port at. [default: option 'port' in section 'server']",
)
@click.option(
    "-debug/-production",
    "--debug/--production",
    default=None,
    help="If this flag is set to '-debug', the service will start in debug mode. [default: option 'debug' in section 'general']",
)
def run(path, port, debug):
    runner = BalancerRunner(path)
    runner.auto_run(port=port, debug=debug)
