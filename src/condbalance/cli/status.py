"""
Prints the condition counters of a session::

    $ condbalance status --session s1

     condition   pending   completed    weight
             1         2           5      6.90
             2         3           4      6.85
    ...
"""

from pathlib import Path

import click

from condbalance.balancer import Balancer, load_weight
from condbalance.config import BalancerConfig, BalancerSecrets


@click.command()
@click.option("--session", required=True, help="Id of the session to show.")
@click.option("--path", default=str(Path.cwd()), help="Study directory containing config.conf.")
def status(session, path):
    config = BalancerConfig(path)
    balancer = Balancer.from_config(config, BalancerSecrets(path))

    try:
        counters = balancer.counters(session)
    finally:
        balancer.store.close()

    if not counters:
        click.echo(f"Session '{session}' has no assignments yet.")
        return

    click.echo(f"{'condition':>10}{'pending':>10}{'completed':>12}{'weight':>10}")
    for c in counters:
        weight = load_weight(c, balancer.pending_weight)
        click.echo(f"{c.condition_id:>10}{c.pending_count:>10}{c.completed_count:>12}{weight:>10.2f}")

    pending = sum(c.pending_count for c in counters)
    completed = sum(c.completed_count for c in counters)
    click.echo(f"Total: {pending + completed} assignments, {pending} pending, {completed} completed.")
