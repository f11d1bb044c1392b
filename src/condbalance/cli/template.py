from importlib import resources as res
from pathlib import Path

import click

from condbalance import files


def _write(filename: str, out_filename: str = None, path: Path = None):
    fileobj = res.files(files).joinpath(filename).read_text(encoding="utf-8")

    directory = Path(path) if path is not None else Path.cwd()
    directory.mkdir(parents=True, exist_ok=True)

    out_filename = out_filename if out_filename is not None else filename
    filepath = directory / out_filename

    if filepath.exists() and filepath.is_file():
        click.echo(f"File '{filepath}' already exists. Skipping file.")
    else:
        filepath.write_text(fileobj, encoding="utf-8")


@click.command()
@click.option(
    "--path",
    default=None,
    help="The directory in which to place the template files.",
    show_default=True,
)
def template(path):
    _write(filename="condbalance.conf", out_filename="config.conf", path=path)
    _write(filename="secrets.conf", path=path)
    click.echo("Template created. Start the service with 'condbalance run'.")
