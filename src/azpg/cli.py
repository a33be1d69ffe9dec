"""Main CLI entry point using Typer.

This module defines the root CLI application and global options.
Command groups are registered from submodules.
"""

from typing import Annotated

import typer

from azpg import __version__
from azpg.commands.build import app as build_app
from azpg.commands.config import app as config_app
from azpg.commands.manifest import app as manifest_app
from azpg.commands.runtime import app as runtime_app
from azpg.core import console
from azpg.core.config import DEFAULT_PG_MAJOR


# Create the main Typer app
app = typer.Typer(
    name="azpg",
    help="aza-pg tooling - PostgreSQL image builds and container auto-tuning.",
    no_args_is_help=True,
    rich_markup_mode="rich",
    pretty_exceptions_enable=True,
    pretty_exceptions_show_locals=False,
)

# Register command groups
app.add_typer(manifest_app, name="manifest")
app.add_typer(build_app, name="build")
app.add_typer(config_app, name="config")
app.add_typer(runtime_app, name="runtime")


def version_callback(value: bool) -> None:
    """Print the version (with the default PostgreSQL major) and exit."""
    if value:
        console.raw(f"azpg {__version__} (PostgreSQL {DEFAULT_PG_MAJOR})")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            "-V",
            callback=version_callback,
            is_eager=True,
            help="Show version and exit.",
        ),
    ] = False,
) -> None:
    """aza-pg tooling - PostgreSQL image builds and container auto-tuning.

    Builds the extension set declared in the manifest into the image,
    and at container start sizes the server to the memory and CPU it
    actually has.

    [bold]Features:[/bold]
    - Declarative extension manifest with dependency checks
    - Parallel, commit-pinned source builds
    - cgroup-aware resource detection and workload tuning
    - Preload reconciliation that never blocks start-up

    [bold]Examples:[/bold]
        azpg manifest validate
        azpg build run --dry-run
        azpg config render --memory 2GB --workload web
        azpg runtime start
    """
    pass


if __name__ == "__main__":
    app()
