"""CLI command groups.

Shared option types and error handling for the command modules.
"""

from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.markup import escape

from azpg.core import AzpgError, console
from azpg.core.config import DEFAULT_BUILD_CONFIG_PATH


DryRunOption = Annotated[
    bool,
    typer.Option(
        "--dry-run",
        help="Preview changes without executing. Shows what would happen.",
        is_flag=True,
    ),
]

VerboseOption = Annotated[
    int,
    typer.Option(
        "--verbose",
        "-v",
        count=True,
        help="Increase output verbosity. Can be repeated (-v, -vv).",
    ),
]

QuietOption = Annotated[
    bool,
    typer.Option(
        "--quiet",
        "-q",
        help="Suppress non-essential output. Only show errors.",
        is_flag=True,
    ),
]

NoColorOption = Annotated[
    bool,
    typer.Option(
        "--no-color",
        help="Disable colored output.",
        is_flag=True,
    ),
]

ConfigOption = Annotated[
    Optional[Path],
    typer.Option(
        "--config",
        "-c",
        help=f"Path to build settings file. Default: {DEFAULT_BUILD_CONFIG_PATH}",
        exists=False,
        file_okay=True,
        dir_okay=False,
    ),
]

ManifestOption = Annotated[
    Optional[Path],
    typer.Option(
        "--manifest",
        "-m",
        help="Extension manifest (YAML or JSON). Default: the bundled manifest.",
        file_okay=True,
        dir_okay=False,
    ),
]

LockOption = Annotated[
    Optional[Path],
    typer.Option(
        "--lock",
        help="Lock file with resolved commits. Default: next to the manifest.",
        file_okay=True,
        dir_okay=False,
    ),
]


def handle_error(error: AzpgError) -> None:
    """Handle an AzpgError by printing formatted error and exiting."""
    console.error(error.message)

    if error.details:
        for detail in error.details:
            console.print(f"  [dim]{escape(detail)}[/dim]", highlight=False)

    if error.hint:
        console.hint(error.hint)

    raise typer.Exit(error.exit_code)
