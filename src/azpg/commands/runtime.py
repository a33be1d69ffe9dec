"""Container runtime commands.

Commands:
- azpg runtime preload (print the reconciled shared_preload_libraries)
- azpg runtime start (tune, write config and exec the postgres entrypoint)
"""

import os
import shlex
from pathlib import Path
from typing import Annotated, Optional

import typer

from azpg.commands import DryRunOption, NoColorOption, QuietOption, VerboseOption, handle_error
from azpg.core import AzpgError, CommandExecutor, ExecutionError, create_context
from azpg.services.preload import resolve_preload
from azpg.services.startup import prepare_startup


DEFAULT_ENTRYPOINT = "docker-entrypoint.sh"

REFERENCE_HEADER = (
    "# Reference copy written by azpg runtime start.\n"
    "# PostgreSQL does not read this file: every setting below is passed to\n"
    "# postgres as a -c argument, which takes precedence over postgresql.conf.\n"
    "\n"
)


app = typer.Typer(
    name="runtime",
    help="Container start-up: preload reconciliation and server launch.",
    no_args_is_help=True,
)


@app.command("preload")
def preload_cmd(
    verbose: VerboseOption = 0,
    quiet: QuietOption = False,
    no_color: NoColorOption = False,
) -> None:
    """Print the reconciled shared_preload_libraries value.

    Libraries that are not installed in the image are dropped with a
    warning on stderr; stdout carries only the final comma-separated
    list, so shell entrypoints can capture it.
    """
    ctx = create_context(verbose=verbose, quiet=quiet, no_color=no_color)

    try:
        result = resolve_preload(ctx, ctx.runtime_settings)
        ctx.console.raw(result.setting)

    except AzpgError as e:
        handle_error(e)


@app.command(
    "start",
    context_settings={"allow_extra_args": True, "ignore_unknown_options": True},
)
def start_cmd(
    typer_ctx: typer.Context,
    conf_path: Annotated[
        Optional[Path],
        typer.Option(
            "--conf-path",
            help="Where to write a reference copy of the tuned config; overrides AZPG_CONF_PATH",
        ),
    ] = None,
    entrypoint: Annotated[
        str,
        typer.Option("--entrypoint", help="Command that launches the server"),
    ] = DEFAULT_ENTRYPOINT,
    dry_run: DryRunOption = False,
    verbose: VerboseOption = 0,
    quiet: QuietOption = False,
    no_color: NoColorOption = False,
) -> None:
    """Tune for this container and start PostgreSQL.

    Steps:

    1. Detect memory and CPU (explicit, cgroup v2, then host totals)
    2. Compute parameters for POSTGRES_WORKLOAD_TYPE and POSTGRES_STORAGE_TYPE
    3. Reconcile shared_preload_libraries against installed libraries
    4. Apply POSTGRES_CONFIG_OVERRIDES key by key
    5. Exec the entrypoint with every setting as a -c argument

    A reference copy of the settings is written to AZPG_CONF_PATH first;
    the server itself never reads it.

    Extra arguments are passed through to postgres.

    Examples:

        azpg runtime start

        azpg runtime start --dry-run -- -c log_statement=all
    """
    ctx = create_context(dry_run=dry_run, verbose=verbose, quiet=quiet, no_color=no_color)

    try:
        settings = ctx.runtime_settings
        startup = prepare_startup(ctx, settings)

        path = conf_path or settings.conf_path
        executor = CommandExecutor(ctx)
        executor.write_file(path, REFERENCE_HEADER + startup.render(), description=f"Write {path}")

        tuned = startup.tuned
        ctx.console.info(
            f"Tuned for {startup.profile.ram_mb}MB / {startup.profile.cpu_cores:g} CPU "
            f"({tuned.workload.value}, {tuned.storage.value}): "
            f"shared_buffers={tuned.shared_buffers_mb}MB max_connections={tuned.max_connections}"
        )

        command = [entrypoint, "postgres"] + startup.server_args() + list(typer_ctx.args)
        if ctx.dry_run:
            ctx.console.dry_run_msg(f"exec {shlex.join(command)}")
            return

        try:
            os.execvp(command[0], command)
        except OSError as e:
            raise ExecutionError(
                f"Cannot exec {entrypoint}: {e.strerror}",
                command=shlex.join(command),
                hint="Set --entrypoint to the image's PostgreSQL entrypoint",
            ) from e

    except AzpgError as e:
        handle_error(e)
