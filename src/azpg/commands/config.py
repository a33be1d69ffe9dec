"""Configuration commands.

Commands:
- azpg config show (effective build and runtime settings)
- azpg config render (tuned postgresql.conf for given resources)
"""

from enum import Enum
from pathlib import Path
from typing import Annotated, Optional

import typer
from rich import box
from rich.table import Table

from azpg.commands import (
    ConfigOption,
    DryRunOption,
    NoColorOption,
    QuietOption,
    VerboseOption,
    handle_error,
)
from azpg.core import AzpgError, CommandExecutor, RuntimeSettings, console, create_context
from azpg.services.startup import StartupConfig, prepare_startup


class WorkloadChoice(str, Enum):
    """CLI workload choices."""

    WEB = "web"
    OLTP = "oltp"
    DW = "dw"
    MIXED = "mixed"


class StorageChoice(str, Enum):
    """CLI storage choices."""

    SSD = "ssd"
    HDD = "hdd"
    SAN = "san"


app = typer.Typer(
    name="config",
    help="Show settings and render tuned server configuration.",
    no_args_is_help=True,
)


def _display_tuning(startup: StartupConfig) -> None:
    """Display resources and computed parameters with reasoning."""
    profile = startup.profile
    tuned = startup.tuned

    console.print()
    console.print("[bold]Resource Detection[/bold]")
    console.print(f"  RAM:        {profile.ram_mb} MB ({profile.source.value})")
    console.print(f"  CPU Cores:  {profile.cpu_cores:g} ({profile.cpu_source.value})")
    console.print(f"  Workload:   {tuned.workload.value.upper()} - {tuned.workload.description}")
    console.print(f"  Storage:    {tuned.storage.value.upper()} - {tuned.storage.description}")
    console.print()

    table = Table(
        title="Tuned Parameters",
        box=box.ROUNDED,
        show_header=True,
        header_style="bold",
    )
    table.add_column("Parameter", style="cyan", no_wrap=True)
    table.add_column("Value", style="green")
    table.add_column("Reasoning", style="dim")

    reasons = tuned.reasons()
    for name, value in tuned.to_settings().items():
        if name in startup.overrides:
            table.add_row(name, startup.overrides[name], f"override (computed: {value})", style="bold")
        else:
            table.add_row(name, value, reasons.get(name, ""))

    console.print(table)

    if startup.preload.libraries:
        console.print()
        console.print(f"[bold]shared_preload_libraries:[/bold] {startup.preload.setting}")
    if startup.preload.dropped:
        console.print(f"[yellow]Dropped:[/yellow] {', '.join(startup.preload.dropped)}")


@app.command("show")
def show_cmd(
    config: ConfigOption = None,
    no_color: NoColorOption = False,
) -> None:
    """Show effective build settings and runtime environment."""
    ctx = create_context(no_color=no_color, config=config)

    try:
        build = ctx.build_settings
        runtime = ctx.runtime_settings

        ctx.console.print()
        path = ctx.config_path or "(default)"
        ctx.console.print(f"[bold]Build settings file:[/bold] {path}")
        ctx.console.code(build.to_yaml(), "yaml", "Build Settings")

        ctx.console.summary("Runtime Settings (environment)", {
            "POSTGRES_MEMORY": runtime.memory or "(detect)",
            "POSTGRES_CPUS": runtime.cpus or "(detect)",
            "POSTGRES_WORKLOAD_TYPE": runtime.workload_type,
            "POSTGRES_STORAGE_TYPE": runtime.storage_type,
            "POSTGRES_SHARED_PRELOAD_LIBRARIES": runtime.shared_preload_libraries or "(image default)",
            "POSTGRES_CONFIG_OVERRIDES": runtime.config_overrides or "(none)",
            "AZPG_ARTIFACT_INDEX": runtime.artifact_index,
            "AZPG_CONF_PATH": runtime.conf_path,
        })

    except AzpgError as e:
        handle_error(e)


@app.command("render")
def render_cmd(
    memory: Annotated[
        Optional[str],
        typer.Option("--memory", help="Memory budget (2048, 4GB); overrides POSTGRES_MEMORY"),
    ] = None,
    cpus: Annotated[
        Optional[str],
        typer.Option("--cpus", help="CPU budget; overrides POSTGRES_CPUS"),
    ] = None,
    workload: Annotated[
        Optional[WorkloadChoice],
        typer.Option("--workload", "-w", help="Workload profile", case_sensitive=False),
    ] = None,
    storage: Annotated[
        Optional[StorageChoice],
        typer.Option("--storage", "-s", help="Storage profile", case_sensitive=False),
    ] = None,
    output: Annotated[
        Optional[Path],
        typer.Option("--output", "-o", help="Write the file here instead of printing it"),
    ] = None,
    table: Annotated[
        bool,
        typer.Option("--table", help="Show a parameter table with reasoning"),
    ] = False,
    dry_run: DryRunOption = False,
    verbose: VerboseOption = 0,
    quiet: QuietOption = False,
    no_color: NoColorOption = False,
) -> None:
    """Render the tuned postgresql.conf for given or detected resources.

    Options override the matching environment variables, so this can
    preview a configuration for a machine other than the current one.

    Examples:

        azpg config render --memory 2GB --cpus 2 --workload web

        azpg config render --table

        azpg config render -o /tmp/postgresql.conf
    """
    ctx = create_context(dry_run=dry_run, verbose=verbose, quiet=quiet, no_color=no_color)

    try:
        settings = RuntimeSettings.load()
        update = {}
        if memory is not None:
            update["memory"] = memory
        if cpus is not None:
            update["cpus"] = cpus
        if workload is not None:
            update["workload_type"] = workload.value
        if storage is not None:
            update["storage_type"] = storage.value
        if update:
            settings = settings.model_copy(update=update)

        startup = prepare_startup(ctx, settings)
        content = startup.render()

        if table:
            _display_tuning(startup)
        elif output is not None:
            executor = CommandExecutor(ctx)
            executor.write_file(output, content, description=f"Write {output}")
            if not ctx.dry_run:
                ctx.console.success(f"Configuration written to: {output}")
        else:
            ctx.console.raw(content)

    except AzpgError as e:
        handle_error(e)
