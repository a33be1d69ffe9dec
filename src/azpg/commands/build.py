"""Image build commands.

Commands:
- azpg build plan (show what each entry will do)
- azpg build run (install, compile and record every enabled entry)
"""

from pathlib import Path
from typing import Annotated, Optional

import typer

from azpg.commands import (
    ConfigOption,
    DryRunOption,
    LockOption,
    ManifestOption,
    NoColorOption,
    QuietOption,
    VerboseOption,
    handle_error,
)
from azpg.core import AzpgError, BuildSettings, CommandExecutor, create_context
from azpg.core.context import ExecutionContext
from azpg.services.dependencies import require_valid
from azpg.services.manifest import load_pinned_manifest
from azpg.services.orchestrator import BuildOrchestrator, EntryAction, write_generated_files


app = typer.Typer(
    name="build",
    help="Build the extensions listed in the manifest.",
    no_args_is_help=True,
)


def _apply_overrides(
    ctx: ExecutionContext,
    output_dir: Optional[Path],
    jobs: Optional[int],
) -> ExecutionContext:
    """Return a context whose build settings carry CLI overrides."""
    update = {}
    if output_dir is not None:
        update["output_dir"] = output_dir
    if jobs is not None:
        update["jobs"] = jobs
    if not update:
        return ctx
    settings = BuildSettings.model_validate({**ctx.build_settings.model_dump(), **update})
    return ctx.with_build_settings(settings)


@app.command("plan")
def plan_cmd(
    manifest: ManifestOption = None,
    lock: LockOption = None,
    config: ConfigOption = None,
    no_color: NoColorOption = False,
) -> None:
    """Show the action each entry gets, without building anything.

    Unpinned source entries are marked; 'azpg build run' refuses them.
    """
    ctx = create_context(no_color=no_color, config=config)

    try:
        loaded = load_pinned_manifest(manifest, lock or ctx.build_settings.lock_file)
        require_valid(loaded)

        orchestrator = BuildOrchestrator(ctx, CommandExecutor(ctx))
        planned = orchestrator.plan(loaded)

        rows = [[p.entry.name, p.action.value, p.detail] for p in planned]
        ctx.console.table(
            f"Build Plan (PostgreSQL {ctx.build_settings.pg_major})",
            ["Entry", "Action", "Detail"],
            rows,
        )

        counts = {action.value: 0 for action in EntryAction}
        for p in planned:
            counts[p.action.value] += 1
        ctx.console.summary("Plan Summary", counts)

        unpinned = [
            p.entry.name for p in planned
            if p.action in (EntryAction.BUILD_SOURCE, EntryAction.BUILD_TOOL) and not p.entry.source.commit
        ]
        if unpinned:
            ctx.console.warn(f"Unpinned sources: {', '.join(unpinned)}")
            ctx.console.hint("Run 'azpg manifest lock' to resolve their tags")

    except AzpgError as e:
        handle_error(e)


@app.command("run")
def run_cmd(
    manifest: ManifestOption = None,
    lock: LockOption = None,
    config: ConfigOption = None,
    output_dir: Annotated[
        Optional[Path],
        typer.Option("--output-dir", "-o", help="Directory for generated files and the artifact index"),
    ] = None,
    jobs: Annotated[
        Optional[int],
        typer.Option("--jobs", "-j", min=1, max=64, help="Parallel source builds"),
    ] = None,
    dry_run: DryRunOption = False,
    verbose: VerboseOption = 0,
    quiet: QuietOption = False,
    no_color: NoColorOption = False,
) -> None:
    """Build every enabled entry and write the artifact index.

    The build order is fixed:

    1. Validate the manifest (any violation aborts)
    2. Install build dependencies and PGDG packages (sequential)
    3. Fetch, patch and compile source entries (parallel)
    4. Write artifacts.json, 01-extensions.sql and preload-libraries.txt

    All failures are reported together at the end.

    Source entries pinned only by a tag need a commit from the lock file.
    The bundled manifest pins most sources by tag, so run
    'azpg manifest lock' first; unpinned sources abort the run before
    anything is installed.

    Examples:

        azpg manifest lock && azpg build run

        azpg build run --dry-run

        azpg build run --jobs 8 -v
    """
    ctx = create_context(dry_run=dry_run, verbose=verbose, quiet=quiet, no_color=no_color, config=config)

    try:
        ctx = _apply_overrides(ctx, output_dir, jobs)
        settings = ctx.build_settings
        loaded = load_pinned_manifest(manifest, lock or settings.lock_file)

        executor = CommandExecutor(ctx)
        orchestrator = BuildOrchestrator(ctx, executor, settings)
        report = orchestrator.run(loaded)

        write_generated_files(ctx, executor, loaded, settings.output_dir, report.index)

        ctx.console.print()
        ctx.console.operation_summary("Extension Build", True, {
            "PostgreSQL": settings.pg_major,
            "Built-in": sum(1 for r in report.index.records if r.kind.value == "builtin"),
            "Packages": len(report.packages),
            "Compiled": len(report.built),
            "Skipped": ", ".join(report.skipped) or "none",
            "Output": str(settings.output_dir),
        })

    except AzpgError as e:
        handle_error(e)
