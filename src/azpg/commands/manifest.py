"""Extension manifest commands.

Commands:
- azpg manifest validate (cross-entry checks, non-zero exit on violations)
- azpg manifest list (entries with kind, state and runtime flags)
- azpg manifest generate (init SQL and default preload list)
- azpg manifest lock (resolve source tags to commits)
"""

from enum import Enum
from pathlib import Path
from typing import Annotated, Optional

import typer

from azpg.commands import (
    DryRunOption,
    LockOption,
    ManifestOption,
    NoColorOption,
    QuietOption,
    VerboseOption,
    handle_error,
)
from azpg.core import AzpgError, CommandExecutor, ManifestError, create_context
from azpg.core.config import DEFAULT_OUTPUT_DIR
from azpg.services.dependencies import require_valid, validate
from azpg.services.manifest import (
    EntryKind,
    default_lock_path,
    dump_lock,
    load_lock,
    load_manifest_or_bundled,
)
from azpg.services.orchestrator import (
    derive_init_extensions,
    derive_preload_libraries,
    render_init_sql,
    write_generated_files,
)
from azpg.services.sources import lock_manifest


class KindChoice(str, Enum):
    """CLI entry kind filter."""

    BUILTIN = "builtin"
    PACKAGE = "package"
    SOURCE = "source"
    TOOL = "tool"


app = typer.Typer(
    name="manifest",
    help="Inspect, validate and lock the extension manifest.",
    no_args_is_help=True,
)


@app.command("validate")
def validate_cmd(
    manifest: ManifestOption = None,
    verbose: VerboseOption = 0,
    quiet: QuietOption = False,
    no_color: NoColorOption = False,
) -> None:
    """Check the manifest for structural and dependency problems.

    Every violation is reported in one run. Exits non-zero when any
    is found, so this can gate CI before a build starts.

    Examples:

        azpg manifest validate

        azpg manifest validate --manifest ./extensions.yaml
    """
    ctx = create_context(verbose=verbose, quiet=quiet, no_color=no_color)

    try:
        loaded = load_manifest_or_bundled(manifest)
        violations = validate(loaded.entries)

        if violations:
            rows = [
                [v.code.value, v.entry, v.dependency or "", v.message]
                for v in violations
            ]
            ctx.console.table("Manifest Violations", ["Code", "Entry", "Dependency", "Problem"], rows)
            raise ManifestError(
                f"Manifest has {len(violations)} violation(s)",
                violations=violations,
                hint="Fix the entries above; nothing is built until the manifest is consistent",
            )

        enabled = loaded.enabled_entries
        ctx.console.success(
            f"Manifest is valid: {len(loaded.entries)} entries, {len(enabled)} enabled"
        )
        if ctx.is_verbose:
            counts = {kind.value: 0 for kind in EntryKind}
            for entry in enabled:
                counts[entry.kind.value] += 1
            ctx.console.summary("Enabled Entries", counts)

    except AzpgError as e:
        handle_error(e)


@app.command("list")
def list_cmd(
    manifest: ManifestOption = None,
    kind: Annotated[
        Optional[KindChoice],
        typer.Option("--kind", "-k", help="Only show entries of this kind", case_sensitive=False),
    ] = None,
    enabled_only: Annotated[
        bool,
        typer.Option("--enabled", help="Only show enabled entries"),
    ] = False,
    no_color: NoColorOption = False,
) -> None:
    """List manifest entries with their runtime flags."""
    ctx = create_context(no_color=no_color)

    try:
        loaded = load_manifest_or_bundled(manifest)
        rows = []
        for entry in loaded.entries:
            if kind is not None and entry.kind.value != kind.value:
                continue
            if enabled_only and not entry.enabled:
                continue
            flags = []
            if entry.requires_preload:
                flags.append("preload")
            elif entry.runtime.shared_preload:
                flags.append("preload-capable")
            if entry.create_by_default:
                flags.append("create")
            state = "enabled" if entry.enabled else "disabled"
            rows.append([
                entry.name,
                entry.kind.value,
                entry.category,
                state,
                ", ".join(flags),
                ", ".join(entry.dependencies),
            ])

        ctx.console.table(
            "Extension Manifest",
            ["Name", "Kind", "Category", "State", "Runtime", "Depends On"],
            rows,
        )
        ctx.console.print(f"[dim]{len(rows)} of {len(loaded.entries)} entries[/dim]")

    except AzpgError as e:
        handle_error(e)


@app.command("generate")
def generate_cmd(
    manifest: ManifestOption = None,
    output_dir: Annotated[
        Path,
        typer.Option("--output-dir", "-o", help="Directory for the generated files"),
    ] = DEFAULT_OUTPUT_DIR,
    show: Annotated[
        bool,
        typer.Option("--show", help="Print the generated files instead of writing them"),
    ] = False,
    dry_run: DryRunOption = False,
    verbose: VerboseOption = 0,
    quiet: QuietOption = False,
    no_color: NoColorOption = False,
) -> None:
    """Generate the init SQL and default preload list from the manifest.

    Writes 01-extensions.sql (CREATE EXTENSION for default-enabled
    extensions) and preload-libraries.txt (default
    shared_preload_libraries).
    """
    ctx = create_context(dry_run=dry_run, verbose=verbose, quiet=quiet, no_color=no_color)

    try:
        loaded = load_manifest_or_bundled(manifest)
        require_valid(loaded)

        if show:
            ctx.console.code(render_init_sql(derive_init_extensions(loaded)), "sql", "01-extensions.sql")
            ctx.console.print(f"[bold]Default preload:[/bold] {','.join(derive_preload_libraries(loaded))}")
            return

        executor = CommandExecutor(ctx)
        written = write_generated_files(ctx, executor, loaded, output_dir)
        if not ctx.dry_run:
            for path in written.values():
                ctx.console.success(f"Wrote {path}")

    except AzpgError as e:
        handle_error(e)


@app.command("lock")
def lock_cmd(
    manifest: ManifestOption = None,
    lock: LockOption = None,
    refresh: Annotated[
        bool,
        typer.Option("--refresh", help="Re-resolve every tag, ignoring existing pins"),
    ] = False,
    dry_run: DryRunOption = False,
    verbose: VerboseOption = 0,
    no_color: NoColorOption = False,
) -> None:
    """Resolve source tags to commits and write the lock file.

    Builds only fetch commits; entries pinned by tag need a lock entry
    before 'azpg build run' will fetch them.
    """
    ctx = create_context(dry_run=dry_run, verbose=verbose, no_color=no_color)

    try:
        loaded = load_manifest_or_bundled(manifest)
        lock_path = lock or default_lock_path(manifest)
        existing = load_lock(lock_path)

        executor = CommandExecutor(ctx)
        resolved = lock_manifest(ctx, executor, loaded, existing, refresh=refresh)
        executor.write_file(lock_path, dump_lock(resolved), description=f"Write {lock_path}")

        if not ctx.dry_run:
            ctx.console.success(f"Locked {len(resolved.commits)} source(s) in {lock_path}")

    except AzpgError as e:
        handle_error(e)
