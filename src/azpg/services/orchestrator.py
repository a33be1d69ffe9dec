"""Extension build orchestration.

Turns a validated manifest into installed extensions, an artifact index
and the generated init files. Each entry passes through fixed gates in
order; the first that applies decides what happens to it:

1. Disabled -> skipped, reason logged
2. Built-in -> recorded, nothing to build
3. Package -> installed from PGDG (one batched apt call)
4. Source -> fetched, patched, built and installed
5. Tool -> same as source, never created as an extension

Package installs run sequentially because apt holds the dpkg lock.
Source and tool builds run on a thread pool, each in its own working
directory. Failures are collected and raised together at the end.
"""

import shutil
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional

from jinja2 import Environment, PackageLoader, select_autoescape

from azpg.core.config import BuildSettings
from azpg.core.context import ExecutionContext
from azpg.core.exceptions import AzpgError, BuildError, ExecutionError
from azpg.core.executor import CommandExecutor
from azpg.services.artifacts import ArtifactIndex, BuildArtifactRecord
from azpg.services.builders import BuildDispatcher
from azpg.services.dependencies import require_valid
from azpg.services.manifest import EntryKind, Manifest, ManifestEntry
from azpg.services.patches import apply_patches
from azpg.services.sources import fetch_source


INIT_SQL_NAME = "01-extensions.sql"
PRELOAD_LIST_NAME = "preload-libraries.txt"
ARTIFACT_INDEX_NAME = "artifacts.json"


class EntryAction(str, Enum):
    """What the build does with an entry."""

    SKIP_DISABLED = "skip"
    RECORD_BUILTIN = "builtin"
    INSTALL_PACKAGE = "package"
    BUILD_SOURCE = "source"
    BUILD_TOOL = "tool"


def plan_entry(entry: ManifestEntry) -> EntryAction:
    """Apply the gates in order and return the first that matches."""
    if not entry.enabled:
        return EntryAction.SKIP_DISABLED
    if entry.kind is EntryKind.BUILTIN:
        return EntryAction.RECORD_BUILTIN
    if entry.kind is EntryKind.PACKAGE:
        return EntryAction.INSTALL_PACKAGE
    if entry.kind is EntryKind.SOURCE:
        return EntryAction.BUILD_SOURCE
    return EntryAction.BUILD_TOOL


@dataclass
class PlannedEntry:
    """An entry with the action the build will take."""

    entry: ManifestEntry
    action: EntryAction
    detail: str = ""


@dataclass
class BuildReport:
    """Result of a successful build run."""

    index: ArtifactIndex
    skipped: list[str] = field(default_factory=list)
    packages: list[str] = field(default_factory=list)
    built: list[str] = field(default_factory=list)


class BuildOrchestrator:
    """Runs the build gates over a manifest."""

    def __init__(
        self,
        ctx: ExecutionContext,
        executor: CommandExecutor,
        settings: Optional[BuildSettings] = None,
        dispatcher: Optional[BuildDispatcher] = None,
    ) -> None:
        """Initialize orchestrator.

        Args:
            ctx: Execution context
            executor: Command executor shared by all build threads
            settings: Build settings (defaults to the context's)
            dispatcher: Build-system dispatcher (tests inject a mock)
        """
        self.ctx = ctx
        self.executor = executor
        self.settings = settings or ctx.build_settings
        self.dispatcher = dispatcher or BuildDispatcher(ctx, executor, self.settings)

    # =========================================================================
    # Planning
    # =========================================================================

    def plan(self, manifest: Manifest) -> list[PlannedEntry]:
        """Decide the action for every entry without running anything."""
        planned = []
        for entry in manifest.entries:
            action = plan_entry(entry)
            if action is EntryAction.SKIP_DISABLED:
                detail = entry.disabled_reason or "disabled"
            elif action is EntryAction.INSTALL_PACKAGE:
                detail = entry.package.apt_name(self.settings.pg_major)
            elif action in (EntryAction.BUILD_SOURCE, EntryAction.BUILD_TOOL):
                source = entry.source
                pin = source.commit[:12] if source.commit else "UNPINNED"
                detail = f"{entry.build.type.value} @ {source.revision} ({pin})"
            else:
                detail = "ships with the engine"
            planned.append(PlannedEntry(entry=entry, action=action, detail=detail))
        return planned

    # =========================================================================
    # Execution
    # =========================================================================

    def run(self, manifest: Manifest) -> BuildReport:
        """Validate the manifest and build every enabled entry.

        Returns:
            BuildReport with the sorted artifact index

        Raises:
            ManifestError: If the manifest breaks a cross-entry invariant
            BuildError: Aggregating every entry that failed
        """
        require_valid(manifest)
        planned = self.plan(manifest)
        self._require_pinned(planned)

        records: list[BuildArtifactRecord] = []
        failures: list[BuildError] = []
        report_skipped: list[str] = []

        for item in planned:
            if item.action is EntryAction.SKIP_DISABLED:
                self.ctx.console.info(f"Skipping {item.entry.name}: {item.detail}")
                report_skipped.append(item.entry.name)
            elif item.action is EntryAction.RECORD_BUILTIN:
                records.append(self._record(item.entry, require_library=False))

        packages = [p.entry for p in planned if p.action is EntryAction.INSTALL_PACKAGE]
        compiled = [
            p.entry for p in planned
            if p.action in (EntryAction.BUILD_SOURCE, EntryAction.BUILD_TOOL)
        ]

        failures.extend(self._install_build_deps(compiled))
        package_records, package_failures = self._install_packages(packages)
        records.extend(package_records)
        failures.extend(package_failures)

        built_records, build_failures = self._build_compiled(compiled)
        records.extend(built_records)
        failures.extend(build_failures)

        if failures:
            failures.sort(key=lambda f: f.entry or "")
            noun = "entry" if len(failures) == 1 else "entries"
            raise BuildError(
                f"Build failed for {len(failures)} {noun}",
                failures=failures,
                hint="Run with -v for the failing commands and their output",
            )

        index = ArtifactIndex.from_records(records, self.settings.pg_major)
        return BuildReport(
            index=index,
            skipped=report_skipped,
            packages=[e.name for e in packages],
            built=sorted(e.name for e in compiled),
        )

    def _require_pinned(self, planned: list[PlannedEntry]) -> None:
        """Fail before any install when a compiled entry has no commit."""
        failures = [
            BuildError(
                f"{p.entry.name} is not pinned to a commit",
                entry=p.entry.name,
                details=[f"tag {p.entry.source.tag} has no commit in the manifest or lock file"],
            )
            for p in planned
            if p.action in (EntryAction.BUILD_SOURCE, EntryAction.BUILD_TOOL) and not p.entry.source.commit
        ]
        if failures:
            noun = "source" if len(failures) == 1 else "sources"
            raise BuildError(
                f"{len(failures)} unpinned {noun}",
                failures=failures,
                hint="Run 'azpg manifest lock' to resolve tags to commits, then build again",
            )

    def _install_build_deps(self, compiled: list[ManifestEntry]) -> list[BuildError]:
        """Install apt prerequisites of compiled entries in one call."""
        deps = sorted({pkg for entry in compiled for pkg in entry.apt_packages})
        if not deps:
            return []
        try:
            self.executor.apt_install(deps, description=f"Install {len(deps)} build dependencies")
        except ExecutionError as e:
            return [BuildError("Build dependencies failed to install", entry="apt", details=e.details)]
        return []

    def _install_packages(
        self,
        entries: list[ManifestEntry],
    ) -> tuple[list[BuildArtifactRecord], list[BuildError]]:
        """Install PGDG packages sequentially and record them."""
        if not entries:
            return [], []

        apt_names = [e.package.apt_name(self.settings.pg_major) for e in entries]
        try:
            self.executor.apt_install(apt_names, description=f"Install {len(apt_names)} PGDG packages")
        except ExecutionError as e:
            return [], [
                BuildError(f"apt install of {name} failed", entry=entry.name, details=e.details)
                for entry, name in zip(entries, apt_names)
            ]

        records, failures = [], []
        for entry in entries:
            try:
                records.append(self._record(entry))
            except BuildError as e:
                failures.append(e)
        return records, failures

    def _build_compiled(
        self,
        entries: list[ManifestEntry],
    ) -> tuple[list[BuildArtifactRecord], list[BuildError]]:
        """Build source and tool entries on the thread pool."""
        records: list[BuildArtifactRecord] = []
        failures: list[BuildError] = []
        if not entries:
            return records, failures

        with ThreadPoolExecutor(max_workers=self.settings.jobs) as pool:
            futures: dict[str, Future] = {
                entry.name: pool.submit(self._build_one, entry) for entry in entries
            }
            for name, future in futures.items():
                try:
                    records.append(future.result())
                    self.ctx.console.success(f"Built {name}")
                except BuildError as e:
                    self.ctx.console.error(f"{name}: {e.message}")
                    failures.append(e)
                except AzpgError as e:
                    self.ctx.console.error(f"{name}: {e.message}")
                    failures.append(BuildError(e.message, entry=name, details=e.details))
                except OSError as e:
                    self.ctx.console.error(f"{name}: {e}")
                    failures.append(BuildError(str(e), entry=name))
        return records, failures

    def _build_one(self, entry: ManifestEntry) -> BuildArtifactRecord:
        """Fetch, patch, build and record one entry in its own directory."""
        workdir = self.settings.build_root / entry.name
        if workdir.exists() and not self.ctx.dry_run:
            shutil.rmtree(workdir)

        source_dir = fetch_source(
            self.ctx, self.executor, entry, workdir, self.settings.host_allowlist
        )
        if entry.build.patches:
            apply_patches(self.ctx, source_dir, entry.build.patches, entry=entry.name)
        self.dispatcher.build(entry, source_dir)
        return self._record(entry)

    def _record(self, entry: ManifestEntry, *, require_library: bool = True) -> BuildArtifactRecord:
        """Probe the install directories for what an entry installed.

        Raises:
            BuildError: If a preload-capable entry has no library installed
        """
        library_file = f"{entry.library_name}.so"
        control_file = f"{entry.name}.control"
        commit = entry.source.commit if entry.source is not None else None

        if self.ctx.dry_run:
            return BuildArtifactRecord(
                name=entry.name,
                kind=entry.kind,
                library_file_name=library_file,
                installed_control_files=(
                    [] if entry.kind is EntryKind.TOOL or entry.runtime.preload_only else [control_file]
                ),
                commit=commit,
            )

        library: Optional[str] = None
        if (self.settings.library_dir / library_file).exists():
            library = library_file
        elif entry.runtime.shared_preload and require_library:
            raise BuildError(
                f"{entry.name} installed no {library_file} in {self.settings.library_dir}",
                entry=entry.name,
                hint="The library is needed for shared_preload_libraries; check the build output",
            )

        controls = sorted(p.name for p in self.settings.control_dir.glob(control_file))
        return BuildArtifactRecord(
            name=entry.name,
            kind=entry.kind,
            library_file_name=library,
            installed_control_files=controls,
            commit=commit,
        )


# =============================================================================
# Generated files
# =============================================================================


def derive_init_extensions(manifest: Manifest) -> list[ManifestEntry]:
    """Entries created at database init, dependencies first.

    Manifest order is kept except that an entry's dependencies, when
    also created at init, are placed before it.
    """
    selected = {
        e.name: e for e in manifest.entries
        if e.enabled and e.create_by_default
    }
    ordered: list[ManifestEntry] = []
    seen: set[str] = set()

    def visit(entry: ManifestEntry, stack: tuple[str, ...]) -> None:
        if entry.name in seen or entry.name in stack:
            return
        for dep in entry.dependencies:
            if dep in selected:
                visit(selected[dep], stack + (entry.name,))
        seen.add(entry.name)
        ordered.append(entry)

    for entry in selected.values():
        visit(entry, ())
    return ordered


def derive_preload_libraries(manifest: Manifest) -> list[str]:
    """Sorted default preload list from enabled entries that require it."""
    return sorted({
        e.library_name for e in manifest.entries
        if e.enabled and e.requires_preload
    })


def render_init_sql(entries: list[ManifestEntry]) -> str:
    """Render the CREATE EXTENSION script for init."""
    env = Environment(
        loader=PackageLoader("azpg", "templates"),
        autoescape=select_autoescape(),
        trim_blocks=True,
        lstrip_blocks=True,
        keep_trailing_newline=True,
    )
    template = env.get_template("extensions.sql.j2")
    return template.render(entries=entries)


def write_generated_files(
    ctx: ExecutionContext,
    executor: CommandExecutor,
    manifest: Manifest,
    output_dir: Path,
    index: Optional[ArtifactIndex] = None,
) -> dict[str, Path]:
    """Write the init SQL, preload list and (when given) artifact index.

    Returns:
        Mapping of file role to written path
    """
    written = {}

    sql_path = output_dir / INIT_SQL_NAME
    executor.write_file(sql_path, render_init_sql(derive_init_extensions(manifest)),
                        description=f"Write {INIT_SQL_NAME}")
    written["init_sql"] = sql_path

    preload_path = output_dir / PRELOAD_LIST_NAME
    preload = derive_preload_libraries(manifest)
    executor.write_file(preload_path, ",".join(preload) + "\n",
                        description=f"Write {PRELOAD_LIST_NAME}")
    written["preload_list"] = preload_path

    if index is not None:
        index_path = output_dir / ARTIFACT_INDEX_NAME
        executor.write_file(index_path, index.to_json(),
                            description=f"Write {ARTIFACT_INDEX_NAME}")
        written["artifact_index"] = index_path

    ctx.console.verbose(f"Default preload: {', '.join(preload) or '(none)'}")
    return written
