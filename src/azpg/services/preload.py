"""Runtime shared_preload_libraries reconciliation.

A library named in shared_preload_libraries that is not installed stops
the server from starting. The reconciler filters the requested list
down to libraries the image actually contains, warning about each one
it drops. It never raises: a degraded preload list is better than a
container that will not start.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Optional

from azpg.core.config import DEFAULT_PG_MAJOR, RuntimeSettings, split_library_list
from azpg.core.context import ExecutionContext
from azpg.core.exceptions import ConfigurationError
from azpg.core.validation import IDENTIFIER_PATTERN
from azpg.services.artifacts import ArtifactIndex


DEFAULT_PRELOAD_LIBRARIES = ("auto_explain", "pg_cron", "pg_stat_statements", "pgaudit")


@dataclass
class PreloadResult:
    """Reconciled preload list."""

    libraries: list[str] = field(default_factory=list)
    dropped: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def setting(self) -> str:
        """Value for shared_preload_libraries."""
        return ",".join(self.libraries)

    @property
    def degraded(self) -> bool:
        return bool(self.dropped)


def _dedupe(names: Iterable[str]) -> list[str]:
    seen = set()
    unique = []
    for name in names:
        name = name.strip()
        if name and name not in seen:
            seen.add(name)
            unique.append(name)
    return unique


def probe_library_dir(library_dir: Path, name: str) -> bool:
    """Check for ``<name>.so`` in the server's library directory."""
    return (library_dir / f"{name}.so").is_file()


def reconcile_preload(
    requested: Iterable[str],
    index: Optional[ArtifactIndex],
    library_dir: Optional[Path] = None,
) -> PreloadResult:
    """Filter requested preload libraries to those that are installed.

    Order is preserved and duplicates are removed. Without an artifact
    index the library directory is probed instead; without either, the
    list is passed through unchecked.

    Args:
        requested: Library names in preference order
        index: Artifact index written at build time
        library_dir: Server pkglibdir for the fallback probe

    Returns:
        PreloadResult; dropped names each carry a warning
    """
    result = PreloadResult()
    names = _dedupe(requested)

    if index is None:
        if library_dir is None:
            result.warnings.append(
                "No artifact index and no library directory; preload list is not verified"
            )
            result.libraries = [n for n in names if IDENTIFIER_PATTERN.match(n)]
            result.dropped = [n for n in names if not IDENTIFIER_PATTERN.match(n)]
            for name in result.dropped:
                result.warnings.append(f"Dropping '{name}' from shared_preload_libraries: invalid library name")
            return result
        result.warnings.append(f"Artifact index not found; probing {library_dir} for libraries")

    for name in names:
        if not IDENTIFIER_PATTERN.match(name):
            result.dropped.append(name)
            result.warnings.append(f"Dropping '{name}' from shared_preload_libraries: invalid library name")
            continue

        if index is not None:
            available = index.provides(name)
        else:
            available = probe_library_dir(library_dir, name)

        if available:
            result.libraries.append(name)
        else:
            result.dropped.append(name)
            result.warnings.append(
                f"Dropping '{name}' from shared_preload_libraries: library is not installed in this image"
            )

    return result


def default_requested_preload(settings: RuntimeSettings) -> list[str]:
    """Preload request: operator value, else the generated list, else the built-in default."""
    explicit = settings.requested_preload()
    if explicit is not None:
        return explicit

    try:
        generated = settings.preload_list.read_text().strip()
    except OSError:
        generated = ""
    if generated:
        return split_library_list(generated)
    return list(DEFAULT_PRELOAD_LIBRARIES)


def load_artifact_index(path: Path) -> Optional[ArtifactIndex]:
    """Load the artifact index, or None when the image has none."""
    try:
        return ArtifactIndex.load(path)
    except FileNotFoundError:
        return None


def resolve_preload(
    ctx: ExecutionContext,
    settings: RuntimeSettings,
    requested: Optional[list[str]] = None,
) -> PreloadResult:
    """Reconcile the effective preload request for this container.

    Warnings are printed through the console as they are recorded.
    """
    if requested is None:
        requested = default_requested_preload(settings)

    try:
        index = load_artifact_index(settings.artifact_index)
    except ConfigurationError as e:
        ctx.console.warn(f"{e.message}; falling back to a library directory probe")
        index = None

    library_dir = settings.pkglibdir
    if library_dir is None:
        pg_major = index.pg_major if index is not None else DEFAULT_PG_MAJOR
        library_dir = Path(f"/usr/lib/postgresql/{pg_major}/lib")

    result = reconcile_preload(requested, index, library_dir)
    for warning in result.warnings:
        ctx.console.warn(warning)
    ctx.console.verbose(f"shared_preload_libraries = '{result.setting}'")
    return result
