"""Cross-entry manifest checks.

Runs over the whole entry set before any build step and collects every
violation in one pass, so a broken manifest is reported completely
rather than one problem per run.
"""

from collections import Counter
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional

from azpg.core.exceptions import ManifestError
from azpg.services.manifest import EntryKind, Manifest, ManifestEntry


class ViolationCode(str, Enum):
    """Kinds of manifest violation."""

    DISABLED_DEPENDENCY = "disabled_dependency"
    UNKNOWN_DEPENDENCY = "unknown_dependency"
    BUILTIN_DISABLED = "builtin_disabled"
    PRELOAD_DISABLED = "preload_disabled"
    DUPLICATE_ENTRY = "duplicate_entry"


@dataclass(frozen=True)
class ManifestViolation:
    """A single broken manifest invariant."""

    code: ViolationCode
    entry: str
    message: str
    dependency: Optional[str] = None

    def __str__(self) -> str:
        return f"[{self.code.value}] {self.message}"


def validate(entries: Iterable[ManifestEntry]) -> list[ManifestViolation]:
    """Check the entry set and return every violation found.

    Rules:
    - Built-in entries cannot be disabled
    - An entry loaded through the default preload list must be enabled
    - An enabled entry cannot depend on a disabled or unknown entry
    - Entry names are unique

    Args:
        entries: Manifest entries in file order

    Returns:
        Violations in entry order; empty when the manifest is consistent
    """
    entries = list(entries)
    violations: list[ManifestViolation] = []

    counts = Counter(entry.name for entry in entries)
    for name, count in counts.items():
        if count > 1:
            violations.append(ManifestViolation(
                code=ViolationCode.DUPLICATE_ENTRY,
                entry=name,
                message=f"{name} is declared {count} times",
            ))

    # Last declaration wins for lookups when names repeat
    by_name = {entry.name: entry for entry in entries}

    for entry in entries:
        if entry.kind is EntryKind.BUILTIN and not entry.enabled:
            violations.append(ManifestViolation(
                code=ViolationCode.BUILTIN_DISABLED,
                entry=entry.name,
                message=f"{entry.name} ships with the engine and cannot be disabled",
            ))

        if entry.requires_preload and not entry.enabled:
            violations.append(ManifestViolation(
                code=ViolationCode.PRELOAD_DISABLED,
                entry=entry.name,
                message=(
                    f"{entry.name} is in the default preload list but disabled; "
                    "set default_enable: false or enable it"
                ),
            ))

        if not entry.enabled:
            continue

        for dep_name in entry.dependencies:
            dependency = by_name.get(dep_name)
            if dependency is None:
                violations.append(ManifestViolation(
                    code=ViolationCode.UNKNOWN_DEPENDENCY,
                    entry=entry.name,
                    dependency=dep_name,
                    message=f"{entry.name} depends on {dep_name}, which is not in the manifest",
                ))
            elif not dependency.enabled:
                reason = f" ({dependency.disabled_reason})" if dependency.disabled_reason else ""
                violations.append(ManifestViolation(
                    code=ViolationCode.DISABLED_DEPENDENCY,
                    entry=entry.name,
                    dependency=dep_name,
                    message=f"{entry.name} is enabled but depends on disabled {dep_name}{reason}",
                ))

    return violations


def require_valid(manifest: Manifest) -> None:
    """Raise if the manifest breaks any cross-entry invariant.

    Raises:
        ManifestError: Carrying the full list of violations
    """
    violations = validate(manifest.entries)
    if violations:
        noun = "violation" if len(violations) == 1 else "violations"
        raise ManifestError(
            f"Manifest has {len(violations)} {noun}",
            violations=violations,
            hint="Fix the entries above; nothing is built until the manifest is consistent",
        )
