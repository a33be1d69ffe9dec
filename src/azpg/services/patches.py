"""Declarative source patches.

Patches are applied to a freshly fetched tree before building. A patch
that matches nothing is a failure: an upstream change that silently
skips a fix would only surface later as a broken build or binary.
"""

import re
from dataclasses import dataclass
from pathlib import Path

from azpg.core.context import ExecutionContext
from azpg.core.exceptions import PatchError
from azpg.services.manifest import SourcePatch


@dataclass
class PatchResult:
    """Outcome of one patch across the files it matched."""

    patch: SourcePatch
    files: list[Path]
    replacements: int


def _resolve_targets(source_dir: Path, patch: SourcePatch, entry: str) -> list[Path]:
    targets = sorted(p for p in source_dir.glob(patch.file) if p.is_file())
    if not targets:
        raise PatchError(
            f"Patch target '{patch.file}' matched no files",
            entry=entry,
            hint="The upstream layout changed; update the patch file glob",
        )
    return targets


def apply_patch(
    source_dir: Path,
    patch: SourcePatch,
    *,
    entry: str,
    dry_run: bool = False,
) -> PatchResult:
    """Apply one find/replace patch to every file matching its glob.

    The match count is summed over all target files and checked against
    ``min_matches`` before anything is written.

    Args:
        source_dir: Root of the fetched source tree
        patch: Patch definition
        entry: Manifest entry name, for error reporting
        dry_run: Count matches without writing

    Returns:
        PatchResult with the files changed and total replacements

    Raises:
        PatchError: If the glob matches no file or the pattern matches too rarely
    """
    targets = _resolve_targets(source_dir, patch, entry)

    pattern = re.compile(patch.find if patch.regex else re.escape(patch.find), re.MULTILINE)
    if patch.regex:
        replacement = patch.replace
    else:
        replacement = lambda _match: patch.replace  # noqa: E731

    updated: dict[Path, str] = {}
    total = 0
    for path in targets:
        text = path.read_text()
        new_text, count = pattern.subn(replacement, text)
        if count:
            updated[path] = new_text
            total += count

    if total < patch.min_matches:
        raise PatchError(
            f"Patch for '{patch.file}' matched {total} time(s), expected at least {patch.min_matches}",
            entry=entry,
            details=[f"find: {patch.find}", f"files: {', '.join(str(p.relative_to(source_dir)) for p in targets)}"],
            hint="The upstream source changed; update or drop the patch",
        )

    if not dry_run:
        for path, new_text in updated.items():
            path.write_text(new_text)

    return PatchResult(patch=patch, files=sorted(updated), replacements=total)


def apply_patches(
    ctx: ExecutionContext,
    source_dir: Path,
    patches: list[SourcePatch],
    *,
    entry: str,
) -> list[PatchResult]:
    """Apply an entry's patches in order, stopping at the first failure.

    Raises:
        PatchError: From the first patch that does not apply
    """
    results = []
    for patch in patches:
        label = patch.description or f"{patch.file}: {patch.find}"
        if ctx.dry_run:
            ctx.console.dry_run_msg(f"Patch {entry}: {label}")
            continue
        result = apply_patch(source_dir, patch, entry=entry)
        ctx.console.verbose(
            f"Patched {entry}: {label} ({result.replacements} replacement(s))"
        )
        results.append(result)
    return results
