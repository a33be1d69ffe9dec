"""Git source handling for compiled entries.

Provides:
- Fetching one pinned commit into an isolated working directory
- Resolving release tags to commits for the manifest lock file
"""

from pathlib import Path
from typing import Optional

from azpg.core.context import ExecutionContext
from azpg.core.exceptions import BuildError, ExecutionError, ManifestError, ValidationError
from azpg.core.executor import CommandExecutor
from azpg.core.validation import validate_commit, validate_repository_url
from azpg.services.manifest import Manifest, ManifestEntry, ManifestLock


GIT_TIMEOUT = 600
LS_REMOTE_TIMEOUT = 60


def fetch_source(
    ctx: ExecutionContext,
    executor: CommandExecutor,
    entry: ManifestEntry,
    workdir: Path,
    allowed_hosts: Optional[frozenset[str]] = None,
) -> Path:
    """Check out an entry's pinned commit into ``workdir``.

    Only the single commit is fetched; servers that refuse fetching an
    unadvertised commit get a full fetch instead. Submodules are
    initialised when the tree declares any.

    Args:
        ctx: Execution context
        executor: Command executor
        entry: Source or tool entry with a pinned commit
        workdir: Empty directory owned by this entry's build
        allowed_hosts: Hosts sources may be fetched from

    Returns:
        The directory holding the checked-out tree

    Raises:
        BuildError: If the entry is unpinned, the host is not allowed, or git fails
    """
    source = entry.source
    if source is None or not source.commit:
        raise BuildError(
            f"{entry.name} is not pinned to a commit",
            entry=entry.name,
            hint="Run 'azpg manifest lock' or add a commit to the manifest entry",
        )
    try:
        repository = validate_repository_url(source.repository, allowed_hosts)
    except ValidationError as e:
        raise BuildError(e.message, entry=entry.name, hint=e.hint) from e

    commit = source.commit
    git = ["git", "-C", str(workdir)]

    if not ctx.dry_run:
        workdir.mkdir(parents=True, exist_ok=True)

    try:
        executor.run(["git", "init", "--quiet", str(workdir)],
                     description=f"Fetch {entry.name} @ {source.revision}")
        executor.run(git + ["remote", "add", "origin", repository])
        try:
            executor.run(git + ["fetch", "--depth", "1", "origin", commit], timeout=GIT_TIMEOUT)
        except ExecutionError:
            ctx.console.verbose(f"{entry.name}: shallow fetch of {commit[:12]} refused, fetching full history")
            executor.run(git + ["fetch", "--tags", "origin"], timeout=GIT_TIMEOUT)
        executor.run(git + ["checkout", "--quiet", "--detach", commit])
        if (workdir / ".gitmodules").exists():
            executor.run(
                git + ["submodule", "update", "--init", "--recursive", "--depth", "1"],
                timeout=GIT_TIMEOUT,
            )
    except ExecutionError as e:
        raise BuildError(
            f"Failed to fetch {entry.name} from {repository}",
            entry=entry.name,
            details=e.details,
        ) from e

    return workdir


def parse_ls_remote(output: str, tag: str) -> Optional[str]:
    """Pick the commit for ``tag`` from ``git ls-remote`` output.

    Annotated tags list both the tag object and a peeled ``^{}`` line;
    the peeled line names the commit and wins.
    """
    ref = f"refs/tags/{tag}"
    direct = None
    for line in output.splitlines():
        parts = line.split()
        if len(parts) != 2:
            continue
        sha, name = parts
        if name == f"{ref}^{{}}":
            return sha
        if name == ref:
            direct = sha
    return direct


def resolve_tag(executor: CommandExecutor, repository: str, tag: str) -> str:
    """Resolve a release tag to its commit SHA.

    Raises:
        ManifestError: If the tag does not exist or the remote is unreachable
    """
    try:
        result = executor.run(
            ["git", "ls-remote", "--tags", repository, f"refs/tags/{tag}", f"refs/tags/{tag}^{{}}"],
            timeout=LS_REMOTE_TIMEOUT,
        )
    except ExecutionError as e:
        raise ManifestError(f"Cannot list tags of {repository}", details=e.details) from e

    commit = parse_ls_remote(result.stdout, tag)
    if commit is None:
        raise ManifestError(
            f"Tag {tag} not found in {repository}",
            hint="Check the tag name in the manifest entry",
        )
    return validate_commit(commit)


def lock_manifest(
    ctx: ExecutionContext,
    executor: CommandExecutor,
    manifest: Manifest,
    existing: Optional[ManifestLock] = None,
    *,
    refresh: bool = False,
) -> ManifestLock:
    """Resolve every tag-pinned source to a commit.

    Only compiled entries are locked; entries with a commit in the
    manifest need no lock entry. Existing lock entries are kept unless
    ``refresh`` is set.

    Raises:
        ManifestError: Listing every tag that could not be resolved
    """
    commits = dict(existing.commits) if existing and not refresh else {}
    failures: list[str] = []

    for entry in manifest.entries:
        source = entry.source
        if not entry.is_compiled or source is None or source.commit or not source.tag:
            commits.pop(entry.name, None)
            continue
        if entry.name in commits:
            ctx.console.debug(f"{entry.name}: keeping locked {commits[entry.name][:12]}")
            continue
        if ctx.dry_run:
            ctx.console.dry_run_msg(f"Resolve {entry.name} {source.tag} via git ls-remote")
            continue
        try:
            commits[entry.name] = resolve_tag(executor, source.repository, source.tag)
        except ManifestError as e:
            failures.append(f"{entry.name}: {e.message}")
            continue
        ctx.console.verbose(f"{entry.name} {source.tag} -> {commits[entry.name][:12]}")

    if failures:
        raise ManifestError(
            f"Could not resolve {len(failures)} tag(s)",
            details=failures,
        )
    return ManifestLock(commits=commits)
