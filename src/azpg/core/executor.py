"""Command execution for build steps.

Every external program azpg starts (apt, git, make, cargo, cmake)
goes through CommandExecutor, which gives one place for dry-run
handling, timeouts and turning failures into ExecutionError with the
tail of the program's output attached.

Generated files (postgresql.conf, init SQL, the artifact index) are
written through ``write_file`` so they are replaced atomically.
"""

import os
import shlex
import subprocess
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from azpg.core.context import ExecutionContext
from azpg.core.exceptions import ExecutionError


# Characters of output kept in error details
OUTPUT_TAIL = 2000


@dataclass
class CommandResult:
    """Exit status and captured output of one command."""
    command: list[str]
    return_code: int
    stdout: str
    stderr: str


def _tail(text: Optional[str]) -> Optional[str]:
    if not text or not text.strip():
        return None
    return text.strip()[-OUTPUT_TAIL:]


class CommandExecutor:
    """Runs build commands, or only reports them in dry-run mode.

    Instances hold no per-command state, so one executor is shared by
    the build worker threads.
    """

    def __init__(self, ctx: ExecutionContext) -> None:
        self.ctx = ctx

    def run(
        self,
        command: list[str],
        *,
        description: Optional[str] = None,
        check: bool = True,
        capture: bool = True,
        timeout: Optional[int] = None,
        env: Optional[dict[str, str]] = None,
        cwd: Optional[Path] = None,
    ) -> CommandResult:
        """Run a command without a shell and with stdin closed.

        Build tools that would prompt (git credentials, apt
        confirmations) read EOF instead of hanging the image build.

        Args:
            command: Program and arguments
            description: Step shown to the user; defaults to nothing
            check: Raise on a non-zero exit status
            capture: Capture output instead of passing it through
            timeout: Seconds before the command is killed
            env: Variables added to the current environment
            cwd: Working directory

        Raises:
            ExecutionError: If the program is missing, times out, or
                exits non-zero with ``check`` set
        """
        if description:
            self.ctx.console.step(description)

        shown = shlex.join(command)
        self.ctx.console.debug(f"Running: {shown}" + (f" (in {cwd})" if cwd is not None else ""))

        if self.ctx.dry_run:
            self.ctx.console.dry_run_msg(f"Run: {shown}")
            return CommandResult(command=command, return_code=0, stdout="", stderr="")

        run_env = {**os.environ, **env} if env else None

        try:
            completed = subprocess.run(
                command,
                stdin=subprocess.DEVNULL,
                capture_output=capture,
                text=True,
                timeout=timeout,
                env=run_env,
                cwd=cwd,
            )
        except subprocess.TimeoutExpired as e:
            raise ExecutionError(
                f"Command timed out after {timeout}s: {description or shown}",
                command=shown,
                stderr=_tail(e.stderr if isinstance(e.stderr, str) else None),
            ) from e
        except FileNotFoundError as e:
            raise ExecutionError(
                f"Command not found: {command[0]}",
                command=shown,
                hint="Install the build toolchain for this entry (see apt_packages)",
            ) from e

        stdout = completed.stdout if capture else ""
        stderr = completed.stderr if capture else ""

        if check and completed.returncode != 0:
            # make and cargo often report the real error on stdout
            raise ExecutionError(
                f"Command failed: {description or shown}",
                command=shown,
                return_code=completed.returncode,
                stderr=_tail(stderr) or _tail(stdout),
            )

        return CommandResult(
            command=command,
            return_code=completed.returncode,
            stdout=stdout,
            stderr=stderr,
        )

    def apt_install(
        self,
        packages: list[str],
        *,
        description: Optional[str] = None,
    ) -> CommandResult:
        """Install apt packages (``name`` or ``name=version``) in one call.

        apt holds the dpkg lock, so callers batch packages rather than
        installing from worker threads.
        """
        return self.run(
            ["apt-get", "install", "-y", "--no-install-recommends", *packages],
            description=description or f"Install {', '.join(packages)}",
            env={"DEBIAN_FRONTEND": "noninteractive"},
        )

    def write_file(
        self,
        path: Path,
        content: str,
        *,
        description: Optional[str] = None,
        permissions: int = 0o644,
    ) -> None:
        """Write a generated file atomically.

        Content goes to a temporary file beside the target, which then
        replaces it, so a server or init script never reads half a file.

        Raises:
            ExecutionError: If the directory or file cannot be written
        """
        self.ctx.console.step(description or f"Write {path}")

        if self.ctx.dry_run:
            self.ctx.console.dry_run_msg(f"Write {len(content)} bytes to {path}")
            if self.ctx.is_verbose:
                preview = content[:500] + "..." if len(content) > 500 else content
                self.ctx.console.raw(preview)
            return

        tmp_name: Optional[str] = None
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
            with os.fdopen(fd, "w") as f:
                f.write(content)
            os.chmod(tmp_name, permissions)
            os.replace(tmp_name, path)
        except OSError as e:
            if tmp_name is not None and os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise ExecutionError(
                f"Cannot write {path}: {e.strerror or e}",
                hint="Check that the directory exists and is writable by this user",
            ) from e
