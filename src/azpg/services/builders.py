"""Build-system dispatch for compiled entries.

Each build type maps to a short fixed command sequence run through the
executor, with pg_config passed explicitly so every build targets the
same server installation.
"""

import os
import shlex
import threading
import tomllib
from pathlib import Path
from typing import Callable, Optional

from azpg.core.config import BuildSettings
from azpg.core.context import ExecutionContext
from azpg.core.exceptions import BuildError, ExecutionError
from azpg.core.executor import CommandExecutor
from azpg.services.manifest import BuildSpec, BuildType, ManifestEntry


DEFAULT_PGRX_VERSION = "0.16.1"
BUILD_TIMEOUT = 3600


def read_pgrx_version(source_dir: Path) -> str:
    """Find the pgrx version a crate depends on.

    Looks at ``[dependencies]`` then ``[workspace.dependencies]`` in the
    crate's Cargo.toml; version requirement operators are stripped so
    the result can be passed to ``cargo install --version``.
    """
    cargo_toml = source_dir / "Cargo.toml"
    try:
        data = tomllib.loads(cargo_toml.read_text())
    except (OSError, tomllib.TOMLDecodeError):
        return DEFAULT_PGRX_VERSION

    candidates = [
        data.get("dependencies", {}).get("pgrx"),
        data.get("workspace", {}).get("dependencies", {}).get("pgrx"),
    ]
    for spec in candidates:
        if isinstance(spec, dict):
            spec = spec.get("version")
        if isinstance(spec, str) and spec.strip():
            return spec.strip().lstrip("=^~ ")
    return DEFAULT_PGRX_VERSION


class PgrxToolchain:
    """One-time cargo-pgrx install and init per pgrx version.

    Each version gets its own install root under ``build_root`` and is
    selected by putting that root's ``bin`` first on PATH, so crates
    pinned to different pgrx releases never share a cargo-pgrx binary.
    Shared by all build threads; the lock serializes installs.
    """

    def __init__(self, executor: CommandExecutor, settings: BuildSettings) -> None:
        self.executor = executor
        self.settings = settings
        self._lock = threading.Lock()
        self._ready: set[str] = set()

    def install_root(self, version: str) -> Path:
        return self.settings.build_root / ".cargo-pgrx" / version

    def env(self, version: str) -> dict[str, str]:
        """PATH selecting the cargo-pgrx binary for ``version``."""
        bin_dir = self.install_root(version) / "bin"
        return {"PATH": f"{bin_dir}{os.pathsep}{os.environ.get('PATH', os.defpath)}"}

    def ensure(self, version: str) -> dict[str, str]:
        """Install and initialise ``version`` if needed.

        Returns:
            Environment to run ``cargo pgrx`` with that version
        """
        env = self.env(version)
        with self._lock:
            if version in self._ready:
                return env
            self.executor.run(
                [
                    "cargo", "install", "--locked", "cargo-pgrx",
                    "--version", version, "--root", str(self.install_root(version)),
                ],
                description=f"Install cargo-pgrx {version}",
                timeout=BUILD_TIMEOUT,
            )
            self.executor.run(
                ["cargo", "pgrx", "init", f"--pg{self.settings.pg_major}", str(self.settings.pg_config_path)],
                description=f"Initialise pgrx {version} for PostgreSQL {self.settings.pg_major}",
                env=env,
                timeout=BUILD_TIMEOUT,
            )
            self._ready.add(version)
        return env


class BuildDispatcher:
    """Runs the build and install steps for one fetched source tree."""

    def __init__(
        self,
        ctx: ExecutionContext,
        executor: CommandExecutor,
        settings: BuildSettings,
        pgrx: Optional[PgrxToolchain] = None,
    ) -> None:
        self.ctx = ctx
        self.executor = executor
        self.settings = settings
        self.pgrx = pgrx or PgrxToolchain(executor, settings)
        self._builders: dict[BuildType, Callable[[ManifestEntry, Path], None]] = {
            BuildType.PGXS: self._build_pgxs,
            BuildType.CARGO_PGRX: self._build_cargo_pgrx,
            BuildType.TIMESCALEDB: self._build_timescaledb,
            BuildType.AUTOTOOLS: self._build_autotools,
            BuildType.CMAKE: self._build_cmake,
            BuildType.MESON: self._build_meson,
            BuildType.MAKE: self._build_make,
        }

    @property
    def make_jobs(self) -> int:
        return self.settings.make_jobs or os.cpu_count() or 1

    @property
    def pg_config(self) -> str:
        return str(self.settings.pg_config_path)

    def build(self, entry: ManifestEntry, source_dir: Path) -> None:
        """Build and install an entry from its checked-out tree.

        Raises:
            BuildError: If any step fails
        """
        spec = self._spec(entry)
        build_dir = source_dir / spec.subdir if spec.subdir else source_dir

        try:
            self._run_hooks(spec.pre_build, build_dir)
            self._builders[spec.type](entry, build_dir)
            self._run_hooks(spec.post_install, build_dir)
        except ExecutionError as e:
            raise BuildError(
                f"{spec.type.value} build of {entry.name} failed",
                entry=entry.name,
                details=[e.message] + e.details,
            ) from e

    def _spec(self, entry: ManifestEntry) -> BuildSpec:
        if entry.build is None:
            raise BuildError(f"{entry.name} has no build spec", entry=entry.name)
        return entry.build

    def _run(
        self,
        command: list[str],
        cwd: Path,
        description: Optional[str] = None,
        env: Optional[dict[str, str]] = None,
    ) -> None:
        self.executor.run(
            command,
            description=description,
            cwd=cwd,
            env={"PG_CONFIG": self.pg_config, **(env or {})},
            timeout=BUILD_TIMEOUT,
        )

    def _run_hooks(self, hooks: list[str], cwd: Path) -> None:
        for hook in hooks:
            self._run(shlex.split(hook), cwd)

    def _build_pgxs(self, entry: ManifestEntry, build_dir: Path) -> None:
        make = ["make", "-C", str(build_dir), "USE_PGXS=1", f"PG_CONFIG={self.pg_config}"]
        self._run(make + [f"-j{self.make_jobs}"], build_dir, f"Build {entry.name} (pgxs)")
        self._run(make + ["install"], build_dir)

    def _build_cargo_pgrx(self, entry: ManifestEntry, build_dir: Path) -> None:
        spec = self._spec(entry)
        pgrx_env = self.pgrx.ensure(read_pgrx_version(build_dir))

        # A stale lock can pin pgrx to a version cargo-pgrx rejects
        lock_file = build_dir / "Cargo.lock"
        if lock_file.exists() and not self.ctx.dry_run:
            lock_file.unlink()

        command = ["cargo", "pgrx", "install", "--release", "--pg-config", self.pg_config]
        if spec.features:
            command += ["--features", ",".join(spec.features)]
        if spec.no_default_features:
            command.append("--no-default-features")
        self._run(command, build_dir, f"Build {entry.name} (cargo-pgrx)", env=pgrx_env)

    def _build_timescaledb(self, entry: ManifestEntry, build_dir: Path) -> None:
        spec = self._spec(entry)
        bootstrap = [
            "./bootstrap",
            "-DAPACHE_ONLY=OFF",
            "-DREGRESS_CHECKS=OFF",
            f"-DPG_CONFIG={self.pg_config}",
        ] + spec.configure_args
        self._run(bootstrap, build_dir, f"Configure {entry.name} (timescaledb)")
        self._run(["cmake", "--build", "build", "--parallel", str(self.make_jobs)], build_dir)
        self._run(["cmake", "--install", "build"], build_dir)

    def _build_autotools(self, entry: ManifestEntry, build_dir: Path) -> None:
        spec = self._spec(entry)
        if (build_dir / "autogen.sh").exists():
            self._run(["./autogen.sh"], build_dir, f"Bootstrap {entry.name} (autogen)")
        self._run(
            ["./configure", f"--with-pgconfig={self.pg_config}"] + spec.configure_args,
            build_dir,
            f"Configure {entry.name} (autotools)",
        )
        self._run(["make", f"-j{self.make_jobs}"], build_dir)
        self._run(["make", "install"], build_dir)

    def _build_cmake(self, entry: ManifestEntry, build_dir: Path) -> None:
        spec = self._spec(entry)
        out = ".cmake-build"
        self._run(
            ["cmake", "-S", ".", "-B", out, "-DCMAKE_BUILD_TYPE=Release",
             f"-DPOSTGRESQL_PG_CONFIG={self.pg_config}"] + spec.configure_args,
            build_dir,
            f"Configure {entry.name} (cmake)",
        )
        self._run(["cmake", "--build", out, "--parallel", str(self.make_jobs)], build_dir)
        self._run(["cmake", "--install", out], build_dir)

    def _build_meson(self, entry: ManifestEntry, build_dir: Path) -> None:
        spec = self._spec(entry)
        out = ".meson-build"
        self._run(
            ["meson", "setup", out, "--prefix=/usr/local"] + spec.configure_args,
            build_dir,
            f"Configure {entry.name} (meson)",
        )
        self._run(["ninja", "-C", out], build_dir)
        self._run(["ninja", "-C", out, "install"], build_dir)

    def _build_make(self, entry: ManifestEntry, build_dir: Path) -> None:
        self._run(["make", f"-j{self.make_jobs}"], build_dir, f"Build {entry.name} (make)")
        self._run(["make", "install"], build_dir)
