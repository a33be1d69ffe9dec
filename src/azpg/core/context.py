"""Execution context for commands.

One ExecutionContext is created per command invocation from the CLI
flags. Services receive it instead of reading flags or the environment
themselves, so the same service code runs at image-build time (build
settings from YAML) and at container start (runtime settings from the
environment).
"""

from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Optional

from azpg.core.config import BuildSettings, RuntimeSettings
from azpg.core.output import Console, console, Verbosity


@dataclass
class ExecutionContext:
    """Flags and settings shared by the executor and services.

    Attributes:
        dry_run: Report commands and file writes instead of performing them
        verbosity: Output verbosity level (0-3)
        no_color: Disable colored output
        config_path: Build settings file; None means the default location
    """

    dry_run: bool = False
    verbosity: int = Verbosity.NORMAL
    no_color: bool = False
    config_path: Optional[Path] = None

    # Loaded on first use; tests may pass them in directly
    _build_settings: Optional[BuildSettings] = field(default=None, repr=False)
    _runtime_settings: Optional[RuntimeSettings] = field(default=None, repr=False)
    _console: Console = field(default_factory=lambda: console, repr=False)

    def __post_init__(self) -> None:
        self._console.configure(
            verbosity=self.verbosity,
            dry_run=self.dry_run,
            no_color=self.no_color,
        )

    @property
    def console(self) -> Console:
        return self._console

    @property
    def build_settings(self) -> BuildSettings:
        """Build settings from ``config_path``, or defaults when it is absent.

        Raises:
            ConfigurationError: If the file exists but is invalid
        """
        if self._build_settings is None:
            self._build_settings = BuildSettings.load_or_default(self.config_path)
        return self._build_settings

    @property
    def runtime_settings(self) -> RuntimeSettings:
        """Container settings read from the environment.

        Raises:
            ConfigurationError: If a variable holds an unrecognized value
        """
        if self._runtime_settings is None:
            self._runtime_settings = RuntimeSettings.load()
        return self._runtime_settings

    @property
    def is_verbose(self) -> bool:
        return self.verbosity >= Verbosity.VERBOSE

    def with_build_settings(self, settings: BuildSettings) -> "ExecutionContext":
        """Copy of this context using ``settings`` (CLI overrides applied)."""
        return replace(self, _build_settings=settings)


def create_context(
    dry_run: bool = False,
    verbose: int = 0,
    quiet: bool = False,
    no_color: bool = False,
    config: Optional[Path] = None,
) -> ExecutionContext:
    """Create an execution context from CLI options.

    ``--quiet`` wins over any number of ``-v`` flags.
    """
    if quiet:
        verbosity = Verbosity.QUIET
    else:
        verbosity = min(Verbosity.NORMAL + verbose, Verbosity.DEBUG)

    return ExecutionContext(
        dry_run=dry_run,
        verbosity=verbosity,
        no_color=no_color,
        config_path=config,
    )
