"""Core framework components for the aza-pg tooling."""

from azpg.core.exceptions import (
    AzpgError,
    ConfigurationError,
    ResourceError,
    ValidationError,
    ExecutionError,
    ManifestError,
    BuildError,
    PatchError,
)

from azpg.core.context import ExecutionContext, create_context
from azpg.core.output import console, Console, Verbosity
from azpg.core.config import BuildSettings, RuntimeSettings
from azpg.core.executor import CommandExecutor, CommandResult

__all__ = [
    # Exceptions
    "AzpgError",
    "ConfigurationError",
    "ResourceError",
    "ValidationError",
    "ExecutionError",
    "ManifestError",
    "BuildError",
    "PatchError",
    # Context
    "ExecutionContext",
    "create_context",
    # Output
    "console",
    "Console",
    "Verbosity",
    # Config
    "BuildSettings",
    "RuntimeSettings",
    # Executor
    "CommandExecutor",
    "CommandResult",
]
