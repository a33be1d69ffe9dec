"""Custom exceptions for the aza-pg tooling.

All exceptions provide:
- Clear error messages
- Optional hints for resolution
- Optional details for debugging
- Exit codes for proper shell integration
"""

from typing import Any, Optional


class AzpgError(Exception):
    """Base exception for all aza-pg errors.

    Attributes:
        message: Human-readable error description
        hint: Suggested action to resolve the error
        details: Additional context for debugging
        exit_code: Shell exit code (1-127)
    """

    exit_code: int = 1

    def __init__(
        self,
        message: str,
        *,
        hint: Optional[str] = None,
        details: Optional[list[str]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.hint = hint
        self.details = details or []

    def __str__(self) -> str:
        return self.message


class ConfigurationError(AzpgError):
    """Fatal configuration errors at container start or build setup.

    Raised when:
    - Unrecognized workload or storage type
    - Override sets a parameter outside its legal range
    - Build settings file is unreadable or invalid
    """
    exit_code = 2


class ResourceError(ConfigurationError):
    """Resource detection errors.

    Raised when:
    - No memory source yields a value
    - Detected or requested memory is below the supported floor
    - Memory override cannot be parsed
    """


class ValidationError(AzpgError):
    """Input validation errors.

    Raised when:
    - Invalid extension or setting names
    - Invalid commit SHA or repository URL
    - Invalid memory size syntax
    """
    exit_code = 3


class ExecutionError(AzpgError):
    """Command execution failures.

    Raised when:
    - Shell command returns non-zero exit code
    - Command times out
    """
    exit_code = 5

    def __init__(
        self,
        message: str,
        *,
        command: Optional[str] = None,
        return_code: Optional[int] = None,
        stderr: Optional[str] = None,
        hint: Optional[str] = None,
        details: Optional[list[str]] = None,
    ) -> None:
        if not details:
            details = []
        if return_code is not None:
            details.append(f"Exit code: {return_code}")
        if stderr:
            details.append(f"Error output: {stderr.strip()[-2000:]}")
        super().__init__(message, hint=hint, details=details)
        self.command = command
        self.return_code = return_code
        self.stderr = stderr


class ManifestError(AzpgError):
    """Extension manifest errors.

    Raised when:
    - Manifest file not found or not parseable
    - Entry fails structural validation
    - Dependency, builtin or preload constraints are violated
    """
    exit_code = 20

    def __init__(
        self,
        message: str,
        *,
        violations: Optional[list[Any]] = None,
        hint: Optional[str] = None,
        details: Optional[list[str]] = None,
    ) -> None:
        self.violations = list(violations or [])
        if not details and self.violations:
            details = [str(v) for v in self.violations]
        super().__init__(message, hint=hint, details=details)


class BuildError(AzpgError):
    """Extension build failures.

    Raised when:
    - Source fetch fails or the source is not pinned to a commit
    - A source patch does not apply
    - Compilation or installation fails
    - An expected library is missing after installation
    """
    exit_code = 21

    def __init__(
        self,
        message: str,
        *,
        entry: Optional[str] = None,
        failures: Optional[list["BuildError"]] = None,
        hint: Optional[str] = None,
        details: Optional[list[str]] = None,
    ) -> None:
        self.entry = entry
        self.failures = list(failures or [])
        if not details and self.failures:
            details = [f"{f.entry or '?'}: {f.message}" for f in self.failures]
        super().__init__(message, hint=hint, details=details)


class PatchError(BuildError):
    """Source patch application failures.

    Raised when:
    - Patch target file glob matches nothing
    - Patch pattern matches fewer times than required
    """
