"""Input validation utilities.

Provides validation for:
- Extension and library names (manifest identity, preload lists)
- PostgreSQL setting names and values (operator overrides)
- Memory sizes with units (POSTGRES_MEMORY)
- Git repositories and commit SHAs (pinned sources)

All validators return the validated value or raise ValidationError.
"""

import re
from typing import Optional
from urllib.parse import urlparse

from azpg.core.exceptions import ValidationError


# Extension names follow PostgreSQL identifier rules
IDENTIFIER_PATTERN = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")

# Setting names may carry one custom-class prefix (pg_stat_statements.max)
SETTING_NAME_PATTERN = re.compile(r"^[a-z_][a-z0-9_]*(\.[a-z_][a-z0-9_]*)?$")

COMMIT_PATTERN = re.compile(r"^[0-9a-f]{40}$")

MEMORY_PATTERN = re.compile(r"^\s*(\d+)\s*([kmgt]i?b?|b)?\s*$", re.IGNORECASE)

MAX_IDENTIFIER_LENGTH = 63

DEFAULT_ALLOWED_GIT_HOSTS: frozenset[str] = frozenset({"github.com", "gitlab.com"})

_UNIT_TO_MB = {
    "": 1.0,
    "b": 1.0 / (1024 * 1024),
    "k": 1.0 / 1024,
    "m": 1.0,
    "g": 1024.0,
    "t": 1024.0 * 1024,
}


def validate_identifier(value: str, identifier_type: str = "extension") -> str:
    """Validate an extension or library name.

    Rules:
    - Must start with letter or underscore
    - Can contain letters, digits, underscores
    - Max 63 characters

    Args:
        value: The name to validate
        identifier_type: Type for error messages (e.g., "extension", "library")

    Returns:
        The validated name

    Raises:
        ValidationError: If validation fails
    """
    if not value:
        raise ValidationError(
            f"{identifier_type.title()} name cannot be empty",
            hint="Provide a valid name",
        )

    if len(value) > MAX_IDENTIFIER_LENGTH:
        raise ValidationError(
            f"{identifier_type.title()} name exceeds maximum length "
            f"({len(value)} > {MAX_IDENTIFIER_LENGTH})",
            details=[f"Provided: {value[:50]}..."],
        )

    if not IDENTIFIER_PATTERN.match(value):
        raise ValidationError(
            f"Invalid {identifier_type} name: '{value}'",
            hint="Must start with a letter or underscore, contain only letters, digits, and underscores",
        )

    return value


def validate_setting_name(value: str) -> str:
    """Validate a PostgreSQL configuration parameter name.

    Names are case-insensitive to the server; they are normalized to
    lower case here so overrides match computed keys.
    """
    name = value.strip().lower()
    if not SETTING_NAME_PATTERN.match(name):
        raise ValidationError(
            f"Invalid setting name: '{value}'",
            hint="Use names like work_mem or pg_stat_statements.max",
        )
    return name


def validate_setting_value(name: str, value: str) -> str:
    """Reject values that would break the one-setting-per-line format."""
    if any(ch in value for ch in ("\n", "\r", "\x00")):
        raise ValidationError(
            f"Value for {name} contains a line break or NUL byte",
            hint="Each setting must fit on a single line",
        )
    return value.strip()


def parse_memory_mb(value: str) -> int:
    """Parse a memory size into whole mebibytes.

    A bare number is taken as MB. Units k/m/g/t are accepted with an
    optional "b" or "ib" suffix, case-insensitively ("5GB", "512m").

    Args:
        value: Memory size string

    Returns:
        Size in MiB (rounded down)

    Raises:
        ValidationError: If the value cannot be parsed
    """
    match = MEMORY_PATTERN.match(value or "")
    if not match:
        raise ValidationError(
            f"Invalid memory size: '{value}'",
            hint="Use a number of megabytes (2048) or a size with unit (2GB, 512m)",
        )

    number = int(match.group(1))
    unit = (match.group(2) or "").lower()
    if unit != "b":
        unit = unit[:1]
    return int(number * _UNIT_TO_MB[unit])


def validate_commit(value: str) -> str:
    """Validate a full 40-character git commit SHA."""
    commit = value.strip().lower()
    if not COMMIT_PATTERN.match(commit):
        raise ValidationError(
            f"Invalid commit SHA: '{value}'",
            hint="Pin sources to a full 40-character commit, not a tag or short SHA",
        )
    return commit


def validate_repository_url(
    value: str,
    allowed_hosts: Optional[frozenset[str]] = None,
) -> str:
    """Validate a git repository URL against the host allowlist.

    Args:
        value: Repository URL
        allowed_hosts: Hostnames sources may be fetched from

    Returns:
        The validated URL

    Raises:
        ValidationError: If validation fails
    """
    hosts = allowed_hosts or DEFAULT_ALLOWED_GIT_HOSTS
    parsed = urlparse(value.strip())

    if parsed.scheme != "https":
        raise ValidationError(
            f"Repository URL must use https: {value}",
            hint=f"Use https://{parsed.netloc or 'github.com'}{parsed.path}",
        )

    if parsed.hostname not in hosts:
        raise ValidationError(
            f"Repository host '{parsed.hostname}' is not allowed",
            hint=f"Allowed hosts: {', '.join(sorted(hosts))}",
        )

    if not parsed.path.strip("/"):
        raise ValidationError(f"Repository URL has no path: {value}")

    return value.strip()
