"""Configuration management using Pydantic.

Provides:
- Runtime settings read from the container environment (pydantic-settings)
- Build settings loaded from an optional YAML file
- Conversion of validation failures into ConfigurationError
"""

from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, ValidationError as PydanticValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from azpg.core.exceptions import ConfigurationError, ValidationError
from azpg.core.validation import (
    DEFAULT_ALLOWED_GIT_HOSTS,
    validate_setting_name,
    validate_setting_value,
)


# Default paths inside the image
DEFAULT_BUILD_CONFIG_PATH = Path("/etc/azpg/build.yaml")
DEFAULT_OUTPUT_DIR = Path("/usr/share/azpg")
DEFAULT_ARTIFACT_INDEX = DEFAULT_OUTPUT_DIR / "artifacts.json"
DEFAULT_PRELOAD_LIST = DEFAULT_OUTPUT_DIR / "preload-libraries.txt"
DEFAULT_CONF_PATH = Path("/etc/postgresql/postgresql.auto-tuned.conf")

DEFAULT_PG_MAJOR = "18"

WORKLOAD_TYPES = frozenset({"web", "oltp", "dw", "mixed"})
STORAGE_TYPES = frozenset({"ssd", "hdd", "san"})


def _format_pydantic_error(error: PydanticValidationError) -> list[str]:
    """Flatten pydantic errors into one line per failing field."""
    lines = []
    for item in error.errors():
        location = ".".join(str(part) for part in item.get("loc", ())) or "value"
        lines.append(f"{location}: {item.get('msg')}")
    return lines


class RuntimeSettings(BaseSettings):
    """Operator-facing settings read from the container environment.

    Enumerated values are closed sets: anything unrecognized fails at
    load time instead of silently falling back to a default.
    """

    model_config = SettingsConfigDict(
        populate_by_name=True,
        extra="ignore",
        case_sensitive=False,
    )

    memory: Optional[str] = Field(None, alias="POSTGRES_MEMORY")
    cpus: Optional[str] = Field(None, alias="POSTGRES_CPUS")
    workload_type: str = Field("mixed", alias="POSTGRES_WORKLOAD_TYPE")
    storage_type: str = Field("ssd", alias="POSTGRES_STORAGE_TYPE")
    shared_preload_libraries: Optional[str] = Field(
        None, alias="POSTGRES_SHARED_PRELOAD_LIBRARIES"
    )
    config_overrides: Optional[str] = Field(None, alias="POSTGRES_CONFIG_OVERRIDES")

    artifact_index: Path = Field(DEFAULT_ARTIFACT_INDEX, alias="AZPG_ARTIFACT_INDEX")
    preload_list: Path = Field(DEFAULT_PRELOAD_LIST, alias="AZPG_PRELOAD_LIST")
    pkglibdir: Optional[Path] = Field(None, alias="AZPG_PKGLIBDIR")
    conf_path: Path = Field(DEFAULT_CONF_PATH, alias="AZPG_CONF_PATH")

    @field_validator("workload_type")
    @classmethod
    def validate_workload_type(cls, v: str) -> str:
        value = v.strip().lower()
        if value not in WORKLOAD_TYPES:
            raise ValueError(
                f"POSTGRES_WORKLOAD_TYPE must be one of: {sorted(WORKLOAD_TYPES)} (got '{v}')"
            )
        return value

    @field_validator("storage_type")
    @classmethod
    def validate_storage_type(cls, v: str) -> str:
        value = v.strip().lower()
        if value not in STORAGE_TYPES:
            raise ValueError(
                f"POSTGRES_STORAGE_TYPE must be one of: {sorted(STORAGE_TYPES)} (got '{v}')"
            )
        return value

    @field_validator("memory", "cpus", "shared_preload_libraries", "config_overrides")
    @classmethod
    def blank_as_unset(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not v.strip():
            return None
        return v.strip()

    @classmethod
    def load(cls) -> "RuntimeSettings":
        """Read settings from the environment.

        Raises:
            ConfigurationError: If any value is unrecognized
        """
        try:
            return cls()
        except PydanticValidationError as e:
            details = _format_pydantic_error(e)
            raise ConfigurationError(
                "Invalid runtime configuration in environment",
                details=details,
                hint="Fix the variables above; unrecognized values are never defaulted",
            ) from e

    def parsed_overrides(self) -> dict[str, str]:
        """Parse POSTGRES_CONFIG_OVERRIDES into setting name -> value.

        Pairs are separated by ";" or newlines so values may contain
        commas. Later pairs win over earlier ones for the same key.

        Raises:
            ConfigurationError: If a pair is malformed
        """
        return parse_override_pairs(self.config_overrides)

    def requested_preload(self) -> Optional[list[str]]:
        """Explicit preload request, or None when the operator gave none."""
        if self.shared_preload_libraries is None:
            return None
        return split_library_list(self.shared_preload_libraries)


def split_library_list(value: str) -> list[str]:
    """Split a comma-separated library list, dropping blanks and quotes."""
    names = []
    for item in value.replace("'", "").replace('"', "").split(","):
        item = item.strip()
        if item:
            names.append(item)
    return names


def parse_override_pairs(raw: Optional[str]) -> dict[str, str]:
    """Parse "key=value" pairs separated by ";" or newlines.

    Raises:
        ConfigurationError: If a pair has no "=" or an invalid name
    """
    overrides: dict[str, str] = {}
    if not raw:
        return overrides

    for chunk in raw.replace("\n", ";").split(";"):
        chunk = chunk.strip()
        if not chunk:
            continue
        if "=" not in chunk:
            raise ConfigurationError(
                f"Malformed override '{chunk}'",
                hint="Use key=value pairs separated by ';', e.g. work_mem=64MB;max_connections=150",
            )
        key, value = chunk.split("=", 1)
        try:
            name = validate_setting_name(key)
            overrides[name] = validate_setting_value(name, value)
        except ValidationError as e:
            raise ConfigurationError(e.message, hint=e.hint) from e
    return overrides


class BuildSettings(BaseModel):
    """Image build settings.

    Loaded from /etc/azpg/build.yaml when present; every field has a
    default that matches the stock image layout.
    """

    pg_major: str = DEFAULT_PG_MAJOR
    pg_config: Optional[Path] = None
    build_root: Path = Path("/tmp/azpg-build")
    output_dir: Path = DEFAULT_OUTPUT_DIR
    jobs: int = 4
    make_jobs: Optional[int] = None
    pkglibdir: Optional[Path] = None
    extension_dir: Optional[Path] = None
    lock_file: Optional[Path] = None
    allowed_git_hosts: list[str] = Field(
        default_factory=lambda: sorted(DEFAULT_ALLOWED_GIT_HOSTS)
    )

    @field_validator("pg_major")
    @classmethod
    def validate_pg_major(cls, v: str) -> str:
        if not v.isdigit() or not 14 <= int(v) <= 18:
            raise ValueError("pg_major must be a PostgreSQL major version between 14 and 18")
        return v

    @field_validator("jobs")
    @classmethod
    def validate_jobs(cls, v: int) -> int:
        if not 1 <= v <= 64:
            raise ValueError("jobs must be between 1 and 64")
        return v

    @property
    def pg_config_path(self) -> Path:
        """pg_config binary for the target major version."""
        if self.pg_config is not None:
            return self.pg_config
        return Path(f"/usr/lib/postgresql/{self.pg_major}/bin/pg_config")

    @property
    def library_dir(self) -> Path:
        """Directory holding installed extension shared libraries."""
        if self.pkglibdir is not None:
            return self.pkglibdir
        return Path(f"/usr/lib/postgresql/{self.pg_major}/lib")

    @property
    def control_dir(self) -> Path:
        """Directory holding installed extension control files."""
        if self.extension_dir is not None:
            return self.extension_dir
        return Path(f"/usr/share/postgresql/{self.pg_major}/extension")

    @property
    def host_allowlist(self) -> frozenset[str]:
        return frozenset(self.allowed_git_hosts)

    @classmethod
    def load(cls, path: Path) -> "BuildSettings":
        """Load build settings from a YAML file.

        Args:
            path: Path to settings file

        Returns:
            Loaded settings

        Raises:
            ConfigurationError: If file not found or invalid
        """
        if not path.exists():
            raise ConfigurationError(
                f"Build settings file not found: {path}",
                hint="Omit --config to use the built-in defaults",
            )

        try:
            with open(path) as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(
                f"Invalid YAML in build settings file: {path}",
                details=[str(e)],
            ) from e
        except PermissionError:
            raise ConfigurationError(
                f"Cannot read build settings file: {path}",
                hint="Check file permissions",
            )

        if not isinstance(data, dict):
            raise ConfigurationError(f"Build settings file must contain a mapping: {path}")

        try:
            return cls(**data)
        except PydanticValidationError as e:
            raise ConfigurationError(
                f"Invalid build settings: {path}",
                details=_format_pydantic_error(e),
            ) from e

    @classmethod
    def load_or_default(cls, path: Optional[Path] = None) -> "BuildSettings":
        """Load settings, falling back to defaults if the file doesn't exist."""
        if path is None:
            path = DEFAULT_BUILD_CONFIG_PATH

        if path.exists():
            return cls.load(path)
        return cls()

    def to_yaml(self) -> str:
        """Convert settings to YAML string."""
        data = self.model_dump(mode="json", exclude_none=True)
        return yaml.dump(data, default_flow_style=False, sort_keys=False)
