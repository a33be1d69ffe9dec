"""postgresql.conf rendering.

Turns a TunedConfig plus operator overrides into the configuration
file read by the server at start. Overrides replace computed values
key by key and are checked against the server's own legal ranges
before anything is written. Rendering is deterministic: the same
inputs always produce byte-identical text, so files can be diffed
across restarts.
"""

import re
from dataclasses import dataclass
from typing import Optional

from azpg.core.exceptions import ConfigurationError, ValidationError
from azpg.core.validation import (
    IDENTIFIER_PATTERN,
    validate_setting_name,
    validate_setting_value,
)
from azpg.services.tuning import TunedConfig


# Standing settings of the image; tuning never computes these
BASE_SETTINGS: dict[str, str] = {
    "io_method": "worker",
    "wal_level": "replica",
    "huge_pages": "try",
    "log_min_duration_statement": "1000",
    "pg_stat_statements.max": "10000",
    "pg_stat_statements.track": "all",
    "auto_explain.log_min_duration": "3s",
    "timescaledb.telemetry_level": "off",
}

SECTIONS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("Memory Settings", (
        "shared_buffers", "effective_cache_size", "work_mem",
        "maintenance_work_mem", "wal_buffers",
    )),
    ("Connection Settings", ("max_connections",)),
    ("Parallel Query Settings", (
        "max_worker_processes", "max_parallel_workers",
        "max_parallel_workers_per_gather", "max_parallel_maintenance_workers",
        "io_workers",
    )),
    ("Disk I/O Settings", (
        "random_page_cost", "effective_io_concurrency", "maintenance_io_concurrency",
    )),
    ("WAL Settings", (
        "min_wal_size", "max_wal_size", "checkpoint_completion_target", "wal_compression",
    )),
    ("Planner Settings", ("default_statistics_target", "jit")),
)

_MEMORY_VALUE = re.compile(r"^(-?\d+)\s*(B|kB|MB|GB|TB)?$")
_TIME_VALUE = re.compile(r"^(-?\d+)\s*(us|ms|s|min|h|d)?$")
_BARE_VALUE = re.compile(r"^(-?\d+(\.\d+)?([a-zA-Z]+)?|[A-Za-z_][A-Za-z0-9_]*)$")

_MEMORY_UNITS_KB = {"B": 1 / 1024, "kB": 1, "MB": 1024, "GB": 1024 ** 2, "TB": 1024 ** 3}
_TIME_UNITS_MS = {"us": 0.001, "ms": 1, "s": 1000, "min": 60_000, "h": 3_600_000, "d": 86_400_000}

_BOOL_VALUES = frozenset({"on", "off", "true", "false", "yes", "no", "1", "0"})

INT_MAX = 2147483647


@dataclass(frozen=True)
class ParameterRange:
    """Legal values of one server parameter.

    For memory parameters bounds are in kB and ``unit`` is the size of
    a bare number in kB; for time parameters bounds are in ms.
    """

    kind: str  # integer | real | memory | time | bool | enum | libraries
    minimum: Optional[float] = None
    maximum: Optional[float] = None
    unit: float = 1
    choices: frozenset[str] = frozenset()
    special: frozenset[str] = frozenset()

    def describe(self) -> str:
        if self.kind == "enum":
            return f"one of {', '.join(sorted(self.choices))}"
        if self.kind == "bool":
            return "on or off"
        if self.kind == "libraries":
            return "comma-separated library names"
        suffix = {"memory": "kB", "time": "ms"}.get(self.kind, "")
        return f"{self.minimum:g}{suffix} .. {self.maximum:g}{suffix}"


def _int(low: float, high: float) -> ParameterRange:
    return ParameterRange("integer", low, high)


def _mem(low_kb: float, high_kb: float, unit_kb: float = 1, special: frozenset[str] = frozenset()) -> ParameterRange:
    return ParameterRange("memory", low_kb, high_kb, unit=unit_kb, special=special)


def _enum(*choices: str) -> ParameterRange:
    return ParameterRange("enum", choices=frozenset(choices))


# PostgreSQL 18 limits for every parameter this tool computes or commonly
# sees overridden. Parameters absent here are passed through unchecked.
LEGAL_RANGES: dict[str, ParameterRange] = {
    "shared_buffers": _mem(128, 1073741823 * 8, unit_kb=8),
    "effective_cache_size": _mem(8, INT_MAX * 8.0, unit_kb=8),
    "work_mem": _mem(64, INT_MAX),
    "maintenance_work_mem": _mem(1024, INT_MAX),
    "wal_buffers": _mem(64, 262143 * 8, unit_kb=8, special=frozenset({"-1"})),
    "min_wal_size": _mem(2 * 1024, INT_MAX * 1024.0, unit_kb=1024),
    "max_wal_size": _mem(2 * 1024, INT_MAX * 1024.0, unit_kb=1024),
    "temp_buffers": _mem(800, 1073741823 * 8, unit_kb=8),
    "max_connections": _int(1, 262143),
    "superuser_reserved_connections": _int(0, 262143),
    "max_worker_processes": _int(0, 262143),
    "max_parallel_workers": _int(0, 1024),
    "max_parallel_workers_per_gather": _int(0, 1024),
    "max_parallel_maintenance_workers": _int(0, 1024),
    "io_workers": _int(1, 32),
    "max_wal_senders": _int(0, 262143),
    "max_replication_slots": _int(0, 262143),
    "random_page_cost": ParameterRange("real", 0, 1.7976931348623157e308),
    "seq_page_cost": ParameterRange("real", 0, 1.7976931348623157e308),
    "effective_io_concurrency": _int(0, 1000),
    "maintenance_io_concurrency": _int(0, 1000),
    "checkpoint_completion_target": ParameterRange("real", 0, 1),
    "default_statistics_target": _int(1, 10000),
    "wal_compression": _enum("on", "off", "pglz", "lz4", "zstd", "true", "false", "yes", "no", "1", "0"),
    "wal_level": _enum("minimal", "replica", "logical"),
    "io_method": _enum("worker", "sync", "io_uring"),
    "huge_pages": _enum("on", "off", "try"),
    "jit": ParameterRange("bool"),
    "log_min_duration_statement": ParameterRange("time", -1, INT_MAX),
    "pg_stat_statements.max": _int(100, 1073741823),
    "pg_stat_statements.track": _enum("none", "top", "all"),
    "auto_explain.log_min_duration": ParameterRange("time", -1, INT_MAX),
    "timescaledb.telemetry_level": _enum("off", "no_functions", "basic"),
    "shared_preload_libraries": ParameterRange("libraries"),
}


def _out_of_range(name: str, value: str, rule: ParameterRange) -> ConfigurationError:
    return ConfigurationError(
        f"Override {name}={value} is outside the legal range",
        details=[f"{name}: {value}", f"Allowed: {rule.describe()}"],
        hint="Fix or remove the key in POSTGRES_CONFIG_OVERRIDES",
    )


def check_parameter(name: str, value: str) -> None:
    """Check one setting against the server's legal range.

    Args:
        name: Setting name (lower case)
        value: Setting value as it would appear in postgresql.conf

    Raises:
        ConfigurationError: If the value is malformed or out of range
    """
    rule = LEGAL_RANGES.get(name)
    if rule is None:
        return

    if value in rule.special:
        return

    if rule.kind == "enum":
        if value.lower() not in rule.choices:
            raise _out_of_range(name, value, rule)
        return

    if rule.kind == "bool":
        if value.lower() not in _BOOL_VALUES:
            raise _out_of_range(name, value, rule)
        return

    if rule.kind == "libraries":
        for library in (part.strip() for part in value.split(",")):
            if library and not IDENTIFIER_PATTERN.match(library):
                raise _out_of_range(name, value, rule)
        return

    if rule.kind == "memory":
        match = _MEMORY_VALUE.match(value)
        if not match:
            raise _out_of_range(name, value, rule)
        unit = match.group(2)
        amount = int(match.group(1)) * (_MEMORY_UNITS_KB[unit] if unit else rule.unit)
    elif rule.kind == "time":
        match = _TIME_VALUE.match(value)
        if not match:
            raise _out_of_range(name, value, rule)
        unit = match.group(2)
        amount = int(match.group(1)) * (_TIME_UNITS_MS[unit] if unit else rule.unit)
    elif rule.kind == "integer":
        try:
            amount = int(value)
        except ValueError:
            raise _out_of_range(name, value, rule) from None
    else:
        try:
            amount = float(value)
        except ValueError:
            raise _out_of_range(name, value, rule) from None

    if amount != amount:
        raise _out_of_range(name, value, rule)
    if rule.minimum is not None and amount < rule.minimum:
        raise _out_of_range(name, value, rule)
    if rule.maximum is not None and amount > rule.maximum:
        raise _out_of_range(name, value, rule)


def quote_value(value: str) -> str:
    """Quote a value for postgresql.conf unless it is a bare word or number."""
    if _BARE_VALUE.match(value):
        return value
    return "'" + value.replace("'", "''") + "'"


class ConfigEmitter:
    """Renders the server configuration file.

    Holds no per-render state; one instance can render any number of
    configurations.
    """

    def __init__(self, base_settings: Optional[dict[str, str]] = None) -> None:
        self.base_settings = dict(BASE_SETTINGS if base_settings is None else base_settings)

    def validate_overrides(self, overrides: Optional[dict[str, str]]) -> dict[str, str]:
        """Normalize override names and check every value.

        Returns:
            Overrides keyed by lower-case setting name

        Raises:
            ConfigurationError: If any key or value is illegal
        """
        checked: dict[str, str] = {}
        for key, value in (overrides or {}).items():
            try:
                name = validate_setting_name(key)
                clean = validate_setting_value(name, str(value))
            except ValidationError as e:
                raise ConfigurationError(e.message, hint=e.hint) from e
            check_parameter(name, clean)
            checked[name] = clean
        return checked

    def resolve(
        self,
        tuned: TunedConfig,
        overrides: Optional[dict[str, str]] = None,
        preload_libraries: Optional[list[str]] = None,
    ) -> dict[str, str]:
        """Merge computed, standing, preload and override values.

        Overrides win key by key; keys they do not name keep their
        computed value.

        Returns:
            Final settings in rendering order
        """
        checked = self.validate_overrides(overrides)

        settings: dict[str, str] = {}
        settings.update(tuned.to_settings())
        if preload_libraries is not None:
            settings["shared_preload_libraries"] = ",".join(preload_libraries)
        settings.update(self.base_settings)

        for name, value in checked.items():
            settings[name] = value
        return settings

    def render(
        self,
        tuned: TunedConfig,
        overrides: Optional[dict[str, str]] = None,
        preload_libraries: Optional[list[str]] = None,
    ) -> str:
        """Render postgresql.conf text.

        Args:
            tuned: Computed parameters
            overrides: Operator overrides (name -> value)
            preload_libraries: Reconciled shared_preload_libraries list

        Returns:
            Configuration file content ending with a newline

        Raises:
            ConfigurationError: If an override is illegal
        """
        checked = self.validate_overrides(overrides)
        settings = self.resolve(tuned, checked, preload_libraries)
        computed = tuned.to_settings()
        reasons = tuned.reasons()
        profile = tuned.profile

        sep = "# " + "=" * 74
        lines = [
            "# PostgreSQL Configuration",
            "# Generated by: azpg runtime start (do not edit; set POSTGRES_CONFIG_OVERRIDES)",
            f"# Resources: {profile.ram_mb}MB RAM ({profile.source.value}), "
            f"{profile.cpu_cores:g} CPU ({profile.cpu_source.value})",
            f"# Workload: {tuned.workload.value.upper()} - {tuned.workload.description}",
            f"# Storage: {tuned.storage.value.upper()} - {tuned.storage.description}",
            "",
        ]

        emitted: set[str] = set()

        def emit(name: str, comment: Optional[str]) -> None:
            if name in checked and name in computed and checked[name] != computed[name]:
                lines.append(f"# Override (computed: {computed[name]})")
            elif name in checked and name not in computed and name in self.base_settings:
                lines.append(f"# Override (default: {self.base_settings[name]})")
            elif comment:
                lines.append(f"# {comment}")
            lines.append(f"{name} = {quote_value(settings[name])}")
            lines.append("")
            emitted.add(name)

        for title, names in SECTIONS:
            lines.extend([sep, f"# {title}", sep])
            for name in names:
                emit(name, reasons.get(name))

        if "shared_preload_libraries" in settings:
            lines.extend([sep, "# Preload Libraries", sep])
            emit("shared_preload_libraries", "Reconciled against the libraries built into this image")

        lines.extend([sep, "# Image Defaults", sep])
        for name in self.base_settings:
            emit(name, None)

        remaining = sorted(name for name in checked if name not in emitted)
        if remaining:
            lines.extend([sep, "# Operator Overrides", sep])
            for name in remaining:
                emit(name, None)

        return "\n".join(lines)

    def as_server_args(
        self,
        tuned: TunedConfig,
        overrides: Optional[dict[str, str]] = None,
        preload_libraries: Optional[list[str]] = None,
    ) -> list[str]:
        """Render settings as ``-c name=value`` server arguments."""
        args: list[str] = []
        for name, value in self.resolve(tuned, overrides, preload_libraries).items():
            args.extend(["-c", f"{name}={value}"])
        return args
