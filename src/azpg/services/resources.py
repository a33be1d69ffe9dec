"""Container resource detection.

Resolves the memory and CPU budget of the running container into a
single immutable ResourceProfile. Sources are tried in a fixed order:

1. Explicit operator override (POSTGRES_MEMORY / POSTGRES_CPUS)
2. cgroup v2 limits (memory.max / cpu.max)
3. Whole-machine totals (/proc/meminfo / os.cpu_count)

The last memory source may overstate what the container can use, so
falling back to it always produces a warning.
"""

import math
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional

from azpg.core.config import RuntimeSettings
from azpg.core.context import ExecutionContext
from azpg.core.exceptions import ConfigurationError, ResourceError, ValidationError
from azpg.core.validation import parse_memory_mb


MIN_RAM_MB = 512
MAX_RAM_MB = 1_048_576
MIN_CPU_CORES = 1
MAX_CPU_CORES = 128

# cgroup v2 reports "unlimited" as a page-aligned value near 2**63 on some kernels
_UNLIMITED_BYTES = 1 << 60


class MemorySource(Enum):
    """Where the memory budget came from."""

    EXPLICIT = "explicit"
    CGROUP_V2 = "cgroup_v2"
    PROC_MEMINFO = "proc_meminfo"


class CpuSource(Enum):
    """Where the CPU budget came from."""

    EXPLICIT = "explicit"
    CGROUP_V2 = "cgroup_v2"
    CPU_COUNT = "cpu_count"


@dataclass(frozen=True)
class ResourceProfile:
    """Resolved container resources, created once per process start.

    Construction enforces the supported ranges; use ``create`` to clamp
    raw detected values into range first.
    """

    ram_mb: int
    cpu_cores: float
    source: MemorySource
    cpu_source: CpuSource = CpuSource.CPU_COUNT
    warnings: tuple[str, ...] = field(default=(), compare=False)

    def __post_init__(self) -> None:
        if not MIN_RAM_MB <= self.ram_mb <= MAX_RAM_MB:
            raise ResourceError(
                f"Memory budget {self.ram_mb}MB is outside the supported range "
                f"{MIN_RAM_MB}-{MAX_RAM_MB}MB",
                hint=f"Give the container at least {MIN_RAM_MB}MB of memory",
            )
        if not MIN_CPU_CORES <= self.cpu_cores <= MAX_CPU_CORES:
            raise ResourceError(
                f"CPU budget {self.cpu_cores} is outside the supported range "
                f"{MIN_CPU_CORES}-{MAX_CPU_CORES}",
            )

    @classmethod
    def create(
        cls,
        ram_mb: int,
        cpu_cores: float,
        source: MemorySource,
        cpu_source: CpuSource = CpuSource.CPU_COUNT,
    ) -> "ResourceProfile":
        """Build a profile from raw values, clamping where allowed.

        Memory below the floor is refused rather than clamped: running
        with less than the floor would under-provision silently.

        Raises:
            ResourceError: If ram_mb is below MIN_RAM_MB
        """
        warnings: list[str] = []

        if ram_mb < MIN_RAM_MB:
            raise ResourceError(
                f"Detected memory {ram_mb}MB ({source.value}) is below the "
                f"minimum of {MIN_RAM_MB}MB",
                hint=f"Raise the container memory limit or POSTGRES_MEMORY to at least {MIN_RAM_MB}MB",
            )
        if ram_mb > MAX_RAM_MB:
            warnings.append(f"Memory {ram_mb}MB exceeds {MAX_RAM_MB}MB; clamping")
            ram_mb = MAX_RAM_MB

        if cpu_cores < MIN_CPU_CORES:
            warnings.append(f"CPU count {cpu_cores} is below {MIN_CPU_CORES}; clamping to {MIN_CPU_CORES}")
            cpu_cores = float(MIN_CPU_CORES)
        elif cpu_cores > MAX_CPU_CORES:
            warnings.append(f"CPU count {cpu_cores} exceeds {MAX_CPU_CORES}; clamping to {MAX_CPU_CORES}")
            cpu_cores = float(MAX_CPU_CORES)

        return cls(
            ram_mb=ram_mb,
            cpu_cores=float(cpu_cores),
            source=source,
            cpu_source=cpu_source,
            warnings=tuple(warnings),
        )

    @property
    def cores(self) -> int:
        """Whole cores available for worker sizing."""
        return max(MIN_CPU_CORES, int(math.floor(self.cpu_cores)))


@dataclass(frozen=True)
class DetectionPaths:
    """Filesystem locations read during detection."""

    memory_max: Path = Path("/sys/fs/cgroup/memory.max")
    cpu_max: Path = Path("/sys/fs/cgroup/cpu.max")
    meminfo: Path = Path("/proc/meminfo")


def read_cgroup_memory_mb(path: Path) -> Optional[int]:
    """Read a cgroup v2 memory.max limit in MiB.

    Returns:
        Limit in MiB, or None when unlimited, absent, or unreadable
    """
    try:
        raw = path.read_text().strip()
    except OSError:
        return None

    if not raw or raw == "max":
        return None
    try:
        limit = int(raw)
    except ValueError:
        return None
    if limit <= 0 or limit >= _UNLIMITED_BYTES:
        return None
    return limit // (1024 * 1024)


def read_cgroup_cpus(path: Path) -> Optional[float]:
    """Read a cgroup v2 cpu.max quota as whole cores (rounded up).

    The file holds "<quota> <period>"; a quota of "max" means no limit.

    Returns:
        Cores, or None when unlimited, absent, or unreadable
    """
    try:
        parts = path.read_text().split()
    except OSError:
        return None

    if len(parts) != 2 or parts[0] == "max":
        return None
    try:
        quota = int(parts[0])
        period = int(parts[1])
    except ValueError:
        return None
    if quota <= 0 or period <= 0:
        return None
    return float(max(1, math.ceil(quota / period)))


def read_meminfo_mb(path: Path) -> Optional[int]:
    """Read MemTotal from /proc/meminfo in MiB."""
    try:
        with open(path) as f:
            for line in f:
                if line.startswith("MemTotal:"):
                    # Format: "MemTotal:     16384000 kB"
                    parts = line.split()
                    return int(parts[1]) // 1024
    except (OSError, ValueError, IndexError):
        return None
    return None


class ResourceDetector:
    """Resolves the container's memory and CPU budget.

    Emits one diagnostic line per source attempted; produces no
    configuration itself.
    """

    def __init__(
        self,
        ctx: ExecutionContext,
        paths: Optional[DetectionPaths] = None,
    ) -> None:
        """Initialize detector.

        Args:
            ctx: Execution context
            paths: Override detection file locations (tests, non-standard mounts)
        """
        self.ctx = ctx
        self.paths = paths or DetectionPaths()

    def detect(
        self,
        memory_override: Optional[str] = None,
        cpu_override: Optional[str] = None,
    ) -> ResourceProfile:
        """Detect resources and build the profile.

        Args:
            memory_override: Explicit memory value (MB or with unit)
            cpu_override: Explicit CPU count

        Returns:
            Immutable ResourceProfile

        Raises:
            ResourceError: If no memory source yields a value or memory is below the floor
            ConfigurationError: If an explicit override cannot be parsed
        """
        ram_mb, memory_source = self._detect_memory(memory_override)
        cpus, cpu_source = self._detect_cpus(cpu_override)

        profile = ResourceProfile.create(ram_mb, cpus, memory_source, cpu_source)
        for warning in profile.warnings:
            self.ctx.console.warn(warning)

        self.ctx.console.verbose(
            f"Resolved {profile.ram_mb}MB RAM ({profile.source.value}), "
            f"{profile.cpu_cores:g} CPU ({profile.cpu_source.value})"
        )
        return profile

    def _detect_memory(self, override: Optional[str]) -> tuple[int, MemorySource]:
        """Walk memory sources in precedence order."""
        console = self.ctx.console

        if override is not None:
            try:
                value = parse_memory_mb(override)
            except ValidationError as e:
                raise ResourceError(
                    f"POSTGRES_MEMORY is not a valid size: '{override}'",
                    hint=e.hint,
                ) from e
            console.detect("explicit", f"POSTGRES_MEMORY={override} -> {value}MB")
            return value, MemorySource.EXPLICIT
        console.detect("explicit", "POSTGRES_MEMORY not set")

        cgroup_mb = read_cgroup_memory_mb(self.paths.memory_max)
        if cgroup_mb is not None:
            console.detect("cgroup_v2", f"{self.paths.memory_max} -> {cgroup_mb}MB")
            return cgroup_mb, MemorySource.CGROUP_V2
        console.detect("cgroup_v2", f"no memory limit at {self.paths.memory_max}")

        meminfo_mb = read_meminfo_mb(self.paths.meminfo)
        if meminfo_mb is not None:
            console.detect("proc_meminfo", f"MemTotal -> {meminfo_mb}MB")
            console.warn(
                "Using host memory total; it may overstate what this container can use. "
                "Set POSTGRES_MEMORY or a container memory limit."
            )
            return meminfo_mb, MemorySource.PROC_MEMINFO
        console.detect("proc_meminfo", f"unreadable: {self.paths.meminfo}")

        raise ResourceError(
            "Could not determine available memory from any source",
            hint="Set POSTGRES_MEMORY to the container memory budget in MB",
            details=[
                "POSTGRES_MEMORY: not set",
                f"{self.paths.memory_max}: no limit",
                f"{self.paths.meminfo}: unreadable",
            ],
        )

    def _detect_cpus(self, override: Optional[str]) -> tuple[float, CpuSource]:
        """Walk CPU sources in precedence order."""
        console = self.ctx.console

        if override is not None:
            try:
                value = float(override)
            except ValueError as e:
                raise ConfigurationError(
                    f"POSTGRES_CPUS is not a number: '{override}'",
                    hint="Set POSTGRES_CPUS to a core count such as 2 or 1.5",
                ) from e
            if math.isnan(value) or math.isinf(value):
                raise ConfigurationError(f"POSTGRES_CPUS is not a finite number: '{override}'")
            console.detect("explicit", f"POSTGRES_CPUS={override}")
            return value, CpuSource.EXPLICIT

        cgroup_cpus = read_cgroup_cpus(self.paths.cpu_max)
        if cgroup_cpus is not None:
            console.detect("cgroup_v2", f"{self.paths.cpu_max} -> {cgroup_cpus:g} CPU")
            return cgroup_cpus, CpuSource.CGROUP_V2
        console.detect("cgroup_v2", f"no CPU quota at {self.paths.cpu_max}")

        count = os.cpu_count() or MIN_CPU_CORES
        console.detect("cpu_count", f"{count} CPU")
        return float(count), CpuSource.CPU_COUNT


def detect_resources(
    ctx: ExecutionContext,
    settings: RuntimeSettings,
    paths: Optional[DetectionPaths] = None,
) -> ResourceProfile:
    """Detect the resource profile using operator overrides from settings."""
    detector = ResourceDetector(ctx, paths)
    return detector.detect(memory_override=settings.memory, cpu_override=settings.cpus)
