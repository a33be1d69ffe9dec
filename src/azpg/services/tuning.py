"""PostgreSQL tuning policy.

A pure mapping from (resources, workload, storage) to a complete set of
server parameters. Nothing here reads the environment; the detector
builds the ResourceProfile and the emitter renders the result.
"""

from dataclasses import dataclass
from enum import Enum

from azpg.services.resources import ResourceProfile


class WorkloadProfile(Enum):
    """Operator-selected workload category."""

    WEB = "web"
    OLTP = "oltp"
    DW = "dw"
    MIXED = "mixed"

    @property
    def description(self) -> str:
        """Human-readable description of the workload."""
        descriptions = {
            "web": "Many short requests from application servers",
            "oltp": "High concurrency, fast transactions",
            "dw": "Complex queries over large datasets (analytics/reporting)",
            "mixed": "Balanced workload (general purpose)",
        }
        return descriptions[self.value]

    @property
    def max_connections(self) -> int:
        """Connection ceiling for this workload."""
        return {"web": 200, "oltp": 300, "dw": 100, "mixed": 120}[self.value]

    @property
    def min_wal_size_mb(self) -> int:
        return {"web": 1024, "oltp": 2048, "dw": 4096, "mixed": 1024}[self.value]

    @property
    def max_wal_size_mb(self) -> int:
        return {"web": 4096, "oltp": 8192, "dw": 16384, "mixed": 4096}[self.value]

    @property
    def statistics_target(self) -> int:
        """default_statistics_target; elevated for analytical planning."""
        return 500 if self is WorkloadProfile.DW else 100


class StorageProfile(Enum):
    """Operator-selected storage category."""

    SSD = "ssd"
    HDD = "hdd"
    SAN = "san"

    @property
    def description(self) -> str:
        descriptions = {
            "ssd": "Local flash; random reads cost close to sequential",
            "hdd": "Spinning disk; random reads are expensive",
            "san": "Networked storage with deep request queues",
        }
        return descriptions[self.value]

    @property
    def random_page_cost(self) -> float:
        return {"ssd": 1.1, "hdd": 4.0, "san": 1.1}[self.value]

    @property
    def effective_io_concurrency(self) -> int:
        return {"ssd": 200, "hdd": 2, "san": 300}[self.value]

    @property
    def maintenance_io_concurrency(self) -> int:
        return {"ssd": 20, "hdd": 10, "san": 20}[self.value]


# =============================================================================
# Sizing constants
# =============================================================================

SHARED_BUFFERS_FLOOR_MB = 64
SHARED_BUFFERS_CAP_MB = 32768

MAINTENANCE_WORK_MEM_FLOOR_MB = 32
MAINTENANCE_WORK_MEM_CAP_MB = 2048

WORK_MEM_CAP_MB = 32
OS_RESERVE_MB = 512
CONNECTION_OVERHEAD_MB = 10
WORK_MEM_POOL_FLOOR_MB = 256
# Sort/hash operations a single query may run concurrently
WORK_MEM_OPS_PER_CONNECTION = 4

MIN_CONNECTIONS = 20

# Engine hard limits the parallelism settings are capped at
MAX_WORKER_PROCESSES = 64
MAX_IO_WORKERS = 32

# (exclusive RAM upper bound in MB, percent of the workload ceiling)
CONNECTION_TIERS: tuple[tuple[int, int], ...] = (
    (1024, 50),
    (2048, 70),
)

# (inclusive RAM upper bound in MB, percent of RAM for shared_buffers)
SHARED_BUFFERS_TIERS: tuple[tuple[int, int], ...] = (
    (8192, 25),
    (32768, 20),
)
SHARED_BUFFERS_LARGE_PCT = 15

# Analytical workloads get a larger per-operation budget on bigger hosts
# (RAM floor in MB, work_mem cap in MB), highest first
ANALYTIC_WORK_MEM_CAPS: tuple[tuple[int, int], ...] = (
    (32768, 256),
    (8192, 128),
    (2048, 64),
)


@dataclass(frozen=True)
class TunedConfig:
    """Derived server parameters for one container start.

    Memory values are whole megabytes. Never persisted or mutated; if
    an input changes the whole value is recomputed with ``tune``.
    """

    profile: ResourceProfile
    workload: WorkloadProfile
    storage: StorageProfile

    # Memory
    shared_buffers_mb: int
    effective_cache_size_mb: int
    work_mem_mb: int
    maintenance_work_mem_mb: int
    wal_buffers_mb: int

    # Connections and parallelism
    max_connections: int
    max_worker_processes: int
    max_parallel_workers: int
    max_parallel_workers_per_gather: int
    max_parallel_maintenance_workers: int
    io_workers: int

    # Disk I/O
    random_page_cost: float
    effective_io_concurrency: int
    maintenance_io_concurrency: int

    # WAL
    min_wal_size_mb: int
    max_wal_size_mb: int
    checkpoint_completion_target: float
    wal_compression: str

    # Planner
    default_statistics_target: int
    jit: bool

    def to_settings(self) -> dict[str, str]:
        """Render every parameter as a postgresql.conf value, in a fixed order."""
        return {
            "shared_buffers": f"{self.shared_buffers_mb}MB",
            "effective_cache_size": f"{self.effective_cache_size_mb}MB",
            "work_mem": f"{self.work_mem_mb}MB",
            "maintenance_work_mem": f"{self.maintenance_work_mem_mb}MB",
            "wal_buffers": f"{self.wal_buffers_mb}MB",
            "max_connections": str(self.max_connections),
            "max_worker_processes": str(self.max_worker_processes),
            "max_parallel_workers": str(self.max_parallel_workers),
            "max_parallel_workers_per_gather": str(self.max_parallel_workers_per_gather),
            "max_parallel_maintenance_workers": str(self.max_parallel_maintenance_workers),
            "io_workers": str(self.io_workers),
            "random_page_cost": str(self.random_page_cost),
            "effective_io_concurrency": str(self.effective_io_concurrency),
            "maintenance_io_concurrency": str(self.maintenance_io_concurrency),
            "min_wal_size": f"{self.min_wal_size_mb}MB",
            "max_wal_size": f"{self.max_wal_size_mb}MB",
            "checkpoint_completion_target": str(self.checkpoint_completion_target),
            "wal_compression": self.wal_compression,
            "default_statistics_target": str(self.default_statistics_target),
            "jit": "on" if self.jit else "off",
        }

    def reasons(self) -> dict[str, str]:
        """One-line explanation per parameter, used as conf comments."""
        ram = self.profile.ram_mb
        cores = self.profile.cores
        workload = self.workload.value.upper()
        return {
            "shared_buffers": f"{_shared_buffers_pct(ram)}% of {ram}MB RAM "
                              f"(floor {SHARED_BUFFERS_FLOOR_MB}MB, cap {SHARED_BUFFERS_CAP_MB}MB)",
            "effective_cache_size": "75% of RAM - OS file system cache estimate",
            "work_mem": f"Per-operation memory for sorts/hashes ({workload})",
            "maintenance_work_mem": "Memory for VACUUM, CREATE INDEX, ALTER TABLE",
            "wal_buffers": "3% of shared_buffers, capped at one WAL segment",
            "max_connections": f"{workload} ceiling {self.workload.max_connections}, "
                               f"scaled for {ram}MB RAM",
            "max_worker_processes": f"{cores} CPU + 50% for background workers",
            "max_parallel_workers": f"Match CPU core count ({cores})",
            "max_parallel_workers_per_gather": "Half the cores per query",
            "max_parallel_maintenance_workers": "Parallel workers for maintenance operations",
            "io_workers": "One asynchronous I/O worker per four cores",
            "random_page_cost": f"{self.storage.value.upper()}: {self.storage.description}",
            "effective_io_concurrency": f"Concurrent I/O requests for {self.storage.value.upper()}",
            "maintenance_io_concurrency": f"Maintenance I/O requests for {self.storage.value.upper()}",
            "min_wal_size": "WAL file retention minimum",
            "max_wal_size": f"WAL headroom for {workload} workload",
            "checkpoint_completion_target": "Spread checkpoint I/O over time",
            "wal_compression": "Compress full-page images in WAL",
            "default_statistics_target": "Better statistics for complex analytical queries"
            if self.workload is WorkloadProfile.DW else "Standard statistics collection",
            "jit": "JIT compilation helps long analytical queries"
            if self.jit else "JIT overhead not beneficial for short queries",
        }


def _clamp(value: int, low: int, high: int) -> int:
    return max(low, min(value, high))


def _shared_buffers_pct(ram_mb: int) -> int:
    for upper, pct in SHARED_BUFFERS_TIERS:
        if ram_mb <= upper:
            return pct
    return SHARED_BUFFERS_LARGE_PCT


def shared_buffers_mb(ram_mb: int) -> int:
    """Tiered share of RAM: 25% up to 8GB, 20% up to 32GB, 15% above."""
    value = ram_mb * _shared_buffers_pct(ram_mb) // 100
    return _clamp(value, SHARED_BUFFERS_FLOOR_MB, SHARED_BUFFERS_CAP_MB)


def max_connections_for(ram_mb: int, workload: WorkloadProfile) -> int:
    """Select max_connections from the workload ceiling by RAM tier.

    Small containers get a fixed fraction of the ceiling so per-connection
    overhead cannot exhaust memory. The result only ever takes one of a
    few discrete values per workload.
    """
    ceiling = workload.max_connections
    for upper, pct in CONNECTION_TIERS:
        if ram_mb < upper:
            return max(MIN_CONNECTIONS, ceiling * pct // 100)
    return ceiling


def work_mem_mb(
    ram_mb: int,
    shared_buffers: int,
    max_connections: int,
    workload: WorkloadProfile,
) -> int:
    """Per-operation memory from what is left after buffers and connections."""
    pool = ram_mb - shared_buffers - max_connections * CONNECTION_OVERHEAD_MB - OS_RESERVE_MB
    pool = max(pool, WORK_MEM_POOL_FLOOR_MB)
    value = max(1, pool // (max_connections * WORK_MEM_OPS_PER_CONNECTION))

    cap = WORK_MEM_CAP_MB
    if workload in (WorkloadProfile.DW, WorkloadProfile.MIXED):
        for floor, analytic_cap in ANALYTIC_WORK_MEM_CAPS:
            if ram_mb >= floor:
                cap = analytic_cap
                break
    return min(value, cap)


def wal_buffers_mb(shared_buffers: int) -> int:
    """3% of shared_buffers in [1, 16]MB; 15MB rounds up to a full segment."""
    value = _clamp(shared_buffers * 3 // 100, 1, 16)
    return 16 if value == 15 else value


def tune(
    profile: ResourceProfile,
    workload: WorkloadProfile = WorkloadProfile.MIXED,
    storage: StorageProfile = StorageProfile.SSD,
) -> TunedConfig:
    """Derive server parameters from resources and operator profiles.

    Args:
        profile: Detected container resources
        workload: Workload category
        storage: Storage category

    Returns:
        Fully populated TunedConfig
    """
    ram = profile.ram_mb
    cores = profile.cores

    shared = shared_buffers_mb(ram)
    connections = max_connections_for(ram, workload)

    if workload is WorkloadProfile.DW:
        maintenance = ram // 8
    else:
        maintenance = ram // 16
    maintenance = _clamp(maintenance, MAINTENANCE_WORK_MEM_FLOOR_MB, MAINTENANCE_WORK_MEM_CAP_MB)

    worker_processes = _clamp(cores + cores // 2, 2, MAX_WORKER_PROCESSES)
    parallel_workers = min(cores, worker_processes)

    return TunedConfig(
        profile=profile,
        workload=workload,
        storage=storage,
        shared_buffers_mb=shared,
        effective_cache_size_mb=max(ram * 3 // 4, shared * 2),
        work_mem_mb=work_mem_mb(ram, shared, connections, workload),
        maintenance_work_mem_mb=maintenance,
        wal_buffers_mb=wal_buffers_mb(shared),
        max_connections=connections,
        max_worker_processes=worker_processes,
        max_parallel_workers=parallel_workers,
        max_parallel_workers_per_gather=min(max(1, cores // 2), parallel_workers),
        max_parallel_maintenance_workers=min(4, max(1, cores // 2)),
        io_workers=_clamp(cores // 4, 1, MAX_IO_WORKERS),
        random_page_cost=storage.random_page_cost,
        effective_io_concurrency=storage.effective_io_concurrency,
        maintenance_io_concurrency=storage.maintenance_io_concurrency,
        min_wal_size_mb=workload.min_wal_size_mb,
        max_wal_size_mb=workload.max_wal_size_mb,
        checkpoint_completion_target=0.9,
        wal_compression="lz4",
        default_statistics_target=workload.statistics_target,
        jit=workload is WorkloadProfile.DW,
    )
