"""Unit tests for the tuning policy."""

import pytest

from azpg.services.resources import MAX_RAM_MB, MIN_RAM_MB, MemorySource, ResourceProfile
from azpg.services.tuning import (
    StorageProfile,
    TunedConfig,
    WorkloadProfile,
    max_connections_for,
    shared_buffers_mb,
    tune,
    wal_buffers_mb,
    work_mem_mb,
)


def _profile(ram_mb: int, cpus: float = 2) -> ResourceProfile:
    return ResourceProfile.create(ram_mb, cpus, MemorySource.EXPLICIT)


class TestWorkloadProfile:
    """Tests for WorkloadProfile enum."""

    def test_workload_values(self):
        """Workload profiles should have correct values."""
        assert WorkloadProfile.WEB.value == "web"
        assert WorkloadProfile.OLTP.value == "oltp"
        assert WorkloadProfile.DW.value == "dw"
        assert WorkloadProfile.MIXED.value == "mixed"

    def test_workload_descriptions(self):
        """Workload profiles should have descriptions."""
        assert "transaction" in WorkloadProfile.OLTP.description.lower()
        assert "analytics" in WorkloadProfile.DW.description.lower()
        assert "balanced" in WorkloadProfile.MIXED.description.lower()

    def test_connection_ceilings(self):
        """Each workload has a fixed connection ceiling."""
        assert WorkloadProfile.WEB.max_connections == 200
        assert WorkloadProfile.OLTP.max_connections == 300
        assert WorkloadProfile.DW.max_connections == 100
        assert WorkloadProfile.MIXED.max_connections == 120


class TestStorageProfile:
    """Tests for StorageProfile constants."""

    def test_random_page_cost(self):
        """Flash and SAN are cheap to seek, spinning disk is not."""
        assert StorageProfile.SSD.random_page_cost == 1.1
        assert StorageProfile.HDD.random_page_cost == 4.0
        assert StorageProfile.SAN.random_page_cost == 1.1

    def test_io_concurrency(self):
        """I/O concurrency follows the storage type."""
        assert StorageProfile.SSD.effective_io_concurrency == 200
        assert StorageProfile.HDD.effective_io_concurrency == 2
        assert StorageProfile.SAN.effective_io_concurrency == 300
        assert StorageProfile.HDD.maintenance_io_concurrency == 10


class TestSharedBuffers:
    """Tests for shared_buffers sizing."""

    @pytest.mark.parametrize("ram,expected", [
        (512, 128),
        (2048, 512),
        (8192, 2048),
        (16384, 3276),
        (65536, 9830),
        (MAX_RAM_MB, 32768),
    ])
    def test_tiers(self, ram, expected):
        """Ratio steps down as RAM grows, capped at 32GB."""
        assert shared_buffers_mb(ram) == expected

    def test_band_across_supported_range(self):
        """shared_buffers stays within its band and below effective_cache_size."""
        ram = MIN_RAM_MB
        while ram <= MAX_RAM_MB:
            tuned = tune(_profile(ram))
            sb = tuned.shared_buffers_mb
            assert sb <= ram * 25 // 100, ram
            assert sb >= min(ram * 15 // 100, 32768), ram
            assert sb <= tuned.effective_cache_size_mb, ram
            ram = ram * 5 // 4 + 1
        tuned = tune(_profile(MAX_RAM_MB))
        assert tuned.shared_buffers_mb <= tuned.effective_cache_size_mb


class TestMaxConnections:
    """Tests for the discrete max_connections step."""

    def test_small_ram_gets_half(self):
        """Below 1GB a workload gets half its ceiling."""
        assert max_connections_for(512, WorkloadProfile.WEB) == 100
        assert max_connections_for(1023, WorkloadProfile.OLTP) == 150

    def test_medium_ram_gets_seventy_percent(self):
        """Between 1GB and 2GB a workload gets 70% of its ceiling."""
        assert max_connections_for(1024, WorkloadProfile.WEB) == 140
        assert max_connections_for(2047, WorkloadProfile.MIXED) == 84

    def test_full_ceiling_from_two_gigabytes(self):
        """From 2GB the full ceiling applies."""
        assert max_connections_for(2048, WorkloadProfile.WEB) == 200
        assert max_connections_for(MAX_RAM_MB, WorkloadProfile.OLTP) == 300

    def test_only_discrete_values(self):
        """max_connections never tracks RAM continuously."""
        values = {
            max_connections_for(ram, WorkloadProfile.DW)
            for ram in range(MIN_RAM_MB, 65536, 97)
        }
        assert values == {50, 70, 100}


class TestWorkMem:
    """Tests for work_mem sizing."""

    def test_floor_is_one(self):
        """A starved pool still yields 1MB."""
        assert work_mem_mb(512, 128, 100, WorkloadProfile.WEB) == 1

    def test_web_capped(self):
        """OLTP-style workloads are capped at 32MB."""
        assert work_mem_mb(MAX_RAM_MB, 32768, 200, WorkloadProfile.WEB) == 32

    def test_analytic_caps_scale(self):
        """DW and mixed workloads get larger caps on bigger hosts."""
        assert work_mem_mb(MAX_RAM_MB, 32768, 100, WorkloadProfile.DW) == 256
        assert work_mem_mb(16384, 3276, 100, WorkloadProfile.DW) == 28
        assert work_mem_mb(MAX_RAM_MB, 32768, 120, WorkloadProfile.MIXED) == 256


class TestWalBuffers:
    """Tests for wal_buffers sizing."""

    def test_bounds(self):
        """wal_buffers is 3% of shared_buffers in [1, 16]."""
        assert wal_buffers_mb(64) == 1
        assert wal_buffers_mb(128) == 3
        assert wal_buffers_mb(32768) == 16

    def test_fifteen_rounds_to_sixteen(self):
        """15MB rounds up to a full WAL segment."""
        assert wal_buffers_mb(512) == 16


class TestTune:
    """Tests for the full tuning function."""

    def test_web_ssd_two_gigabytes(self):
        """2GB web container on SSD gets the reference values."""
        tuned = tune(_profile(2048, 2), WorkloadProfile.WEB, StorageProfile.SSD)

        assert tuned.shared_buffers_mb == 512
        assert tuned.max_connections == 200
        assert tuned.random_page_cost == 1.1
        assert tuned.effective_cache_size_mb == 1536
        assert tuned.work_mem_mb == 1
        assert tuned.maintenance_work_mem_mb == 128
        assert tuned.wal_buffers_mb == 16
        assert tuned.max_worker_processes == 3
        assert tuned.max_parallel_workers == 2
        assert tuned.max_parallel_workers_per_gather == 1
        assert tuned.max_parallel_maintenance_workers == 1
        assert tuned.io_workers == 1

    def test_pure(self):
        """Identical inputs give equal results."""
        a = tune(_profile(8192, 4), WorkloadProfile.OLTP, StorageProfile.HDD)
        b = tune(_profile(8192, 4), WorkloadProfile.OLTP, StorageProfile.HDD)
        assert a == b
        assert a.to_settings() == b.to_settings()

    def test_defaults_are_mixed_ssd(self):
        """Workload and storage default to mixed and SSD."""
        tuned = tune(_profile(4096))
        assert tuned.workload is WorkloadProfile.MIXED
        assert tuned.storage is StorageProfile.SSD

    def test_dw_enables_jit_and_statistics(self):
        """Analytical workloads turn on JIT and raise statistics."""
        tuned = tune(_profile(16384, 8), WorkloadProfile.DW)
        assert tuned.jit is True
        assert tuned.default_statistics_target == 500
        assert tuned.maintenance_work_mem_mb == 2048

    def test_parallelism_limits(self):
        """Worker counts stay within engine limits on large hosts."""
        tuned = tune(_profile(MAX_RAM_MB, 128))
        assert tuned.max_worker_processes == 64
        assert tuned.max_parallel_workers == 64
        assert tuned.max_parallel_maintenance_workers == 4
        assert tuned.io_workers == 32

    def test_fractional_cpu_floors(self):
        """Fractional CPU budgets are floored to whole cores."""
        tuned = tune(_profile(4096, 1.5))
        assert tuned.max_parallel_workers == 1
        assert tuned.max_worker_processes == 2

    def test_to_settings_renders_units(self):
        """Memory renders in MB, booleans as on/off."""
        settings = tune(_profile(2048), WorkloadProfile.WEB).to_settings()
        assert settings["shared_buffers"] == "512MB"
        assert settings["random_page_cost"] == "1.1"
        assert settings["jit"] == "off"
        assert settings["wal_compression"] == "lz4"
        assert list(settings)[0] == "shared_buffers"

    def test_reasons_cover_every_setting(self):
        """Every rendered setting has a one-line reason."""
        tuned = tune(_profile(2048))
        assert set(tuned.reasons()) == set(tuned.to_settings())

    def test_returns_frozen_config(self):
        """TunedConfig cannot be mutated."""
        tuned = tune(_profile(2048))
        assert isinstance(tuned, TunedConfig)
        with pytest.raises(AttributeError):
            tuned.max_connections = 1
