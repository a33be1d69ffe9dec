"""Unit tests for runtime and build settings."""

from pathlib import Path

import pytest
import yaml

from azpg.core.config import (
    DEFAULT_CONF_PATH,
    BuildSettings,
    RuntimeSettings,
    parse_override_pairs,
    split_library_list,
)
from azpg.core.exceptions import ConfigurationError


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Remove runtime variables the host might have set."""
    for name in (
        "POSTGRES_MEMORY",
        "POSTGRES_CPUS",
        "POSTGRES_WORKLOAD_TYPE",
        "POSTGRES_STORAGE_TYPE",
        "POSTGRES_SHARED_PRELOAD_LIBRARIES",
        "POSTGRES_CONFIG_OVERRIDES",
        "AZPG_CONF_PATH",
    ):
        monkeypatch.delenv(name, raising=False)


class TestRuntimeSettings:
    """Tests for RuntimeSettings."""

    def test_defaults(self):
        """Unset environment gives mixed/ssd and no overrides."""
        settings = RuntimeSettings.load()
        assert settings.memory is None
        assert settings.workload_type == "mixed"
        assert settings.storage_type == "ssd"
        assert settings.conf_path == DEFAULT_CONF_PATH
        assert settings.requested_preload() is None

    def test_reads_environment(self, monkeypatch):
        """Values come from the POSTGRES_* variables."""
        monkeypatch.setenv("POSTGRES_MEMORY", "4GB")
        monkeypatch.setenv("POSTGRES_WORKLOAD_TYPE", "OLTP")
        monkeypatch.setenv("POSTGRES_STORAGE_TYPE", " hdd ")

        settings = RuntimeSettings.load()

        assert settings.memory == "4GB"
        assert settings.workload_type == "oltp"
        assert settings.storage_type == "hdd"

    def test_unknown_workload_fails(self, monkeypatch):
        """Unrecognized workloads are fatal, never defaulted."""
        monkeypatch.setenv("POSTGRES_WORKLOAD_TYPE", "batch")

        with pytest.raises(ConfigurationError) as exc:
            RuntimeSettings.load()
        assert exc.value.exit_code == 2
        assert any("batch" in line for line in exc.value.details)

    def test_unknown_storage_fails(self, monkeypatch):
        """Unrecognized storage types are fatal."""
        monkeypatch.setenv("POSTGRES_STORAGE_TYPE", "nvme")

        with pytest.raises(ConfigurationError):
            RuntimeSettings.load()

    def test_blank_values_are_unset(self, monkeypatch):
        """Empty strings count as not set."""
        monkeypatch.setenv("POSTGRES_MEMORY", "  ")
        monkeypatch.setenv("POSTGRES_SHARED_PRELOAD_LIBRARIES", "")

        settings = RuntimeSettings.load()

        assert settings.memory is None
        assert settings.requested_preload() is None

    def test_requested_preload(self, monkeypatch):
        """The preload variable is split into names."""
        monkeypatch.setenv("POSTGRES_SHARED_PRELOAD_LIBRARIES", "pg_cron, 'pgaudit',")
        assert RuntimeSettings.load().requested_preload() == ["pg_cron", "pgaudit"]

    def test_parsed_overrides(self, monkeypatch):
        """Overrides parse into a name -> value mapping."""
        monkeypatch.setenv("POSTGRES_CONFIG_OVERRIDES", "work_mem=64MB; max_connections=150")
        assert RuntimeSettings.load().parsed_overrides() == {
            "work_mem": "64MB",
            "max_connections": "150",
        }


class TestParseOverridePairs:
    """Tests for override string parsing."""

    def test_empty(self):
        """No overrides gives an empty mapping."""
        assert parse_override_pairs(None) == {}
        assert parse_override_pairs("") == {}

    def test_newline_separated(self):
        """Newlines separate pairs as well as semicolons."""
        raw = "work_mem=8MB\nlog_statement=ddl"
        assert parse_override_pairs(raw) == {"work_mem": "8MB", "log_statement": "ddl"}

    def test_value_may_contain_equals_and_commas(self):
        """Only the first '=' splits the pair."""
        raw = "search_path=a,b;application_name=x=y"
        assert parse_override_pairs(raw) == {"search_path": "a,b", "application_name": "x=y"}

    def test_later_pair_wins(self):
        """Repeated keys keep the last value."""
        assert parse_override_pairs("work_mem=1MB;WORK_MEM=2MB") == {"work_mem": "2MB"}

    def test_malformed_pair(self):
        """A pair without '=' is fatal."""
        with pytest.raises(ConfigurationError) as exc:
            parse_override_pairs("work_mem")
        assert "work_mem" in str(exc.value)

    def test_invalid_name(self):
        """Illegal setting names are configuration errors."""
        with pytest.raises(ConfigurationError):
            parse_override_pairs("work-mem=1MB")


class TestSplitLibraryList:
    """Tests for library list splitting."""

    def test_strips_quotes_and_blanks(self):
        """Quotes and empty items are removed."""
        assert split_library_list("'a', \"b\",,c ") == ["a", "b", "c"]


class TestBuildSettings:
    """Tests for BuildSettings."""

    def test_defaults(self):
        """Defaults match the stock image layout."""
        settings = BuildSettings()
        assert settings.pg_major == "18"
        assert settings.jobs == 4
        assert settings.pg_config_path == Path("/usr/lib/postgresql/18/bin/pg_config")
        assert settings.library_dir == Path("/usr/lib/postgresql/18/lib")
        assert settings.control_dir == Path("/usr/share/postgresql/18/extension")
        assert settings.host_allowlist == frozenset({"github.com", "gitlab.com"})

    def test_explicit_paths_win(self, tmp_path):
        """Configured directories replace the derived ones."""
        settings = BuildSettings(pkglibdir=tmp_path / "lib", pg_config=tmp_path / "pg_config")
        assert settings.library_dir == tmp_path / "lib"
        assert settings.pg_config_path == tmp_path / "pg_config"

    def test_load_yaml(self, tmp_path):
        """Settings load from a YAML file."""
        path = tmp_path / "build.yaml"
        path.write_text("pg_major: '17'\njobs: 8\nallowed_git_hosts: [github.com]\n")

        settings = BuildSettings.load(path)

        assert settings.pg_major == "17"
        assert settings.jobs == 8
        assert settings.host_allowlist == frozenset({"github.com"})

    def test_load_missing_file(self, tmp_path):
        """An explicit path that does not exist is an error."""
        with pytest.raises(ConfigurationError) as exc:
            BuildSettings.load(tmp_path / "missing.yaml")
        assert "not found" in str(exc.value)

    def test_load_or_default_missing(self, tmp_path):
        """load_or_default falls back to defaults."""
        settings = BuildSettings.load_or_default(tmp_path / "missing.yaml")
        assert settings == BuildSettings()

    def test_invalid_yaml(self, tmp_path):
        """Broken YAML is a configuration error."""
        path = tmp_path / "build.yaml"
        path.write_text("jobs: [unclosed\n")
        with pytest.raises(ConfigurationError):
            BuildSettings.load(path)

    def test_invalid_values(self, tmp_path):
        """Out-of-range values report the failing field."""
        path = tmp_path / "build.yaml"
        path.write_text("pg_major: '9'\njobs: 0\n")

        with pytest.raises(ConfigurationError) as exc:
            BuildSettings.load(path)
        assert any(line.startswith("pg_major") for line in exc.value.details)
        assert any(line.startswith("jobs") for line in exc.value.details)

    def test_to_yaml_round_trips(self):
        """to_yaml output loads back to equal settings."""
        settings = BuildSettings(jobs=2)
        assert BuildSettings(**yaml.safe_load(settings.to_yaml())) == settings
