"""Unit tests for the extension manifest model."""

import json

import pytest

from azpg.core.exceptions import ManifestError
from azpg.services.manifest import (
    BuildType,
    EntryKind,
    Manifest,
    ManifestEntry,
    ManifestLock,
    bundled_manifest,
    default_lock_path,
    dump_lock,
    load_lock,
    load_manifest,
    load_pinned_manifest,
    parse_manifest,
)


COMMIT_A = "a" * 40
COMMIT_B = "b" * 40


def source_entry(name="pg_hashids", **overrides):
    """Minimal source entry as raw manifest data."""
    data = {
        "name": name,
        "kind": "source",
        "category": "utilities",
        "source": {"repository": f"https://github.com/example/{name}.git", "tag": "v1.0.0"},
        "build": {"type": "pgxs"},
    }
    data.update(overrides)
    return data


class TestManifestEntry:
    """Tests for entry structural validation."""

    def test_builtin_entry(self):
        """Builtins need only identity fields."""
        entry = ManifestEntry.model_validate(
            {"name": "pg_trgm", "kind": "builtin", "category": "search"}
        )
        assert entry.kind is EntryKind.BUILTIN
        assert entry.enabled is True
        assert entry.library_name == "pg_trgm"
        assert entry.is_compiled is False

    def test_builtin_rejects_source(self):
        """Builtins cannot carry a build recipe."""
        data = source_entry(kind="builtin")
        with pytest.raises(ValueError):
            ManifestEntry.model_validate(data)

    def test_package_requires_package_spec(self):
        """Package entries need a package name."""
        with pytest.raises(ValueError):
            ManifestEntry.model_validate({"name": "hypopg", "kind": "package", "category": "x"})

    def test_source_requires_build(self):
        """Source entries need both source and build."""
        data = source_entry()
        del data["build"]
        with pytest.raises(ValueError):
            ManifestEntry.model_validate(data)

    def test_source_rejects_package(self):
        """Compiled entries cannot also be packages."""
        data = source_entry(package={"name": "postgresql-{pg_major}-hashids"})
        with pytest.raises(ValueError):
            ManifestEntry.model_validate(data)

    def test_invalid_name(self):
        """Entry names must be identifiers."""
        with pytest.raises(ValueError):
            ManifestEntry.model_validate(source_entry(name="pg-hashids"))

    def test_unknown_field_rejected(self):
        """Typos in field names are caught."""
        with pytest.raises(ValueError):
            ManifestEntry.model_validate(source_entry(enable=False))

    def test_repository_host_checked(self):
        """Sources must come from an allowed host."""
        data = source_entry()
        data["source"]["repository"] = "https://example.com/x.git"
        with pytest.raises(ValueError):
            ManifestEntry.model_validate(data)

    def test_source_needs_revision(self):
        """A source with neither tag nor commit is rejected."""
        data = source_entry()
        data["source"] = {"repository": "https://github.com/example/x.git"}
        with pytest.raises(ValueError):
            ManifestEntry.model_validate(data)

    def test_short_commit_rejected(self):
        """Commits must be full SHAs."""
        data = source_entry()
        data["source"]["commit"] = "abc1234"
        with pytest.raises(ValueError):
            ManifestEntry.model_validate(data)

    def test_patch_path_escape_rejected(self):
        """Patches cannot reach outside the source tree."""
        data = source_entry()
        data["build"]["patches"] = [{"file": "../etc/passwd", "find": "a", "replace": "b"}]
        with pytest.raises(ValueError):
            ManifestEntry.model_validate(data)

    def test_patch_bad_regex_rejected(self):
        """Regex patches must compile."""
        data = source_entry()
        data["build"]["patches"] = [{"file": "x.c", "find": "(", "replace": "", "regex": True}]
        with pytest.raises(ValueError):
            ManifestEntry.model_validate(data)

    def test_preload_library_name(self):
        """library_name follows preload_library_name."""
        entry = ManifestEntry.model_validate(
            source_entry(runtime={"shared_preload": True, "preload_library_name": "plan_filter"})
        )
        assert entry.library_name == "plan_filter"

    def test_requires_preload_needs_default_enable(self):
        """Only default-enabled preload entries are preloaded by default."""
        optional = ManifestEntry.model_validate(source_entry(runtime={"shared_preload": True}))
        default = ManifestEntry.model_validate(
            source_entry(runtime={"shared_preload": True, "default_enable": True})
        )
        assert optional.requires_preload is False
        assert default.requires_preload is True

    def test_create_by_default(self):
        """Preload-only and tool entries are never created."""
        created = ManifestEntry.model_validate(source_entry(runtime={"default_enable": True}))
        preload_only = ManifestEntry.model_validate(
            source_entry(runtime={"default_enable": True, "preload_only": True})
        )
        tool = ManifestEntry.model_validate(source_entry(kind="tool", runtime={"default_enable": True}))
        assert created.create_by_default is True
        assert preload_only.create_by_default is False
        assert tool.create_by_default is False


class TestPackageSpec:
    """Tests for apt package naming."""

    def test_apt_name(self):
        """{pg_major} is substituted and versions pinned."""
        entry = ManifestEntry.model_validate({
            "name": "vector",
            "kind": "package",
            "category": "ai",
            "package": {"name": "postgresql-{pg_major}-pgvector", "version": "0.8.1-1"},
        })
        assert entry.package.apt_name("18") == "postgresql-18-pgvector=0.8.1-1"


class TestParseManifest:
    """Tests for manifest parsing and loading."""

    def test_accepts_list(self):
        """A bare list is treated as the entry list."""
        manifest = parse_manifest([source_entry()])
        assert manifest.names == ["pg_hashids"]

    def test_accepts_mapping(self):
        """A mapping with 'entries' parses."""
        manifest = parse_manifest({"entries": [source_entry()]})
        assert manifest.get("pg_hashids") is not None
        assert manifest.get("missing") is None

    def test_rejects_scalar(self):
        """Scalars are not manifests."""
        with pytest.raises(ManifestError):
            parse_manifest("entries")

    def test_structural_errors_have_locations(self):
        """Errors list the failing entry and field."""
        with pytest.raises(ManifestError) as exc:
            parse_manifest([source_entry(kind="plugin")])
        assert exc.value.exit_code == 20
        assert any(line.startswith("entries.0.kind") for line in exc.value.details)

    def test_load_yaml(self, tmp_path):
        """YAML files load."""
        path = tmp_path / "extensions.yaml"
        path.write_text(
            "entries:\n"
            "  - name: pg_trgm\n"
            "    kind: builtin\n"
            "    category: search\n"
        )
        assert load_manifest(path).names == ["pg_trgm"]

    def test_load_json(self, tmp_path):
        """JSON files load by extension."""
        path = tmp_path / "extensions.json"
        path.write_text(json.dumps({"entries": [source_entry()]}))
        assert load_manifest(path).names == ["pg_hashids"]

    def test_load_missing(self, tmp_path):
        """A missing file is a manifest error."""
        with pytest.raises(ManifestError) as exc:
            load_manifest(tmp_path / "missing.yaml")
        assert "not found" in str(exc.value)

    def test_load_invalid_yaml(self, tmp_path):
        """Unparseable YAML is a manifest error."""
        path = tmp_path / "extensions.yaml"
        path.write_text("entries: [\n")
        with pytest.raises(ManifestError):
            load_manifest(path)


class TestBundledManifest:
    """Tests for the manifest shipped with the package."""

    def test_loads(self):
        """The bundled manifest parses."""
        manifest = bundled_manifest()
        assert len(manifest.entries) > 30
        assert len(set(manifest.names)) == len(manifest.names)

    def test_kinds_present(self):
        """All four kinds are represented."""
        kinds = {entry.kind for entry in bundled_manifest().entries}
        assert kinds == set(EntryKind)

    def test_default_preload_entries(self):
        """The default preload set is declared in the manifest."""
        manifest = bundled_manifest()
        preloaded = {e.library_name for e in manifest.enabled_entries if e.requires_preload}
        assert preloaded == {"auto_explain", "pg_cron", "pg_stat_statements", "pgaudit"}

    def test_cargo_pgrx_entries(self):
        """Rust extensions use the cargo-pgrx build."""
        wrappers = bundled_manifest().get("wrappers")
        assert wrappers.build.type is BuildType.CARGO_PGRX
        assert wrappers.source.commit is not None

    def test_disabled_entry_has_reason(self):
        """Disabled entries explain why."""
        for entry in bundled_manifest().entries:
            if not entry.enabled:
                assert entry.disabled_reason


class TestLock:
    """Tests for lock files and commit pinning."""

    def test_with_commits_fills_tag_only_sources(self):
        """Lock commits pin entries that only have a tag."""
        manifest = parse_manifest([source_entry()])
        pinned = manifest.with_commits({"pg_hashids": COMMIT_A})
        assert pinned.get("pg_hashids").source.commit == COMMIT_A
        assert manifest.get("pg_hashids").source.commit is None

    def test_with_commits_keeps_manifest_commit(self):
        """A commit in the manifest wins over the lock."""
        data = source_entry()
        data["source"]["commit"] = COMMIT_B
        pinned = parse_manifest([data]).with_commits({"pg_hashids": COMMIT_A})
        assert pinned.get("pg_hashids").source.commit == COMMIT_B

    def test_lock_rejects_short_commit(self):
        """Lock commits must be full SHAs."""
        with pytest.raises(ValueError):
            ManifestLock(commits={"x": "abc"})

    def test_missing_lock_is_empty(self, tmp_path):
        """No lock file means nothing is pinned."""
        assert load_lock(tmp_path / "missing.lock.yaml").commits == {}

    def test_dump_sorted(self):
        """Lock output is sorted by entry name."""
        text = dump_lock(ManifestLock(commits={"zeta": COMMIT_A, "alpha": COMMIT_B}))
        assert text.index("alpha") < text.index("zeta")

    def test_dump_then_load(self, tmp_path):
        """A dumped lock loads back."""
        path = tmp_path / "extensions.lock.yaml"
        path.write_text(dump_lock(ManifestLock(commits={"pg_hashids": COMMIT_A})))
        assert load_lock(path).commits == {"pg_hashids": COMMIT_A}

    def test_invalid_lock(self, tmp_path):
        """Malformed locks are manifest errors."""
        path = tmp_path / "extensions.lock.yaml"
        path.write_text("commits:\n  pg_hashids: nope\n")
        with pytest.raises(ManifestError):
            load_lock(path)

    def test_default_lock_path(self, tmp_path):
        """The lock sits next to the manifest."""
        manifest_path = tmp_path / "extensions.yaml"
        assert default_lock_path(manifest_path) == tmp_path / "extensions.lock.yaml"

    def test_load_pinned_manifest(self, tmp_path):
        """The default lock is applied when loading a pinned manifest."""
        manifest_path = tmp_path / "extensions.yaml"
        manifest_path.write_text(json.dumps({"entries": [source_entry()]}))
        (tmp_path / "extensions.lock.yaml").write_text(f"commits:\n  pg_hashids: {COMMIT_A}\n")

        manifest = load_pinned_manifest(manifest_path)

        assert isinstance(manifest, Manifest)
        assert manifest.get("pg_hashids").source.commit == COMMIT_A
