"""Unit tests for cross-entry manifest checks."""

import pytest

from azpg.core.exceptions import ManifestError
from azpg.services.dependencies import ManifestViolation, ViolationCode, require_valid, validate
from azpg.services.manifest import ManifestEntry, bundled_manifest, parse_manifest


def builtin(name, **overrides):
    data = {"name": name, "kind": "builtin", "category": "core"}
    data.update(overrides)
    return data


def package(name, **overrides):
    data = {
        "name": name,
        "kind": "package",
        "category": "core",
        "package": {"name": f"postgresql-{{pg_major}}-{name}"},
    }
    data.update(overrides)
    return data


def disable(manifest, name, reason="disabled for test"):
    """Copy of a manifest with one entry disabled."""
    copy = manifest.model_copy(deep=True)
    entry = copy.get(name)
    entry.enabled = False
    entry.disabled_reason = reason
    return copy


class TestValidate:
    """Tests for validate()."""

    def test_consistent_manifest(self):
        """A consistent entry set has no violations."""
        manifest = parse_manifest([
            package("hypopg"),
            package("index_advisor", dependencies=["hypopg"]),
        ])
        assert validate(manifest.entries) == []

    def test_disabled_dependency(self):
        """An enabled entry cannot depend on a disabled one."""
        manifest = parse_manifest([
            package("hypopg", enabled=False, disabled_reason="upstream build broken"),
            package("index_advisor", dependencies=["hypopg"]),
        ])

        violations = validate(manifest.entries)

        assert len(violations) == 1
        violation = violations[0]
        assert violation.code is ViolationCode.DISABLED_DEPENDENCY
        assert violation.entry == "index_advisor"
        assert violation.dependency == "hypopg"
        assert "upstream build broken" in violation.message

    def test_disabled_dependent_is_fine(self):
        """A disabled entry may depend on anything."""
        manifest = parse_manifest([
            package("hypopg", enabled=False),
            package("index_advisor", enabled=False, dependencies=["hypopg"]),
        ])
        assert validate(manifest.entries) == []

    def test_unknown_dependency(self):
        """Dependencies must name manifest entries."""
        manifest = parse_manifest([package("pgrouting", dependencies=["postgis"])])

        violations = validate(manifest.entries)

        assert [v.code for v in violations] == [ViolationCode.UNKNOWN_DEPENDENCY]
        assert violations[0].dependency == "postgis"

    def test_builtin_disabled(self):
        """Built-ins cannot be disabled."""
        manifest = parse_manifest([builtin("pg_trgm", enabled=False)])

        violations = validate(manifest.entries)

        assert [v.code for v in violations] == [ViolationCode.BUILTIN_DISABLED]
        assert violations[0].entry == "pg_trgm"

    def test_preload_disabled(self):
        """Default-preloaded entries cannot be disabled."""
        manifest = parse_manifest([
            package("pg_cron", enabled=False, runtime={"shared_preload": True, "default_enable": True}),
        ])

        violations = validate(manifest.entries)

        assert [v.code for v in violations] == [ViolationCode.PRELOAD_DISABLED]

    def test_optional_preload_may_be_disabled(self):
        """Preload-capable entries outside the default list can be disabled."""
        manifest = parse_manifest([
            package("timescaledb", enabled=False, runtime={"shared_preload": True}),
        ])
        assert validate(manifest.entries) == []

    def test_duplicates(self):
        """Each name may appear only once."""
        entries = [
            ManifestEntry.model_validate(package("hll")),
            ManifestEntry.model_validate(package("hll")),
        ]

        violations = validate(entries)

        assert [v.code for v in violations] == [ViolationCode.DUPLICATE_ENTRY]
        assert "2 times" in violations[0].message

    def test_collects_every_violation(self):
        """All violations are reported in one pass."""
        manifest = parse_manifest([
            builtin("plpgsql", enabled=False),
            package("hypopg", enabled=False),
            package("index_advisor", dependencies=["hypopg", "missing"]),
        ])

        codes = [v.code for v in validate(manifest.entries)]

        assert codes == [
            ViolationCode.BUILTIN_DISABLED,
            ViolationCode.DISABLED_DEPENDENCY,
            ViolationCode.UNKNOWN_DEPENDENCY,
        ]

    def test_violation_str(self):
        """Violations render with their code."""
        violation = ManifestViolation(ViolationCode.UNKNOWN_DEPENDENCY, "a", "a depends on b")
        assert str(violation) == "[unknown_dependency] a depends on b"


class TestBundledManifestConsistency:
    """Tests against the shipped manifest."""

    def test_bundled_manifest_is_valid(self):
        """The shipped manifest has no violations."""
        assert validate(bundled_manifest().entries) == []

    def test_disabling_hypopg_breaks_index_advisor(self):
        """Disabling hypopg yields exactly one violation naming both entries."""
        manifest = disable(bundled_manifest(), "hypopg")

        violations = validate(manifest.entries)

        assert len(violations) == 1
        assert violations[0].entry == "index_advisor"
        assert violations[0].dependency == "hypopg"
        assert "index_advisor" in violations[0].message
        assert "hypopg" in violations[0].message

    def test_disabling_builtin_rejected(self):
        """Disabling a built-in in the shipped manifest is caught."""
        manifest = disable(bundled_manifest(), "btree_gist")
        codes = [v.code for v in validate(manifest.entries)]
        assert codes == [ViolationCode.BUILTIN_DISABLED]


class TestRequireValid:
    """Tests for require_valid()."""

    def test_passes_for_valid(self):
        """Valid manifests pass silently."""
        require_valid(bundled_manifest())

    def test_raises_with_violations(self):
        """Invalid manifests raise carrying every violation."""
        manifest = disable(bundled_manifest(), "pgsodium")

        with pytest.raises(ManifestError) as exc:
            require_valid(manifest)

        assert exc.value.exit_code == 20
        assert len(exc.value.violations) == 1
        assert exc.value.details == [str(exc.value.violations[0])]
        assert "1 violation" in str(exc.value)
