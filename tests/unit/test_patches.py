"""Unit tests for declarative source patches."""

from unittest.mock import Mock

import pytest

from azpg.core.context import ExecutionContext
from azpg.core.exceptions import BuildError, PatchError
from azpg.services.manifest import SourcePatch
from azpg.services.patches import apply_patch, apply_patches


@pytest.fixture
def source_dir(tmp_path):
    """A small fetched tree."""
    root = tmp_path / "src"
    (root / "src").mkdir(parents=True)
    (root / "Cargo.toml").write_text('[dependencies]\npgrx = "0.16.0"\nserde = "1"\n')
    (root / "src" / "a.c").write_text("static bool enabled = true;\n")
    (root / "src" / "b.c").write_text("static bool enabled = true;\nint x;\n")
    return root


class TestApplyPatch:
    """Tests for apply_patch()."""

    def test_literal_replace(self, source_dir):
        """Literal patches replace exact text."""
        patch = SourcePatch(file="Cargo.toml", find='pgrx = "0.16.0"', replace='pgrx = "=0.16.1"')

        result = apply_patch(source_dir, patch, entry="pg_jsonschema")

        assert result.replacements == 1
        assert 'pgrx = "=0.16.1"' in (source_dir / "Cargo.toml").read_text()

    def test_literal_replacement_not_interpreted(self, source_dir):
        """Backslashes in literal replacements are kept as written."""
        patch = SourcePatch(file="src/a.c", find="true", replace=r"\1 false")

        apply_patch(source_dir, patch, entry="x")

        assert r"\1 false" in (source_dir / "src" / "a.c").read_text()

    def test_regex_across_glob(self, source_dir):
        """Regex patches apply to every file the glob matches."""
        patch = SourcePatch(
            file="src/*.c",
            find=r"^static bool (\w+) = true;$",
            replace=r"static bool \1 = false;",
            regex=True,
            min_matches=2,
        )

        result = apply_patch(source_dir, patch, entry="supautils")

        assert result.replacements == 2
        assert len(result.files) == 2
        assert (source_dir / "src" / "b.c").read_text().startswith("static bool enabled = false;")

    def test_zero_matches_fails(self, source_dir):
        """A patch that matches nothing is an error."""
        patch = SourcePatch(file="Cargo.toml", find='pgrx = "0.15.0"', replace="x")

        with pytest.raises(PatchError) as exc:
            apply_patch(source_dir, patch, entry="pg_jsonschema")

        assert exc.value.entry == "pg_jsonschema"
        assert "matched 0 time(s)" in str(exc.value)
        assert isinstance(exc.value, BuildError)

    def test_below_min_matches_writes_nothing(self, source_dir):
        """Too few matches fails before any file is changed."""
        before = (source_dir / "src" / "a.c").read_text()
        patch = SourcePatch(file="src/*.c", find="enabled", replace="on", min_matches=3)

        with pytest.raises(PatchError):
            apply_patch(source_dir, patch, entry="x")

        assert (source_dir / "src" / "a.c").read_text() == before

    def test_missing_target_fails(self, source_dir):
        """A glob that matches no file is an error."""
        patch = SourcePatch(file="missing/*.c", find="a", replace="b")

        with pytest.raises(PatchError) as exc:
            apply_patch(source_dir, patch, entry="x")
        assert "matched no files" in str(exc.value)

    def test_dry_run_counts_only(self, source_dir):
        """Dry runs count matches without writing."""
        patch = SourcePatch(file="Cargo.toml", find="serde", replace="serde_json")

        result = apply_patch(source_dir, patch, entry="x", dry_run=True)

        assert result.replacements == 1
        assert "serde_json" not in (source_dir / "Cargo.toml").read_text()


class TestApplyPatches:
    """Tests for apply_patches()."""

    def test_applies_in_order(self, source_dir):
        """Later patches see earlier replacements."""
        ctx = ExecutionContext(_console=Mock())
        patches = [
            SourcePatch(file="Cargo.toml", find='"0.16.0"', replace='"0.16.1"'),
            SourcePatch(file="Cargo.toml", find='"0.16.1"', replace='"=0.16.1"'),
        ]

        results = apply_patches(ctx, source_dir, patches, entry="pg_jsonschema")

        assert len(results) == 2
        assert 'pgrx = "=0.16.1"' in (source_dir / "Cargo.toml").read_text()

    def test_stops_at_first_failure(self, source_dir):
        """A failing patch stops the rest."""
        ctx = ExecutionContext(_console=Mock())
        patches = [
            SourcePatch(file="Cargo.toml", find="nothing-here", replace="x"),
            SourcePatch(file="Cargo.toml", find="serde", replace="serde_json"),
        ]

        with pytest.raises(PatchError):
            apply_patches(ctx, source_dir, patches, entry="x")
        assert "serde_json" not in (source_dir / "Cargo.toml").read_text()

    def test_dry_run_skips(self, tmp_path):
        """In dry-run the tree may not exist; patches are only announced."""
        ctx = ExecutionContext(dry_run=True, _console=Mock())
        patches = [SourcePatch(file="Cargo.toml", find="a", replace="b", description="pin pgrx")]

        results = apply_patches(ctx, tmp_path / "absent", patches, entry="pg_jsonschema")

        assert results == []
        ctx.console.dry_run_msg.assert_called_once_with("Patch pg_jsonschema: pin pgrx")
