"""Extension manifest model.

The manifest is the declarative list of everything built into the
image: engine built-ins, PGDG packages, source-compiled extensions and
command-line tools. It is plain YAML/JSON data, loadable without any
build tooling so the dependency check can run as a fast lint step.
"""

import json
import re
from enum import Enum
from importlib import resources
from pathlib import Path
from typing import Optional

import yaml
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError as PydanticValidationError,
    field_validator,
    model_validator,
)

from azpg.core.exceptions import ManifestError, ValidationError
from azpg.core.validation import (
    validate_commit,
    validate_identifier,
    validate_repository_url,
)


BUNDLED_MANIFEST = "extensions.yaml"
BUNDLED_LOCK = "extensions.lock.yaml"


class EntryKind(str, Enum):
    """How an entry gets into the image."""

    BUILTIN = "builtin"   # Shipped with the engine
    PACKAGE = "package"   # Installed from the PGDG apt repository
    SOURCE = "source"     # Compiled from a pinned git commit
    TOOL = "tool"         # Compiled, but not a creatable extension


class BuildType(str, Enum):
    """Build system used for source and tool entries."""

    PGXS = "pgxs"
    CARGO_PGRX = "cargo-pgrx"
    TIMESCALEDB = "timescaledb"
    AUTOTOOLS = "autotools"
    CMAKE = "cmake"
    MESON = "meson"
    MAKE = "make"


class SourcePatch(BaseModel):
    """A textual find/replace applied to fetched sources before building."""

    model_config = ConfigDict(extra="forbid")

    file: str = Field(description="Glob relative to the source root")
    find: str
    replace: str
    regex: bool = False
    min_matches: int = Field(1, ge=1)
    description: Optional[str] = None

    @field_validator("file")
    @classmethod
    def validate_file(cls, v: str) -> str:
        if v.startswith("/") or ".." in Path(v).parts:
            raise ValueError("patch file must be a relative path inside the source tree")
        return v

    @model_validator(mode="after")
    def validate_pattern(self) -> "SourcePatch":
        if self.regex:
            try:
                re.compile(self.find, re.MULTILINE)
            except re.error as e:
                raise ValueError(f"invalid regex in patch for {self.file}: {e}") from e
        if not self.find:
            raise ValueError("patch find text cannot be empty")
        return self


class SourceSpec(BaseModel):
    """Upstream git source. Builds always fetch ``commit``."""

    model_config = ConfigDict(extra="forbid")

    repository: str
    tag: Optional[str] = None
    commit: Optional[str] = None

    @field_validator("repository")
    @classmethod
    def validate_repository(cls, v: str) -> str:
        try:
            return validate_repository_url(v)
        except ValidationError as e:
            raise ValueError(e.message) from e

    @field_validator("commit")
    @classmethod
    def validate_commit_sha(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        try:
            return validate_commit(v)
        except ValidationError as e:
            raise ValueError(e.message) from e

    @model_validator(mode="after")
    def require_revision(self) -> "SourceSpec":
        if not self.tag and not self.commit:
            raise ValueError("source needs a tag or a commit")
        return self

    @property
    def revision(self) -> str:
        """Human-readable revision (tag if known, else short commit)."""
        if self.tag:
            return self.tag
        return (self.commit or "")[:12]


class BuildSpec(BaseModel):
    """How to compile a source or tool entry."""

    model_config = ConfigDict(extra="forbid")

    type: BuildType
    subdir: Optional[str] = None
    features: list[str] = Field(default_factory=list)
    no_default_features: bool = False
    configure_args: list[str] = Field(default_factory=list)
    pre_build: list[str] = Field(default_factory=list)
    post_install: list[str] = Field(default_factory=list)
    patches: list[SourcePatch] = Field(default_factory=list)

    @field_validator("subdir")
    @classmethod
    def validate_subdir(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and (v.startswith("/") or ".." in Path(v).parts):
            raise ValueError("subdir must be a relative path inside the source tree")
        return v


class PackageSpec(BaseModel):
    """apt package providing a PGDG-packaged entry."""

    model_config = ConfigDict(extra="forbid")

    name: str = Field(description="Package name; {pg_major} is substituted")
    version: Optional[str] = None

    def apt_name(self, pg_major: str) -> str:
        """Concrete apt argument, pinned to version when one is given."""
        name = self.name.format(pg_major=pg_major)
        if self.version:
            return f"{name}={self.version}"
        return name


class RuntimeSpec(BaseModel):
    """Runtime behaviour of an entry inside the running server."""

    model_config = ConfigDict(extra="forbid")

    shared_preload: bool = False
    default_enable: bool = False
    preload_only: bool = False
    preload_library_name: Optional[str] = None
    notes: list[str] = Field(default_factory=list)

    @field_validator("preload_library_name")
    @classmethod
    def validate_library_name(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        try:
            return validate_identifier(v, "library")
        except ValidationError as e:
            raise ValueError(e.message) from e

    @property
    def requires_preload(self) -> bool:
        """Loaded by default through shared_preload_libraries."""
        return self.shared_preload and self.default_enable


class ManifestEntry(BaseModel):
    """One extension or tool in the image."""

    model_config = ConfigDict(extra="forbid")

    name: str
    display_name: Optional[str] = None
    kind: EntryKind
    category: str
    description: str = ""
    enabled: bool = True
    disabled_reason: Optional[str] = None
    source: Optional[SourceSpec] = None
    build: Optional[BuildSpec] = None
    package: Optional[PackageSpec] = None
    apt_packages: list[str] = Field(default_factory=list)
    dependencies: list[str] = Field(default_factory=list)
    runtime: RuntimeSpec = Field(default_factory=RuntimeSpec)
    notes: list[str] = Field(default_factory=list)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        try:
            return validate_identifier(v, "extension")
        except ValidationError as e:
            raise ValueError(e.message) from e

    @model_validator(mode="after")
    def validate_recipe(self) -> "ManifestEntry":
        if self.kind is EntryKind.BUILTIN:
            if self.source or self.build or self.package:
                raise ValueError(f"{self.name}: builtin entries take no source, build or package")
        elif self.kind is EntryKind.PACKAGE:
            if self.package is None:
                raise ValueError(f"{self.name}: package entries need a package spec")
        else:
            if self.source is None or self.build is None:
                raise ValueError(f"{self.name}: {self.kind.value} entries need source and build specs")
            if self.package is not None:
                raise ValueError(f"{self.name}: {self.kind.value} entries cannot declare a package")
        return self

    @property
    def library_name(self) -> str:
        """Shared library stem (may differ from the extension name)."""
        return self.runtime.preload_library_name or self.name

    @property
    def requires_preload(self) -> bool:
        return self.runtime.requires_preload

    @property
    def create_by_default(self) -> bool:
        """CREATE EXTENSION runs for this entry at database init."""
        return (
            self.runtime.default_enable
            and not self.runtime.preload_only
            and self.kind is not EntryKind.TOOL
        )

    @property
    def is_compiled(self) -> bool:
        return self.kind in (EntryKind.SOURCE, EntryKind.TOOL)


class Manifest(BaseModel):
    """The full entry list."""

    model_config = ConfigDict(extra="forbid")

    entries: list[ManifestEntry] = Field(default_factory=list)

    def get(self, name: str) -> Optional[ManifestEntry]:
        """Look up an entry by name."""
        for entry in self.entries:
            if entry.name == name:
                return entry
        return None

    @property
    def names(self) -> list[str]:
        return [entry.name for entry in self.entries]

    @property
    def enabled_entries(self) -> list[ManifestEntry]:
        return [entry for entry in self.entries if entry.enabled]

    def with_commits(self, commits: dict[str, str]) -> "Manifest":
        """Copy of the manifest with source commits pinned from a lock.

        Entries already carrying a commit keep it; the lock only fills
        in entries that are pinned by tag.
        """
        pinned = self.model_copy(deep=True)
        for entry in pinned.entries:
            if entry.source is not None and entry.source.commit is None:
                commit = commits.get(entry.name)
                if commit:
                    entry.source.commit = validate_commit(commit)
        return pinned


class ManifestLock(BaseModel):
    """Resolved tag -> commit pins written by ``azpg manifest lock``."""

    model_config = ConfigDict(extra="forbid")

    commits: dict[str, str] = Field(default_factory=dict)

    @field_validator("commits")
    @classmethod
    def validate_commits(cls, v: dict[str, str]) -> dict[str, str]:
        checked = {}
        for name, commit in v.items():
            try:
                checked[name] = validate_commit(commit)
            except ValidationError as e:
                raise ValueError(f"{name}: {e.message}") from e
        return checked


def _format_errors(error: PydanticValidationError) -> list[str]:
    lines = []
    for item in error.errors():
        location = ".".join(str(part) for part in item.get("loc", ()))
        lines.append(f"{location}: {item.get('msg')}" if location else str(item.get("msg")))
    return lines


def _read_structured(path: Path) -> object:
    """Read YAML or JSON by file extension."""
    try:
        text = path.read_text()
    except FileNotFoundError:
        raise ManifestError(
            f"Manifest not found: {path}",
            hint="Pass --manifest or omit it to use the bundled manifest",
        )
    except OSError as e:
        raise ManifestError(f"Cannot read manifest: {path}", details=[str(e)]) from e

    try:
        if path.suffix == ".json":
            return json.loads(text)
        return yaml.safe_load(text)
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        raise ManifestError(f"Manifest is not valid {path.suffix.lstrip('.') or 'YAML'}: {path}",
                            details=[str(e)]) from e


def parse_manifest(data: object, origin: str = "<manifest>") -> Manifest:
    """Build a Manifest from already-parsed data.

    Accepts either a mapping with an ``entries`` key or a bare list.

    Raises:
        ManifestError: If any entry fails structural validation
    """
    if isinstance(data, list):
        data = {"entries": data}
    if not isinstance(data, dict):
        raise ManifestError(f"Manifest must be a mapping with 'entries': {origin}")

    try:
        return Manifest.model_validate(data)
    except PydanticValidationError as e:
        raise ManifestError(
            f"Manifest failed structural validation: {origin}",
            details=_format_errors(e),
        ) from e


def load_manifest(path: Path) -> Manifest:
    """Load a manifest from a YAML or JSON file.

    Raises:
        ManifestError: If the file is missing, unparseable or invalid
    """
    return parse_manifest(_read_structured(path), str(path))


def bundled_manifest() -> Manifest:
    """Load the manifest shipped with this package."""
    text = resources.files("azpg.data").joinpath(BUNDLED_MANIFEST).read_text()
    return parse_manifest(yaml.safe_load(text), f"azpg/data/{BUNDLED_MANIFEST}")


def load_manifest_or_bundled(path: Optional[Path]) -> Manifest:
    """Load the given manifest, or the bundled one when no path is given."""
    if path is None:
        return bundled_manifest()
    return load_manifest(path)


def default_lock_path(manifest_path: Optional[Path]) -> Path:
    """Lock file sitting next to the manifest (extensions.lock.yaml)."""
    if manifest_path is None:
        return Path(str(resources.files("azpg.data").joinpath(BUNDLED_LOCK)))
    return manifest_path.with_name(f"{manifest_path.stem}.lock.yaml")


def load_lock(path: Path) -> ManifestLock:
    """Load a lock file; a missing file is an empty lock."""
    if not path.exists():
        return ManifestLock()
    data = _read_structured(path) or {}
    try:
        return ManifestLock.model_validate(data)
    except PydanticValidationError as e:
        raise ManifestError(f"Invalid lock file: {path}", details=_format_errors(e)) from e


def dump_lock(lock: ManifestLock) -> str:
    """Serialize a lock with entries sorted by name."""
    data = {"commits": dict(sorted(lock.commits.items()))}
    return yaml.dump(data, default_flow_style=False, sort_keys=False)


def load_pinned_manifest(
    manifest_path: Optional[Path],
    lock_path: Optional[Path] = None,
) -> Manifest:
    """Load a manifest and pin its tag-only sources from the lock file.

    Args:
        manifest_path: Manifest file, or None for the bundled manifest
        lock_path: Lock file; defaults to the one next to the manifest
    """
    manifest = load_manifest_or_bundled(manifest_path)
    lock = load_lock(lock_path or default_lock_path(manifest_path))
    return manifest.with_commits(lock.commits)
