"""Build artifact records.

The index is written at the end of a build and read at container start
by the preload reconciler, so it is the only record of which shared
libraries actually made it into the image.
"""

import json
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, ValidationError as PydanticValidationError

from azpg.core.config import DEFAULT_PG_MAJOR
from azpg.core.exceptions import ConfigurationError
from azpg.services.manifest import EntryKind


class BuildArtifactRecord(BaseModel):
    """What one entry installed."""

    name: str
    kind: EntryKind
    library_file_name: Optional[str] = None
    installed_control_files: list[str] = Field(default_factory=list)
    commit: Optional[str] = None

    @property
    def library_stem(self) -> Optional[str]:
        """Library name as it appears in shared_preload_libraries."""
        if self.library_file_name is None:
            return None
        name = self.library_file_name
        return name[:-3] if name.endswith(".so") else name


class ArtifactIndex(BaseModel):
    """All artifact records for one image, sorted by entry name."""

    pg_major: str = DEFAULT_PG_MAJOR
    records: list[BuildArtifactRecord] = Field(default_factory=list)

    @classmethod
    def from_records(
        cls,
        records: list[BuildArtifactRecord],
        pg_major: str = DEFAULT_PG_MAJOR,
    ) -> "ArtifactIndex":
        return cls(pg_major=pg_major, records=sorted(records, key=lambda r: r.name))

    def get(self, name: str) -> Optional[BuildArtifactRecord]:
        for record in self.records:
            if record.name == name:
                return record
        return None

    def provides(self, library: str) -> bool:
        """Whether any record supplies a loadable library by this name.

        A library is matched by its file stem or by the name of the
        entry that installed it.
        """
        for record in self.records:
            if record.library_file_name is None:
                continue
            if library in (record.library_stem, record.name):
                return True
        return False

    def library_names(self) -> list[str]:
        """Sorted stems of every installed library."""
        return sorted(r.library_stem for r in self.records if r.library_stem)

    def to_json(self) -> str:
        return json.dumps(self.model_dump(mode="json"), indent=2, sort_keys=True) + "\n"

    @classmethod
    def load(cls, path: Path) -> "ArtifactIndex":
        """Load an index written by ``azpg build run``.

        Raises:
            FileNotFoundError: If the index does not exist
            ConfigurationError: If the index is unreadable or malformed
        """
        try:
            text = path.read_text()
        except FileNotFoundError:
            raise
        except (OSError, UnicodeDecodeError) as e:
            raise ConfigurationError(
                f"Artifact index is unreadable: {path}",
                details=[str(e)],
                hint="Check that AZPG_ARTIFACT_INDEX points at the JSON index written at build time",
            ) from e
        try:
            return cls.model_validate_json(text)
        except PydanticValidationError as e:
            raise ConfigurationError(
                f"Artifact index is malformed: {path}",
                details=[str(err.get("msg")) for err in e.errors()],
                hint="Rebuild the image to regenerate the index",
            ) from e
