"""
Import provenance carried by every record the migration engine writes.

``ImportMetadata`` is the typed view over the ``import_metadata`` JSON column.
It is validated whenever it crosses the storage boundary so the upsert path
never has to guess at the shape of a stored blob.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping

from sqlalchemy.orm import Mapped, mapped_column

from .base import db, utcnow

SOURCE_LAWMATICS = "LAWMATICS"


class ImportedEntity(str, enum.Enum):
    """Kinds of internal records that can carry import metadata."""

    USER = "user"
    CLIENT = "client"
    PERSON = "person"
    MATTER = "matter"
    NOTE = "note"
    ACTIVITY = "activity"


class ImportFlag(str, enum.Enum):
    REVIEW_NEEDED = "REVIEW_NEEDED"
    DUPLICATE_EMAIL = "DUPLICATE_EMAIL"
    POSSIBLY_NOT_PERSON = "POSSIBLY_NOT_PERSON"
    MISSING_EMAIL = "MISSING_EMAIL"
    MISSING_NAME = "MISSING_NAME"
    INVALID_EMAIL = "INVALID_EMAIL"


class SourceOfTruth(str, enum.Enum):
    SOURCE = "source"
    LOCAL = "local"


class InvalidImportMetadata(ValueError):
    """Raised when stored or candidate import metadata fails validation."""


def _parse_timestamp(value: Any, key: str) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError as exc:
            raise InvalidImportMetadata(f"import metadata '{key}' is not an ISO timestamp: {value!r}") from exc
    else:
        raise InvalidImportMetadata(f"import metadata '{key}' must be a string, got {type(value).__name__}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _format_timestamp(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


@dataclass(frozen=True)
class ImportMetadata:
    """Provenance of one imported record, discriminated on ``source`` and ``entity``."""

    source: str
    entity: ImportedEntity
    external_id: str
    import_run_id: int | None = None
    imported_at: datetime | None = None
    last_synced_at: datetime | None = None
    locally_modified_fields: frozenset[str] = frozenset()
    flags: tuple[ImportFlag, ...] = ()
    source_of_truth: SourceOfTruth = SourceOfTruth.SOURCE
    source_data: Mapping[str, Any] | None = field(default=None, compare=False)

    def __post_init__(self) -> None:
        if not isinstance(self.source, str) or not self.source.strip():
            raise InvalidImportMetadata("import metadata requires a source tag")
        if self.external_id is None or not str(self.external_id).strip():
            raise InvalidImportMetadata("import metadata requires an external id")
        try:
            entity = ImportedEntity(self.entity)
        except ValueError as exc:
            raise InvalidImportMetadata(f"unknown imported entity kind: {self.entity!r}") from exc
        try:
            flags = tuple(ImportFlag(flag) for flag in self.flags)
            source_of_truth = SourceOfTruth(self.source_of_truth)
        except ValueError as exc:
            raise InvalidImportMetadata(str(exc)) from exc
        object.__setattr__(self, "entity", entity)
        object.__setattr__(self, "external_id", str(self.external_id))
        object.__setattr__(self, "flags", flags)
        object.__setattr__(self, "source_of_truth", source_of_truth)
        object.__setattr__(self, "locally_modified_fields", frozenset(self.locally_modified_fields))

    # Serialization ---------------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        return {
            "source": self.source,
            "entity": self.entity.value,
            "external_id": self.external_id,
            "import_run_id": self.import_run_id,
            "imported_at": _format_timestamp(self.imported_at),
            "last_synced_at": _format_timestamp(self.last_synced_at),
            "locally_modified_fields": sorted(self.locally_modified_fields),
            "flags": [flag.value for flag in self.flags],
            "source_of_truth": self.source_of_truth.value,
            "source_data": dict(self.source_data) if self.source_data is not None else None,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ImportMetadata":
        if not isinstance(data, Mapping):
            raise InvalidImportMetadata(f"import metadata must be an object, got {type(data).__name__}")
        missing = [key for key in ("source", "entity", "external_id") if not data.get(key)]
        if missing:
            raise InvalidImportMetadata(f"import metadata missing required keys: {', '.join(missing)}")

        modified = data.get("locally_modified_fields") or ()
        flags = data.get("flags") or ()
        if isinstance(modified, str) or not isinstance(modified, Iterable):
            raise InvalidImportMetadata("locally_modified_fields must be a list of field names")
        if isinstance(flags, str) or not isinstance(flags, Iterable):
            raise InvalidImportMetadata("flags must be a list")

        run_id = data.get("import_run_id")
        if run_id is not None and not isinstance(run_id, int):
            raise InvalidImportMetadata("import_run_id must be an integer")

        source_data = data.get("source_data")
        if source_data is not None and not isinstance(source_data, Mapping):
            raise InvalidImportMetadata("source_data must be an object")

        return cls(
            source=data["source"],
            entity=data["entity"],
            external_id=data["external_id"],
            import_run_id=run_id,
            imported_at=_parse_timestamp(data.get("imported_at"), "imported_at"),
            last_synced_at=_parse_timestamp(data.get("last_synced_at"), "last_synced_at"),
            locally_modified_fields=frozenset(str(name) for name in modified),
            flags=tuple(flags),
            source_of_truth=data.get("source_of_truth") or SourceOfTruth.SOURCE,
            source_data=source_data,
        )

    # Derivations -----------------------------------------------------------------

    def is_protected(self, field_name: str) -> bool:
        return field_name in self.locally_modified_fields

    def with_locally_modified(self, *field_names: str) -> "ImportMetadata":
        return replace(self, locally_modified_fields=self.locally_modified_fields | set(field_names))

    def synced(
        self,
        *,
        run_id: int | None,
        synced_at: datetime,
        flags: Iterable[ImportFlag] | None = None,
        source_data: Mapping[str, Any] | None = None,
    ) -> "ImportMetadata":
        """Return the metadata for a re-sync; the protected field set is carried over untouched."""
        return replace(
            self,
            import_run_id=run_id,
            last_synced_at=synced_at,
            flags=tuple(flags) if flags is not None else self.flags,
            source_data=source_data if source_data is not None else self.source_data,
        )


class ImportedRecordMixin:
    """Columns and helpers shared by every model the importer writes."""

    import_source: Mapped[str | None] = mapped_column(db.String(50), nullable=True)
    import_entity: Mapped[str | None] = mapped_column(db.String(20), nullable=True)
    import_external_id: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    import_metadata: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)

    @property
    def import_meta(self) -> ImportMetadata | None:
        if not self.import_metadata:
            return None
        return ImportMetadata.from_dict(self.import_metadata)

    def apply_import_metadata(self, metadata: ImportMetadata) -> None:
        # Always assign a fresh dict; JSON columns do not track in-place mutation.
        self.import_metadata = metadata.to_dict()
        self.import_source = metadata.source
        self.import_entity = metadata.entity.value
        self.import_external_id = metadata.external_id

    def mark_locally_modified(self, *field_names: str) -> None:
        """Record local edits so later syncs leave these fields alone."""
        metadata = self.import_meta
        if metadata is None or not field_names:
            return
        self.apply_import_metadata(metadata.with_locally_modified(*field_names))
        self.updated_at = utcnow()
