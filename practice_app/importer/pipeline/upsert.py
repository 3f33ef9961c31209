"""
Idempotent, sync-protected upserts keyed by external id.

Each record is written in its own transaction so one bad record cannot
abort the rest of a page. Lookup maps are only updated after a successful
commit, so a rolled-back insert never leaves a dangling id in the caches.
"""

from __future__ import annotations

import enum
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Mapping, Type

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from practice_app.importer.metrics import record_upsert_actions
from practice_app.importer.pipeline.caches import LookupCaches
from practice_app.importer.pipeline.transform import RecordCandidate
from practice_app.models import (
    Activity,
    ClientProfile,
    ImportedEntity,
    ImportMetadata,
    InvalidImportMetadata,
    Matter,
    MigrationErrorType,
    Note,
    Person,
    SourceOfTruth,
    User,
    db,
)

logger = logging.getLogger(__name__)


class UpsertAction(str, enum.Enum):
    CREATED = "created"
    UPDATED = "updated"
    SKIPPED = "skipped"


class RecordValidationError(ValueError):
    """Raised when a candidate is missing data its table requires."""


@dataclass(frozen=True)
class UpsertResult:
    action: UpsertAction
    entity: ImportedEntity
    external_id: str
    record_id: int | None
    protected_fields: tuple[str, ...] = ()
    reason: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "action": self.action.value,
            "entity": self.entity.value,
            "external_id": self.external_id,
            "record_id": self.record_id,
            "protected_fields": list(self.protected_fields),
            "reason": self.reason,
        }


@dataclass(frozen=True)
class RecordError:
    external_id: str | None
    kind: MigrationErrorType
    message: str
    details: Mapping[str, Any] | None = None


@dataclass
class BatchResult:
    created: int = 0
    updated: int = 0
    skipped: int = 0
    errors: list[RecordError] = field(default_factory=list)
    results: list[UpsertResult] = field(default_factory=list)

    @property
    def errored(self) -> int:
        return len(self.errors)

    def add(self, result: UpsertResult) -> UpsertResult:
        self.results.append(result)
        if result.action is UpsertAction.CREATED:
            self.created += 1
        elif result.action is UpsertAction.UPDATED:
            self.updated += 1
        else:
            self.skipped += 1
        return result

    def add_error(self, error: RecordError) -> None:
        self.errors.append(error)

    def to_dict(self) -> dict[str, int]:
        return {
            "created": self.created,
            "updated": self.updated,
            "skipped": self.skipped,
            "errored": self.errored,
        }


@dataclass(frozen=True)
class EntitySpec:
    model: Type[Any]
    cache_attr: str | None = None
    required: tuple[str, ...] = ()
    immutable: bool = False


ENTITY_SPECS: Mapping[ImportedEntity, EntitySpec] = {
    ImportedEntity.USER: EntitySpec(User, cache_attr="users", required=("email",)),
    ImportedEntity.CLIENT: EntitySpec(User, required=("email",)),
    ImportedEntity.PERSON: EntitySpec(Person, cache_attr="people"),
    ImportedEntity.MATTER: EntitySpec(Matter, cache_attr="matters", required=("client_id", "title")),
    ImportedEntity.NOTE: EntitySpec(Note),
    ImportedEntity.ACTIVITY: EntitySpec(Activity, required=("type", "description"), immutable=True),
}


class UpsertEngine:
    """Create-or-update imported records for one run, honouring locally modified fields."""

    def __init__(
        self,
        run_id: int | None,
        caches: LookupCaches,
        session: Session | None = None,
        *,
        clock: Callable[[], datetime] | None = None,
    ):
        self.run_id = run_id
        self.caches = caches
        self.session = session or db.session
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    # Single-record forms ---------------------------------------------------------

    def upsert_user(self, candidate: RecordCandidate) -> UpsertResult:
        return self._upsert(candidate, ImportedEntity.USER)

    def upsert_client(self, candidate: RecordCandidate) -> UpsertResult:
        return self._upsert(candidate, ImportedEntity.CLIENT)

    def upsert_person(self, candidate: RecordCandidate) -> UpsertResult:
        return self._upsert(candidate, ImportedEntity.PERSON)

    def upsert_matter(self, candidate: RecordCandidate) -> UpsertResult:
        return self._upsert(candidate, ImportedEntity.MATTER)

    def upsert_note(self, candidate: RecordCandidate) -> UpsertResult:
        return self._upsert(candidate, ImportedEntity.NOTE)

    def upsert_activity(self, candidate: RecordCandidate) -> UpsertResult:
        return self._upsert(candidate, ImportedEntity.ACTIVITY)

    # Batch forms -----------------------------------------------------------------

    def batch_upsert_users(self, candidates: Iterable[RecordCandidate]) -> BatchResult:
        return self._batch(candidates, self.upsert_user)

    def batch_upsert_clients(self, candidates: Iterable[RecordCandidate]) -> BatchResult:
        return self._batch(candidates, self.upsert_client)

    def batch_upsert_people(self, candidates: Iterable[RecordCandidate]) -> BatchResult:
        return self._batch(candidates, self.upsert_person)

    def batch_upsert_matters(self, candidates: Iterable[RecordCandidate]) -> BatchResult:
        return self._batch(candidates, self.upsert_matter)

    def batch_upsert_notes(self, candidates: Iterable[RecordCandidate]) -> BatchResult:
        return self._batch(candidates, self.upsert_note)

    def batch_upsert_activities(self, candidates: Iterable[RecordCandidate]) -> BatchResult:
        return self._batch(candidates, self.upsert_activity)

    def run_isolated(self, result: BatchResult, external_id: str | None, operation: Callable[[], UpsertResult]) -> None:
        """Run one record's upsert, converting its failure into a ``RecordError``."""
        try:
            result.add(operation())
        except RecordValidationError as exc:
            result.add_error(RecordError(external_id, MigrationErrorType.VALIDATION, str(exc)))
        except InvalidImportMetadata as exc:
            result.add_error(RecordError(external_id, MigrationErrorType.VALIDATION, f"Invalid import metadata: {exc}"))
        except SQLAlchemyError as exc:
            logger.warning(
                "Imported record could not be persisted",
                extra={"importer_run_id": self.run_id, "importer_external_id": external_id, "importer_error": str(exc)},
            )
            result.add_error(
                RecordError(
                    external_id,
                    MigrationErrorType.INSERT,
                    str(getattr(exc, "orig", None) or exc),
                    {"exception": type(exc).__name__},
                )
            )

    def _batch(self, candidates: Iterable[RecordCandidate], upsert: Callable[[RecordCandidate], UpsertResult]) -> BatchResult:
        result = BatchResult()
        for candidate in candidates:
            self.run_isolated(result, candidate.external_id, lambda candidate=candidate: upsert(candidate))
        record_upsert_actions(result.to_dict())
        return result

    # Core ------------------------------------------------------------------------

    def _upsert(self, candidate: RecordCandidate, entity: ImportedEntity) -> UpsertResult:
        spec = ENTITY_SPECS[entity]
        self._validate(spec, candidate, entity)

        protected: tuple[str, ...] = ()
        reason: str | None = None
        with self._transaction():
            existing = self._find_existing(spec, candidate)
            if existing is None:
                record = self._create(spec, candidate)
                action = UpsertAction.CREATED
            else:
                record = existing
                action, protected, reason = self._update(spec, existing, candidate)
            record_id = record.id

        if action is UpsertAction.CREATED:
            self._remember(spec, candidate, record_id)
        return UpsertResult(
            action=action,
            entity=entity,
            external_id=candidate.external_id,
            record_id=record_id,
            protected_fields=protected,
            reason=reason,
        )

    def _validate(self, spec: EntitySpec, candidate: RecordCandidate, entity: ImportedEntity) -> None:
        if candidate.entity is not entity:
            raise RecordValidationError(f"Expected a {entity.value} candidate, got {candidate.entity.value}")
        values = {**candidate.insert_only, **candidate.fields}
        missing = [name for name in spec.required if values.get(name) in (None, "")]
        if missing:
            raise RecordValidationError(
                f"{entity.value} {candidate.external_id} is missing required field(s): {', '.join(missing)}"
            )

    def _find_existing(self, spec: EntitySpec, candidate: RecordCandidate):
        metadata = candidate.metadata
        if spec.cache_attr:
            cached_id = getattr(self.caches, spec.cache_attr).get(candidate.external_id)
            if cached_id is not None:
                record = self.session.get(spec.model, cached_id)
                if record is not None:
                    return record
        stmt = select(spec.model).where(
            spec.model.import_source == metadata.source,
            spec.model.import_entity == metadata.entity.value,
            spec.model.import_external_id == metadata.external_id,
        )
        return self.session.scalars(stmt).first()

    def _create(self, spec: EntitySpec, candidate: RecordCandidate):
        record = spec.model(**{**candidate.insert_only, **candidate.fields})
        record.apply_import_metadata(candidate.metadata)
        self.session.add(record)
        if candidate.profile is not None:
            record.client_profile = ClientProfile(**candidate.profile)
        self.session.flush()
        return record

    def _update(
        self, spec: EntitySpec, record, candidate: RecordCandidate
    ) -> tuple[UpsertAction, tuple[str, ...], str | None]:
        try:
            existing_meta: ImportMetadata | None = record.import_meta
        except InvalidImportMetadata as exc:
            logger.warning(
                "Existing record has unreadable import metadata; leaving it untouched",
                extra={"importer_external_id": candidate.external_id, "importer_error": str(exc)},
            )
            return UpsertAction.SKIPPED, (), "invalid_metadata"

        incoming = candidate.metadata
        if (
            existing_meta is None
            or existing_meta.source != incoming.source
            or existing_meta.entity is not incoming.entity
            or existing_meta.external_id != incoming.external_id
        ):
            return UpsertAction.SKIPPED, (), "not_owned_by_import"
        if existing_meta.source_of_truth is SourceOfTruth.LOCAL:
            return UpsertAction.SKIPPED, (), "local_source_of_truth"

        protected = tuple(name for name in candidate.fields if existing_meta.is_protected(name))
        if not spec.immutable:
            for name, value in candidate.fields.items():
                if name not in protected:
                    setattr(record, name, value)

        if candidate.profile is not None:
            profile_protected = tuple(name for name in candidate.profile if existing_meta.is_protected(name))
            protected = protected + profile_protected
            profile = record.client_profile
            if profile is None:
                record.client_profile = ClientProfile(**candidate.profile)
            else:
                for name, value in candidate.profile.items():
                    if name not in profile_protected:
                        setattr(profile, name, value)

        record.apply_import_metadata(
            existing_meta.synced(
                run_id=self.run_id,
                synced_at=self.clock(),
                flags=incoming.flags,
                source_data=incoming.source_data,
            )
        )
        self.session.flush()
        return UpsertAction.UPDATED, protected, None

    def _remember(self, spec: EntitySpec, candidate: RecordCandidate, record_id: int) -> None:
        if spec.cache_attr:
            getattr(self.caches, spec.cache_attr)[candidate.external_id] = record_id
        if spec.model is User:
            self.caches.claim_email(candidate.fields.get("email"))

    @contextmanager
    def _transaction(self):
        try:
            yield
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
