"""
Per-phase page processing: transform, dedupe, promote and upsert each record.

A processor works on one fetched page. Failures are isolated per record and
reported as ``RecordError`` values; only infrastructure failures escape.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Sequence

from sqlalchemy.orm import Session

from practice_app.importer.metrics import record_upsert_actions
from practice_app.importer.pipeline.caches import LookupCaches
from practice_app.importer.pipeline.dedupe import DuplicateDetector, DuplicateMatch
from practice_app.importer.pipeline.promoter import IdentityPromoter, IdentityResolutionError
from practice_app.importer.pipeline.transform import (
    RecordTransformError,
    coerce_string,
    external_id_of,
    related_id,
    transform_activity,
    transform_contact,
    transform_note,
    transform_prospect,
    transform_user,
)
from practice_app.importer.pipeline.upsert import (
    BatchResult,
    RecordError,
    UpsertAction,
    UpsertEngine,
    UpsertResult,
)
from practice_app.models import ImportedEntity, ImportFlag, ImportPhase, MigrationErrorType, db

logger = logging.getLogger(__name__)

ExternalRecord = Mapping[str, Any]


class PageProcessor:
    """Run one page of one phase through the import pipeline."""

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
        self.engine = UpsertEngine(run_id, caches, self.session, clock=self.clock)
        self.detector = DuplicateDetector(self.session)
        self.promoter = IdentityPromoter(self.engine, caches, self.session)

    def process(self, phase: ImportPhase, records: Sequence[ExternalRecord]) -> BatchResult:
        handlers = {
            ImportPhase.USERS: self._import_user,
            ImportPhase.CONTACTS: self._import_contact,
            ImportPhase.PROSPECTS: self._import_prospect,
            ImportPhase.NOTES: self._import_note,
            ImportPhase.ACTIVITIES: self._import_activity,
        }
        handler = handlers[phase]
        result = BatchResult()
        for record in records:
            self._process_record(result, record, handler)
        record_upsert_actions(result.to_dict())
        logger.debug(
            "Migration page processed",
            extra={
                "importer_run_id": self.run_id,
                "importer_phase": phase.value,
                **{f"importer_{key}": value for key, value in result.to_dict().items()},
            },
        )
        return result

    def _process_record(
        self,
        result: BatchResult,
        record: ExternalRecord,
        handler: Callable[[ExternalRecord], UpsertResult],
    ) -> None:
        external_id = coerce_string(record.get("id")) if isinstance(record, Mapping) else None
        try:
            self.engine.run_isolated(result, external_id, lambda: handler(record))
        except RecordTransformError as exc:
            result.add_error(RecordError(exc.external_id or external_id, MigrationErrorType.TRANSFORM, str(exc)))
        except IdentityResolutionError as exc:
            result.add_error(
                RecordError(
                    external_id,
                    MigrationErrorType.IDENTITY,
                    str(exc),
                    {"person_id": exc.person_id} if exc.person_id is not None else None,
                )
            )

    # Phase handlers --------------------------------------------------------------

    def _import_user(self, record: ExternalRecord) -> UpsertResult:
        candidate = transform_user(record, run_id=self.run_id, now=self.clock())
        if candidate.external_id not in self.caches.users and ImportFlag.MISSING_EMAIL not in candidate.metadata.flags:
            match = self.detector.find_user_match(candidate.fields.get("email"))
            if match is not None:
                return self._link(ImportedEntity.USER, record, candidate.external_id, match, self.caches.users)
        return self.engine.upsert_user(candidate)

    def _import_contact(self, record: ExternalRecord) -> UpsertResult:
        candidate = transform_contact(record, run_id=self.run_id, now=self.clock())
        email = candidate.fields.get("email")
        if candidate.external_id not in self.caches.people and email:
            name = " ".join(part for part in (candidate.fields.get("first_name"), candidate.fields.get("last_name")) if part)
            match = self.detector.find_person_match(email, name or None)
            if match is not None:
                return self._link(ImportedEntity.PERSON, record, candidate.external_id, match, self.caches.people)
        return self.engine.upsert_person(candidate)

    def _import_prospect(self, record: ExternalRecord) -> UpsertResult:
        external_id = external_id_of(record)
        contact_id = related_id(record, "contact")
        if contact_id is None:
            raise IdentityResolutionError(f"Prospect {external_id} has no contact")
        person_id = self.caches.lookup_person(contact_id)
        if person_id is None:
            raise IdentityResolutionError(f"Prospect {external_id} references contact {contact_id} which was not imported")

        client_id = self.promoter.ensure_person_is_client(person_id)
        attorney_external_id = related_id(record, "lead_attorney", "attorney", "user")
        lead_attorney_id = self.caches.lookup_user(attorney_external_id) if attorney_external_id else None
        candidate = transform_prospect(
            record,
            client_id=client_id,
            lead_attorney_id=lead_attorney_id,
            run_id=self.run_id,
            now=self.clock(),
        )
        return self.engine.upsert_matter(candidate)

    def _import_note(self, record: ExternalRecord) -> UpsertResult:
        candidate = transform_note(
            record,
            contact_lookup=self.caches.lookup_person,
            matter_lookup=self.caches.lookup_matter,
            user_lookup=self.caches.lookup_user,
            default_user_id=self.caches.default_user_id,
            run_id=self.run_id,
            now=self.clock(),
        )
        if candidate is None:
            raise IdentityResolutionError(f"Could not resolve a contact or matter for note {external_id_of(record)}")
        return self.engine.upsert_note(candidate)

    def _import_activity(self, record: ExternalRecord) -> UpsertResult:
        candidate = transform_activity(
            record,
            contact_lookup=self.caches.lookup_person,
            matter_lookup=self.caches.lookup_matter,
            user_lookup=self.caches.lookup_user,
            default_user_id=self.caches.default_user_id,
            run_id=self.run_id,
            now=self.clock(),
        )
        return self.engine.upsert_activity(candidate)

    # Duplicate links -------------------------------------------------------------

    def _link(
        self,
        entity: ImportedEntity,
        record: ExternalRecord,
        external_id: str,
        match: DuplicateMatch,
        lookup: dict[str, int],
    ) -> UpsertResult:
        with self._transaction():
            self.detector.record_link(
                run_id=self.run_id,
                entity=entity,
                external_id=external_id,
                match=match,
                source_data={"record": dict(record)},
            )
        lookup[external_id] = match.matched_id
        logger.info(
            "Imported record linked to existing record",
            extra={
                "importer_run_id": self.run_id,
                "importer_entity": entity.value,
                "importer_external_id": external_id,
                "importer_match": match.to_dict(),
            },
        )
        return UpsertResult(
            action=UpsertAction.SKIPPED,
            entity=entity,
            external_id=external_id,
            record_id=match.matched_id,
            reason="duplicate_linked",
        )

    @contextmanager
    def _transaction(self):
        try:
            yield
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
