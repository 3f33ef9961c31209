"""
Per-step lookup caches for external-id resolution.

A ``LookupCaches`` value is built from the store at the start of a processing
step, threaded through transform/dedupe/promote/upsert calls, and dropped at
the end of the step. It is never a durable store: the database is always the
source of truth and a fresh build must give the same answers.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Set

from sqlalchemy import select
from sqlalchemy.orm import Session

from practice_app.importer.pipeline.transform import normalize_email_key
from practice_app.models import (
    SOURCE_LAWMATICS,
    DuplicateResolution,
    ImportDuplicate,
    ImportedEntity,
    Matter,
    Person,
    User,
    UserRole,
    db,
)

logger = logging.getLogger(__name__)


@dataclass
class LookupCaches:
    run_id: int | None = None
    users: Dict[str, int] = field(default_factory=dict)
    people: Dict[str, int] = field(default_factory=dict)
    matters: Dict[str, int] = field(default_factory=dict)
    person_users: Dict[int, int] = field(default_factory=dict)
    user_emails: Set[str] = field(default_factory=set)
    default_user_id: int | None = None

    @classmethod
    def build(cls, session: Session | None = None, *, run_id: int | None = None, source: str = SOURCE_LAWMATICS) -> "LookupCaches":
        """Load every map from the store."""
        session = session or db.session
        caches = cls(run_id=run_id)

        for external_id, user_id in session.execute(
            select(User.import_external_id, User.id).where(
                User.import_source == source,
                User.import_entity == ImportedEntity.USER.value,
            )
        ):
            caches.users[external_id] = user_id

        for external_id, person_id in session.execute(
            select(Person.import_external_id, Person.id).where(
                Person.import_source == source,
                Person.import_entity == ImportedEntity.PERSON.value,
            )
        ):
            caches.people[external_id] = person_id

        for external_id, matter_id in session.execute(
            select(Matter.import_external_id, Matter.id).where(
                Matter.import_source == source,
                Matter.import_entity == ImportedEntity.MATTER.value,
            )
        ):
            caches.matters[external_id] = matter_id

        # Duplicate-linked records resolve to the record they were linked to.
        linked = session.execute(
            select(ImportDuplicate.entity_type, ImportDuplicate.external_id, ImportDuplicate.resolved_id)
            .where(
                ImportDuplicate.source == source,
                ImportDuplicate.resolution == DuplicateResolution.LINKED,
                ImportDuplicate.resolved_id.is_not(None),
            )
            .order_by(ImportDuplicate.id.asc())
        )
        for entity_type, external_id, resolved_id in linked:
            if entity_type == ImportedEntity.PERSON.value:
                caches.people.setdefault(external_id, resolved_id)
            elif entity_type == ImportedEntity.USER.value:
                caches.users.setdefault(external_id, resolved_id)

        for person_id, user_id in session.execute(select(Person.id, Person.user_id).where(Person.user_id.is_not(None))):
            caches.person_users[person_id] = user_id

        for (email,) in session.execute(select(User.email)):
            key = normalize_email_key(email)
            if key:
                caches.user_emails.add(key)

        caches.default_user_id = session.execute(
            select(User.id).where(User.role != UserRole.CLIENT).order_by(User.id.asc()).limit(1)
        ).scalar_one_or_none()

        logger.debug(
            "Lookup caches built",
            extra={
                "importer_run_id": run_id,
                "importer_cached_users": len(caches.users),
                "importer_cached_people": len(caches.people),
                "importer_cached_matters": len(caches.matters),
                "importer_cached_promotions": len(caches.person_users),
            },
        )
        return caches

    def lookup_user(self, external_id: str) -> int | None:
        return self.users.get(external_id)

    def lookup_person(self, external_id: str) -> int | None:
        return self.people.get(external_id)

    def lookup_matter(self, external_id: str) -> int | None:
        return self.matters.get(external_id)

    def claim_email(self, email: str | None) -> None:
        key = normalize_email_key(email)
        if key:
            self.user_emails.add(key)


class CacheRegistry:
    """In-process registry of caches keyed by run id, cleared explicitly."""

    def __init__(self) -> None:
        self._caches: Dict[int, LookupCaches] = {}

    def get(self, run_id: int, session: Session | None = None) -> LookupCaches:
        caches = self._caches.get(run_id)
        if caches is None:
            caches = LookupCaches.build(session, run_id=run_id)
            self._caches[run_id] = caches
        return caches

    def reset(self, run_id: int | None = None) -> None:
        if run_id is None:
            self._caches.clear()
        else:
            self._caches.pop(run_id, None)

    def __contains__(self, run_id: object) -> bool:
        return run_id in self._caches
