"""
Promotion of an imported ``Person`` to a client login identity.

Prospects can only be attached to a client ``User``. Promotion is idempotent:
once a person is linked, later calls return the same user id.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager

from sqlalchemy.orm import Session

from practice_app.importer.pipeline.caches import LookupCaches
from practice_app.importer.pipeline.transform import transform_person_to_client
from practice_app.importer.pipeline.upsert import UpsertEngine
from practice_app.models import Person, db

logger = logging.getLogger(__name__)


class IdentityResolutionError(RuntimeError):
    """Raised when a person cannot be turned into a client identity."""

    def __init__(self, message: str, *, person_id: int | None = None) -> None:
        super().__init__(message)
        self.person_id = person_id


def promotion_external_id(person: Person) -> str:
    """External id of the client identity; native people get a synthetic one."""
    return person.import_external_id or f"person-{person.id}"


class IdentityPromoter:
    def __init__(self, engine: UpsertEngine, caches: LookupCaches, session: Session | None = None):
        self.engine = engine
        self.caches = caches
        self.session = session or db.session

    def ensure_person_is_client(self, person_id: int) -> int:
        """Return the client user id for ``person_id``, creating and linking it if needed."""
        cached = self.caches.person_users.get(person_id)
        if cached is not None:
            return cached

        person = self.session.get(Person, person_id)
        if person is None:
            raise IdentityResolutionError(f"Person {person_id} does not exist", person_id=person_id)
        if person.user_id is not None:
            self.caches.person_users[person_id] = person.user_id
            return person.user_id
        if not person.is_person:
            raise IdentityResolutionError(
                f"Contact {person_id} looks like an organization or account and cannot become a client",
                person_id=person_id,
            )

        candidate = transform_person_to_client(
            person,
            external_id=promotion_external_id(person),
            taken_emails=self.caches.user_emails,
            run_id=self.engine.run_id,
            now=self.engine.clock(),
        )
        result = self.engine.upsert_client(candidate)
        user_id = result.record_id

        with self._transaction():
            person = self.session.get(Person, person_id)
            person.user_id = user_id

        self.caches.person_users[person_id] = user_id
        logger.info(
            "Person promoted to client",
            extra={
                "importer_run_id": self.engine.run_id,
                "importer_person_id": person_id,
                "importer_user_id": user_id,
                "importer_upsert_action": result.action.value,
            },
        )
        return user_id

    @contextmanager
    def _transaction(self):
        try:
            yield
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
