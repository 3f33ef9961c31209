"""
Pre-insert duplicate detection for person-like records.

Matching is email-only: an exact match first, then a case and whitespace
insensitive match. Name and phone matching is deliberately absent; contacts
without an email are never matched.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from practice_app.importer.pipeline.transform import coerce_string, normalize_email_key
from practice_app.models import (
    SOURCE_LAWMATICS,
    DuplicateResolution,
    DuplicateType,
    ImportDuplicate,
    ImportedEntity,
    Person,
    User,
    db,
)

EXACT_EMAIL_CONFIDENCE = 100
NORMALIZED_EMAIL_CONFIDENCE = 95


@dataclass(frozen=True)
class DuplicateMatch:
    matched_id: int
    confidence: int
    match_type: DuplicateType
    matching_value: str

    def to_dict(self) -> dict[str, object]:
        return {
            "matched_id": self.matched_id,
            "confidence": self.confidence,
            "match_type": self.match_type.value,
            "matching_value": self.matching_value,
        }


class DuplicateDetector:
    def __init__(self, session: Session | None = None):
        self.session = session or db.session

    def find_person_match(self, email: str | None, name: str | None = None) -> DuplicateMatch | None:
        """Match an incoming contact against existing people. ``name`` is informational only."""
        return self._find_by_email(Person, Person.email, email)

    def find_user_match(self, email: str | None) -> DuplicateMatch | None:
        return self._find_by_email(User, User.email, email)

    def record_link(
        self,
        *,
        run_id: int | None,
        entity: ImportedEntity,
        external_id: str,
        match: DuplicateMatch,
        source_data: Mapping[str, Any] | None = None,
        source: str = SOURCE_LAWMATICS,
    ) -> ImportDuplicate:
        """Log the link. The caller owns the transaction."""
        duplicate = ImportDuplicate(
            run_id=run_id,
            source=source,
            external_id=external_id,
            entity_type=entity.value,
            source_data=dict(source_data) if source_data else None,
            duplicate_type=match.match_type,
            matching_field="email",
            matching_value=match.matching_value,
            confidence=match.confidence,
            existing_id=match.matched_id,
            resolution=DuplicateResolution.LINKED,
            resolved_id=match.matched_id,
        )
        self.session.add(duplicate)
        return duplicate

    def _find_by_email(self, model, column, email: str | None) -> DuplicateMatch | None:
        email = coerce_string(email)
        if email is None:
            return None

        exact_id = self.session.scalars(select(model.id).where(column == email).order_by(model.id.asc()).limit(1)).first()
        if exact_id is not None:
            return DuplicateMatch(exact_id, EXACT_EMAIL_CONFIDENCE, DuplicateType.EMAIL_EXACT, email)

        key = normalize_email_key(email)
        normalized_id = self.session.scalars(
            select(model.id)
            .where(func.lower(func.replace(func.trim(column), " ", "")) == key)
            .order_by(model.id.asc())
            .limit(1)
        ).first()
        if normalized_id is not None:
            return DuplicateMatch(normalized_id, NORMALIZED_EMAIL_CONFIDENCE, DuplicateType.EMAIL_NORMALIZED, key)
        return None
