# practice_app/models/practice.py

from __future__ import annotations

import enum
from datetime import date, datetime

from sqlalchemy import Enum, ForeignKey, Index, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import BaseModel, db
from .imported import ImportedRecordMixin


class MatterStatus(str, enum.Enum):
    OPEN = "open"
    PENDING = "pending"
    CLOSED = "closed"


class NoteTarget(str, enum.Enum):
    PERSON = "person"
    MATTER = "matter"


class Person(ImportedRecordMixin, BaseModel):
    """A contact record; natural persons may later be promoted to a client user."""

    __tablename__ = "people"

    id: Mapped[int] = mapped_column(primary_key=True)
    first_name: Mapped[str | None] = mapped_column(db.String(100), nullable=True)
    last_name: Mapped[str | None] = mapped_column(db.String(100), nullable=True)
    email: Mapped[str | None] = mapped_column(db.String(255), nullable=True, index=True)
    phone: Mapped[str | None] = mapped_column(db.String(40), nullable=True)
    date_of_birth: Mapped[date | None] = mapped_column(db.Date, nullable=True)
    address: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    city: Mapped[str | None] = mapped_column(db.String(100), nullable=True)
    state: Mapped[str | None] = mapped_column(db.String(50), nullable=True)
    zip_code: Mapped[str | None] = mapped_column(db.String(20), nullable=True)
    is_person: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=True)
    entity_name: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    contact_type: Mapped[str | None] = mapped_column(db.String(100), nullable=True)
    custom_fields: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True, unique=True)

    user = relationship("User", foreign_keys=[user_id])

    __table_args__ = (
        UniqueConstraint("import_source", "import_entity", "import_external_id", name="uq_people_import_key"),
    )

    @property
    def display_name(self) -> str:
        if not self.is_person and self.entity_name:
            return self.entity_name
        return " ".join(part for part in (self.first_name, self.last_name) if part) or (self.entity_name or "")


class Matter(ImportedRecordMixin, BaseModel):
    __tablename__ = "matters"

    id: Mapped[int] = mapped_column(primary_key=True)
    client_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    title: Mapped[str] = mapped_column(db.String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    status: Mapped[MatterStatus] = mapped_column(
        Enum(MatterStatus, name="matter_status_enum"),
        nullable=False,
        default=MatterStatus.PENDING,
    )
    stage: Mapped[str | None] = mapped_column(db.String(100), nullable=True)
    practice_area: Mapped[str | None] = mapped_column(db.String(100), nullable=True)
    lead_attorney_id: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    estimated_value: Mapped[str | None] = mapped_column(db.String(50), nullable=True)
    opened_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)
    closed_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)
    custom_fields: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)

    client = relationship("User", foreign_keys=[client_id])
    lead_attorney = relationship("User", foreign_keys=[lead_attorney_id])

    __table_args__ = (
        UniqueConstraint("import_source", "import_entity", "import_external_id", name="uq_matters_import_key"),
    )


class Note(ImportedRecordMixin, BaseModel):
    __tablename__ = "notes"

    id: Mapped[int] = mapped_column(primary_key=True)
    content: Mapped[str] = mapped_column(db.Text, nullable=False)
    target_type: Mapped[NoteTarget] = mapped_column(Enum(NoteTarget, name="note_target_enum"), nullable=False)
    target_id: Mapped[int] = mapped_column(db.Integer, nullable=False)
    created_by_id: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True)

    __table_args__ = (
        UniqueConstraint("import_source", "import_entity", "import_external_id", name="uq_notes_import_key"),
        Index("idx_notes_target", "target_type", "target_id"),
    )


class Activity(ImportedRecordMixin, BaseModel):
    """Timeline entry. Imported activities are immutable once written."""

    __tablename__ = "activities"

    id: Mapped[int] = mapped_column(primary_key=True)
    type: Mapped[str] = mapped_column(db.String(80), nullable=False, index=True)
    description: Mapped[str] = mapped_column(db.Text, nullable=False)
    user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    target_type: Mapped[NoteTarget | None] = mapped_column(Enum(NoteTarget, name="activity_target_enum"), nullable=True)
    target_id: Mapped[int | None] = mapped_column(db.Integer, nullable=True)
    occurred_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)
    details: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)

    __table_args__ = (
        UniqueConstraint("import_source", "import_entity", "import_external_id", name="uq_activities_import_key"),
        Index("idx_activities_target", "target_type", "target_id"),
    )
