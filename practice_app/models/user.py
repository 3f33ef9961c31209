# practice_app/models/user.py

from __future__ import annotations

import enum
from datetime import date

from sqlalchemy import Enum, ForeignKey, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import BaseModel, db
from .imported import ImportedRecordMixin


class UserRole(str, enum.Enum):
    ADMIN = "admin"
    LAWYER = "lawyer"
    STAFF = "staff"
    CLIENT = "client"


class UserStatus(str, enum.Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    INVITED = "invited"


class User(ImportedRecordMixin, BaseModel):
    """Login identity for staff members and clients."""

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(primary_key=True)
    email: Mapped[str] = mapped_column(db.String(255), nullable=False, unique=True, index=True)
    first_name: Mapped[str | None] = mapped_column(db.String(100), nullable=True)
    last_name: Mapped[str | None] = mapped_column(db.String(100), nullable=True)
    phone: Mapped[str | None] = mapped_column(db.String(40), nullable=True)
    role: Mapped[UserRole] = mapped_column(
        Enum(UserRole, name="user_role_enum"),
        nullable=False,
        default=UserRole.STAFF,
    )
    status: Mapped[UserStatus] = mapped_column(
        Enum(UserStatus, name="user_status_enum"),
        nullable=False,
        default=UserStatus.INACTIVE,
    )
    admin_level: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)

    client_profile = relationship(
        "ClientProfile",
        back_populates="user",
        uselist=False,
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        UniqueConstraint("import_source", "import_entity", "import_external_id", name="uq_users_import_key"),
    )

    @property
    def full_name(self) -> str:
        return " ".join(part for part in (self.first_name, self.last_name) if part)

    def __repr__(self) -> str:
        return f"<User {self.email}>"


class ClientProfile(BaseModel):
    """Client-specific details attached to a ``CLIENT`` user."""

    __tablename__ = "client_profiles"

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True)
    date_of_birth: Mapped[date | None] = mapped_column(db.Date, nullable=True)
    address: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    city: Mapped[str | None] = mapped_column(db.String(100), nullable=True)
    state: Mapped[str | None] = mapped_column(db.String(50), nullable=True)
    zip_code: Mapped[str | None] = mapped_column(db.String(20), nullable=True)
    custom_fields: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)

    user = relationship("User", back_populates="client_profile")
