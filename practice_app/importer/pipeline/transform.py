"""
Pure Lawmatics → practice record transformers.

Every function here is deterministic given its inputs (``now`` is passed in
rather than read from the clock) and never touches the database, so the
classification and placeholder rules can be exercised against fixed records.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Callable, Iterable, Mapping

from dateutil import parser as date_parser
from email_validator import EmailNotValidError, validate_email

from practice_app.models import (
    SOURCE_LAWMATICS,
    ImportedEntity,
    ImportFlag,
    ImportMetadata,
    MatterStatus,
    NoteTarget,
    UserRole,
    UserStatus,
)

ExternalRecord = Mapping[str, Any]
Lookup = Callable[[str], "int | None"]

MISSING_EMAIL_DOMAIN = "imported.local"
DUPLICATE_EMAIL_FALLBACK_DOMAIN = "placeholder.local"

NON_PERSON_TERMS: tuple[str, ...] = (
    "bank",
    "trust",
    "llc",
    "inc",
    "corp",
    "corporation",
    "foundation",
    "account",
    "financial",
    "insurance",
    "company",
    "partners",
    "partnership",
    "holdings",
    "estate of",
    "the estate",
    "revocable",
    "irrevocable",
    "charitable",
    "family office",
    "ventures",
    "capital",
    "investments",
    "properties",
    "realty",
    "associates",
)
ORGANIZATION_CONTACT_TYPES = frozenset(
    {"business", "company", "organization", "organisation", "entity", "trust", "estate", "firm"}
)

_NON_PERSON_RE = re.compile(
    r"\b(?:" + "|".join(r"\s+".join(map(re.escape, term.split())) for term in NON_PERSON_TERMS) + r")\b",
    re.IGNORECASE,
)
_FINANCIAL_PRODUCT_RE = re.compile(
    r"\b(?:roth\s+ira|ira|sep\s+ira|annuity|brokerage)\b|\b40[13]\s*\(?[kb]\b",
    re.IGNORECASE,
)
_POLICY_NUMBER_RE = re.compile(r"#\s*\d+")
_STREET_ADDRESS_RE = re.compile(r"^\s*\d+\s+[A-Za-z]")
_PO_BOX_RE = re.compile(r"\bp\.?\s*o\.?\s*box\b", re.IGNORECASE)
_FREE_TEXT_ADDRESS_RE = re.compile(
    r"^(?:(?P<street>.+?),\s*)?(?P<city>[^,\d][^,]*?),\s*(?P<state>[A-Za-z]{2}|[A-Za-z][A-Za-z .]+?)"
    r"\.?\s+(?P<zip>\d{5}(?:-\d{4})?)\s*(?:,\s*(?:USA|US|United States))?\s*$",
    re.IGNORECASE,
)
_TRAILING_ZIP_RE = re.compile(r"(?P<zip>\d{5}(?:-\d{4})?)\s*$")

PROSPECT_STATUS_MAP: Mapping[str, MatterStatus] = {
    "hired": MatterStatus.OPEN,
    "active": MatterStatus.OPEN,
    "engaged": MatterStatus.OPEN,
    "pnc": MatterStatus.CLOSED,
    "closed": MatterStatus.CLOSED,
    "lost": MatterStatus.CLOSED,
    "declined": MatterStatus.CLOSED,
}

# CRM user role -> (role, admin_level); anything else is staff.
USER_ROLE_MAP: Mapping[str, tuple[UserRole, int]] = {
    "owner": (UserRole.ADMIN, 2),
    "admin": (UserRole.ADMIN, 2),
    "attorney": (UserRole.LAWYER, 0),
    "lawyer": (UserRole.LAWYER, 0),
}

ACTIVITY_TYPE_MAP: Mapping[str, str] = {
    "email_sent": "EMAIL_SENT",
    "email_received": "EMAIL_RECEIVED",
    "email_opened": "EMAIL_OPENED",
    "email_clicked": "EMAIL_CLICKED",
    "call": "CALL_LOGGED",
    "call_logged": "CALL_LOGGED",
    "sms_sent": "SMS_SENT",
    "sms_received": "SMS_RECEIVED",
    "note_added": "NOTE_CREATED",
    "note": "NOTE_CREATED",
    "status_changed": "STATUS_CHANGED",
    "stage_changed": "STAGE_CHANGED",
    "document_uploaded": "DOCUMENT_UPLOADED",
    "document_signed": "DOCUMENT_SIGNED",
    "form_submitted": "FORM_SUBMITTED",
    "appointment_scheduled": "APPOINTMENT_SCHEDULED",
    "appointment_completed": "APPOINTMENT_COMPLETED",
    "payment_received": "PAYMENT_RECEIVED",
    "task_completed": "TASK_COMPLETED",
}


class RecordTransformError(ValueError):
    """Raised when an external record cannot be mapped to an internal record."""

    def __init__(self, message: str, *, external_id: str | None = None) -> None:
        super().__init__(message)
        self.external_id = external_id


@dataclass(frozen=True)
class RecordCandidate:
    """An internal record ready for upsert.

    ``fields`` are kept in sync on every import (minus locally modified ones);
    ``insert_only`` is written once when the record is created.
    """

    metadata: ImportMetadata
    fields: Mapping[str, Any]
    insert_only: Mapping[str, Any] = field(default_factory=dict)
    profile: Mapping[str, Any] | None = None

    @property
    def external_id(self) -> str:
        return self.metadata.external_id

    @property
    def entity(self) -> ImportedEntity:
        return self.metadata.entity


@dataclass(frozen=True)
class ParsedAddress:
    address: str | None = None
    city: str | None = None
    state: str | None = None
    zip_code: str | None = None

    def to_dict(self) -> dict[str, str | None]:
        return {"address": self.address, "city": self.city, "state": self.state, "zip_code": self.zip_code}


# Primitive helpers -------------------------------------------------------------


def coerce_string(value: object | None) -> str | None:
    """Coerce a value to a stripped string, returning None for blanks."""
    if value is None:
        return None
    token = str(value).strip()
    return token or None


def attributes_of(record: ExternalRecord) -> Mapping[str, Any]:
    attributes = record.get("attributes")
    return attributes if isinstance(attributes, Mapping) else {}


def external_id_of(record: ExternalRecord) -> str:
    external_id = coerce_string(record.get("id"))
    if external_id is None:
        raise RecordTransformError("Lawmatics record has no id")
    return external_id


def related_id(record: ExternalRecord, *names: str) -> str | None:
    """Return the first related external id among ``names``.

    Relationship data may be a single resource identifier or a list of them;
    for lists the first element wins.
    """
    relationships = record.get("relationships")
    if not isinstance(relationships, Mapping):
        return None
    for name in names:
        relation = relationships.get(name)
        if not isinstance(relation, Mapping):
            continue
        data = relation.get("data")
        if isinstance(data, list):
            data = data[0] if data else None
        if isinstance(data, Mapping):
            identifier = coerce_string(data.get("id"))
            if identifier:
                return identifier
    return None


def parse_date(value: object | None) -> datetime | None:
    """Parse a loosely typed date into an aware UTC datetime, or None when unparsable."""
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, str):
        token = value.strip()
        if not token:
            return None
        try:
            parsed = datetime.fromisoformat(token.replace("Z", "+00:00"))
        except ValueError:
            try:
                parsed = date_parser.parse(token)
            except (ValueError, OverflowError):
                return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def parse_birthdate(value: object | None) -> date | None:
    parsed = parse_date(value)
    return parsed.date() if parsed else None


def parse_free_text_address(text: str | None) -> ParsedAddress:
    """Best-effort split of ``"street, city, ST 12345"`` style text."""
    cleaned = coerce_string(text)
    if cleaned is None:
        return ParsedAddress()
    normalized = re.sub(r"\s*[\r\n]+\s*", ", ", cleaned)
    normalized = re.sub(r",\s*,", ",", normalized)
    match = _FREE_TEXT_ADDRESS_RE.match(normalized)
    if match:
        state = match.group("state").strip()
        return ParsedAddress(
            address=coerce_string(match.group("street")),
            city=coerce_string(match.group("city")),
            state=state.upper() if len(state) == 2 else state,
            zip_code=match.group("zip"),
        )
    trailing = _TRAILING_ZIP_RE.search(normalized)
    if trailing:
        street = coerce_string(normalized[: trailing.start()].rstrip(" ,"))
        return ParsedAddress(address=street, zip_code=trailing.group("zip"))
    return ParsedAddress(address=normalized)


def parse_address(attributes: Mapping[str, Any]) -> ParsedAddress:
    """Structured address from a contact; explicit city/state/zip always win over parsing."""
    raw_address = attributes.get("address")
    if isinstance(raw_address, Mapping):
        return ParsedAddress(
            address=coerce_string(raw_address.get("street") or raw_address.get("address") or raw_address.get("line1")),
            city=coerce_string(raw_address.get("city")),
            state=coerce_string(raw_address.get("state")),
            zip_code=coerce_string(raw_address.get("zipcode") or raw_address.get("zip_code") or raw_address.get("zip")),
        )

    city = coerce_string(attributes.get("city"))
    state = coerce_string(attributes.get("state"))
    zip_code = coerce_string(attributes.get("zipcode") or attributes.get("zip_code"))
    address = coerce_string(raw_address)
    if city or state or zip_code:
        return ParsedAddress(address=address, city=city, state=state, zip_code=zip_code)
    return parse_free_text_address(address)


def extract_custom_fields(values: object) -> dict[str, Any]:
    """Flatten Lawmatics custom field entries into ``{name: value}``."""
    if not isinstance(values, list):
        return {}
    extracted: dict[str, Any] = {}
    for entry in values:
        if not isinstance(entry, Mapping):
            continue
        name = coerce_string(entry.get("name"))
        if not name:
            continue
        value = entry.get("formatted_value")
        extracted[name] = value if value is not None else entry.get("value")
    return extracted


def normalize_email_key(email: str | None) -> str | None:
    """Case- and whitespace-insensitive comparison key for an email address."""
    if email is None:
        return None
    key = re.sub(r"\s+", "", email).lower()
    return key or None


def normalize_email(value: object | None) -> tuple[str | None, tuple[ImportFlag, ...]]:
    """Return a usable email (or None) plus any flags explaining why it was dropped."""
    email = coerce_string(value)
    if email is None:
        return None, (ImportFlag.MISSING_EMAIL,)
    try:
        validate_email(email, check_deliverability=False)
    except EmailNotValidError:
        return None, (ImportFlag.INVALID_EMAIL, ImportFlag.REVIEW_NEEDED)
    return email, ()


def missing_email_placeholder(external_id: str) -> str:
    return f"{SOURCE_LAWMATICS.lower()}.{external_id}@{MISSING_EMAIL_DOMAIN}"


def duplicate_email_placeholder(email: str, external_id: str) -> str:
    _, _, domain = email.partition("@")
    return f"imported+{external_id}@{domain.strip() or DUPLICATE_EMAIL_FALLBACK_DOMAIN}"


def resolve_login_email(
    email: str | None,
    external_id: str,
    taken_emails: Iterable[str] = (),
) -> tuple[str, tuple[ImportFlag, ...]]:
    """Pick a unique login email: the real one, or a deterministic placeholder."""
    if not email:
        return missing_email_placeholder(external_id), (ImportFlag.MISSING_EMAIL,)
    if normalize_email_key(email) in taken_emails:
        return duplicate_email_placeholder(email, external_id), (ImportFlag.DUPLICATE_EMAIL, ImportFlag.REVIEW_NEEDED)
    return email, ()


def is_probably_person(attributes: Mapping[str, Any]) -> bool:
    """Classify a contact as a natural person.

    Rules, in order:
    - no first and no last name → not a person;
    - an organization-like ``contact_type`` → not a person;
    - a name containing an organization, trust/estate or account keyword,
      a financial product (IRA, 401(k), annuity, brokerage), a policy
      number, a street address or a P.O. box → not a person;
    - first and last name → person;
    - a single name part counts only with a phone or birthdate.
    """
    first_name = coerce_string(attributes.get("first_name")) or ""
    last_name = coerce_string(attributes.get("last_name")) or ""
    if not first_name and not last_name:
        return False

    contact_type = (coerce_string(attributes.get("contact_type")) or "").lower()
    if contact_type in ORGANIZATION_CONTACT_TYPES:
        return False

    full_name = f"{first_name} {last_name}".strip()
    for pattern in (_NON_PERSON_RE, _FINANCIAL_PRODUCT_RE, _POLICY_NUMBER_RE, _STREET_ADDRESS_RE, _PO_BOX_RE):
        if pattern.search(full_name):
            return False

    if first_name and last_name:
        return True
    has_phone = bool(coerce_string(attributes.get("phone")) or coerce_string(attributes.get("phone_number")))
    has_birthdate = bool(coerce_string(attributes.get("birthdate")))
    return has_phone or has_birthdate


def map_user_role(value: object | None) -> tuple[UserRole, int]:
    return USER_ROLE_MAP.get((coerce_string(value) or "").lower(), (UserRole.STAFF, 0))


def map_prospect_status(value: object | None) -> MatterStatus:
    return PROSPECT_STATUS_MAP.get((coerce_string(value) or "").lower(), MatterStatus.PENDING)


def map_activity_type(value: object | None) -> str:
    token = (coerce_string(value) or "activity").lower()
    mapped = ACTIVITY_TYPE_MAP.get(token)
    if mapped:
        return mapped
    return "IMPORTED_" + re.sub(r"[^A-Z0-9]", "_", token.upper())


def _metadata(
    entity: ImportedEntity,
    external_id: str,
    *,
    run_id: int | None,
    now: datetime,
    flags: Iterable[ImportFlag] = (),
    source_data: Mapping[str, Any] | None = None,
) -> ImportMetadata:
    unique_flags = tuple(dict.fromkeys(flags))
    return ImportMetadata(
        source=SOURCE_LAWMATICS,
        entity=entity,
        external_id=external_id,
        import_run_id=run_id,
        imported_at=now,
        last_synced_at=now,
        flags=unique_flags,
        source_data=source_data,
    )


def _timestamps(attributes: Mapping[str, Any], now: datetime) -> dict[str, datetime]:
    return {
        "created_at": parse_date(attributes.get("created_at")) or now,
        "updated_at": parse_date(attributes.get("updated_at")) or now,
    }


def _now(now: datetime | None) -> datetime:
    return now or datetime.now(timezone.utc)


# Entity transformers -----------------------------------------------------------


def transform_user(user: ExternalRecord, *, run_id: int | None = None, now: datetime | None = None) -> RecordCandidate:
    """Firm user. Imported inactive, with the role mapped from the CRM role."""
    now = _now(now)
    external_id = external_id_of(user)
    attributes = attributes_of(user)
    role, admin_level = map_user_role(attributes.get("role"))
    email, flags = normalize_email(attributes.get("email"))
    login_email, placeholder_flags = resolve_login_email(email, external_id)
    return RecordCandidate(
        metadata=_metadata(
            ImportedEntity.USER,
            external_id,
            run_id=run_id,
            now=now,
            flags=(*flags, *placeholder_flags),
            source_data={"role": attributes.get("role"), "active": attributes.get("active")},
        ),
        fields={
            "email": login_email,
            "first_name": coerce_string(attributes.get("first_name")),
            "last_name": coerce_string(attributes.get("last_name")),
            "phone": coerce_string(attributes.get("phone")),
        },
        insert_only={
            "role": role,
            "status": UserStatus.INACTIVE,
            "admin_level": admin_level,
            **_timestamps(attributes, now),
        },
    )


def transform_contact(
    contact: ExternalRecord, *, run_id: int | None = None, now: datetime | None = None
) -> RecordCandidate:
    """Contact → ``Person``. Non-person contacts are kept but flagged for review."""
    now = _now(now)
    external_id = external_id_of(contact)
    attributes = attributes_of(contact)
    flags: list[ImportFlag] = []

    person = is_probably_person(attributes)
    if not person:
        flags.extend((ImportFlag.POSSIBLY_NOT_PERSON, ImportFlag.REVIEW_NEEDED))

    raw_email = attributes.get("email") or attributes.get("email_address")
    email, email_flags = normalize_email(raw_email)
    flags.extend(email_flags)

    first_name = coerce_string(attributes.get("first_name"))
    last_name = coerce_string(attributes.get("last_name"))
    if not first_name and not last_name:
        flags.extend((ImportFlag.MISSING_NAME, ImportFlag.REVIEW_NEEDED))

    full_name = " ".join(part for part in (first_name, last_name) if part) or None
    address = parse_address(attributes)
    return RecordCandidate(
        metadata=_metadata(
            ImportedEntity.PERSON,
            external_id,
            run_id=run_id,
            now=now,
            flags=flags,
            source_data={
                "original_email": raw_email,
                "contact_type": attributes.get("contact_type"),
                "marital_status": attributes.get("marital_status"),
                "gender": attributes.get("gender"),
                "citizenship": attributes.get("citizenship"),
            },
        ),
        fields={
            "first_name": first_name,
            "last_name": last_name,
            "email": email,
            "phone": coerce_string(attributes.get("phone") or attributes.get("phone_number")),
            "date_of_birth": parse_birthdate(attributes.get("birthdate")),
            **address.to_dict(),
            "is_person": person,
            "entity_name": None if person else full_name,
            "contact_type": coerce_string(attributes.get("contact_type")),
            "custom_fields": extract_custom_fields(attributes.get("custom_fields")),
        },
        insert_only=_timestamps(attributes, now),
    )


def transform_person_to_client(
    person: Any,
    *,
    external_id: str,
    taken_emails: Iterable[str] = (),
    run_id: int | None = None,
    now: datetime | None = None,
) -> RecordCandidate:
    """Login identity plus client profile for a promoted ``Person``.

    The role and status are neutral: a client that has not engaged yet.
    """
    now = _now(now)
    email, flags = resolve_login_email(person.email, external_id, taken_emails)
    return RecordCandidate(
        metadata=_metadata(
            ImportedEntity.CLIENT,
            external_id,
            run_id=run_id,
            now=now,
            flags=flags,
            source_data={"person_id": person.id},
        ),
        fields={
            "email": email,
            "first_name": person.first_name,
            "last_name": person.last_name,
            "phone": person.phone,
        },
        insert_only={"role": UserRole.CLIENT, "status": UserStatus.INACTIVE, "admin_level": 0},
        profile={
            "date_of_birth": person.date_of_birth,
            "address": person.address,
            "city": person.city,
            "state": person.state,
            "zip_code": person.zip_code,
            "custom_fields": dict(person.custom_fields or {}),
        },
    )


def transform_prospect(
    prospect: ExternalRecord,
    *,
    client_id: int,
    lead_attorney_id: int | None = None,
    run_id: int | None = None,
    now: datetime | None = None,
) -> RecordCandidate:
    """Prospect → ``Matter`` owned by an already promoted client."""
    now = _now(now)
    external_id = external_id_of(prospect)
    attributes = attributes_of(prospect)

    title = coerce_string(attributes.get("case_title"))
    if not title:
        name = " ".join(
            part for part in (coerce_string(attributes.get("first_name")), coerce_string(attributes.get("last_name"))) if part
        )
        stage = coerce_string(attributes.get("stage")) or "Matter"
        title = f"{name} - {stage}" if name else stage

    estimated = attributes.get("estimated_value_cents")
    timestamps = _timestamps(attributes, now)
    return RecordCandidate(
        metadata=_metadata(
            ImportedEntity.MATTER,
            external_id,
            run_id=run_id,
            now=now,
            source_data={
                "stage": attributes.get("stage"),
                "status": attributes.get("status"),
                "estimated_value_cents": estimated,
                "actual_value_cents": attributes.get("actual_value_cents"),
                "contact_id": related_id(prospect, "contact"),
            },
        ),
        fields={
            "client_id": client_id,
            "title": title,
            "description": coerce_string(attributes.get("case_blurb")),
            "status": map_prospect_status(attributes.get("status")),
            "stage": coerce_string(attributes.get("stage")),
            "practice_area": coerce_string(attributes.get("practice_area") or attributes.get("practice_area_name")),
            "lead_attorney_id": lead_attorney_id,
            "estimated_value": str(estimated) if estimated is not None else None,
            "custom_fields": extract_custom_fields(attributes.get("custom_fields")),
        },
        insert_only={"opened_at": timestamps["created_at"], **timestamps},
    )


def _resolve_target(
    record: ExternalRecord, contact_lookup: Lookup, matter_lookup: Lookup
) -> tuple[NoteTarget | None, int | None]:
    contact_id = related_id(record, "contact")
    if contact_id:
        person_id = contact_lookup(contact_id)
        if person_id:
            return NoteTarget.PERSON, person_id
    prospect_id = related_id(record, "prospect", "matter")
    if prospect_id:
        matter_id = matter_lookup(prospect_id)
        if matter_id:
            return NoteTarget.MATTER, matter_id
    return None, None


def _resolve_actor(record: ExternalRecord, user_lookup: Lookup, default_user_id: int | None, *names: str) -> int | None:
    user_external_id = related_id(record, *names)
    if user_external_id:
        resolved = user_lookup(user_external_id)
        if resolved:
            return resolved
    return default_user_id


def transform_note(
    note: ExternalRecord,
    *,
    contact_lookup: Lookup,
    matter_lookup: Lookup,
    user_lookup: Lookup,
    default_user_id: int | None = None,
    run_id: int | None = None,
    now: datetime | None = None,
) -> RecordCandidate | None:
    """Note → ``Note`` on a person (preferred) or matter. None when neither resolves."""
    now = _now(now)
    external_id = external_id_of(note)
    attributes = attributes_of(note)
    target_type, target_id = _resolve_target(note, contact_lookup, matter_lookup)
    if target_type is None:
        return None
    return RecordCandidate(
        metadata=_metadata(ImportedEntity.NOTE, external_id, run_id=run_id, now=now),
        fields={"content": coerce_string(attributes.get("content") or attributes.get("body")) or ""},
        insert_only={
            "target_type": target_type,
            "target_id": target_id,
            "created_by_id": _resolve_actor(note, user_lookup, default_user_id, "created_by", "user"),
            **_timestamps(attributes, now),
        },
    )


def transform_activity(
    activity: ExternalRecord,
    *,
    contact_lookup: Lookup,
    matter_lookup: Lookup,
    user_lookup: Lookup,
    default_user_id: int | None = None,
    run_id: int | None = None,
    now: datetime | None = None,
) -> RecordCandidate:
    """Timeline entry → ``Activity``. Activities without a resolvable target are still kept."""
    now = _now(now)
    external_id = external_id_of(activity)
    attributes = attributes_of(activity)
    target_type, target_id = _resolve_target(activity, contact_lookup, matter_lookup)
    activity_type = map_activity_type(attributes.get("activity_type") or attributes.get("event_type") or activity.get("type"))
    occurred_at = parse_date(attributes.get("created_at")) or now
    return RecordCandidate(
        metadata=_metadata(ImportedEntity.ACTIVITY, external_id, run_id=run_id, now=now),
        fields={},
        insert_only={
            "type": activity_type,
            "description": coerce_string(attributes.get("description")) or f"Imported {activity_type} activity",
            "user_id": _resolve_actor(activity, user_lookup, default_user_id, "user", "created_by"),
            "target_type": target_type,
            "target_id": target_id,
            "occurred_at": occurred_at,
            "details": {
                key: attributes.get(key)
                for key in ("subject", "body", "activity_type", "event_type")
                if attributes.get(key) is not None
            }
            or None,
            "created_at": occurred_at,
            "updated_at": occurred_at,
        },
    )
