from __future__ import annotations

import logging

from importer_fakes import FIXED_NOW, activity_record, contact_record, note_record, prospect_record, user_record

from practice_app.importer.pipeline.caches import LookupCaches
from practice_app.importer.pipeline.processing import PageProcessor
from practice_app.models import (
    Activity,
    ImportDuplicate,
    ImportFlag,
    ImportPhase,
    Matter,
    MatterStatus,
    MigrationErrorType,
    Note,
    NoteTarget,
    Person,
    User,
    UserRole,
    db,
)


def _process(phase, records, run_id=None):
    caches = LookupCaches.build(db.session, run_id=run_id)
    return PageProcessor(run_id, caches, db.session, clock=lambda: FIXED_NOW).process(phase, records), caches


def test_users_page_creates_staff_and_links_existing_login(staff_user):
    result, caches = _process(
        ImportPhase.USERS,
        [
            user_record("u1", "alex@lawfirm.com", "Alex", "Attorney"),
            user_record("u2", "Admin@LawFirm.com", "Ada", "Admin"),
            user_record("u3", None, "No", "Email"),
        ],
    )

    assert result.to_dict() == {"created": 2, "updated": 0, "skipped": 1, "errored": 0}
    assert caches.lookup_user("u2") == staff_user.id
    linked = db.session.query(ImportDuplicate).one()
    assert linked.external_id == "u2"
    assert linked.entity_type == "user"
    placeholder = db.session.query(User).filter_by(import_external_id="u3").one()
    assert placeholder.email == "lawmatics.u3@imported.local"
    assert ImportFlag.MISSING_EMAIL in placeholder.import_meta.flags


def test_contacts_page_links_duplicates_and_keeps_organisations():
    native = Person(first_name="Casey", last_name="Native", email="casey@clientmail.com")
    db.session.add(native)
    db.session.commit()

    result, caches = _process(
        ImportPhase.CONTACTS,
        [
            contact_record("c1", email="casey@clientmail.com"),
            contact_record("c2", first_name="First National", last_name="Bank"),
            {"type": "contact", "attributes": {"first_name": "No", "last_name": "Id"}},
        ],
    )

    assert result.created == 1
    assert result.skipped == 1
    assert [error.kind for error in result.errors] == [MigrationErrorType.TRANSFORM]
    assert result.errors[0].external_id is None
    assert caches.lookup_person("c1") == native.id
    bank = db.session.query(Person).filter_by(import_external_id="c2").one()
    assert bank.is_person is False
    assert bank.display_name == "First National Bank"


def test_prospects_page_promotes_contact_and_resolves_attorney():
    _process(ImportPhase.USERS, [user_record("u1", "alex@lawfirm.com", "Alex", "Attorney")])
    _process(
        ImportPhase.CONTACTS,
        [
            contact_record("c1", email="casey@clientmail.com"),
            contact_record("c2", first_name="Smith Family", last_name="Trust"),
        ],
    )

    result, caches = _process(
        ImportPhase.PROSPECTS,
        [
            prospect_record("p1", contact_id="c1", attorney_id="u1", case_title="Estate plan", status="hired"),
            prospect_record("p2", contact_id="c2"),
            prospect_record("p3", contact_id=None),
            prospect_record("p4", contact_id="c404"),
        ],
    )

    assert result.created == 1
    assert [error.kind for error in result.errors] == [MigrationErrorType.IDENTITY] * 3
    assert [error.external_id for error in result.errors] == ["p2", "p3", "p4"]

    matter = db.session.query(Matter).one()
    client = db.session.get(User, matter.client_id)
    attorney = db.session.query(User).filter_by(import_external_id="u1", import_entity="user").one()
    assert matter.title == "Estate plan"
    assert matter.status is MatterStatus.OPEN
    assert matter.lead_attorney_id == attorney.id
    assert client.role is UserRole.CLIENT
    assert caches.lookup_matter("p1") == matter.id


def test_prospects_on_one_contact_share_a_single_client():
    _process(ImportPhase.CONTACTS, [contact_record("c1", email="casey@clientmail.com")])

    result, caches = _process(
        ImportPhase.PROSPECTS,
        [prospect_record(f"p{index}", contact_id="c1", case_title=f"Matter {index}") for index in range(1, 6)],
    )

    assert result.to_dict() == {"created": 5, "updated": 0, "skipped": 0, "errored": 0}
    [client] = db.session.query(User).filter_by(role=UserRole.CLIENT).all()
    matters = db.session.query(Matter).all()
    assert len(matters) == 5
    assert {matter.client_id for matter in matters} == {client.id}
    person = db.session.query(Person).filter_by(import_external_id="c1").one()
    assert person.user_id == client.id
    assert caches.person_users[person.id] == client.id


def test_notes_and_activities_pages(staff_user):
    _process(ImportPhase.CONTACTS, [contact_record("c1", email="casey@clientmail.com")])
    _process(ImportPhase.PROSPECTS, [prospect_record("p1", contact_id="c1", case_title="Estate plan")])

    notes, _ = _process(
        ImportPhase.NOTES,
        [
            note_record("n1", contact_id="c1", content="Called about the will"),
            note_record("n2", prospect_id="p1"),
            note_record("n3"),
        ],
    )
    activities, _ = _process(
        ImportPhase.ACTIVITIES,
        [activity_record("a1", contact_id="c1"), activity_record("a2", activity_type="webinar_attended")],
    )

    assert notes.to_dict() == {"created": 2, "updated": 0, "skipped": 0, "errored": 1}
    [orphan] = notes.errors
    assert orphan.external_id == "n3"
    assert orphan.kind is MigrationErrorType.IDENTITY
    assert orphan.details is None
    assert db.session.query(Note).filter_by(import_external_id="n3").count() == 0
    person_note = db.session.query(Note).filter_by(import_external_id="n1").one()
    assert person_note.target_type is NoteTarget.PERSON
    assert person_note.created_by_id == staff_user.id
    matter_note = db.session.query(Note).filter_by(import_external_id="n2").one()
    assert matter_note.target_type is NoteTarget.MATTER

    assert activities.created == 2
    untargeted = db.session.query(Activity).filter_by(import_external_id="a2").one()
    assert untargeted.target_type is None
    assert untargeted.type == "IMPORTED_WEBINAR_ATTENDED"


def test_reprocessing_a_page_is_idempotent():
    records = [contact_record("c1", email="casey@clientmail.com"), contact_record("c2", email="drew@clientmail.com")]

    first, _ = _process(ImportPhase.CONTACTS, records)
    second, _ = _process(ImportPhase.CONTACTS, records)

    assert first.created == 2
    assert second.to_dict() == {"created": 0, "updated": 2, "skipped": 0, "errored": 0}
    assert db.session.query(Person).count() == 2


def test_debug_page_log_prefixes_counters(caplog):
    with caplog.at_level(logging.DEBUG, logger="practice_app.importer.pipeline.processing"):
        result, _ = _process(ImportPhase.USERS, [user_record("u1", "alex@lawfirm.com")])

    assert result.created == 1
    [record] = [record for record in caplog.records if record.getMessage() == "Migration page processed"]
    assert record.importer_phase == "users"
    assert (record.importer_created, record.importer_errored) == (1, 0)
