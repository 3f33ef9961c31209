from __future__ import annotations

from datetime import datetime, timezone

import pytest

from practice_app.importer.pipeline.state_machine import (
    PHASE_ORDER,
    Checkpoint,
    Delivery,
    ImportPageMessage,
    PageFilter,
    PageOutcome,
    PhaseCompleteMessage,
    RunState,
    delivery_for,
    message_from_payload,
    next_phase,
    ordered_phases,
    page_already_completed,
    plan_resume,
    plan_start,
    reemit,
    resume_point,
    transition,
)
from practice_app.models import ImportPhase, RunStatus, RunType

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
USERS, CONTACTS, PROSPECTS, NOTES, ACTIVITIES = PHASE_ORDER


def _state(checkpoint=None, *, status=RunStatus.RUNNING, run_type=RunType.FULL, requested=PHASE_ORDER, timestamps=None):
    return RunState(
        run_id=1,
        status=status,
        run_type=run_type,
        requested=tuple(requested),
        checkpoint=checkpoint,
        sync_timestamps=timestamps or {},
    )


def test_ordered_phases_uses_dependency_order():
    assert ordered_phases(["notes", "users"]) == (USERS, NOTES)
    assert ordered_phases([ImportPhase.ACTIVITIES, "Contacts "]) == (CONTACTS, ACTIVITIES)
    assert ordered_phases(None) == PHASE_ORDER
    assert ordered_phases([]) == PHASE_ORDER


def test_ordered_phases_rejects_unknown_phase():
    with pytest.raises(ValueError, match="invoices"):
        ordered_phases(["users", "invoices"])


def test_next_phase_skips_unrequested_phases():
    assert next_phase((USERS, NOTES), USERS) is NOTES
    assert next_phase((USERS, NOTES), NOTES) is None
    assert next_phase(PHASE_ORDER, PROSPECTS) is NOTES


def test_plan_start_enqueues_first_requested_page():
    plan = plan_start(7, RunType.FULL, ["prospects", "contacts"])

    assert plan.status is RunStatus.RUNNING
    assert plan.messages == (ImportPageMessage(7, CONTACTS, 1, PageFilter()),)


def test_incremental_start_filters_on_last_sync():
    plan = plan_start(7, RunType.INCREMENTAL, ["users"], {"users": "2024-05-01T00:00:00+00:00"})

    assert plan.messages[0].filter == PageFilter(updated_since="2024-05-01T00:00:00+00:00")


def test_incremental_phase_without_history_fetches_everything():
    plan = plan_start(7, RunType.INCREMENTAL, ["contacts"], {"users": "2024-05-01T00:00:00+00:00"})

    assert plan.messages[0].filter == PageFilter()


def test_page_with_more_records_continues_to_next_page():
    step = transition(_state(), ImportPageMessage(1, USERS, 1), page_outcome=PageOutcome(has_more=True), now=NOW)

    assert step.status is RunStatus.RUNNING
    assert step.checkpoint == Checkpoint(USERS, 1, has_more=True, timestamp=NOW.isoformat())
    assert step.messages == (ImportPageMessage(1, USERS, 2),)


def test_last_page_completes_the_phase():
    step = transition(_state(), ImportPageMessage(1, USERS, 4), page_outcome=PageOutcome(has_more=False), now=NOW)

    assert step.checkpoint.has_more is False
    assert step.messages == (PhaseCompleteMessage(1, USERS),)


def test_page_transition_requires_outcome():
    with pytest.raises(ValueError):
        transition(_state(), ImportPageMessage(1, USERS, 1))


def test_phase_complete_enters_next_requested_phase():
    state = _state(
        Checkpoint(USERS, 3, has_more=False, continued=True),
        run_type=RunType.INCREMENTAL,
        requested=(USERS, NOTES),
        timestamps={"notes": "2024-05-02T00:00:00+00:00"},
    )

    step = transition(state, PhaseCompleteMessage(1, USERS), now=NOW)

    assert step.checkpoint == Checkpoint(NOTES, 0, has_more=True, timestamp=NOW.isoformat())
    assert step.messages == (ImportPageMessage(1, NOTES, 1, PageFilter("2024-05-02T00:00:00+00:00")),)


def test_last_phase_complete_completes_run():
    step = transition(_state(Checkpoint(ACTIVITIES, 2, has_more=False)), PhaseCompleteMessage(1, ACTIVITIES))

    assert step.status is RunStatus.COMPLETED
    assert step.completes is True
    assert step.messages == ()


@pytest.mark.parametrize("status", [RunStatus.PAUSED, RunStatus.CANCELLED, RunStatus.FAILED, RunStatus.COMPLETED])
def test_inactive_runs_ignore_messages(status):
    state = _state(status=status)

    assert delivery_for(state, ImportPageMessage(1, USERS, 1)) is Delivery.IGNORE
    assert transition(state, PhaseCompleteMessage(1, USERS)).effects == ()


def test_page_delivery_classification():
    state = _state(Checkpoint(CONTACTS, 3, has_more=True, continued=True))

    assert delivery_for(state, ImportPageMessage(1, CONTACTS, 4)) is Delivery.PROCESS
    assert delivery_for(state, ImportPageMessage(1, CONTACTS, 3)) is Delivery.DROP
    assert delivery_for(state, ImportPageMessage(1, CONTACTS, 2)) is Delivery.DROP
    assert delivery_for(state, ImportPageMessage(1, USERS, 9)) is Delivery.DROP
    assert delivery_for(state, ImportPageMessage(1, NOTES, 1)) is Delivery.PROCESS


def test_checkpointed_page_without_follow_up_is_reemitted():
    state = _state(Checkpoint(CONTACTS, 3, has_more=True, continued=False))

    assert delivery_for(state, ImportPageMessage(1, CONTACTS, 3)) is Delivery.REEMIT
    assert reemit(state).messages == (ImportPageMessage(1, CONTACTS, 4),)

    finished = _state(Checkpoint(CONTACTS, 3, has_more=False, continued=False))
    assert reemit(finished).messages == (PhaseCompleteMessage(1, CONTACTS),)


def test_phase_complete_delivery_classification():
    assert delivery_for(_state(), PhaseCompleteMessage(1, USERS)) is Delivery.PROCESS
    assert delivery_for(_state(Checkpoint(USERS, 2, has_more=False)), PhaseCompleteMessage(1, USERS)) is Delivery.PROCESS

    entered = _state(Checkpoint(CONTACTS, 0, continued=False))
    assert delivery_for(entered, PhaseCompleteMessage(1, USERS)) is Delivery.REEMIT
    assert reemit(entered).messages == (ImportPageMessage(1, CONTACTS, 1),)

    continued = _state(Checkpoint(CONTACTS, 0, continued=True))
    assert delivery_for(continued, PhaseCompleteMessage(1, USERS)) is Delivery.DROP

    further = _state(Checkpoint(NOTES, 2))
    assert delivery_for(further, PhaseCompleteMessage(1, USERS)) is Delivery.DROP


def test_page_already_completed():
    checkpoint = Checkpoint(PROSPECTS, 2)

    assert page_already_completed(None, USERS, 1) is False
    assert page_already_completed(checkpoint, PROSPECTS, 2) is True
    assert page_already_completed(checkpoint, PROSPECTS, 3) is False
    assert page_already_completed(checkpoint, CONTACTS, 50) is True
    assert page_already_completed(checkpoint, NOTES, 1) is False


def test_resume_point_without_checkpoint_starts_at_first_phase():
    point = resume_point(None, ["notes", "contacts"])

    assert (point.phase, point.page, point.phases) == (CONTACTS, 1, (CONTACTS, NOTES))


def test_resume_point_continues_after_checkpointed_page():
    point = resume_point(Checkpoint(CONTACTS, 3, has_more=True), None)

    assert (point.phase, point.page, point.phase_finished) == (CONTACTS, 4, False)
    assert point.phases == (CONTACTS, PROSPECTS, NOTES, ACTIVITIES)


def test_resume_point_skips_phases_before_the_checkpoint():
    point = resume_point(Checkpoint(CONTACTS, 3), ["users", "contacts", "prospects"])

    assert (point.phase, point.page) == (CONTACTS, 4)
    assert point.phases == (CONTACTS, PROSPECTS)

    paused = _state(Checkpoint(CONTACTS, 3), status=RunStatus.PAUSED, requested=(USERS, CONTACTS, PROSPECTS))
    assert plan_resume(paused).messages == (ImportPageMessage(1, CONTACTS, 4),)


def test_resume_point_after_last_page_finishes_phase():
    point = resume_point(Checkpoint(CONTACTS, 3, has_more=False), None)

    assert point.phase_finished is True


def test_resume_point_moves_past_unrequested_checkpoint_phase():
    point = resume_point(Checkpoint(CONTACTS, 5, has_more=True), ["users", "notes"])

    assert (point.phase, point.page, point.phases) == (NOTES, 1, (NOTES,))


def test_resume_point_none_when_nothing_left():
    assert resume_point(Checkpoint(NOTES, 1), ["users", "contacts"]) is None


def test_plan_resume():
    paused = _state(Checkpoint(CONTACTS, 3, has_more=True), status=RunStatus.PAUSED)
    assert plan_resume(paused).messages == (ImportPageMessage(1, CONTACTS, 4),)

    finished_phase = _state(Checkpoint(CONTACTS, 3, has_more=False), status=RunStatus.PAUSED)
    assert plan_resume(finished_phase).messages == (PhaseCompleteMessage(1, CONTACTS),)

    entered = _state(Checkpoint(NOTES, 0), status=RunStatus.PAUSED)
    assert plan_resume(entered).messages == (ImportPageMessage(1, NOTES, 1),)

    done = _state(Checkpoint(NOTES, 1), status=RunStatus.PAUSED, requested=(USERS,))
    assert plan_resume(done).completes is True


def test_checkpoint_from_dict_is_tolerant():
    assert Checkpoint.from_dict(None) is None
    assert Checkpoint.from_dict({"phase": "invoices", "page": 1}) is None
    assert Checkpoint.from_dict({"phase": "users"}) is None
    assert Checkpoint.from_dict({"phase": "users", "page": -3}).page == 0

    stored = {"phase": "notes", "page": "4", "has_more": False, "error": {"kind": "api"}}
    checkpoint = Checkpoint.from_dict(stored)
    assert checkpoint == Checkpoint(NOTES, 4, has_more=False, error={"kind": "api"})
    assert checkpoint.to_dict()["error"] == {"kind": "api"}


def test_message_payloads():
    page = ImportPageMessage(3, PROSPECTS, 2, PageFilter("2024-01-01T00:00:00+00:00"))
    assert page.to_payload() == {
        "type": "IMPORT_PAGE",
        "run_id": 3,
        "phase": "prospects",
        "page": 2,
        "per_page": 100,
        "filter": {"updated_since": "2024-01-01T00:00:00+00:00"},
    }
    assert message_from_payload({"type": "PHASE_COMPLETE", "run_id": "3", "phase": "notes"}) == PhaseCompleteMessage(
        3, NOTES
    )


def test_page_messages_carry_the_phase_page_size():
    assert ImportPageMessage(1, ACTIVITIES, 1).per_page == 25
    assert _state().page_message(ACTIVITIES, 3) == ImportPageMessage(1, ACTIVITIES, 3, per_page=25)

    decoded = message_from_payload({"type": "IMPORT_PAGE", "run_id": "1", "phase": "notes", "page": "2", "per_page": "50"})
    assert decoded == ImportPageMessage(1, NOTES, 2, per_page=50)
    assert decoded.to_payload()["per_page"] == 50
    assert message_from_payload({"type": "IMPORT_PAGE", "run_id": 1, "phase": "users", "page": 1}).per_page == 100


def test_malformed_payloads_are_rejected():
    with pytest.raises(ValueError):
        message_from_payload({"type": "SOMETHING_ELSE", "run_id": 1})
    with pytest.raises(ValueError):
        message_from_payload({"type": "IMPORT_PAGE", "run_id": 1, "phase": "users", "page": 0})
    with pytest.raises(ValueError):
        message_from_payload({"type": "IMPORT_PAGE", "run_id": 1, "phase": "users", "page": 1, "per_page": 0})
