"""
Pure migration state machine.

Nothing in this module touches the database, the queue or the network. The
orchestrator service loads a ``RunState``, asks this module what should
happen for an incoming message, and then carries out the returned effects.

Messages chain the run forward one step at a time::

    IMPORT_PAGE(users, 1) -> IMPORT_PAGE(users, 2) -> PHASE_COMPLETE(users)
        -> IMPORT_PAGE(contacts, 1) -> ... -> PHASE_COMPLETE(activities) -> done

The checkpoint records the last completed step. Entering a phase stores a
page-0 checkpoint for it so a redelivered ``PHASE_COMPLETE`` can be told apart
from a fresh one.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping, Union

from practice_app.models.importer import PAGE_SIZES, ImportPhase, RunStatus, RunType

PHASE_ORDER: tuple[ImportPhase, ...] = tuple(ImportPhase)


class MessageType(str, enum.Enum):
    IMPORT_PAGE = "IMPORT_PAGE"
    PHASE_COMPLETE = "PHASE_COMPLETE"


class Delivery(str, enum.Enum):
    """What to do with a delivered message."""

    PROCESS = "process"
    REEMIT = "reemit"
    DROP = "drop"
    IGNORE = "ignore"


def coerce_phase(value: ImportPhase | str) -> ImportPhase:
    if isinstance(value, ImportPhase):
        return value
    try:
        return ImportPhase(str(value).strip().lower())
    except ValueError as exc:
        raise ValueError(f"Unknown migration phase: {value!r}") from exc


def ordered_phases(requested: Iterable[ImportPhase | str] | None) -> tuple[ImportPhase, ...]:
    """Requested phases in dependency order, whatever order they were asked for in.

    ``None`` or an empty request means every phase.
    """
    if not requested:
        return PHASE_ORDER
    wanted = {coerce_phase(value) for value in requested}
    return tuple(phase for phase in PHASE_ORDER if phase in wanted)


def phase_index(phase: ImportPhase) -> int:
    return PHASE_ORDER.index(phase)


def next_phase(requested: Iterable[ImportPhase], phase: ImportPhase) -> ImportPhase | None:
    """The first requested phase that comes after ``phase`` in dependency order."""
    current = phase_index(phase)
    for candidate in ordered_phases(requested):
        if phase_index(candidate) > current:
            return candidate
    return None


def _timestamp(now: datetime | None = None) -> str:
    return (now or datetime.now(timezone.utc)).isoformat()


# Values ------------------------------------------------------------------------


@dataclass(frozen=True)
class PageFilter:
    updated_since: str | None = None

    def to_dict(self) -> dict[str, str | None]:
        return {"updated_since": self.updated_since}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> "PageFilter":
        if not data:
            return cls()
        return cls(updated_since=data.get("updated_since") or None)


def filter_for(
    phase: ImportPhase,
    run_type: RunType,
    sync_timestamps: Mapping[str, str] | None,
) -> PageFilter:
    """Incremental runs only fetch records updated since the phase's last successful sync."""
    if run_type is not RunType.INCREMENTAL:
        return PageFilter()
    return PageFilter(updated_since=(sync_timestamps or {}).get(phase.value))


@dataclass(frozen=True)
class ImportPageMessage:
    run_id: int
    phase: ImportPhase
    page: int
    filter: PageFilter = field(default_factory=PageFilter)
    per_page: int | None = None

    type = MessageType.IMPORT_PAGE

    def __post_init__(self) -> None:
        if self.per_page is None:
            object.__setattr__(self, "per_page", PAGE_SIZES[self.phase])

    def to_payload(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "run_id": self.run_id,
            "phase": self.phase.value,
            "page": self.page,
            "per_page": self.per_page,
            "filter": self.filter.to_dict(),
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "ImportPageMessage":
        page = int(payload["page"])
        if page < 1:
            raise ValueError(f"Page numbers start at 1, got {page}")
        per_page = payload.get("per_page")
        if per_page is not None and int(per_page) < 1:
            raise ValueError(f"Page size must be positive, got {per_page}")
        return cls(
            run_id=int(payload["run_id"]),
            phase=coerce_phase(payload["phase"]),
            page=page,
            filter=PageFilter.from_dict(payload.get("filter")),
            per_page=int(per_page) if per_page is not None else None,
        )


@dataclass(frozen=True)
class PhaseCompleteMessage:
    run_id: int
    phase: ImportPhase

    type = MessageType.PHASE_COMPLETE

    def to_payload(self) -> dict[str, Any]:
        return {"type": self.type.value, "run_id": self.run_id, "phase": self.phase.value}

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "PhaseCompleteMessage":
        return cls(run_id=int(payload["run_id"]), phase=coerce_phase(payload["phase"]))


Message = Union[ImportPageMessage, PhaseCompleteMessage]


def message_from_payload(payload: Mapping[str, Any]) -> Message:
    kind = payload.get("type")
    if kind == MessageType.IMPORT_PAGE.value:
        return ImportPageMessage.from_payload(payload)
    if kind == MessageType.PHASE_COMPLETE.value:
        return PhaseCompleteMessage.from_payload(payload)
    raise ValueError(f"Unknown migration message type: {kind!r}")


@dataclass(frozen=True)
class Checkpoint:
    """Last completed step of a run.

    ``continued`` is set once the step's follow-up message has been enqueued.
    ``error`` holds the failure that stopped the run, next to the position.
    """

    phase: ImportPhase
    page: int
    has_more: bool = True
    timestamp: str | None = None
    continued: bool = False
    error: Mapping[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "phase": self.phase.value,
            "page": self.page,
            "has_more": self.has_more,
            "timestamp": self.timestamp,
            "continued": self.continued,
        }
        if self.error is not None:
            data["error"] = dict(self.error)
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> "Checkpoint | None":
        """Tolerant read: anything without a usable position means no checkpoint."""
        if not isinstance(data, Mapping):
            return None
        try:
            phase = coerce_phase(data["phase"])
            page = int(data["page"])
        except (KeyError, TypeError, ValueError):
            return None
        error = data.get("error")
        return cls(
            phase=phase,
            page=max(page, 0),
            has_more=bool(data.get("has_more", True)),
            timestamp=data.get("timestamp"),
            continued=bool(data.get("continued", False)),
            error=error if isinstance(error, Mapping) else None,
        )

    def mark_continued(self) -> "Checkpoint":
        return replace(self, continued=True)

    def with_error(self, error: Mapping[str, Any]) -> "Checkpoint":
        return replace(self, error=dict(error))


@dataclass(frozen=True)
class RunState:
    run_id: int
    status: RunStatus
    run_type: RunType
    requested: tuple[ImportPhase, ...]
    checkpoint: Checkpoint | None = None
    sync_timestamps: Mapping[str, str] = field(default_factory=dict)

    def filter_for(self, phase: ImportPhase) -> PageFilter:
        return filter_for(phase, self.run_type, self.sync_timestamps)

    def page_message(self, phase: ImportPhase, page: int) -> ImportPageMessage:
        return ImportPageMessage(self.run_id, phase, page, self.filter_for(phase), PAGE_SIZES[phase])


# Effects -----------------------------------------------------------------------


@dataclass(frozen=True)
class Enqueue:
    message: Message


@dataclass(frozen=True)
class SaveCheckpoint:
    checkpoint: Checkpoint


@dataclass(frozen=True)
class CompleteRun:
    pass


Effect = Union[Enqueue, SaveCheckpoint, CompleteRun]


@dataclass(frozen=True)
class Transition:
    status: RunStatus
    effects: tuple[Effect, ...] = ()

    @property
    def messages(self) -> tuple[Message, ...]:
        return tuple(effect.message for effect in self.effects if isinstance(effect, Enqueue))

    @property
    def checkpoint(self) -> Checkpoint | None:
        for effect in self.effects:
            if isinstance(effect, SaveCheckpoint):
                return effect.checkpoint
        return None

    @property
    def completes(self) -> bool:
        return any(isinstance(effect, CompleteRun) for effect in self.effects)


@dataclass(frozen=True)
class PageOutcome:
    has_more: bool


@dataclass(frozen=True)
class ResumePoint:
    phase: ImportPhase
    page: int
    phases: tuple[ImportPhase, ...]
    phase_finished: bool = False


# Transitions -------------------------------------------------------------------


def continuation_for(state: RunState, checkpoint: Checkpoint) -> Message:
    """The message that follows the step recorded in ``checkpoint``."""
    if checkpoint.has_more:
        return state.page_message(checkpoint.phase, checkpoint.page + 1)
    return PhaseCompleteMessage(state.run_id, checkpoint.phase)


def page_already_completed(checkpoint: Checkpoint | None, phase: ImportPhase, page: int) -> bool:
    if checkpoint is None:
        return False
    if checkpoint.phase is phase:
        return checkpoint.page >= page
    return phase_index(checkpoint.phase) > phase_index(phase)


def delivery_for(state: RunState, message: Message) -> Delivery:
    """Classify a delivery against the run's checkpoint.

    Only a message for exactly the checkpointed step whose follow-up was never
    enqueued is re-emitted; anything at or behind the checkpoint is dropped.
    """
    if state.status is not RunStatus.RUNNING:
        return Delivery.IGNORE
    checkpoint = state.checkpoint

    if isinstance(message, ImportPageMessage):
        if not page_already_completed(checkpoint, message.phase, message.page):
            return Delivery.PROCESS
        if checkpoint.phase is message.phase and checkpoint.page == message.page and not checkpoint.continued:
            return Delivery.REEMIT
        return Delivery.DROP

    if checkpoint is None or checkpoint.phase is message.phase:
        return Delivery.PROCESS
    upcoming = next_phase(state.requested, message.phase)
    if upcoming is checkpoint.phase and checkpoint.page == 0 and not checkpoint.continued:
        return Delivery.REEMIT
    return Delivery.DROP


def reemit(state: RunState) -> Transition:
    """Re-send the follow-up of the checkpointed step."""
    checkpoint = state.checkpoint
    if checkpoint is None:
        return Transition(state.status)
    if checkpoint.page == 0:
        return Transition(state.status, (Enqueue(state.page_message(checkpoint.phase, 1)),))
    return Transition(state.status, (Enqueue(continuation_for(state, checkpoint)),))


def transition(
    state: RunState,
    message: Message,
    *,
    page_outcome: PageOutcome | None = None,
    now: datetime | None = None,
) -> Transition:
    """Advance a running run by one message.

    Runs that are not ``RUNNING`` ignore every message. An ``IMPORT_PAGE``
    needs the ``page_outcome`` of the fetch; the state machine never looks at
    records itself.
    """
    if state.status is not RunStatus.RUNNING:
        return Transition(state.status)

    if isinstance(message, ImportPageMessage):
        if page_outcome is None:
            raise ValueError("An IMPORT_PAGE transition needs the page outcome")
        checkpoint = Checkpoint(
            phase=message.phase,
            page=message.page,
            has_more=page_outcome.has_more,
            timestamp=_timestamp(now),
        )
        return Transition(
            RunStatus.RUNNING,
            (SaveCheckpoint(checkpoint), Enqueue(continuation_for(state, checkpoint))),
        )

    upcoming = next_phase(state.requested, message.phase)
    if upcoming is None:
        return Transition(RunStatus.COMPLETED, (CompleteRun(),))
    entered = Checkpoint(phase=upcoming, page=0, has_more=True, timestamp=_timestamp(now))
    return Transition(
        RunStatus.RUNNING,
        (SaveCheckpoint(entered), Enqueue(state.page_message(upcoming, 1))),
    )


def plan_start(
    run_id: int,
    run_type: RunType,
    requested: Iterable[ImportPhase | str] | None,
    sync_timestamps: Mapping[str, str] | None = None,
) -> Transition:
    phases = ordered_phases(requested)
    state = RunState(
        run_id=run_id,
        status=RunStatus.RUNNING,
        run_type=run_type,
        requested=phases,
        sync_timestamps=dict(sync_timestamps or {}),
    )
    return Transition(RunStatus.RUNNING, (Enqueue(state.page_message(phases[0], 1)),))


def resume_point(checkpoint: Checkpoint | None, requested: Iterable[ImportPhase | str] | None) -> ResumePoint | None:
    """Where a resumed run picks up, or None when nothing is left to do.

    The checkpoint's phase resumes at the page after the checkpoint; a
    checkpoint in a phase that was not requested moves on to the next
    requested phase at page 1.
    """
    phases = ordered_phases(requested)
    if checkpoint is None:
        return ResumePoint(phase=phases[0], page=1, phases=phases)

    remaining = tuple(phase for phase in phases if phase_index(phase) >= phase_index(checkpoint.phase))
    if not remaining:
        return None
    if remaining[0] is not checkpoint.phase:
        return ResumePoint(phase=remaining[0], page=1, phases=remaining)
    return ResumePoint(
        phase=checkpoint.phase,
        page=checkpoint.page + 1,
        phases=remaining,
        phase_finished=not checkpoint.has_more,
    )


def plan_resume(state: RunState) -> Transition:
    point = resume_point(state.checkpoint, state.requested)
    if point is None:
        return Transition(RunStatus.COMPLETED, (CompleteRun(),))
    if point.phase_finished:
        message: Message = PhaseCompleteMessage(state.run_id, point.phase)
    else:
        message = state.page_message(point.phase, point.page)
    return Transition(RunStatus.RUNNING, (Enqueue(message),))


__all__ = [
    "PHASE_ORDER",
    "Checkpoint",
    "CompleteRun",
    "Delivery",
    "Effect",
    "Enqueue",
    "ImportPageMessage",
    "Message",
    "MessageType",
    "PageFilter",
    "PageOutcome",
    "PhaseCompleteMessage",
    "ResumePoint",
    "RunState",
    "SaveCheckpoint",
    "Transition",
    "coerce_phase",
    "continuation_for",
    "delivery_for",
    "filter_for",
    "message_from_payload",
    "next_phase",
    "ordered_phases",
    "page_already_completed",
    "phase_index",
    "plan_resume",
    "plan_start",
    "reemit",
    "resume_point",
    "transition",
]
