"""
Escalation engine for collection sequences.

Decides whether a sequence advances to its next catalog step, either on a
scheduled tick (gated by elapsed days) or on an operator's manual escalate
(gate bypassed). Every call moves a sequence at most one step.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

import structlog

from collections_sequencer.core.exceptions import InvalidArgument, InvalidState
from collections_sequencer.models.policy import CollectionsPolicy
from collections_sequencer.models.sequence import Sequence, SequenceStatus, StepRecord, StepStatus
from collections_sequencer.utils.step_catalog import LAST_OFFSET, is_valid_offset, next_offset
from collections_sequencer.utils.time_projector import elapsed_days

logger = structlog.get_logger(__name__)


@dataclass
class TickResult:
    """Outcome of a single tick or manual escalate."""
    advance: bool
    to_offset: Optional[int] = None
    from_offset: Optional[int] = None
    terminal: bool = False
    manual: bool = False
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "advance": self.advance,
            "to_offset": self.to_offset,
            "from_offset": self.from_offset,
            "terminal": self.terminal,
            "manual": self.manual,
            "reason": self.reason,
        }


def _hold(sequence: Sequence, reason: str) -> TickResult:
    return TickResult(advance=False, from_offset=sequence.current_step_offset, reason=reason)


def tick(sequence: Sequence, now: datetime, policy: CollectionsPolicy) -> TickResult:
    """
    Evaluate one scheduled tick, advancing the sequence in place when due.

    Args:
        sequence: Sequence to evaluate
        now: Evaluation time supplied by the scheduler
        policy: Practice policy with delays and the auto-escalation switch

    Returns:
        TickResult describing whether and where the sequence advanced

    Raises:
        CorruptRecord: If the sequence is missing required fields
    """
    sequence.validate()

    if sequence.status != SequenceStatus.ACTIVE:
        return _hold(sequence, f"status_{sequence.status.value}")

    if not policy.auto_escalation:
        return _hold(sequence, "auto_escalation_disabled")

    upcoming = next_offset(sequence.current_step_offset)
    if upcoming is None:
        return _hold(sequence, "final_step_reached")

    # A tick at the same instant as the last transition is a repeat
    current = sequence.step_record(sequence.current_step_offset)
    if current and current.sent_at is not None and current.sent_at >= now:
        return _hold(sequence, "already_evaluated")

    elapsed = elapsed_days(sequence.started_at, now)
    if elapsed < policy.delay_for(upcoming):
        return _hold(sequence, "not_due")

    return _advance(sequence, upcoming, now, policy, manual=False)


def escalate(sequence: Sequence, now: datetime, policy: CollectionsPolicy) -> TickResult:
    """
    Manually advance a sequence one step, bypassing the elapsed-day gate.

    A paused sequence is resumed by the escalation.

    Raises:
        InvalidState: If the sequence is terminal or already at the final step
        CorruptRecord: If the sequence is missing required fields
    """
    sequence.validate()

    if sequence.is_terminal:
        raise InvalidState(
            f"Cannot escalate a {sequence.status.value} sequence",
            sequence_id=sequence.sequence_id,
            current_status=sequence.status.value,
        )

    upcoming = next_offset(sequence.current_step_offset)
    if upcoming is None:
        raise InvalidState(
            "Sequence is already at the final collection step",
            sequence_id=sequence.sequence_id,
            current_status=sequence.status.value,
        )

    if sequence.status == SequenceStatus.PAUSED:
        sequence.status = SequenceStatus.ACTIVE
        sequence.paused_at = None

    return _advance(sequence, upcoming, now, policy, manual=True)


def _advance(
    sequence: Sequence,
    to_offset: int,
    now: datetime,
    policy: CollectionsPolicy,
    manual: bool,
) -> TickResult:
    from_offset = sequence.current_step_offset

    previous = sequence.step_record(from_offset)
    if previous is None:
        sequence.upsert_step(StepRecord(
            day_offset=from_offset,
            action=policy.action_for(from_offset),
            status=StepStatus.COMPLETED,
        ))
    elif previous.status == StepStatus.PENDING:
        previous.status = StepStatus.COMPLETED

    existing = sequence.step_record(to_offset)
    sequence.upsert_step(StepRecord(
        day_offset=to_offset,
        action=existing.action if existing and existing.action else policy.action_for(to_offset),
        status=StepStatus.SENT,
        sent_at=now,
        response=None,
        manual=manual,
    ))

    sequence.current_step_offset = to_offset
    sequence.last_action_at = now
    sequence.updated_at = now

    terminal = to_offset == LAST_OFFSET
    if terminal:
        sequence.status = SequenceStatus.SENT_TO_AGENCY
        sequence.resolved_at = now

    logger.info(
        "Sequence advanced",
        sequence_id=sequence.sequence_id,
        account_id=sequence.account_id,
        from_offset=from_offset,
        to_offset=to_offset,
        manual=manual,
        terminal=terminal,
    )

    return TickResult(
        advance=True,
        to_offset=to_offset,
        from_offset=from_offset,
        terminal=terminal,
        manual=manual,
    )


def record_step_result(
    sequence: Sequence,
    day_offset: int,
    success: bool,
    response: Optional[str],
    now: datetime,
) -> StepRecord:
    """
    Record the messaging collaborator's outcome for a dispatched step.

    A failed delivery marks the step skipped; a successful one keeps it sent.

    Raises:
        InvalidArgument: If ``day_offset`` is not a catalog offset
        InvalidState: If the step was never dispatched or already has an outcome
    """
    if not is_valid_offset(day_offset):
        raise InvalidArgument(
            f"{day_offset!r} is not a collection step offset",
            field="day_offset",
            value=day_offset,
        )

    record = sequence.step_record(day_offset)
    if record is None or record.status != StepStatus.SENT:
        raise InvalidState(
            f"Step at day {day_offset} has not been dispatched",
            sequence_id=sequence.sequence_id,
            current_status=sequence.status.value,
            day_offset=day_offset,
        )
    if record.response is not None:
        raise InvalidState(
            f"Step at day {day_offset} already has a recorded outcome",
            sequence_id=sequence.sequence_id,
            current_status=sequence.status.value,
            day_offset=day_offset,
        )

    record.response = response or ("Delivered" if success else "Delivery failed")
    if not success:
        record.status = StepStatus.SKIPPED
    sequence.updated_at = now

    return record
