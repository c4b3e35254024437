"""
Time projection for collection sequences.

Converts a caller-supplied "now" and the sequence start into elapsed days,
the current step position and the next scheduled action date. Nothing here
reads the clock.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from collections_sequencer.core.exceptions import CorruptRecord, InvalidArgument
from collections_sequencer.models.policy import CollectionsPolicy
from collections_sequencer.models.sequence import Sequence, StepRecord, StepStatus
from collections_sequencer.utils.step_catalog import StepChannel, index_of, next_offset, step_at

ONE_DAY = timedelta(days=1)


@dataclass
class Projection:
    """Derived timing view of a sequence at a point in time."""
    elapsed_days: int
    step_index: int
    day_in_step: int
    next_action_date: Optional[datetime]
    current_channel: StepChannel

    def to_dict(self) -> Dict[str, Any]:
        return {
            "elapsed_days": self.elapsed_days,
            "step_index": self.step_index,
            "day_in_step": self.day_in_step,
            "next_action_date": self.next_action_date.isoformat() if self.next_action_date else None,
            "current_channel": self.current_channel.value,
        }


def elapsed_days(started_at: datetime, now: datetime) -> int:
    """Whole days since ``started_at``, clamped at zero when ``now`` precedes it."""
    if now <= started_at:
        return 0
    return (now - started_at) // ONE_DAY


def project(sequence: Sequence, now: datetime, policy: Optional[CollectionsPolicy] = None) -> Projection:
    """
    Project a sequence's timing at ``now``.

    Args:
        sequence: Sequence to project
        now: Evaluation time
        policy: Optional practice policy; next action date uses its delays

    Returns:
        Projection for the sequence

    Raises:
        CorruptRecord: If the sequence has no start time or an invalid offset
    """
    if sequence.started_at is None:
        raise CorruptRecord(
            "Sequence has no started_at",
            sequence_id=sequence.sequence_id,
            field="started_at",
        )

    offset = sequence.current_step_offset
    try:
        step = step_at(offset)
    except InvalidArgument:
        raise CorruptRecord(
            f"current_step_offset {offset!r} is not a catalog offset",
            sequence_id=sequence.sequence_id,
            field="current_step_offset",
        )

    elapsed = elapsed_days(sequence.started_at, now)
    upcoming = next_offset(offset)
    next_action_date = None
    if upcoming is not None:
        delay = policy.delay_for(upcoming) if policy else upcoming
        next_action_date = sequence.started_at + timedelta(days=delay)

    return Projection(
        elapsed_days=elapsed,
        step_index=index_of(offset),
        day_in_step=max(0, elapsed - offset),
        next_action_date=next_action_date,
        current_channel=step.channel,
    )


def step_history(sequence: Sequence) -> List[StepRecord]:
    """Step records that have been acted on, ordered by offset."""
    return sorted(
        (record for record in sequence.steps if record.status != StepStatus.PENDING),
        key=lambda record: record.day_offset,
    )
