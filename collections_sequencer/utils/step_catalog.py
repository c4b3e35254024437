"""
Step catalog for collections escalation.

The six escalation steps, their day offsets from sequence start, and the
contact channel each one uses. Every other module looks steps up here by
offset; there is no other offset-to-name table.
"""

from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Tuple

from collections_sequencer.core.exceptions import InvalidArgument


class StepChannel(str, Enum):
    """Contact channel or action type for a catalog step."""
    STATEMENT = "statement"
    SMS = "sms"
    EMAIL = "email"
    PHONE = "phone"
    FINAL_NOTICE = "final_notice"
    AGENCY = "agency"


@dataclass(frozen=True)
class StepDefinition:
    """A single catalog entry."""
    offset: int
    channel: StepChannel
    label: str
    action: str


STEP_CATALOG: Tuple[StepDefinition, ...] = (
    StepDefinition(0, StepChannel.STATEMENT, "Statement", "Generate statement"),
    StepDefinition(7, StepChannel.SMS, "SMS", "Send SMS reminder"),
    StepDefinition(14, StepChannel.EMAIL, "Email", "Send email reminder"),
    StepDefinition(30, StepChannel.PHONE, "Phone Call", "Phone call task"),
    StepDefinition(60, StepChannel.FINAL_NOTICE, "Final Notice", "Final notice SMS"),
    StepDefinition(90, StepChannel.AGENCY, "Agency", "Escalate to collections agency"),
)

_BY_OFFSET = {step.offset: step for step in STEP_CATALOG}
_BY_CHANNEL = {step.channel: step for step in STEP_CATALOG}

FIRST_OFFSET = STEP_CATALOG[0].offset
LAST_OFFSET = STEP_CATALOG[-1].offset


def offsets() -> List[int]:
    """All catalog offsets in ascending order."""
    return [step.offset for step in STEP_CATALOG]


def is_valid_offset(offset) -> bool:
    """Check whether a value is one of the catalog offsets."""
    return isinstance(offset, int) and not isinstance(offset, bool) and offset in _BY_OFFSET


def step_at(offset: int) -> StepDefinition:
    """
    Look up the catalog step at a day offset.

    Raises:
        InvalidArgument: If the offset is not a catalog offset
    """
    if not is_valid_offset(offset):
        raise InvalidArgument(
            f"{offset!r} is not a collection step offset; expected one of {offsets()}",
            field="offset",
            value=offset,
        )
    return _BY_OFFSET[offset]


def step_for_channel(channel: StepChannel) -> StepDefinition:
    """Look up the catalog step for a channel."""
    return _BY_CHANNEL[StepChannel(channel)]


def index_of(offset: int) -> int:
    """Position of an offset within the catalog."""
    return STEP_CATALOG.index(step_at(offset))


def next_offset(offset: int) -> Optional[int]:
    """
    Offset of the step following ``offset``.

    Returns:
        The next catalog offset, or None when ``offset`` is the agency step
    """
    index = index_of(offset)
    if index + 1 >= len(STEP_CATALOG):
        return None
    return STEP_CATALOG[index + 1].offset


def is_terminal_offset(offset: int) -> bool:
    """Whether ``offset`` is the final (agency) step."""
    return step_at(offset).offset == LAST_OFFSET
