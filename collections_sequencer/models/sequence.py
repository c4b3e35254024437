"""
Collection sequence model.

One sequence per account with an overdue balance under active collection.
Holds the balance, the furthest step reached, per-step records and the
overall status. Monetary values are Decimals quantized to cents.
"""

import copy
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from collections_sequencer.core.exceptions import CorruptRecord
from collections_sequencer.utils.step_catalog import STEP_CATALOG, is_valid_offset

CENTS = Decimal("0.01")


class SequenceStatus(str, Enum):
    """Overall status of a collection sequence."""
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    SENT_TO_AGENCY = "sent_to_agency"

    @property
    def is_terminal(self) -> bool:
        return self in (SequenceStatus.COMPLETED, SequenceStatus.SENT_TO_AGENCY)


class StepStatus(str, Enum):
    """Status of a single step record."""
    PENDING = "pending"
    SENT = "sent"
    COMPLETED = "completed"
    SKIPPED = "skipped"


def quantize_money(value: Decimal) -> Decimal:
    """Round a monetary amount to cents."""
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


@dataclass
class StepRecord:
    """Outcome tracking for one catalog step within a sequence."""
    day_offset: int
    action: str
    status: StepStatus = StepStatus.PENDING
    sent_at: Optional[datetime] = None
    response: Optional[str] = None
    manual: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "day_offset": self.day_offset,
            "action": self.action,
            "status": self.status.value,
            "sent_at": self.sent_at.isoformat() if self.sent_at else None,
            "response": self.response,
            "manual": self.manual,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], sequence_id: Optional[str] = None) -> "StepRecord":
        try:
            return cls(
                day_offset=data["day_offset"],
                action=data.get("action") or "",
                status=StepStatus(data.get("status", StepStatus.PENDING.value)),
                sent_at=_parse_datetime(data.get("sent_at")),
                response=data.get("response"),
                manual=bool(data.get("manual", False)),
            )
        except (KeyError, ValueError, TypeError, AttributeError) as e:
            raise CorruptRecord(
                f"Invalid step record: {e}",
                sequence_id=sequence_id,
                field="steps",
            )


@dataclass
class Sequence:
    """A per-account collections escalation record."""
    account_id: str
    total_balance: Decimal
    started_at: Optional[datetime]
    sequence_id: str = field(default_factory=lambda: str(uuid4()))
    original_balance: Optional[Decimal] = None
    current_step_offset: int = 0
    status: SequenceStatus = SequenceStatus.ACTIVE
    steps: List[StepRecord] = field(default_factory=list)
    last_action_at: Optional[datetime] = None
    paused_at: Optional[datetime] = None
    reopened_from: Optional[str] = None
    resolved_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        if self.original_balance is None:
            self.original_balance = self.total_balance
        if self.created_at is None:
            self.created_at = self.started_at
        if self.updated_at is None:
            self.updated_at = self.created_at

    @classmethod
    def start(
        cls,
        account_id: str,
        balance: Decimal,
        now: datetime,
        actions: Optional[Dict[int, str]] = None,
    ) -> "Sequence":
        """
        Create a new sequence at day 0 with every catalog step pending.

        Args:
            account_id: Account under collection
            balance: Outstanding balance, already validated by the caller
            now: Sequence start time
            actions: Optional action text per offset overriding the catalog

        Returns:
            New Sequence instance
        """
        actions = actions or {}
        balance = quantize_money(balance)
        steps = [
            StepRecord(day_offset=step.offset, action=actions.get(step.offset, step.action))
            for step in STEP_CATALOG
        ]
        return cls(
            account_id=account_id,
            total_balance=balance,
            original_balance=balance,
            started_at=now,
            current_step_offset=STEP_CATALOG[0].offset,
            status=SequenceStatus.ACTIVE,
            steps=steps,
            last_action_at=now,
            created_at=now,
            updated_at=now,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def step_record(self, day_offset: int) -> Optional[StepRecord]:
        """Get the step record at an offset, if one exists."""
        for record in self.steps:
            if record.day_offset == day_offset:
                return record
        return None

    def upsert_step(self, record: StepRecord) -> StepRecord:
        """Insert or replace the record at its offset, keeping offsets ordered."""
        for index, existing in enumerate(self.steps):
            if existing.day_offset == record.day_offset:
                self.steps[index] = record
                return record
        self.steps.append(record)
        self.steps.sort(key=lambda r: r.day_offset)
        return record

    def copy(self) -> "Sequence":
        """Deep copy used to stage a mutation before it is saved."""
        return copy.deepcopy(self)

    def validate(self) -> None:
        """
        Check the record's invariants.

        Raises:
            CorruptRecord: If a required field is missing or an invariant is broken
        """
        if not self.account_id:
            raise CorruptRecord("Sequence has no account_id", sequence_id=self.sequence_id, field="account_id")
        if self.started_at is None:
            raise CorruptRecord("Sequence has no started_at", sequence_id=self.sequence_id, field="started_at")
        if not isinstance(self.status, SequenceStatus):
            raise CorruptRecord(
                f"Unknown sequence status {self.status!r}",
                sequence_id=self.sequence_id,
                field="status",
            )
        if not is_valid_offset(self.current_step_offset):
            raise CorruptRecord(
                f"current_step_offset {self.current_step_offset!r} is not a catalog offset",
                sequence_id=self.sequence_id,
                field="current_step_offset",
            )
        if not isinstance(self.total_balance, Decimal) or self.total_balance < 0:
            raise CorruptRecord(
                f"total_balance {self.total_balance!r} must be a non-negative Decimal",
                sequence_id=self.sequence_id,
                field="total_balance",
            )
        if self.total_balance == 0 and self.status != SequenceStatus.COMPLETED:
            raise CorruptRecord(
                "Zero balance sequence must be completed",
                sequence_id=self.sequence_id,
                field="status",
            )

        seen = []
        for record in self.steps:
            if not is_valid_offset(record.day_offset):
                raise CorruptRecord(
                    f"Step offset {record.day_offset!r} is not a catalog offset",
                    sequence_id=self.sequence_id,
                    field="steps",
                )
            if seen and record.day_offset <= seen[-1]:
                raise CorruptRecord(
                    "Step records must be strictly increasing by day offset",
                    sequence_id=self.sequence_id,
                    field="steps",
                )
            seen.append(record.day_offset)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage and API responses."""
        return {
            "sequence_id": self.sequence_id,
            "account_id": self.account_id,
            "total_balance": str(self.total_balance),
            "original_balance": str(self.original_balance) if self.original_balance is not None else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "current_step_offset": self.current_step_offset,
            "status": self.status.value,
            "steps": [record.to_dict() for record in self.steps],
            "last_action_at": self.last_action_at.isoformat() if self.last_action_at else None,
            "paused_at": self.paused_at.isoformat() if self.paused_at else None,
            "reopened_from": self.reopened_from,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Sequence":
        """
        Create from dictionary (e.g., from storage).

        Raises:
            CorruptRecord: If the record is incomplete or holds invalid values
        """
        sequence_id = data.get("sequence_id")
        try:
            status = SequenceStatus(data.get("status"))
        except ValueError:
            raise CorruptRecord(
                f"Unknown sequence status {data.get('status')!r}",
                sequence_id=sequence_id,
                field="status",
            )

        try:
            sequence = cls(
                sequence_id=sequence_id or str(uuid4()),
                account_id=data.get("account_id"),
                total_balance=_parse_decimal(data.get("total_balance"), sequence_id, "total_balance"),
                original_balance=_parse_decimal(data.get("original_balance"), sequence_id, "original_balance")
                if data.get("original_balance") is not None
                else None,
                started_at=_parse_datetime(data.get("started_at")),
                current_step_offset=data.get("current_step_offset"),
                status=status,
                steps=[StepRecord.from_dict(s, sequence_id) for s in data.get("steps") or []],
                last_action_at=_parse_datetime(data.get("last_action_at")),
                paused_at=_parse_datetime(data.get("paused_at")),
                reopened_from=data.get("reopened_from"),
                resolved_at=_parse_datetime(data.get("resolved_at")),
                created_at=_parse_datetime(data.get("created_at")),
                updated_at=_parse_datetime(data.get("updated_at")),
            )
        except (ValueError, TypeError) as e:
            raise CorruptRecord(f"Invalid sequence record: {e}", sequence_id=sequence_id)

        sequence.validate()
        return sequence


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def _parse_decimal(value: Any, sequence_id: Optional[str], field_name: str) -> Decimal:
    if value is None:
        raise CorruptRecord(f"Sequence has no {field_name}", sequence_id=sequence_id, field=field_name)
    try:
        parsed = Decimal(str(value))
    except InvalidOperation:
        raise CorruptRecord(f"Invalid {field_name} {value!r}", sequence_id=sequence_id, field=field_name)
    if not parsed.is_finite():
        raise CorruptRecord(f"Invalid {field_name} {value!r}", sequence_id=sequence_id, field=field_name)
    return parsed
