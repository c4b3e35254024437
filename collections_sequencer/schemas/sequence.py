"""
Pydantic schemas for collection sequence API endpoints.

Request/response models for sequence creation, operator commands, payments,
scheduled ticks and reporting.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Generic, List, Optional, TypeVar

from pydantic import BaseModel, Field, field_validator

from collections_sequencer.models.sequence import Sequence, SequenceStatus, StepRecord, StepStatus
from collections_sequencer.services.escalation_engine import TickResult
from collections_sequencer.services.payment_application import PaymentResult
from collections_sequencer.services.sequence_controller import BatchTickReport, SequenceStatusView
from collections_sequencer.utils.step_catalog import StepChannel, step_at

T = TypeVar("T")


class ApiResponse(BaseModel, Generic[T]):
    """Standard envelope for successful API responses."""
    success: bool = True
    data: Optional[T] = None
    message: Optional[str] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


# Request Schemas

class TimedRequest(BaseModel):
    """Base for commands that accept an explicit evaluation time."""
    now: Optional[datetime] = Field(
        None, description="Evaluation time; defaults to the server clock (UTC)"
    )

    @field_validator("now")
    @classmethod
    def validate_now(cls, v):
        """Require timezone-aware timestamps"""
        if v is not None and v.tzinfo is None:
            raise ValueError("now must include a timezone offset")
        return v


class CreateSequenceRequest(TimedRequest):
    """Request model for starting a collection sequence."""
    account_id: str = Field(..., min_length=1, max_length=100, description="Account under collection")
    balance: Decimal = Field(..., description="Outstanding balance when the sequence starts")

    @field_validator("account_id")
    @classmethod
    def validate_account_id(cls, v):
        if not v or not v.strip():
            raise ValueError("account_id cannot be empty")
        return v.strip()


class PaymentRequest(TimedRequest):
    """Request model for applying a posted payment."""
    amount: Decimal = Field(..., description="Payment amount, must be greater than zero")


class StepResultRequest(TimedRequest):
    """Outcome reported by the messaging collaborator for a dispatched step."""
    success: bool = Field(..., description="Whether the step's action was delivered")
    response: Optional[str] = Field(None, max_length=2000, description="Collaborator response text")


# Response Schemas

class StepRecordResponse(BaseModel):
    """A single step record."""
    day_offset: int
    channel: StepChannel
    action: str
    status: StepStatus
    sent_at: Optional[datetime] = None
    response: Optional[str] = None
    manual: bool = False

    @classmethod
    def from_record(cls, record: StepRecord) -> "StepRecordResponse":
        return cls(
            day_offset=record.day_offset,
            channel=step_at(record.day_offset).channel,
            action=record.action,
            status=record.status,
            sent_at=record.sent_at,
            response=record.response,
            manual=record.manual,
        )


class SequenceResponse(BaseModel):
    """Collection sequence as returned by the API."""
    sequence_id: str
    account_id: str
    total_balance: Decimal
    original_balance: Optional[Decimal] = None
    started_at: datetime
    current_step_offset: int
    current_channel: StepChannel
    status: SequenceStatus
    steps: List[StepRecordResponse] = Field(default_factory=list)
    last_action_at: Optional[datetime] = None
    paused_at: Optional[datetime] = None
    reopened_from: Optional[str] = None
    resolved_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_sequence(cls, sequence: Sequence) -> "SequenceResponse":
        return cls(
            sequence_id=sequence.sequence_id,
            account_id=sequence.account_id,
            total_balance=sequence.total_balance,
            original_balance=sequence.original_balance,
            started_at=sequence.started_at,
            current_step_offset=sequence.current_step_offset,
            current_channel=step_at(sequence.current_step_offset).channel,
            status=sequence.status,
            steps=[StepRecordResponse.from_record(r) for r in sequence.steps],
            last_action_at=sequence.last_action_at,
            paused_at=sequence.paused_at,
            reopened_from=sequence.reopened_from,
            resolved_at=sequence.resolved_at,
            created_at=sequence.created_at,
            updated_at=sequence.updated_at,
        )


class CreateSequenceResponse(BaseModel):
    """Result of a create call; ``created`` is false when an open sequence already existed."""
    sequence: SequenceResponse
    created: bool


class SequenceListResponse(BaseModel):
    sequences: List[SequenceResponse]
    total: int
    limit: int


class TickResultResponse(BaseModel):
    """Outcome of a tick or manual escalate."""
    advance: bool
    to_offset: Optional[int] = None
    from_offset: Optional[int] = None
    terminal: bool = False
    manual: bool = False
    reason: Optional[str] = None

    @classmethod
    def from_result(cls, result: TickResult) -> "TickResultResponse":
        return cls(**result.to_dict())


class TransitionResponse(BaseModel):
    sequence: SequenceResponse
    result: TickResultResponse


class PaymentResultResponse(BaseModel):
    previous_balance: Decimal
    payment_amount: Decimal
    new_balance: Decimal
    overpaid_by: Decimal
    terminated: bool
    status: SequenceStatus

    @classmethod
    def from_result(cls, result: PaymentResult) -> "PaymentResultResponse":
        return cls(
            previous_balance=result.previous_balance,
            payment_amount=result.payment_amount,
            new_balance=result.new_balance,
            overpaid_by=result.overpaid_by,
            terminated=result.terminated,
            status=result.status,
        )


class PaymentResponse(BaseModel):
    sequence: SequenceResponse
    payment: PaymentResultResponse


class ProjectionResponse(BaseModel):
    """Derived timing view of a sequence."""
    elapsed_days: int
    step_index: int
    day_in_step: int
    next_action_date: Optional[datetime] = None
    current_channel: StepChannel


class SequenceStatusResponse(BaseModel):
    """Operator read model: sequence, projection and step history."""
    sequence: SequenceResponse
    projection: ProjectionResponse
    history: List[StepRecordResponse]

    @classmethod
    def from_view(cls, view: SequenceStatusView) -> "SequenceStatusResponse":
        projection = view.projection
        return cls(
            sequence=SequenceResponse.from_sequence(view.sequence),
            projection=ProjectionResponse(
                elapsed_days=projection.elapsed_days,
                step_index=projection.step_index,
                day_in_step=projection.day_in_step,
                next_action_date=projection.next_action_date,
                current_channel=projection.current_channel,
            ),
            history=[StepRecordResponse.from_record(r) for r in view.history],
        )


class BatchTickResponse(BaseModel):
    """Summary of a scheduled tick run."""
    evaluated: int
    advanced: int
    transitions: List[Dict[str, Any]] = Field(default_factory=list)
    skipped_corrupt: List[Dict[str, Any]] = Field(default_factory=list)
    failed: List[Dict[str, Any]] = Field(default_factory=list)

    @classmethod
    def from_report(cls, report: BatchTickReport) -> "BatchTickResponse":
        return cls(**report.to_dict())


class StatisticsResponse(BaseModel):
    """Aggregate collections statistics."""
    total_active_sequences: int
    total_outstanding_balance: Decimal
    step_counts: Dict[int, int]
    avg_days_to_resolve: float
    total_completed: int
    total_sent_to_agency: int
    total_paused: int
