"""
Collection sequence API endpoints.

REST endpoints for starting sequences, operator commands (pause, resume,
manual escalate, re-open), posting payments, recording messaging outcomes,
running scheduled ticks and reporting.
"""

from datetime import datetime, timezone
from typing import List, Optional

import structlog
from fastapi import APIRouter, Depends, Query, Response, status

from collections_sequencer.core.dependencies import get_sequence_controller
from collections_sequencer.core.exceptions import (
    BaseAPIException,
    CorruptRecord,
    InvalidArgument,
    SequencerError,
    map_sequencer_error,
)
from collections_sequencer.core.logging import correlation_context, get_correlation_id
from collections_sequencer.models.sequence import SequenceStatus
from collections_sequencer.schemas.sequence import (
    ApiResponse,
    BatchTickResponse,
    CreateSequenceRequest,
    CreateSequenceResponse,
    PaymentRequest,
    PaymentResponse,
    PaymentResultResponse,
    SequenceListResponse,
    SequenceResponse,
    SequenceStatusResponse,
    StatisticsResponse,
    StepResultRequest,
    TickResultResponse,
    TimedRequest,
    TransitionResponse,
)
from collections_sequencer.services.sequence_controller import SequenceController

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["sequences"])


def _resolve_now(now: Optional[datetime]) -> datetime:
    """Use the supplied evaluation time or read the wall clock."""
    if now is None:
        return datetime.now(timezone.utc)
    if now.tzinfo is None:
        raise InvalidArgument("must include a timezone offset", field="now", value=now.isoformat())
    return now


def _api_error(error: SequencerError) -> BaseAPIException:
    if isinstance(error, CorruptRecord):
        logger.error(
            "Corrupt sequence record",
            sequence_id=error.sequence_id,
            field=error.field,
            error=str(error),
        )
    else:
        logger.info(
            "Sequence request rejected",
            error_code=error.error_code,
            error=str(error),
        )
    return map_sequencer_error(error, get_correlation_id())


@router.post(
    "/sequences",
    response_model=ApiResponse[CreateSequenceResponse],
    status_code=status.HTTP_201_CREATED,
)
async def create_sequence(
    request: CreateSequenceRequest,
    response: Response,
    controller: SequenceController = Depends(get_sequence_controller),
):
    """
    Start a collection sequence for an account.

    Returns the existing open sequence (HTTP 200) when the account already
    has one.
    """
    with correlation_context(account_id=request.account_id):
        try:
            sequence, created = await controller.create_sequence(
                request.account_id, request.balance, _resolve_now(request.now)
            )
        except SequencerError as e:
            raise _api_error(e)

    if not created:
        response.status_code = status.HTTP_200_OK

    return ApiResponse(
        data=CreateSequenceResponse(sequence=SequenceResponse.from_sequence(sequence), created=created),
        message="Collection sequence started" if created else "Open collection sequence already exists",
    )


@router.get("/sequences", response_model=ApiResponse[SequenceListResponse])
async def list_sequences(
    status_filter: Optional[SequenceStatus] = Query(None, alias="status"),
    step_offset: Optional[int] = Query(None, description="Current step offset in days"),
    limit: int = Query(50, ge=1, le=500),
    controller: SequenceController = Depends(get_sequence_controller),
):
    """List collection sequences, newest first."""
    try:
        sequences, total = await controller.list_sequences(status_filter, step_offset, limit)
    except SequencerError as e:
        raise _api_error(e)

    return ApiResponse(
        data=SequenceListResponse(
            sequences=[SequenceResponse.from_sequence(s) for s in sequences],
            total=total,
            limit=limit,
        )
    )


@router.get("/sequences/stats", response_model=ApiResponse[StatisticsResponse])
async def get_statistics(controller: SequenceController = Depends(get_sequence_controller)):
    """Aggregate collections statistics."""
    stats = await controller.get_statistics()
    return ApiResponse(data=StatisticsResponse(**stats))


@router.get("/sequences/{sequence_id}", response_model=ApiResponse[SequenceStatusResponse])
async def get_sequence(
    sequence_id: str,
    now: Optional[datetime] = Query(None, description="Evaluation time for the projection"),
    controller: SequenceController = Depends(get_sequence_controller),
):
    """Get a sequence with its timing projection and step history."""
    try:
        view = await controller.get_status(sequence_id, _resolve_now(now))
    except SequencerError as e:
        raise _api_error(e)

    return ApiResponse(data=SequenceStatusResponse.from_view(view))


@router.get("/accounts/{account_id}/sequences", response_model=ApiResponse[List[SequenceResponse]])
async def get_account_sequences(
    account_id: str,
    controller: SequenceController = Depends(get_sequence_controller),
):
    """All sequences for an account, newest first."""
    try:
        sequences = await controller.get_by_account(account_id)
    except SequencerError as e:
        raise _api_error(e)

    return ApiResponse(data=[SequenceResponse.from_sequence(s) for s in sequences])


@router.post("/sequences/{sequence_id}/pause", response_model=ApiResponse[SequenceResponse])
async def pause_sequence(
    sequence_id: str,
    request: Optional[TimedRequest] = None,
    controller: SequenceController = Depends(get_sequence_controller),
):
    """Pause an active sequence (e.g. patient on a payment plan)."""
    with correlation_context(sequence_id=sequence_id):
        try:
            sequence = await controller.pause(sequence_id, _resolve_now(request.now if request else None))
        except SequencerError as e:
            raise _api_error(e)

    return ApiResponse(data=SequenceResponse.from_sequence(sequence), message="Sequence paused")


@router.post("/sequences/{sequence_id}/resume", response_model=ApiResponse[SequenceResponse])
async def resume_sequence(
    sequence_id: str,
    request: Optional[TimedRequest] = None,
    controller: SequenceController = Depends(get_sequence_controller),
):
    """Resume a paused sequence on its original timeline."""
    with correlation_context(sequence_id=sequence_id):
        try:
            sequence = await controller.resume(sequence_id, _resolve_now(request.now if request else None))
        except SequencerError as e:
            raise _api_error(e)

    return ApiResponse(data=SequenceResponse.from_sequence(sequence), message="Sequence resumed")


@router.post("/sequences/{sequence_id}/escalate", response_model=ApiResponse[TransitionResponse])
async def escalate_sequence(
    sequence_id: str,
    request: Optional[TimedRequest] = None,
    controller: SequenceController = Depends(get_sequence_controller),
):
    """Manually advance a sequence one step, ignoring elapsed time."""
    with correlation_context(sequence_id=sequence_id):
        try:
            sequence, result = await controller.escalate(
                sequence_id, _resolve_now(request.now if request else None)
            )
        except SequencerError as e:
            raise _api_error(e)

    return ApiResponse(
        data=TransitionResponse(
            sequence=SequenceResponse.from_sequence(sequence),
            result=TickResultResponse.from_result(result),
        ),
        message=f"Sequence escalated to day {result.to_offset}",
    )


@router.post(
    "/sequences/{sequence_id}/reopen",
    response_model=ApiResponse[SequenceResponse],
    status_code=status.HTTP_201_CREATED,
)
async def reopen_sequence(
    sequence_id: str,
    request: Optional[TimedRequest] = None,
    controller: SequenceController = Depends(get_sequence_controller),
):
    """Start a new sequence for the remaining balance of a terminal one."""
    with correlation_context(sequence_id=sequence_id):
        try:
            sequence = await controller.reopen(sequence_id, _resolve_now(request.now if request else None))
        except SequencerError as e:
            raise _api_error(e)

    return ApiResponse(data=SequenceResponse.from_sequence(sequence), message="Sequence re-opened")


@router.post("/sequences/{sequence_id}/payments", response_model=ApiResponse[PaymentResponse])
async def record_payment(
    sequence_id: str,
    request: PaymentRequest,
    controller: SequenceController = Depends(get_sequence_controller),
):
    """Apply a posted payment to the sequence balance."""
    with correlation_context(sequence_id=sequence_id):
        try:
            sequence, result = await controller.record_payment(
                sequence_id, request.amount, _resolve_now(request.now)
            )
        except SequencerError as e:
            raise _api_error(e)

    return ApiResponse(
        data=PaymentResponse(
            sequence=SequenceResponse.from_sequence(sequence),
            payment=PaymentResultResponse.from_result(result),
        ),
        message="Paid in full" if result.terminated else "Payment applied",
    )


@router.post("/sequences/{sequence_id}/tick", response_model=ApiResponse[TransitionResponse])
async def tick_sequence(
    sequence_id: str,
    request: Optional[TimedRequest] = None,
    controller: SequenceController = Depends(get_sequence_controller),
):
    """Evaluate a scheduled tick for one sequence."""
    with correlation_context(sequence_id=sequence_id):
        try:
            sequence, result = await controller.tick(sequence_id, _resolve_now(request.now if request else None))
        except SequencerError as e:
            raise _api_error(e)

    return ApiResponse(
        data=TransitionResponse(
            sequence=SequenceResponse.from_sequence(sequence),
            result=TickResultResponse.from_result(result),
        )
    )


@router.post(
    "/sequences/{sequence_id}/steps/{day_offset}/result",
    response_model=ApiResponse[SequenceResponse],
)
async def record_step_result(
    sequence_id: str,
    day_offset: int,
    request: StepResultRequest,
    controller: SequenceController = Depends(get_sequence_controller),
):
    """Record the messaging collaborator's outcome for a dispatched step."""
    with correlation_context(sequence_id=sequence_id):
        try:
            sequence = await controller.record_step_result(
                sequence_id, day_offset, request.success, request.response, _resolve_now(request.now)
            )
        except SequencerError as e:
            raise _api_error(e)

    return ApiResponse(data=SequenceResponse.from_sequence(sequence), message="Step outcome recorded")


@router.post("/ticks/run", response_model=ApiResponse[BatchTickResponse])
async def run_scheduled_ticks(
    request: Optional[TimedRequest] = None,
    controller: SequenceController = Depends(get_sequence_controller),
):
    """Run one scheduled tick across every active sequence."""
    try:
        report = await controller.run_scheduled_ticks(_resolve_now(request.now if request else None))
    except SequencerError as e:
        raise _api_error(e)

    return ApiResponse(
        data=BatchTickResponse.from_report(report),
        message=f"Advanced {report.advanced} of {report.evaluated} sequences",
    )
