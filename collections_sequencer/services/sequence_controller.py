"""
Sequence controller.

Orchestrates the collections lifecycle: idempotent creation, scheduled
ticks, payments, pause/resume, manual escalation and re-open. Every mutation
of an account's sequence runs under that account's lock, is staged on a copy
and saved in one step, so a cancelled batch never leaves a sequence
half-updated. Messaging calls happen outside the lock.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Tuple, TypeVar

import structlog

from collections_sequencer.core.exceptions import (
    CorruptRecord,
    ExternalServiceError,
    InvalidArgument,
    InvalidState,
    NotFound,
    SequencerError,
)
from collections_sequencer.core.logging import correlation_context, log_business_event, performance_timing
from collections_sequencer.database.sequence_repository import SequenceRepository
from collections_sequencer.models.sequence import Sequence, SequenceStatus, StepRecord, StepStatus
from collections_sequencer.services import escalation_engine
from collections_sequencer.services.escalation_engine import TickResult
from collections_sequencer.services.messaging import DeliveryResult, MessagingClient
from collections_sequencer.services.payment_application import Amount, PaymentResult, apply_payment, parse_amount
from collections_sequencer.services.policy_provider import PolicyProvider, StaticPolicyProvider
from collections_sequencer.utils.account_locks import AccountLockRegistry
from collections_sequencer.utils.step_catalog import FIRST_OFFSET, offsets, step_at
from collections_sequencer.utils.time_projector import Projection, project, step_history

logger = structlog.get_logger(__name__)

T = TypeVar("T")


@dataclass
class BatchTickReport:
    """Summary of one scheduled tick run across all active sequences."""
    evaluated: int = 0
    advanced: int = 0
    transitions: List[Dict[str, Any]] = field(default_factory=list)
    skipped_corrupt: List[Dict[str, Any]] = field(default_factory=list)
    failed: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "evaluated": self.evaluated,
            "advanced": self.advanced,
            "transitions": self.transitions,
            "skipped_corrupt": self.skipped_corrupt,
            "failed": self.failed,
        }


@dataclass
class SequenceStatusView:
    """Operator read model for a sequence at a point in time."""
    sequence: Sequence
    projection: Projection
    history: List[StepRecord]


class SequenceController:
    """Coordinates sequence mutations, persistence and messaging."""

    def __init__(
        self,
        repository: SequenceRepository,
        messaging: Optional[MessagingClient] = None,
        policy_provider: Optional[PolicyProvider] = None,
        locks: Optional[AccountLockRegistry] = None,
        tick_concurrency: int = 10,
    ):
        """
        Initialize the controller.

        Args:
            repository: Sequence state store
            messaging: Optional messaging collaborator for reached steps
            policy_provider: Source of per-practice collections policy
            locks: Per-account lock registry (shared when several controllers run in one process)
            tick_concurrency: Maximum sequences ticked at once in a batch
        """
        self.repository = repository
        self.messaging = messaging
        self.policy_provider = policy_provider or StaticPolicyProvider()
        self.locks = locks or AccountLockRegistry()
        self.tick_concurrency = max(1, tick_concurrency)

    # Creation

    async def create_sequence(
        self,
        account_id: str,
        balance: Amount,
        now: datetime,
    ) -> Tuple[Sequence, bool]:
        """
        Start a sequence for an account whose balance crossed the minimum.

        Idempotent: if the account already has a non-terminal sequence it is
        returned unchanged.

        Returns:
            Tuple of (sequence, created)

        Raises:
            InvalidArgument: If the account id is empty or the balance does not exceed the minimum
        """
        if not account_id:
            raise InvalidArgument("must not be empty", field="account_id", value=account_id)

        amount = parse_amount(balance, field="balance")
        policy = self.policy_provider.get_policy(account_id)
        if amount <= policy.min_balance:
            raise InvalidArgument(
                f"must exceed the minimum balance of {policy.min_balance}",
                field="balance",
                value=str(amount),
            )

        async with self.locks.hold(account_id):
            existing = await self.repository.find_open_by_account(account_id)
            if existing is not None:
                logger.info(
                    "Open sequence already exists for account",
                    account_id=account_id,
                    sequence_id=existing.sequence_id,
                    status=existing.status.value,
                )
                return existing, False

            sequence = self._start(account_id, amount, now)
            await self.repository.save(sequence)

        log_business_event(
            "sequence_created",
            sequence_id=sequence.sequence_id,
            account_id=account_id,
            balance=str(sequence.total_balance),
        )

        sequence = await self._dispatch(sequence, FIRST_OFFSET, now)
        return sequence, True

    def _start(self, account_id: str, amount: Decimal, now: datetime) -> Sequence:
        policy = self.policy_provider.get_policy(account_id)
        sequence = Sequence.start(
            account_id,
            amount,
            now,
            actions={offset: policy.action_for(offset) for offset in offsets()},
        )
        statement = sequence.step_record(FIRST_OFFSET)
        statement.status = StepStatus.SENT
        statement.sent_at = now
        return sequence

    async def reopen(self, sequence_id: str, now: datetime) -> Sequence:
        """
        Re-open a terminal sequence that still carries a balance.

        The original stays immutable; a new sequence starts at day 0 for the
        remaining balance and records which sequence it replaced.

        Raises:
            InvalidState: If the sequence is not terminal, has no balance, or the account has an open sequence
        """
        original = await self.repository.get(sequence_id)

        async with self.locks.hold(original.account_id):
            original = await self.repository.get(sequence_id)
            if not original.is_terminal:
                raise InvalidState(
                    "Only completed or sent-to-agency sequences can be re-opened",
                    sequence_id=sequence_id,
                    current_status=original.status.value,
                )
            if original.total_balance <= 0:
                raise InvalidState(
                    "Paid-in-full sequences cannot be re-opened",
                    sequence_id=sequence_id,
                    current_status=original.status.value,
                )
            if await self.repository.find_open_by_account(original.account_id) is not None:
                raise InvalidState(
                    "Account already has an open collection sequence",
                    sequence_id=sequence_id,
                    current_status=original.status.value,
                )

            sequence = self._start(original.account_id, original.total_balance, now)
            sequence.reopened_from = original.sequence_id
            await self.repository.save(sequence)

        log_business_event(
            "sequence_reopened",
            sequence_id=sequence.sequence_id,
            reopened_from=original.sequence_id,
            account_id=original.account_id,
            previous_status=original.status.value,
            balance=str(sequence.total_balance),
        )

        return await self._dispatch(sequence, FIRST_OFFSET, now)

    # Operator commands

    async def pause(self, sequence_id: str, now: datetime) -> Sequence:
        """Pause an active sequence."""
        def mutate(sequence: Sequence) -> None:
            if sequence.status != SequenceStatus.ACTIVE:
                raise InvalidState(
                    "Can only pause active sequences",
                    sequence_id=sequence.sequence_id,
                    current_status=sequence.status.value,
                )
            sequence.status = SequenceStatus.PAUSED
            sequence.paused_at = now
            sequence.updated_at = now

        sequence, _ = await self._mutate(sequence_id, mutate)
        log_business_event("sequence_paused", sequence_id=sequence_id, account_id=sequence.account_id)
        return sequence

    async def resume(self, sequence_id: str, now: datetime) -> Sequence:
        """Resume a paused sequence on its original timeline."""
        def mutate(sequence: Sequence) -> None:
            if sequence.status != SequenceStatus.PAUSED:
                raise InvalidState(
                    "Can only resume paused sequences",
                    sequence_id=sequence.sequence_id,
                    current_status=sequence.status.value,
                )
            sequence.status = SequenceStatus.ACTIVE
            sequence.paused_at = None
            sequence.updated_at = now

        sequence, _ = await self._mutate(sequence_id, mutate)
        log_business_event("sequence_resumed", sequence_id=sequence_id, account_id=sequence.account_id)
        return sequence

    async def escalate(self, sequence_id: str, now: datetime) -> Tuple[Sequence, TickResult]:
        """Manually advance a sequence one step."""
        sequence, result = await self._mutate(
            sequence_id,
            lambda s: escalation_engine.escalate(s, now, self.policy_provider.get_policy(s.account_id)),
        )
        self._log_transition(sequence, result)
        sequence = await self._dispatch(sequence, result.to_offset, now)
        return sequence, result

    async def record_payment(self, sequence_id: str, amount: Amount, now: datetime) -> Tuple[Sequence, PaymentResult]:
        """Apply a posted payment."""
        parse_amount(amount)
        sequence, result = await self._mutate(sequence_id, lambda s: apply_payment(s, amount, now))

        log_business_event(
            "payment_applied",
            sequence_id=sequence_id,
            account_id=sequence.account_id,
            payment_amount=str(result.payment_amount),
            new_balance=str(result.new_balance),
            overpaid_by=str(result.overpaid_by),
        )
        if result.terminated:
            log_business_event("sequence_completed", sequence_id=sequence_id, account_id=sequence.account_id)

        return sequence, result

    async def record_step_result(
        self,
        sequence_id: str,
        day_offset: int,
        success: bool,
        response: Optional[str],
        now: datetime,
    ) -> Sequence:
        """Record a messaging outcome reported out of band."""
        sequence, _ = await self._mutate(
            sequence_id,
            lambda s: escalation_engine.record_step_result(s, day_offset, success, response, now),
            allow_terminal=True,
        )
        return sequence

    # Scheduling

    async def tick(self, sequence_id: str, now: datetime) -> Tuple[Sequence, TickResult]:
        """Evaluate one scheduled tick for a sequence."""
        sequence, result = await self._mutate(
            sequence_id,
            lambda s: escalation_engine.tick(s, now, self.policy_provider.get_policy(s.account_id)),
            allow_terminal=True,
        )
        if result.advance:
            self._log_transition(sequence, result)
            sequence = await self._dispatch(sequence, result.to_offset, now)
        return sequence, result

    async def run_scheduled_ticks(self, now: datetime) -> BatchTickReport:
        """
        Tick every active sequence once.

        Sequences are independent and ticked concurrently. A corrupt or
        failing sequence is reported and the run continues with the rest.
        """
        report = BatchTickReport()
        sequence_ids = await self.repository.list_ids(SequenceStatus.ACTIVE)
        semaphore = asyncio.Semaphore(self.tick_concurrency)

        async def run_one(sequence_id: str) -> None:
            async with semaphore:
                with correlation_context(sequence_id=sequence_id):
                    try:
                        sequence, result = await self.tick(sequence_id, now)
                    except CorruptRecord as e:
                        logger.error(
                            "Skipping corrupt sequence during scheduled tick",
                            sequence_id=sequence_id,
                            field=e.field,
                            error=str(e),
                        )
                        report.skipped_corrupt.append({"sequence_id": sequence_id, "error": str(e)})
                        return
                    except NotFound:
                        return
                    except Exception as e:
                        logger.error(
                            "Scheduled tick failed",
                            sequence_id=sequence_id,
                            error=str(e),
                            exc_info=True,
                        )
                        report.failed.append({"sequence_id": sequence_id, "error": str(e)})
                        return

                    report.evaluated += 1
                    if result.advance:
                        report.advanced += 1
                        report.transitions.append({
                            "sequence_id": sequence_id,
                            "account_id": sequence.account_id,
                            **result.to_dict(),
                        })

        with performance_timing("scheduled_tick_run", candidates=len(sequence_ids)):
            await asyncio.gather(*(run_one(sequence_id) for sequence_id in sequence_ids))

        logger.info(
            "Scheduled tick run complete",
            candidates=len(sequence_ids),
            evaluated=report.evaluated,
            advanced=report.advanced,
            corrupt=len(report.skipped_corrupt),
            failed=len(report.failed),
        )

        return report

    # Reads

    async def get_sequence(self, sequence_id: str) -> Sequence:
        return await self.repository.get(sequence_id)

    async def get_status(self, sequence_id: str, now: datetime) -> SequenceStatusView:
        """Sequence with its timing projection and step history."""
        sequence = await self.repository.get(sequence_id)
        policy = self.policy_provider.get_policy(sequence.account_id)
        return SequenceStatusView(
            sequence=sequence,
            projection=project(sequence, now, policy),
            history=step_history(sequence),
        )

    async def list_sequences(
        self,
        status: Optional[SequenceStatus] = None,
        step_offset: Optional[int] = None,
        limit: int = 50,
    ) -> Tuple[List[Sequence], int]:
        """
        List sequences newest first.

        Returns:
            Tuple of (page, total matching count)
        """
        if limit < 1:
            raise InvalidArgument("must be at least 1", field="limit", value=limit)
        if step_offset is not None:
            step_at(step_offset)

        sequences = await self.repository.list_sequences(status)
        if step_offset is not None:
            sequences = [s for s in sequences if s.current_step_offset == step_offset]

        sequences.sort(key=_created_sort_key, reverse=True)
        return sequences[:limit], len(sequences)

    async def get_by_account(self, account_id: str) -> List[Sequence]:
        """All sequences for an account, newest first."""
        sequences = await self.repository.list_by_account(account_id)
        if not sequences:
            raise NotFound(f"No collection sequences for account '{account_id}'", account_id=account_id)
        return sorted(sequences, key=_created_sort_key, reverse=True)

    async def get_statistics(self) -> Dict[str, Any]:
        """Aggregate collections statistics across all sequences."""
        sequences = await self.repository.list_sequences()

        active = [s for s in sequences if s.status == SequenceStatus.ACTIVE]
        step_counts = {offset: 0 for offset in offsets()}
        for sequence in active:
            step_counts[sequence.current_step_offset] += 1

        resolved = [s for s in sequences if s.is_terminal]
        avg_days_to_resolve = 0.0
        if resolved:
            total = sum(
                ((s.resolved_at or s.updated_at) - s.started_at) / timedelta(days=1)
                for s in resolved
            )
            avg_days_to_resolve = round(total / len(resolved), 1)

        return {
            "total_active_sequences": len(active),
            "total_outstanding_balance": sum((s.total_balance for s in active), Decimal("0.00")),
            "step_counts": step_counts,
            "avg_days_to_resolve": avg_days_to_resolve,
            "total_completed": len([s for s in sequences if s.status == SequenceStatus.COMPLETED]),
            "total_sent_to_agency": len([s for s in sequences if s.status == SequenceStatus.SENT_TO_AGENCY]),
            "total_paused": len([s for s in sequences if s.status == SequenceStatus.PAUSED]),
        }

    # Internals

    async def _mutate(
        self,
        sequence_id: str,
        operation: Callable[[Sequence], T],
        allow_terminal: bool = False,
    ) -> Tuple[Sequence, T]:
        """
        Run ``operation`` on a staged copy under the account lock and save it.

        The record is re-read once the lock is held so the operation always
        sees the latest state. Nothing is saved if the operation raises or
        leaves the record unchanged.
        """
        account_id = (await self.repository.get(sequence_id)).account_id

        async with self.locks.hold(account_id):
            current = await self.repository.get(sequence_id)
            if current.is_terminal and not allow_terminal:
                raise InvalidState(
                    f"Sequence is {current.status.value} and can no longer change",
                    sequence_id=sequence_id,
                    current_status=current.status.value,
                )

            staged = current.copy()
            result = operation(staged)
            if staged.to_dict() != current.to_dict():
                await self.repository.save(staged)

        return staged, result

    async def _dispatch(self, sequence: Sequence, day_offset: Optional[int], now: datetime) -> Sequence:
        """Hand a reached step to the messaging collaborator and record the outcome."""
        if self.messaging is None or day_offset is None:
            return sequence

        record = sequence.step_record(day_offset)
        if record is None or record.status != StepStatus.SENT:
            return sequence

        try:
            delivery = await self.messaging.send_step(sequence, record)
        except ExternalServiceError as e:
            logger.warning(
                "Step dispatch failed",
                sequence_id=sequence.sequence_id,
                day_offset=day_offset,
                error=str(e),
            )
            delivery = DeliveryResult(success=False, response=f"Dispatch failed: {e}")

        try:
            return await self.record_step_result(
                sequence.sequence_id, day_offset, delivery.success, delivery.response, now
            )
        except SequencerError as e:
            logger.warning(
                "Could not record step outcome",
                sequence_id=sequence.sequence_id,
                day_offset=day_offset,
                error=str(e),
            )
            return sequence

    def _log_transition(self, sequence: Sequence, result: TickResult) -> None:
        log_business_event(
            "sequence_advanced",
            sequence_id=sequence.sequence_id,
            account_id=sequence.account_id,
            from_offset=result.from_offset,
            to_offset=result.to_offset,
            channel=step_at(result.to_offset).channel.value,
            manual=result.manual,
        )
        if result.terminal:
            log_business_event(
                "sequence_sent_to_agency",
                sequence_id=sequence.sequence_id,
                account_id=sequence.account_id,
                balance=str(sequence.total_balance),
            )


def _created_sort_key(sequence: Sequence) -> datetime:
    return sequence.created_at or sequence.started_at
