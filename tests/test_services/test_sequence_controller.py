"""
Tests for the sequence controller.

Exercises the full lifecycle against the in-memory repository: creation,
scheduled ticks, payments, operator commands, re-open and reporting.
"""

import asyncio
from decimal import Decimal

import pytest

from collections_sequencer.core.exceptions import (
    CorruptRecord,
    ExternalServiceError,
    InvalidArgument,
    InvalidState,
    NotFound,
)
from collections_sequencer.models.policy import CollectionsPolicy
from collections_sequencer.models.sequence import SequenceStatus, StepStatus
from collections_sequencer.services.policy_provider import StaticPolicyProvider
from collections_sequencer.services.sequence_controller import SequenceController
from tests.factories import T0, RecordingMessagingClient, day, make_sequence


async def create(controller, account_id="acct-1", balance="500.00", now=T0):
    sequence, created = await controller.create_sequence(account_id, balance, now)
    assert created is True
    return sequence


async def advance_to(controller, sequence_id, offset):
    """Tick on catalog days until ``offset`` is reached."""
    for target in (7, 14, 30, 60, 90):
        if target > offset:
            break
        await controller.tick(sequence_id, day(target))
    sequence = await controller.get_sequence(sequence_id)
    assert sequence.current_step_offset == offset
    return sequence


class TestCreateSequence:
    """Starting sequences."""

    @pytest.mark.asyncio
    async def test_create_starts_at_statement(self, controller, repository):
        sequence = await create(controller)

        assert sequence.status == SequenceStatus.ACTIVE
        assert sequence.current_step_offset == 0
        assert sequence.total_balance == Decimal("500.00")
        assert sequence.started_at == T0
        statement = sequence.step_record(0)
        assert statement.status == StepStatus.SENT
        assert statement.sent_at == T0

        stored = await repository.get(sequence.sequence_id)
        assert stored.to_dict() == sequence.to_dict()

    @pytest.mark.asyncio
    async def test_create_is_idempotent_per_account(self, controller, repository):
        first = await create(controller)

        second, created = await controller.create_sequence("acct-1", "750.00", day(3))

        assert created is False
        assert second.sequence_id == first.sequence_id
        assert second.total_balance == Decimal("500.00")
        assert len(repository) == 1

    @pytest.mark.asyncio
    async def test_concurrent_creates_make_one_sequence(self, controller, repository):
        results = await asyncio.gather(
            *(controller.create_sequence("acct-1", "500.00", T0) for _ in range(5))
        )

        assert sum(1 for _, created in results if created) == 1
        assert len({s.sequence_id for s, _ in results}) == 1
        assert len(repository) == 1

    @pytest.mark.asyncio
    async def test_balance_must_exceed_minimum(self, repository):
        provider = StaticPolicyProvider(default=CollectionsPolicy(min_balance=Decimal("50.00")))
        controller = SequenceController(repository, policy_provider=provider)

        with pytest.raises(InvalidArgument) as exc_info:
            await controller.create_sequence("acct-1", "50.00", T0)
        assert exc_info.value.field == "balance"

        sequence, created = await controller.create_sequence("acct-1", "50.01", T0)
        assert created is True

    @pytest.mark.asyncio
    @pytest.mark.parametrize("balance", ["0", "-10", "abc", "120.005"])
    async def test_invalid_balance_rejected(self, controller, balance):
        with pytest.raises(InvalidArgument):
            await controller.create_sequence("acct-1", balance, T0)

    @pytest.mark.asyncio
    async def test_empty_account_rejected(self, controller):
        with pytest.raises(InvalidArgument):
            await controller.create_sequence("", "100.00", T0)

    @pytest.mark.asyncio
    async def test_policy_actions_used(self, repository):
        provider = StaticPolicyProvider()
        provider.set_policy("acct-9", CollectionsPolicy(action_overrides={"sms": "Text guarantor"}))
        controller = SequenceController(repository, policy_provider=provider)

        sequence, _ = await controller.create_sequence("acct-9", "100.00", T0)

        assert sequence.step_record(7).action == "Text guarantor"


class TestTicks:
    """Scheduled ticks through the controller."""

    @pytest.mark.asyncio
    async def test_tick_advances_to_sms_on_day_eight(self, controller, repository):
        sequence = await create(controller)

        updated, result = await controller.tick(sequence.sequence_id, day(8))

        assert result.advance is True
        assert result.to_offset == 7
        assert updated.current_step_offset == 7
        assert (await repository.get(sequence.sequence_id)).current_step_offset == 7

    @pytest.mark.asyncio
    async def test_repeated_tick_is_idempotent(self, controller):
        sequence = await create(controller)

        await controller.tick(sequence.sequence_id, day(20))
        snapshot = (await controller.get_sequence(sequence.sequence_id)).to_dict()
        _, result = await controller.tick(sequence.sequence_id, day(20))

        assert result.advance is False
        assert (await controller.get_sequence(sequence.sequence_id)).to_dict() == snapshot

    @pytest.mark.asyncio
    async def test_tick_unknown_sequence(self, controller):
        with pytest.raises(NotFound):
            await controller.tick("missing", day(1))

    @pytest.mark.asyncio
    async def test_auto_escalation_reaches_agency(self, controller):
        sequence = await create(controller)

        final = await advance_to(controller, sequence.sequence_id, 90)

        assert final.status == SequenceStatus.SENT_TO_AGENCY
        _, result = await controller.tick(sequence.sequence_id, day(120))
        assert result.advance is False


class TestPayments:
    """Payments through the controller."""

    @pytest.mark.asyncio
    async def test_full_payment_completes_then_tick_is_noop(self, controller):
        sequence = await create(controller)

        updated, result = await controller.record_payment(sequence.sequence_id, 500, day(10))

        assert result.new_balance == Decimal("0.00")
        assert updated.status == SequenceStatus.COMPLETED

        _, tick_result = await controller.tick(sequence.sequence_id, day(40))
        assert tick_result.advance is False

    @pytest.mark.asyncio
    async def test_overpayment_reports_excess(self, controller):
        sequence = await create(controller)

        updated, result = await controller.record_payment(sequence.sequence_id, "600", day(4))

        assert result.overpaid_by == Decimal("100.00")
        assert updated.total_balance == Decimal("0.00")
        assert updated.status == SequenceStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_negative_payment_rejected(self, controller):
        sequence = await create(controller)

        with pytest.raises(InvalidArgument):
            await controller.record_payment(sequence.sequence_id, -5, day(1))

    @pytest.mark.asyncio
    async def test_payment_after_completion_rejected(self, controller):
        sequence = await create(controller)
        await controller.record_payment(sequence.sequence_id, 500, day(1))

        with pytest.raises(InvalidState):
            await controller.record_payment(sequence.sequence_id, 10, day(2))

    @pytest.mark.asyncio
    async def test_payment_after_agency_rejected(self, controller):
        sequence = await create(controller)
        await advance_to(controller, sequence.sequence_id, 90)

        with pytest.raises(InvalidState):
            await controller.record_payment(sequence.sequence_id, 100, day(95))

    @pytest.mark.asyncio
    async def test_partial_payment_keeps_step(self, controller):
        sequence = await create(controller)
        await controller.tick(sequence.sequence_id, day(8))

        updated, _ = await controller.record_payment(sequence.sequence_id, 200, day(9))

        assert updated.status == SequenceStatus.ACTIVE
        assert updated.current_step_offset == 7
        assert updated.total_balance == Decimal("300.00")

    @pytest.mark.asyncio
    async def test_sub_cent_payment_rejected(self, controller):
        sequence = await create(controller, balance="100.00")

        with pytest.raises(InvalidArgument):
            await controller.record_payment(sequence.sequence_id, "99.995", day(3))

        stored = await controller.get_sequence(sequence.sequence_id)
        assert stored.status == SequenceStatus.ACTIVE
        assert stored.total_balance == Decimal("100.00")

    @pytest.mark.asyncio
    async def test_concurrent_tick_and_payment_serialize(self, controller):
        sequence = await create(controller)

        await asyncio.gather(
            controller.tick(sequence.sequence_id, day(8)),
            controller.record_payment(sequence.sequence_id, 500, day(8)),
        )

        final = await controller.get_sequence(sequence.sequence_id)
        assert final.status == SequenceStatus.COMPLETED
        assert final.total_balance == Decimal("0.00")
        assert final.current_step_offset in (0, 7)


class TestOperatorCommands:
    """Pause, resume and manual escalation."""

    @pytest.mark.asyncio
    async def test_pause_freezes_ticks(self, controller):
        sequence = await create(controller)

        paused = await controller.pause(sequence.sequence_id, day(2))
        assert paused.status == SequenceStatus.PAUSED
        assert paused.paused_at == day(2)

        snapshot = paused.to_dict()
        _, result = await controller.tick(sequence.sequence_id, day(50))

        assert result.advance is False
        assert (await controller.get_sequence(sequence.sequence_id)).to_dict() == snapshot

    @pytest.mark.asyncio
    async def test_pause_requires_active(self, controller):
        sequence = await create(controller)
        await controller.pause(sequence.sequence_id, day(2))

        with pytest.raises(InvalidState):
            await controller.pause(sequence.sequence_id, day(3))

    @pytest.mark.asyncio
    async def test_resume_requires_paused(self, controller):
        sequence = await create(controller)

        with pytest.raises(InvalidState):
            await controller.resume(sequence.sequence_id, day(3))

    @pytest.mark.asyncio
    async def test_resume_after_long_pause_catches_up_one_step_per_tick(self, controller):
        sequence = await create(controller)
        await advance_to(controller, sequence.sequence_id, 30)
        await controller.pause(sequence.sequence_id, day(35))

        resumed = await controller.resume(sequence.sequence_id, day(95))
        assert resumed.status == SequenceStatus.ACTIVE
        assert resumed.paused_at is None

        _, result = await controller.tick(sequence.sequence_id, day(95))

        assert result.to_offset == 60
        assert (await controller.get_sequence(sequence.sequence_id)).status == SequenceStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_manual_escalate(self, controller):
        sequence = await create(controller)

        updated, result = await controller.escalate(sequence.sequence_id, day(1))

        assert result.manual is True
        assert updated.current_step_offset == 7
        assert updated.step_record(7).manual is True

    @pytest.mark.asyncio
    async def test_escalate_paused_sequence_resumes_it(self, controller):
        sequence = await create(controller)
        await controller.pause(sequence.sequence_id, day(1))

        updated, _ = await controller.escalate(sequence.sequence_id, day(2))

        assert updated.status == SequenceStatus.ACTIVE
        assert updated.current_step_offset == 7

    @pytest.mark.asyncio
    async def test_terminal_sequence_rejects_commands(self, controller):
        sequence = await create(controller)
        await advance_to(controller, sequence.sequence_id, 90)

        with pytest.raises(InvalidState):
            await controller.escalate(sequence.sequence_id, day(100))
        with pytest.raises(InvalidState):
            await controller.pause(sequence.sequence_id, day(100))
        with pytest.raises(InvalidState):
            await controller.resume(sequence.sequence_id, day(100))


class TestScheduledRun:
    """Batch ticks across many accounts."""

    @pytest.mark.asyncio
    async def test_batch_advances_due_sequences(self, controller):
        due = await create(controller, account_id="acct-1", now=T0)
        not_due = await create(controller, account_id="acct-2", now=day(5))
        paused = await create(controller, account_id="acct-3", now=T0)
        await controller.pause(paused.sequence_id, day(1))

        report = await controller.run_scheduled_ticks(day(8))

        assert report.evaluated == 2
        assert report.advanced == 1
        assert report.transitions[0]["sequence_id"] == due.sequence_id
        assert report.transitions[0]["to_offset"] == 7
        assert (await controller.get_sequence(not_due.sequence_id)).current_step_offset == 0

    @pytest.mark.asyncio
    async def test_corrupt_record_is_reported_and_batch_continues(self, controller, repository):
        good = await create(controller, account_id="acct-1")
        repository.put_raw({
            "sequence_id": "corrupt-1",
            "account_id": "acct-bad",
            "total_balance": "120.00",
            "started_at": None,
            "current_step_offset": 0,
            "status": "active",
            "steps": [],
        })

        report = await controller.run_scheduled_ticks(day(8))

        assert report.advanced == 1
        assert report.transitions[0]["sequence_id"] == good.sequence_id
        assert [entry["sequence_id"] for entry in report.skipped_corrupt] == ["corrupt-1"]
        assert report.failed == []

    @pytest.mark.asyncio
    async def test_unknown_status_is_reported_as_corrupt(self, controller, repository):
        await create(controller, account_id="acct-1")
        legacy = make_sequence(account_id="acct-legacy").to_dict()
        legacy["status"] = "paid"
        repository.put_raw(legacy)

        report = await controller.run_scheduled_ticks(day(8))

        assert report.advanced == 1
        assert [entry["sequence_id"] for entry in report.skipped_corrupt] == [legacy["sequence_id"]]

    @pytest.mark.asyncio
    async def test_direct_tick_on_corrupt_record_raises(self, controller, repository):
        repository.put_raw({
            "sequence_id": "corrupt-2",
            "account_id": "acct-bad",
            "total_balance": "120.00",
            "started_at": T0.isoformat(),
            "current_step_offset": 45,
            "status": "active",
            "steps": [],
        })

        with pytest.raises(CorruptRecord):
            await controller.tick("corrupt-2", day(50))

    @pytest.mark.asyncio
    async def test_batch_is_one_step_per_run(self, controller):
        sequence = await create(controller)

        first = await controller.run_scheduled_ticks(day(100))
        second = await controller.run_scheduled_ticks(day(100))

        assert first.advanced == 1
        assert second.advanced == 0
        assert (await controller.get_sequence(sequence.sequence_id)).current_step_offset == 7

    @pytest.mark.asyncio
    async def test_report_to_dict(self, controller):
        await create(controller)

        data = (await controller.run_scheduled_ticks(day(8))).to_dict()

        assert set(data) == {"evaluated", "advanced", "transitions", "skipped_corrupt", "failed"}


class TestMessagingDispatch:
    """Dispatch of reached steps to the messaging collaborator."""

    @pytest.mark.asyncio
    async def test_statement_dispatched_on_create(self, repository):
        messaging = RecordingMessagingClient()
        controller = SequenceController(repository, messaging=messaging)

        sequence, _ = await controller.create_sequence("acct-1", "500.00", T0)

        assert messaging.sent == [(sequence.sequence_id, 0, "Generate statement")]
        assert sequence.step_record(0).response == "Generate statement delivered"
        assert sequence.step_record(0).status == StepStatus.SENT

    @pytest.mark.asyncio
    async def test_advance_dispatches_new_step(self, repository):
        messaging = RecordingMessagingClient()
        controller = SequenceController(repository, messaging=messaging)
        sequence, _ = await controller.create_sequence("acct-1", "500.00", T0)

        updated, _ = await controller.tick(sequence.sequence_id, day(8))

        assert messaging.sent[-1] == (sequence.sequence_id, 7, "Send SMS reminder")
        assert updated.step_record(7).response == "Send SMS reminder delivered"

    @pytest.mark.asyncio
    async def test_hold_does_not_dispatch(self, repository):
        messaging = RecordingMessagingClient()
        controller = SequenceController(repository, messaging=messaging)
        sequence, _ = await controller.create_sequence("acct-1", "500.00", T0)

        await controller.tick(sequence.sequence_id, day(3))

        assert len(messaging.sent) == 1

    @pytest.mark.asyncio
    async def test_reported_failure_marks_step_skipped(self, repository):
        messaging = RecordingMessagingClient(success=False)
        controller = SequenceController(repository, messaging=messaging)
        sequence, _ = await controller.create_sequence("acct-1", "500.00", T0)

        updated, _ = await controller.tick(sequence.sequence_id, day(8))

        assert updated.current_step_offset == 7
        assert updated.step_record(7).status == StepStatus.SKIPPED
        assert updated.step_record(7).response == "Carrier rejected message"

    @pytest.mark.asyncio
    async def test_collaborator_outage_keeps_transition(self, repository):
        messaging = RecordingMessagingClient(error=ExternalServiceError("messaging_service", "HTTP 503"))
        controller = SequenceController(repository, messaging=messaging)
        sequence, _ = await controller.create_sequence("acct-1", "500.00", T0)

        updated, result = await controller.tick(sequence.sequence_id, day(8))

        assert result.advance is True
        assert updated.current_step_offset == 7
        assert updated.step_record(7).status == StepStatus.SKIPPED
        assert "HTTP 503" in updated.step_record(7).response

    @pytest.mark.asyncio
    async def test_agency_handoff_outcome_recorded(self, repository):
        messaging = RecordingMessagingClient()
        controller = SequenceController(repository, messaging=messaging)
        sequence, _ = await controller.create_sequence("acct-1", "500.00", T0)

        final = await advance_to(controller, sequence.sequence_id, 90)

        assert final.status == SequenceStatus.SENT_TO_AGENCY
        assert final.step_record(90).response == "Escalate to collections agency delivered"

    @pytest.mark.asyncio
    async def test_out_of_band_step_result(self, controller):
        sequence = await create(controller)
        await controller.tick(sequence.sequence_id, day(8))

        updated = await controller.record_step_result(sequence.sequence_id, 7, False, "Opted out", day(9))

        assert updated.step_record(7).status == StepStatus.SKIPPED
        assert updated.step_record(7).response == "Opted out"


class TestReopen:
    """Re-opening terminal sequences."""

    @pytest.mark.asyncio
    async def test_reopen_agency_sequence_with_balance(self, controller):
        sequence = await create(controller)
        await advance_to(controller, sequence.sequence_id, 90)

        reopened = await controller.reopen(sequence.sequence_id, day(150))

        assert reopened.sequence_id != sequence.sequence_id
        assert reopened.reopened_from == sequence.sequence_id
        assert reopened.status == SequenceStatus.ACTIVE
        assert reopened.current_step_offset == 0
        assert reopened.started_at == day(150)
        assert reopened.total_balance == Decimal("500.00")

        original = await controller.get_sequence(sequence.sequence_id)
        assert original.status == SequenceStatus.SENT_TO_AGENCY

    @pytest.mark.asyncio
    async def test_paid_sequence_cannot_be_reopened(self, controller):
        sequence = await create(controller)
        await controller.record_payment(sequence.sequence_id, 500, day(5))

        with pytest.raises(InvalidState):
            await controller.reopen(sequence.sequence_id, day(6))

    @pytest.mark.asyncio
    async def test_open_sequence_cannot_be_reopened(self, controller):
        sequence = await create(controller)

        with pytest.raises(InvalidState):
            await controller.reopen(sequence.sequence_id, day(6))

    @pytest.mark.asyncio
    async def test_reopen_blocked_by_newer_open_sequence(self, controller):
        sequence = await create(controller)
        await advance_to(controller, sequence.sequence_id, 90)
        await controller.reopen(sequence.sequence_id, day(150))

        with pytest.raises(InvalidState):
            await controller.reopen(sequence.sequence_id, day(151))


class TestReads:
    """Status, listing and statistics."""

    @pytest.mark.asyncio
    async def test_get_status(self, controller):
        sequence = await create(controller)
        await controller.tick(sequence.sequence_id, day(8))

        view = await controller.get_status(sequence.sequence_id, day(10))

        assert view.projection.elapsed_days == 10
        assert view.projection.day_in_step == 3
        assert view.projection.next_action_date == day(14)
        assert [r.day_offset for r in view.history] == [0, 7]

    @pytest.mark.asyncio
    async def test_get_unknown_sequence(self, controller):
        with pytest.raises(NotFound):
            await controller.get_sequence("missing")

    @pytest.mark.asyncio
    async def test_list_filters_and_orders(self, controller):
        older = await create(controller, account_id="acct-1", now=T0)
        newer = await create(controller, account_id="acct-2", now=day(2))
        await controller.tick(older.sequence_id, day(8))

        everything, total = await controller.list_sequences()
        at_sms, _ = await controller.list_sequences(step_offset=7)
        paused, _ = await controller.list_sequences(status=SequenceStatus.PAUSED)

        assert total == 2
        assert [s.sequence_id for s in everything] == [newer.sequence_id, older.sequence_id]
        assert [s.sequence_id for s in at_sms] == [older.sequence_id]
        assert paused == []

    @pytest.mark.asyncio
    async def test_list_limit(self, controller):
        for i in range(3):
            await create(controller, account_id=f"acct-{i}", now=day(i))

        page, total = await controller.list_sequences(limit=2)

        assert len(page) == 2
        assert total == 3

    @pytest.mark.asyncio
    async def test_list_rejects_unknown_offset(self, controller):
        with pytest.raises(InvalidArgument):
            await controller.list_sequences(step_offset=45)

    @pytest.mark.asyncio
    async def test_get_by_account(self, controller):
        first = await create(controller)
        await advance_to(controller, first.sequence_id, 90)
        second = await controller.reopen(first.sequence_id, day(150))

        sequences = await controller.get_by_account("acct-1")

        assert [s.sequence_id for s in sequences] == [second.sequence_id, first.sequence_id]

        with pytest.raises(NotFound):
            await controller.get_by_account("acct-unknown")

    @pytest.mark.asyncio
    async def test_statistics(self, controller):
        await create(controller, account_id="acct-1", balance="100.00")
        b = await create(controller, account_id="acct-2", balance="250.00")
        c = await create(controller, account_id="acct-3", balance="80.00")
        await controller.tick(b.sequence_id, day(8))
        await controller.record_payment(c.sequence_id, 80, day(10))
        paused = await create(controller, account_id="acct-4", balance="40.00")
        await controller.pause(paused.sequence_id, day(1))

        stats = await controller.get_statistics()

        assert stats["total_active_sequences"] == 2
        assert stats["total_outstanding_balance"] == Decimal("350.00")
        assert stats["step_counts"] == {0: 1, 7: 1, 14: 0, 30: 0, 60: 0, 90: 0}
        assert stats["avg_days_to_resolve"] == 10.0
        assert stats["total_completed"] == 1
        assert stats["total_paused"] == 1
        assert stats["total_sent_to_agency"] == 0

    @pytest.mark.asyncio
    async def test_late_delivery_outcome_does_not_move_resolution_time(self, controller):
        sequence = await create(controller, balance="80.00")
        await controller.record_payment(sequence.sequence_id, 80, day(10))

        await controller.record_step_result(sequence.sequence_id, 0, True, "Statement delivered", day(40))

        stored = await controller.get_sequence(sequence.sequence_id)
        assert stored.resolved_at == day(10)
        assert stored.updated_at == day(40)
        stats = await controller.get_statistics()
        assert stats["avg_days_to_resolve"] == 10.0


class TestLockLifecycle:
    """Account locks do not outlive the operations that use them."""

    @pytest.mark.asyncio
    async def test_locks_released_after_operations(self, controller):
        sequences = await asyncio.gather(
            *(create(controller, account_id=f"acct-{n}", balance="50.00") for n in range(50))
        )
        await asyncio.gather(
            *(controller.record_payment(s.sequence_id, 50, day(2)) for s in sequences)
        )
        await controller.run_scheduled_ticks(day(8))

        assert len(controller.locks) == 0
