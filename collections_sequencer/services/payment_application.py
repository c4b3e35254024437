"""
Payment application for collection sequences.

Applies a posted payment to the outstanding balance and decides whether the
sequence terminates. Overpayment floors the balance at zero and is reported
back for external reconciliation; account credit is never touched here.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Union

import structlog

from collections_sequencer.core.exceptions import InvalidArgument, InvalidState
from collections_sequencer.models.sequence import (
    Sequence,
    SequenceStatus,
    StepStatus,
    quantize_money,
)

logger = structlog.get_logger(__name__)

Amount = Union[Decimal, int, float, str]


@dataclass
class PaymentResult:
    """Outcome of applying a payment."""
    sequence_id: str
    previous_balance: Decimal
    payment_amount: Decimal
    new_balance: Decimal
    overpaid_by: Decimal
    terminated: bool
    status: SequenceStatus

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sequence_id": self.sequence_id,
            "previous_balance": str(self.previous_balance),
            "payment_amount": str(self.payment_amount),
            "new_balance": str(self.new_balance),
            "overpaid_by": str(self.overpaid_by),
            "terminated": self.terminated,
            "status": self.status.value,
        }


def parse_amount(amount: Amount, field: str = "amount") -> Decimal:
    """
    Convert a monetary input to a positive Decimal.

    Floats are converted through their shortest string form so that 19.99
    becomes Decimal("19.99") rather than its binary expansion.

    Raises:
        InvalidArgument: If the amount is not a finite number greater than zero
            or has fractions of a cent
    """
    if isinstance(amount, bool):
        raise InvalidArgument("must be a number", field=field, value=amount)

    try:
        value = amount if isinstance(amount, Decimal) else Decimal(str(amount))
    except (InvalidOperation, ValueError, TypeError):
        raise InvalidArgument("must be a number", field=field, value=amount)

    if not value.is_finite():
        raise InvalidArgument("must be a finite number", field=field, value=amount)

    if value <= 0:
        raise InvalidArgument("must be greater than zero", field=field, value=amount)

    # Whole cents only
    if value.normalize().as_tuple().exponent < -2:
        raise InvalidArgument("must not have fractions of a cent", field=field, value=amount)

    return quantize_money(value)


def apply_payment(sequence: Sequence, amount: Amount, now: datetime) -> PaymentResult:
    """
    Apply a payment to a sequence in place.

    Args:
        sequence: Sequence receiving the payment
        amount: Payment amount, strictly positive
        now: Time the payment posted

    Returns:
        PaymentResult with the new balance and any overpayment

    Raises:
        InvalidArgument: If the amount is non-positive or not finite
        InvalidState: If the sequence is completed or sent to agency
    """
    payment = parse_amount(amount)

    if sequence.is_terminal:
        raise InvalidState(
            f"Cannot apply a payment to a {sequence.status.value} sequence",
            sequence_id=sequence.sequence_id,
            current_status=sequence.status.value,
        )

    previous_balance = sequence.total_balance
    new_balance = max(Decimal("0.00"), previous_balance - payment)
    overpaid_by = max(Decimal("0.00"), payment - previous_balance)
    terminated = new_balance == 0

    sequence.total_balance = quantize_money(new_balance)
    sequence.last_action_at = now
    sequence.updated_at = now

    if terminated:
        sequence.status = SequenceStatus.COMPLETED
        sequence.resolved_at = now
        sequence.paused_at = None
        for record in sequence.steps:
            if record.status == StepStatus.PENDING:
                record.status = StepStatus.SKIPPED

    logger.info(
        "Payment applied",
        sequence_id=sequence.sequence_id,
        account_id=sequence.account_id,
        payment_amount=str(payment),
        previous_balance=str(previous_balance),
        new_balance=str(sequence.total_balance),
        overpaid_by=str(overpaid_by),
        terminated=terminated,
    )

    return PaymentResult(
        sequence_id=sequence.sequence_id,
        previous_balance=previous_balance,
        payment_amount=payment,
        new_balance=sequence.total_balance,
        overpaid_by=quantize_money(overpaid_by),
        terminated=terminated,
        status=sequence.status,
    )
