from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_EVEN, Decimal

from models import Transaction, TransactionType

MIN_INSTALLMENTS = 1
MAX_INSTALLMENTS = 24


class InstallmentValidationError(ValueError):
    pass


class NoInstallmentsRemaining(ValueError):
    pass


@dataclass(frozen=True)
class InstallmentPlan:
    amount_cents: int
    installments: int
    original_amount_cents: int
    remaining_installments: int


def amortize(original_amount_cents: int, installments: int) -> InstallmentPlan:
    """Split a credit purchase into equal installments.

    The per-installment amount is rounded half-to-even to whole cents. The first
    installment is paid when the purchase is created (see :func:`first_installment`),
    so ``installments - 1`` remain.
    """
    if not MIN_INSTALLMENTS <= installments <= MAX_INSTALLMENTS:
        raise InstallmentValidationError(
            f"Installments must be between {MIN_INSTALLMENTS} and {MAX_INSTALLMENTS}"
        )
    if original_amount_cents <= 0:
        raise InstallmentValidationError("Purchase amount must be positive")
    amount = (Decimal(original_amount_cents) / Decimal(installments)).quantize(
        Decimal("1"), rounding=ROUND_HALF_EVEN
    )
    if amount <= 0:
        raise InstallmentValidationError(
            "Purchase amount is too small for the selected installments"
        )
    return InstallmentPlan(
        amount_cents=int(amount),
        installments=installments,
        original_amount_cents=original_amount_cents,
        remaining_installments=installments - 1,
    )


def replan(txn: Transaction, original_amount_cents: int, installments: int) -> InstallmentPlan:
    """Recompute the plan of an edited credit purchase, keeping payments already made."""
    plan = amortize(original_amount_cents, installments)
    if not txn.is_credit or not txn.installments:
        return plan
    paid = txn.installments - (txn.remaining_installments or 0)
    return InstallmentPlan(
        amount_cents=plan.amount_cents,
        installments=plan.installments,
        original_amount_cents=plan.original_amount_cents,
        remaining_installments=max(0, plan.installments - max(1, paid)),
    )


def apply_plan(txn: Transaction, plan: InstallmentPlan) -> None:
    txn.is_credit = True
    txn.amount_cents = plan.amount_cents
    txn.installments = plan.installments
    txn.original_amount_cents = plan.original_amount_cents
    txn.remaining_installments = plan.remaining_installments


def clear_credit(txn: Transaction) -> None:
    txn.is_credit = False
    txn.installments = None
    txn.original_amount_cents = None
    txn.remaining_installments = None


def ensure_payable(txn: Transaction) -> None:
    if not txn.is_credit or txn.type != TransactionType.expense:
        raise ValueError("Transaction is not a credit purchase")
    if not txn.remaining_installments or txn.remaining_installments <= 0:
        raise NoInstallmentsRemaining("No remaining installments to pay")


def build_payment(txn: Transaction, now: datetime) -> Transaction:
    """The plain expense that records one installment paid against ``txn``."""
    return Transaction(
        user_id=txn.user_id,
        amount_cents=txn.amount_cents,
        description=f"Installment Payment for: {txn.description}",
        date=now,
        type=TransactionType.expense,
        category=txn.category,
        notes=f"Payment for original transaction ID: {txn.id}",
        is_credit=False,
        source_transaction_id=txn.id,
    )


def first_installment(txn: Transaction) -> Transaction:
    """The payment recorded together with a new credit purchase, dated like it."""
    return build_payment(txn, txn.date)
