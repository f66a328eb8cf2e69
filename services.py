from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from typing import Any, Iterable, Mapping, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, aliased

from rapidfuzz.distance import Levenshtein

from aggregations import (
    BalanceSummary,
    CategoryTotal,
    CreditInstallment,
    DailySpending,
    PeriodTotals,
    RecurringExpense,
    SpendingTrends,
    TransactionStats,
    balance_summary,
    credit_installments,
    daily_spending,
    monthly_totals,
    recurring_expenses,
    spending_trends,
    top_categories,
    transaction_stats,
    yearly_totals,
)
from auth import UserSession
from chat import financial_summary, transaction_context
from fetch import TransactionFetcher
from installments import (
    amortize,
    apply_plan,
    build_payment,
    clear_credit,
    ensure_payable,
    first_installment,
    replan,
)
from models import Profile, Transaction, TransactionType
from periods import local_now, local_today, to_local_naive
from schemas import ProfileIn, QuickTransactionIn, TransactionIn
from store import TransactionStore, with_session_refresh

logger = logging.getLogger(__name__)

FUZZY_CATEGORY_MIN_LENGTH = 5


def match_category(raw: Optional[str], existing: list[str]) -> Optional[str]:
    """Reuse the spelling of an existing category when ``raw`` is a near miss of it."""
    name = (raw or "").strip()
    if not name:
        return None
    lowered = name.lower()
    for candidate in existing:
        if candidate.strip().lower() == lowered:
            return candidate
    if len(lowered) < FUZZY_CATEGORY_MIN_LENGTH:
        return name

    best_distance: Optional[int] = None
    best: list[str] = []
    for candidate in existing:
        dist = int(Levenshtein.distance(lowered, candidate.strip().lower()))
        if best_distance is None or dist < best_distance:
            best_distance = dist
            best = [candidate]
        elif dist == best_distance:
            best.append(candidate)
    if best_distance is not None and best_distance <= 1 and len(best) == 1:
        return best[0]
    return name


SORT_ORDERS = {
    "date-desc": "Newest first",
    "date-asc": "Oldest first",
    "amount-desc": "Largest amount",
    "amount-asc": "Smallest amount",
}


@dataclass
class TransactionFilter:
    """Search, type, credit and category filters plus a sort order for the list view."""

    query: str = ""
    type: Optional[TransactionType] = None
    credit: Optional[bool] = None
    category: Optional[str] = None
    sort: str = "date-desc"

    @classmethod
    def from_params(cls, params: Mapping[str, str]) -> "TransactionFilter":
        raw_type = (params.get("type") or "").strip().lower()
        raw_credit = (params.get("credit") or "").strip().lower()
        category = (params.get("category") or "").strip()
        sort = (params.get("sort") or "").strip().lower()
        return cls(
            query=(params.get("q") or "").strip().lower(),
            type=TransactionType(raw_type) if raw_type in {"income", "expense"} else None,
            credit={"yes": True, "no": False}.get(raw_credit),
            category=category if category and category.lower() != "all" else None,
            sort=sort if sort in SORT_ORDERS else "date-desc",
        )

    def matches(self, txn: Transaction) -> bool:
        category = (txn.category or "").lower()
        if self.query and self.query not in txn.description.lower() and self.query not in category:
            return False
        if self.type is not None and txn.type != self.type:
            return False
        if self.credit is not None and bool(txn.is_credit) != self.credit:
            return False
        if self.category is not None and category != self.category.lower():
            return False
        return True

    def apply(self, txns: Iterable[Transaction]) -> list[Transaction]:
        items = [t for t in txns if self.matches(t)]
        reverse = self.sort.endswith("desc")
        if self.sort.startswith("amount"):
            # stable, so equal amounts keep the store's newest-first order
            return sorted(items, key=lambda t: t.amount_cents, reverse=reverse)
        return sorted(items, key=lambda t: (t.date, t.id or 0), reverse=reverse)


class TransactionService:
    def __init__(
        self,
        store: TransactionStore,
        timezone: str,
        fetcher: Optional[TransactionFetcher] = None,
    ) -> None:
        self.store = store
        self.timezone = timezone
        self.fetcher = fetcher

    def _changed(self) -> None:
        if self.fetcher is not None:
            self.fetcher.invalidate()

    def _category(self, raw: Optional[str]) -> Optional[str]:
        if not raw or not raw.strip():
            return None
        return match_category(raw, self.store.categories())

    def get(self, transaction_id: int) -> Transaction:
        return self.store.get(transaction_id)

    def create(self, data: TransactionIn) -> Transaction:
        txn = Transaction(
            amount_cents=data.amount_cents,
            description=data.description,
            date=to_local_naive(data.date, self.timezone),
            type=data.type,
            category=self._category(data.category),
            notes=data.notes,
        )
        if data.is_credit:
            apply_plan(txn, amortize(data.amount_cents, data.installments or 0))
        else:
            clear_credit(txn)
        txn = self.store.insert(
            txn, first_payment=first_installment if txn.is_credit else None
        )
        logger.info(
            f"transaction_created: id={txn.id} type={txn.type.value} "
            f"credit={txn.is_credit}"
        )
        self._changed()
        return txn

    def quick_add(self, data: QuickTransactionIn) -> Transaction:
        txn = Transaction(
            amount_cents=data.amount_cents,
            description=data.description,
            date=local_now(self.timezone),
            type=data.type,
            category=self._category(data.category),
            is_credit=False,
        )
        txn = self.store.insert(txn)
        logger.info(f"transaction_quick_added: id={txn.id} type={txn.type.value}")
        self._changed()
        return txn

    def update(self, transaction_id: int, data: TransactionIn) -> Transaction:
        txn = self.store.get(transaction_id)
        was_credit = bool(txn.is_credit)
        # Plan is computed against the stored counters before any field changes.
        plan = (
            replan(txn, data.amount_cents, data.installments or 0)
            if data.is_credit
            else None
        )
        txn.amount_cents = data.amount_cents
        txn.description = data.description
        txn.date = to_local_naive(data.date, self.timezone)
        txn.type = data.type
        txn.category = self._category(data.category)
        txn.notes = data.notes
        if plan is not None:
            apply_plan(txn, plan)
        else:
            clear_credit(txn)
        # a plain expense turned into a credit purchase pays its first installment now
        needs_first = plan is not None and not was_credit
        txn = self.store.save(
            txn, first_payment=first_installment if needs_first else None
        )
        logger.info(f"transaction_updated: id={txn.id} credit={txn.is_credit}")
        self._changed()
        return txn

    def delete(self, transaction_id: int) -> None:
        self.store.delete(transaction_id)
        logger.info(f"transaction_deleted: id={transaction_id}")
        self._changed()

    def pay_installment(self, transaction_id: int) -> Transaction:
        txn = self.store.get(transaction_id)
        ensure_payable(txn)
        payment = build_payment(txn, local_now(self.timezone))
        payment = self.store.record_installment_payment(txn, payment)
        logger.info(
            f"installment_paid: transaction_id={txn.id} payment_id={payment.id} "
            f"remaining={txn.remaining_installments}"
        )
        self._changed()
        return payment


@dataclass
class DashboardView:
    summary: BalanceSummary
    months: dict[str, PeriodTotals]
    top_expenses: list[CategoryTotal]
    recent: list[Transaction]
    credit: list[CreditInstallment]


@dataclass
class ReportsView:
    trends: SpendingTrends
    stats: TransactionStats
    daily: list[DailySpending]
    recurring: list[RecurringExpense]
    credit: list[CreditInstallment]
    yearly: dict[str, PeriodTotals]
    top_income: list[CategoryTotal]
    top_expenses: list[CategoryTotal]
    top_all: list[CategoryTotal]


class ReportService:
    """Builds every report facet from a single fetch of the user's transactions."""

    def __init__(self, fetcher: TransactionFetcher, timezone: str) -> None:
        self.fetcher = fetcher
        self.timezone = timezone

    def _today(self, today: Optional[date]) -> date:
        return today or local_today(self.timezone)

    def dashboard(self, today: Optional[date] = None) -> DashboardView:
        today = self._today(today)
        txns = self.fetcher.list()
        months = monthly_totals(txns)
        return DashboardView(
            summary=balance_summary(txns, today=today),
            months=dict(list(months.items())[-6:]),
            top_expenses=top_categories(txns, kind="expense"),
            recent=txns[:10],
            credit=credit_installments(txns),
        )

    def reports(self, today: Optional[date] = None) -> ReportsView:
        today = self._today(today)
        txns = self.fetcher.list()
        return ReportsView(
            trends=spending_trends(txns, today=today),
            stats=transaction_stats(txns, today=today),
            daily=daily_spending(txns, today=today),
            recurring=recurring_expenses(txns),
            credit=credit_installments(txns),
            yearly=yearly_totals(txns),
            top_income=top_categories(txns, kind="income"),
            top_expenses=top_categories(txns, kind="expense"),
            top_all=top_categories(txns, kind="all"),
        )

    def chat_context(
        self, today: Optional[date] = None
    ) -> tuple[list[dict[str, Any]], dict[str, str]]:
        txns = self.fetcher.list()
        summary = balance_summary(txns, today=self._today(today))
        return transaction_context(txns), financial_summary(summary)


@dataclass(frozen=True)
class InstallmentMismatch:
    transaction_id: int
    user_id: int
    expected_payments: int
    recorded_payments: int


class ReconciliationService:
    """Finds credit purchases whose remaining counter disagrees with recorded payments."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def find_installment_mismatches(self) -> list[InstallmentMismatch]:
        Payment = aliased(Transaction)
        stmt = (
            select(
                Transaction.id,
                Transaction.user_id,
                Transaction.installments,
                Transaction.remaining_installments,
                func.count(Payment.id),
            )
            .outerjoin(Payment, Payment.source_transaction_id == Transaction.id)
            .where(
                Transaction.is_credit.is_(True),
                Transaction.type == TransactionType.expense,
            )
            .group_by(
                Transaction.id,
                Transaction.user_id,
                Transaction.installments,
                Transaction.remaining_installments,
            )
        )
        mismatches: list[InstallmentMismatch] = []
        for txn_id, user_id, total, remaining, recorded in self.session.execute(stmt):
            expected = (total or 0) - (remaining or 0)
            if expected == int(recorded):
                continue
            mismatch = InstallmentMismatch(
                transaction_id=txn_id,
                user_id=user_id,
                expected_payments=expected,
                recorded_payments=int(recorded),
            )
            logger.error(
                f"installment_mismatch: transaction_id={txn_id} user_id={user_id} "
                f"expected={expected} recorded={int(recorded)}"
            )
            mismatches.append(mismatch)
        return mismatches


class ProfileService:
    def __init__(self, session: Session, user_session: UserSession) -> None:
        self.session = session
        self.user_session = user_session

    @with_session_refresh
    def get(self) -> Profile:
        profile = self.session.get(Profile, self.user_session.user_id())
        if not profile:
            raise ValueError("Profile not found")
        return profile

    @with_session_refresh
    def update(self, data: ProfileIn) -> Profile:
        profile = self.session.get(Profile, self.user_session.user_id())
        if not profile:
            raise ValueError("Profile not found")
        clash = self.session.scalar(
            select(Profile.id).where(
                func.lower(Profile.username) == data.username.lower(),
                Profile.id != profile.id,
            )
        )
        if clash:
            raise ValueError("Username is already taken")
        profile.username = data.username
        profile.full_name = (data.full_name or "").strip() or None
        profile.avatar_url = (data.avatar_url or "").strip() or None
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise ValueError("Username is already taken") from exc
        self.session.refresh(profile)
        logger.info(f"profile_updated: user_id={profile.id}")
        return profile
