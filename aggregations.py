"""Pure report aggregations over a user's transaction list.

Every function takes an iterable of transaction-like objects (ORM rows or anything
exposing the same attributes) and returns plain dataclasses. Nothing here touches the
database or the clock unless ``today`` is omitted.

Credit purchase entries (``is_credit``) hold the amortized per-installment amount but
never count as cash-flow expense: only the separate installment payment transactions
do. Rows whose date or amount cannot be read are skipped with a warning so one bad row
never blanks a whole report.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import date, datetime, time
from typing import Any, Iterable, Optional

from models import TransactionType
from periods import trailing_days, trailing_months

logger = logging.getLogger(__name__)

UNCATEGORIZED = "Uncategorized"
WEEKDAYS = (
    "Monday",
    "Tuesday",
    "Wednesday",
    "Thursday",
    "Friday",
    "Saturday",
    "Sunday",
)
CATEGORY_KINDS = ("all", "income", "expense")


@dataclass
class PeriodTotals:
    income_cents: int = 0
    expense_cents: int = 0

    @property
    def net_cents(self) -> int:
        return self.income_cents - self.expense_cents

    def add(self, txn: Any) -> None:
        if is_income(txn):
            self.income_cents += txn.amount_cents
        elif is_cash_expense(txn):
            self.expense_cents += txn.amount_cents


@dataclass(frozen=True)
class CategoryTotal:
    name: str
    amount_cents: int


@dataclass(frozen=True)
class CategoryCount:
    name: str
    count: int


@dataclass(frozen=True)
class TrendMonth:
    key: str
    label: str
    income_cents: int
    expense_cents: int

    @property
    def savings_cents(self) -> int:
        return self.income_cents - self.expense_cents

    @property
    def savings_rate(self) -> float:
        if self.income_cents <= 0:
            return 0.0
        return self.savings_cents / self.income_cents * 100


@dataclass(frozen=True)
class SpendingTrends:
    months: list[TrendMonth]
    current: Optional[TrendMonth]
    previous: Optional[TrendMonth]
    income_change: float = 0.0
    expense_change: float = 0.0


@dataclass(frozen=True)
class TransactionHighlight:
    id: Optional[int]
    amount_cents: int
    description: str
    date: datetime
    type: str
    category: str


@dataclass(frozen=True)
class TransactionStats:
    total_transactions: int = 0
    average_amount_cents: int = 0
    largest_expense: Optional[TransactionHighlight] = None
    largest_income: Optional[TransactionHighlight] = None
    recent: list[TransactionHighlight] = field(default_factory=list)
    frequent_categories: list[CategoryCount] = field(default_factory=list)
    weekday_distribution: dict[str, int] = field(
        default_factory=lambda: {name: 0 for name in WEEKDAYS}
    )
    days_since_first_transaction: int = 0


@dataclass(frozen=True)
class DailySpending:
    day: date
    amount_cents: int

    @property
    def label(self) -> str:
        return self.day.strftime("%b %d")


@dataclass(frozen=True)
class RecurringExpense:
    description: str
    frequency: str
    average_cents: int
    category: str
    occurrences: int


@dataclass(frozen=True)
class CreditInstallment:
    id: Optional[int]
    description: str
    category: str
    amount_cents: int
    original_amount_cents: Optional[int]
    remaining: int
    total: int
    date: datetime

    @property
    def paid(self) -> int:
        return self.total - self.remaining

    @property
    def outstanding_cents(self) -> int:
        return self.amount_cents * self.remaining


@dataclass(frozen=True)
class BalanceSummary:
    transaction_count: int = 0
    total_income_cents: int = 0
    total_expense_cents: int = 0
    this_month_income_cents: int = 0
    this_month_expense_cents: int = 0
    expense_change: float = 0.0
    savings_rate: float = 0.0
    top_expense_category: Optional[CategoryTotal] = None

    @property
    def balance_cents(self) -> int:
        return self.total_income_cents - self.total_expense_cents

    @property
    def this_month_net_cents(self) -> int:
        return self.this_month_income_cents - self.this_month_expense_cents


def parse_txn_datetime(value: Any) -> Optional[datetime]:
    """Coerce a stored date value to a naive datetime, or ``None`` if unreadable."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime.combine(value, time.min)
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.replace(tzinfo=None)
    return parsed


def is_income(txn: Any) -> bool:
    return getattr(txn, "type", None) == TransactionType.income


def is_cash_expense(txn: Any) -> bool:
    return getattr(txn, "type", None) == TransactionType.expense and not getattr(
        txn, "is_credit", False
    )


def category_key(txn: Any) -> Optional[str]:
    raw = getattr(txn, "category", None)
    if not isinstance(raw, str):
        return None
    key = raw.strip().lower()
    return key or None


def display_category(key: Optional[str]) -> str:
    if not key:
        return UNCATEGORIZED
    return key.title()


def percent_change(previous: int, current: int) -> float:
    if previous == 0:
        return 100.0 if current > 0 else 0.0
    return (current - previous) / previous * 100


def _valid_rows(transactions: Optional[Iterable[Any]]) -> list[tuple[datetime, Any]]:
    rows: list[tuple[datetime, Any]] = []
    for txn in transactions or ():
        when = parse_txn_datetime(getattr(txn, "date", None))
        if when is None:
            logger.warning(
                f"aggregation_skip: id={getattr(txn, 'id', None)} reason=invalid_date"
            )
            continue
        if not isinstance(getattr(txn, "amount_cents", None), int):
            logger.warning(
                f"aggregation_skip: id={getattr(txn, 'id', None)} reason=invalid_amount"
            )
            continue
        rows.append((when, txn))
    return rows


def _highlight(when: datetime, txn: Any) -> TransactionHighlight:
    kind = getattr(txn, "type", None)
    return TransactionHighlight(
        id=getattr(txn, "id", None),
        amount_cents=txn.amount_cents,
        description=(getattr(txn, "description", None) or "").strip(),
        date=when,
        type=getattr(kind, "value", kind) or "",
        category=display_category(category_key(txn)),
    )


def monthly_totals(transactions: Iterable[Any]) -> dict[str, PeriodTotals]:
    """Income and cash-flow expense per ``YYYY-MM`` key, in chronological order."""
    totals: dict[str, PeriodTotals] = {}
    for when, txn in _valid_rows(transactions):
        key = f"{when.year:04d}-{when.month:02d}"
        totals.setdefault(key, PeriodTotals()).add(txn)
    return dict(sorted(totals.items()))


def yearly_totals(transactions: Iterable[Any]) -> dict[str, PeriodTotals]:
    totals: dict[str, PeriodTotals] = {}
    for when, txn in _valid_rows(transactions):
        totals.setdefault(f"{when.year:04d}", PeriodTotals()).add(txn)
    return dict(sorted(totals.items()))


def top_categories(
    transactions: Iterable[Any], kind: str = "all", limit: int = 5
) -> list[CategoryTotal]:
    if kind not in CATEGORY_KINDS:
        raise ValueError(f"Unknown category kind: {kind}")
    sums: dict[str, int] = {}
    for _, txn in _valid_rows(transactions):
        txn_kind = getattr(txn, "type", None)
        if kind != "all" and txn_kind != kind:
            continue
        key = category_key(txn)
        if key is None:
            continue
        sums[key] = sums.get(key, 0) + txn.amount_cents
    # sorted() is stable, so equal sums keep first-encountered order
    ranked = sorted(sums.items(), key=lambda item: item[1], reverse=True)
    return [
        CategoryTotal(name=display_category(key), amount_cents=amount)
        for key, amount in ranked[:limit]
    ]


def spending_trends(
    transactions: Iterable[Any], today: Optional[date] = None, months: int = 6
) -> SpendingTrends:
    today = today or date.today()
    window = trailing_months(today, months) if months > 0 else []
    totals = {month.key: PeriodTotals() for month in window}
    for when, txn in _valid_rows(transactions):
        bucket = totals.get(f"{when.year:04d}-{when.month:02d}")
        if bucket is not None:
            bucket.add(txn)

    trend = [
        TrendMonth(
            key=month.key,
            label=month.label,
            income_cents=totals[month.key].income_cents,
            expense_cents=totals[month.key].expense_cents,
        )
        for month in window
    ]
    current = trend[-1] if trend else None
    previous = trend[-2] if len(trend) >= 2 else None
    if current is None or previous is None:
        # No previous month to compare against: report no change.
        return SpendingTrends(months=trend, current=current, previous=None)
    return SpendingTrends(
        months=trend,
        current=current,
        previous=previous,
        income_change=percent_change(previous.income_cents, current.income_cents),
        expense_change=percent_change(previous.expense_cents, current.expense_cents),
    )


def transaction_stats(
    transactions: Iterable[Any], today: Optional[date] = None
) -> TransactionStats:
    rows = _valid_rows(transactions)
    if not rows:
        return TransactionStats()
    today = today or date.today()

    cash_flow_total = 0
    cash_flow_count = 0
    largest_expense: Optional[tuple[datetime, Any]] = None
    largest_income: Optional[tuple[datetime, Any]] = None
    category_counts: Counter[str] = Counter()
    weekdays = {name: 0 for name in WEEKDAYS}
    earliest = rows[0][0]

    for when, txn in rows:
        amount = txn.amount_cents
        earliest = min(earliest, when)
        weekdays[WEEKDAYS[when.weekday()]] += 1
        key = category_key(txn)
        if key:
            category_counts[key] += 1
        if not getattr(txn, "is_credit", False):
            cash_flow_total += amount
            cash_flow_count += 1
        if is_cash_expense(txn):
            if largest_expense is None or amount > largest_expense[1].amount_cents:
                largest_expense = (when, txn)
        elif is_income(txn):
            if largest_income is None or amount > largest_income[1].amount_cents:
                largest_income = (when, txn)

    recent = sorted(rows, key=lambda row: row[0], reverse=True)[:5]
    return TransactionStats(
        total_transactions=len(rows),
        average_amount_cents=(
            round(cash_flow_total / cash_flow_count) if cash_flow_count else 0
        ),
        largest_expense=_highlight(*largest_expense) if largest_expense else None,
        largest_income=_highlight(*largest_income) if largest_income else None,
        recent=[_highlight(when, txn) for when, txn in recent],
        frequent_categories=[
            CategoryCount(name=display_category(key), count=count)
            for key, count in category_counts.most_common(5)
        ],
        weekday_distribution=weekdays,
        days_since_first_transaction=max(0, (today - earliest.date()).days),
    )


def daily_spending(
    transactions: Iterable[Any], today: Optional[date] = None, days: int = 30
) -> list[DailySpending]:
    today = today or date.today()
    sums = {day: 0 for day in trailing_days(today, days)}
    for when, txn in _valid_rows(transactions):
        if not is_cash_expense(txn):
            continue
        day = when.date()
        if day in sums:
            sums[day] += txn.amount_cents
    return [DailySpending(day=day, amount_cents=amount) for day, amount in sums.items()]


def _frequency_label(occurrences: int) -> str:
    if occurrences >= 12:
        return "Monthly"
    if occurrences >= 4:
        return "Quarterly"
    return "Occasional"


def recurring_expenses(
    transactions: Iterable[Any], limit: int = 10
) -> list[RecurringExpense]:
    groups: dict[str, list[Any]] = {}
    for _, txn in _valid_rows(transactions):
        if not is_cash_expense(txn):
            continue
        key = (getattr(txn, "description", None) or "").strip().lower()
        if key:
            groups.setdefault(key, []).append(txn)

    candidates: list[tuple[float, RecurringExpense]] = []
    for txns in groups.values():
        if len(txns) < 3:
            continue
        average = sum(t.amount_cents for t in txns) / len(txns)
        categories = Counter(k for k in (category_key(t) for t in txns) if k)
        category = (
            display_category(categories.most_common(1)[0][0])
            if categories
            else UNCATEGORIZED
        )
        candidates.append(
            (
                average,
                RecurringExpense(
                    description=txns[0].description.strip(),
                    frequency=_frequency_label(len(txns)),
                    average_cents=round(average),
                    category=category,
                    occurrences=len(txns),
                ),
            )
        )
    candidates.sort(key=lambda item: item[0], reverse=True)
    return [item for _, item in candidates[:limit]]


def credit_installments(transactions: Iterable[Any]) -> list[CreditInstallment]:
    """Credit purchases that still have installments left to pay, newest first."""
    active: list[CreditInstallment] = []
    for when, txn in _valid_rows(transactions):
        if getattr(txn, "type", None) != TransactionType.expense:
            continue
        if not getattr(txn, "is_credit", False):
            continue
        remaining = getattr(txn, "remaining_installments", None) or 0
        if remaining <= 0:
            continue
        active.append(
            CreditInstallment(
                id=getattr(txn, "id", None),
                description=(txn.description or "").strip(),
                category=display_category(category_key(txn)),
                amount_cents=txn.amount_cents,
                original_amount_cents=getattr(txn, "original_amount_cents", None),
                remaining=remaining,
                total=getattr(txn, "installments", None) or remaining,
                date=when,
            )
        )
    active.sort(key=lambda item: item.date, reverse=True)
    return active


def balance_summary(
    transactions: Iterable[Any], today: Optional[date] = None
) -> BalanceSummary:
    rows = _valid_rows(transactions)
    if not rows:
        return BalanceSummary()
    today = today or date.today()
    totals = PeriodTotals()
    for _, txn in rows:
        totals.add(txn)
    plain = [txn for _, txn in rows]
    trends = spending_trends(plain, today=today, months=2)
    current = trends.current
    top = top_categories(plain, kind="expense", limit=1)
    return BalanceSummary(
        transaction_count=len(rows),
        total_income_cents=totals.income_cents,
        total_expense_cents=totals.expense_cents,
        this_month_income_cents=current.income_cents if current else 0,
        this_month_expense_cents=current.expense_cents if current else 0,
        expense_change=trends.expense_change,
        savings_rate=current.savings_rate if current else 0.0,
        top_expense_category=top[0] if top else None,
    )
