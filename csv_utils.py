import csv
from datetime import date
from decimal import Decimal, InvalidOperation
from io import StringIO
from typing import Any, Iterable

from aggregations import UNCATEGORIZED, parse_txn_datetime

EXPORT_HEADER = ["Date", "Description", "Category", "Type", "Amount"]


def parse_amount(value: str) -> int:
    """Parse a user-typed amount such as ``1.234,50`` or ``€12.5`` into cents."""
    clean = value.strip().replace("€", "").replace("$", "").replace(" ", "")
    clean = clean.replace(",", ".")
    if clean.count(".") > 1:
        parts = clean.split(".")
        clean = "".join(parts[:-1]) + "." + parts[-1]
    try:
        amount = Decimal(clean)
    except InvalidOperation as exc:
        raise ValueError("Invalid amount") from exc
    if not amount.is_finite():
        raise ValueError("Invalid amount")
    scaled = amount * 100
    if scaled != scaled.to_integral_value():
        raise ValueError("Amounts cannot have more than two decimal places")
    cents = int(scaled)
    if cents <= 0:
        raise ValueError("Amount must be a positive number")
    return cents


def format_amount(cents: int) -> str:
    return f"{Decimal(cents) / 100:.2f}"


def export_transactions(transactions: Iterable[Any]) -> str:
    output = StringIO()
    writer = csv.writer(output, quoting=csv.QUOTE_ALL, lineterminator="\n")
    output.write(",".join(EXPORT_HEADER) + "\n")
    for txn in transactions:
        when = parse_txn_datetime(txn.date)
        kind = getattr(txn.type, "value", txn.type)
        writer.writerow(
            [
                when.strftime("%Y-%m-%d") if when else "",
                txn.description,
                txn.category or UNCATEGORIZED,
                kind,
                format_amount(txn.amount_cents),
            ]
        )
    return output.getvalue()


def export_filename(today: date, prefix: str = "transactions") -> str:
    return f"{prefix}_{today.isoformat()}.csv"
