"""
Dashboard Aggregates.

Pure functions over a list of transactions: nothing is persisted, the
summary is recomputed from scratch whenever the list changes.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from cointrail.models.enums import TransactionType
from cointrail.models.service_models import MonthlyTotal, Summary
from cointrail.models.transaction import Transaction

__all__ = ["calculate_summary", "monthly_totals", "percent_change"]

_ZERO = Decimal("0")
_ONE_DECIMAL = Decimal("0.1")


def _month_key(day: date) -> str:
    return f"{day.year:04d}-{day.month:02d}"


def _previous_month(day: date) -> date:
    return date(day.year - 1, 12, 1) if day.month == 1 else date(day.year, day.month - 1, 1)


def percent_change(current: Decimal, previous: Decimal) -> Decimal:
    """Percent change from *previous* to *current*, one decimal place.

    ``0`` when *previous* is zero (no baseline to compare against).
    """
    if previous == _ZERO:
        return _ZERO
    change = (current - previous) / previous * 100
    return change.quantize(_ONE_DECIMAL, rounding=ROUND_HALF_UP)


def calculate_summary(
    transactions: Iterable[Transaction], today: Optional[date] = None,
) -> Summary:
    """Income, expenses and balance in a single pass.

    ``income_change``/``expense_change`` compare the calendar month of
    *today* (default: the current date) with the month before it.
    """
    reference = today or date.today()
    this_month = _month_key(reference)
    last_month = _month_key(_previous_month(reference))

    income = expenses = _ZERO
    month_income = {this_month: _ZERO, last_month: _ZERO}
    month_expenses = {this_month: _ZERO, last_month: _ZERO}

    for tx in transactions:
        key = _month_key(tx.transaction_date)
        if tx.type == TransactionType.INCOME:
            income += tx.amount
            if key in month_income:
                month_income[key] += tx.amount
        else:
            expenses += tx.amount
            if key in month_expenses:
                month_expenses[key] += tx.amount

    return Summary(
        total_income=income,
        total_expenses=expenses,
        balance=income - expenses,
        income_change=percent_change(month_income[this_month], month_income[last_month]),
        expense_change=percent_change(month_expenses[this_month], month_expenses[last_month]),
    )


def monthly_totals(transactions: Iterable[Transaction]) -> list[MonthlyTotal]:
    """Income and expense totals per ``YYYY-MM``, oldest month first."""
    buckets: dict[str, MonthlyTotal] = {}
    for tx in transactions:
        key = _month_key(tx.transaction_date)
        bucket = buckets.setdefault(key, MonthlyTotal(month=key))
        if tx.type == TransactionType.INCOME:
            bucket.income += tx.amount
        else:
            bucket.expenses += tx.amount
    return [buckets[key] for key in sorted(buckets)]
