from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Literal

from finwire.adapters.db.facade import DB
from finwire.adapters.db.models import FIXED_PERIODS, Budget, TransactionFilters

BudgetHealth = Literal["under", "near", "over"]

# Share of the budget spent at which a budget is reported as "near" its limit.
NEAR_LIMIT_PERCENT = 70.0


@dataclass(frozen=True)
class BudgetPeriodWindow:
    """Inclusive date window of a budget's current period."""

    start: date
    end: date


@dataclass(frozen=True)
class BudgetProgress:
    budget_id: str
    title: str
    amount: float
    spent: float
    remaining: float
    percentage: float
    status: BudgetHealth
    window: BudgetPeriodWindow
    transaction_count: int


def _add_months(anchor: date, months: int, *, day: int | None = None) -> date:
    """Shift by whole months, clamping the day to the target month's length."""
    month_index = anchor.year * 12 + (anchor.month - 1) + months
    year, month = divmod(month_index, 12)
    last_day = calendar.monthrange(year, month + 1)[1]
    return date(year, month + 1, min(day or anchor.day, last_day))


def _months_between(anchor: date, today: date) -> int:
    return (today.year - anchor.year) * 12 + (today.month - anchor.month)


def current_period(budget: Budget, today: date) -> BudgetPeriodWindow:
    """Return the period containing ``today``; the window always ends today.

    Rolling budgets look back ``custom_period_days`` days. Fixed budgets start
    at the most recent period boundary counted from the anchor date.
    """
    period = budget.time_period
    if period == "rolling":
        if not budget.custom_period_days:
            raise ValueError("custom_period_days required for rolling budgets")
        return BudgetPeriodWindow(
            start=today - timedelta(days=budget.custom_period_days), end=today
        )

    if period not in FIXED_PERIODS:
        raise ValueError(f"Unknown time period: {period}")
    anchor = budget.fixed_period_start_date
    if anchor is None:
        raise ValueError("fixed_period_start_date required for fixed budgets")

    if period in ("weekly", "biweekly"):
        length = 7 if period == "weekly" else 14
        periods_passed = (today - anchor).days // length
        start = anchor + timedelta(days=periods_passed * length)
    elif period == "monthly":
        start = _add_months(anchor, _months_between(anchor, today), day=anchor.day)
        if start > today:
            start = _add_months(start, -1, day=anchor.day)
    elif period == "quarterly":
        periods_passed = _months_between(anchor, today) // 3
        start = _add_months(anchor, periods_passed * 3)
        if start > today:
            start = _add_months(anchor, (periods_passed - 1) * 3)
    else:
        start = _add_months(anchor, (today.year - anchor.year) * 12)
        if start > today:
            start = _add_months(anchor, (today.year - anchor.year - 1) * 12)

    return BudgetPeriodWindow(start=start, end=today)


def budget_progress(
    db: DB, user_id: str, budget: Budget, today: date
) -> BudgetProgress:
    """Sum spending of the budget's member transactions in the current period."""
    window = current_period(budget, today)
    members = db.find_transactions(
        user_id,
        TransactionFilters(
            start_date=window.start, end_date=window.end, budget_id=budget.budget_id
        ),
    )
    amount = float(budget.budget_amount)
    spent = round(sum(txn.amount for txn in members), 2)
    percentage = round(spent / amount * 100, 1) if amount else 0.0
    if percentage >= 100:
        status: BudgetHealth = "over"
    elif percentage >= NEAR_LIMIT_PERCENT:
        status = "near"
    else:
        status = "under"
    return BudgetProgress(
        budget_id=budget.budget_id,
        title=budget.title,
        amount=amount,
        spent=spent,
        remaining=round(amount - spent, 2),
        percentage=percentage,
        status=status,
        window=window,
        transaction_count=len(members),
    )
