from __future__ import annotations

from collections.abc import Callable
from datetime import date
from typing import Any

from finwire.adapters.db.facade import DB
from finwire.adapters.db.models import Transaction, TransactionFilters
from finwire.services.connections import ConnectionService
from finwire.tools.base import StandardTool
from finwire.tools.protocol import ToolInputSchema

# Default look-back window when no start date is given.
DEFAULT_HISTORY_YEARS = 2

NO_ACCOUNTS_MESSAGE = (
    "No accounts connected. Connect an account first, then run "
    '"Refresh transactions".'
)


def _years_before(day: date, years: int) -> date:
    try:
        return day.replace(year=day.year - years)
    except ValueError:
        # Feb 29 in a non-leap target year.
        return day.replace(year=day.year - years, day=28)


def _parse_date(value: Any, field_name: str) -> date | None:
    if value is None or value == "":
        return None
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except ValueError as e:
        raise ValueError(f"{field_name} must be YYYY-MM-DD, got {value!r}") from e


def _serialize(txn: Transaction) -> dict[str, Any]:
    return {
        "id": txn.external_id,
        "date": txn.posted_at.isoformat(),
        "description": txn.name,
        "merchant": txn.merchant_name,
        "amount": txn.amount,
        "category": txn.custom_category or "Uncategorized",
        "account_name": txn.account_name or "",
        "pending": txn.pending,
    }


class GetTransactionsTool(StandardTool):
    """Reads stored transactions; never calls the upstream provider."""

    _name = "get_transactions"
    _description = (
        "Get the user's stored transactions, optionally filtered by date range, "
        "accounts, categories, budget and pending status. Run "
        "refresh_transactions first to pull the latest data from the bank."
    )
    _input_schema: ToolInputSchema = {
        "type": "object",
        "properties": {
            "user_id": {"type": "string", "description": "Owner of the data"},
            "start_date": {
                "type": "string",
                "format": "date",
                "description": "Inclusive start date (default: two years ago)",
            },
            "end_date": {
                "type": "string",
                "format": "date",
                "description": "Inclusive end date (default: today)",
            },
            "account_ids": {
                "type": "array",
                "items": {"type": "string"},
                "description": "Only these accounts",
            },
            "categories": {
                "type": "array",
                "items": {"type": "string"},
                "description": "Category substrings, case-insensitive, any match",
            },
            "budget_id": {"type": "string", "description": "Only this budget"},
            "pending_only": {"type": "boolean", "description": "Only pending"},
            "exclude_pending": {"type": "boolean", "description": "Skip pending"},
        },
        "required": ["user_id"],
    }

    def __init__(self, db: DB, *, today: Callable[[], date] = date.today) -> None:
        self._db = db
        self._today = today

    def _execute_impl(self, **kwargs: Any) -> dict[str, Any]:
        user_id: str = kwargs["user_id"]
        if not self._db.list_connections_for_user(user_id):
            return {"status": "no_accounts", "message": NO_ACCOUNTS_MESSAGE}

        try:
            end_date = _parse_date(kwargs.get("end_date"), "end_date") or self._today()
            start_date = _parse_date(
                kwargs.get("start_date"), "start_date"
            ) or _years_before(end_date, DEFAULT_HISTORY_YEARS)
        except ValueError as e:
            return {"status": "error", "error": str(e)}

        filters = TransactionFilters(
            start_date=start_date,
            end_date=end_date,
            account_ids=kwargs.get("account_ids") or None,
            categories=kwargs.get("categories") or None,
            budget_id=kwargs.get("budget_id") or None,
            pending_only=bool(kwargs.get("pending_only", False)),
            exclude_pending=bool(kwargs.get("exclude_pending", False)),
        )
        rows = self._db.find_transactions(user_id, filters)
        date_range = {"start": start_date.isoformat(), "end": end_date.isoformat()}

        if not rows:
            return {
                "status": "success",
                "count": 0,
                "date_range": date_range,
                "transactions": [],
                "message": (
                    "No transactions found for the period "
                    f"{date_range['start']} to {date_range['end']}. "
                    'Run "Refresh transactions" to sync the latest data from '
                    "your bank."
                ),
            }

        result: dict[str, Any] = {
            "status": "success",
            "count": len(rows),
            "date_range": date_range,
            "transactions": [_serialize(row) for row in rows],
        }
        if any(row.custom_category is None for row in rows):
            result["message"] = (
                "Some transactions are uncategorized. Run "
                '"Refresh transactions" to categorize them.'
            )
        return result


class RefreshTransactionsTool(StandardTool):
    """Starts a background sync of all of the user's connections."""

    _name = "refresh_transactions"
    _description = (
        "Fetch the latest transactions from every connected bank account, then "
        "categorize them and label them for budgets. Runs in the background."
    )
    _input_schema: ToolInputSchema = {
        "type": "object",
        "properties": {
            "user_id": {"type": "string", "description": "Owner of the data"},
        },
        "required": ["user_id"],
    }

    def __init__(self, connections: ConnectionService) -> None:
        self._connections = connections

    async def _execute_impl(self, **kwargs: Any) -> dict[str, Any]:
        user_id: str = kwargs["user_id"]
        item_ids = self._connections.schedule_user_sync(user_id)
        if not item_ids:
            return {"status": "no_accounts", "message": NO_ACCOUNTS_MESSAGE}
        return {
            "status": "scheduled",
            "connections": item_ids,
            "message": (
                f"Refreshing {len(item_ids)} connection(s) in the background. "
                "Ask for transactions again in a minute."
            ),
        }
