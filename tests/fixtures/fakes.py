"""Hand-written fakes for the Plaid and classifier boundaries."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
import json
from typing import Any

from finwire.adapters.clients.classifier import ClassifierResponse
from finwire.adapters.clients.plaid import PlaidAccount, PlaidTransaction, SyncPage
from finwire.adapters.db.facade import DB
from finwire.adapters.db.models import AccountConnection


def make_plaid_txn(
    transaction_id: str,
    *,
    account_id: str = "acc_1",
    amount: float = 10.0,
    date: str = "2025-01-15",
    name: str = "Test Transaction",
    pending: bool = False,
    category: str | None = None,
) -> PlaidTransaction:
    return {
        "transaction_id": transaction_id,
        "account_id": account_id,
        "amount": amount,
        "iso_currency_code": "USD",
        "date": date,
        "name": name,
        "merchant_name": None,
        "pending": pending,
        "personal_finance_category": {"primary": category} if category else None,
    }


def make_plaid_account(account_id: str, name: str = "Checking") -> PlaidAccount:
    return {
        "account_id": account_id,
        "name": name,
        "official_name": None,
        "mask": "0000",
        "subtype": "checking",
        "type": "depository",
        "balances": {
            "current": 100.0,
            "available": 90.0,
            "limit": None,
            "iso_currency_code": "USD",
        },
    }


class FakePlaidClient:
    """Serves scripted sync pages per account and records every call."""

    def __init__(
        self,
        *,
        pages: dict[str, list[SyncPage | Exception]] | None = None,
        accounts: list[PlaidAccount] | None = None,
        accounts_error: Exception | None = None,
        env: str = "sandbox",
    ) -> None:
        self._pages = {key: list(value) for key, value in (pages or {}).items()}
        self._accounts = accounts or []
        self._accounts_error = accounts_error
        self.env = env
        self.sync_calls: list[dict[str, Any]] = []
        self.removed_tokens: list[str] = []

    def get_accounts(self, access_token: str) -> list[PlaidAccount]:
        if self._accounts_error is not None:
            raise self._accounts_error
        return list(self._accounts)

    def sync_transactions(
        self,
        access_token: str,
        *,
        cursor: str | None = None,
        count: int = 500,
        account_id: str | None = None,
    ) -> SyncPage:
        self.sync_calls.append(
            {
                "access_token": access_token,
                "cursor": cursor,
                "count": count,
                "account_id": account_id,
            }
        )
        queue = self._pages.get(account_id or "", [])
        if not queue:
            return SyncPage(next_cursor=cursor or "", has_more=False)
        page = queue.pop(0)
        if isinstance(page, Exception):
            raise page
        return page

    def remove_item(self, access_token: str) -> None:
        self.removed_tokens.append(access_token)

    def cursors_for(self, account_id: str) -> list[str | None]:
        return [c["cursor"] for c in self.sync_calls if c["account_id"] == account_id]


Responder = Callable[[str, list[dict[str, Any]]], "str | ClassifierResponse"]


class FakeClassifier:
    """Answers classifier calls with a responder over the decoded batch.

    ``delays`` maps a batch's first description to a sleep in seconds, which
    lets tests reorder batch completion.
    ``events`` records ("start" | "end", first description) in call order.
    """

    def __init__(
        self,
        responder: Responder,
        *,
        model: str = "fake-model",
        delays: dict[str, float] | None = None,
    ) -> None:
        self._responder = responder
        self._model = model
        self._delays = delays or {}
        self.calls: list[tuple[str, list[dict[str, Any]]]] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.events: list[tuple[str, str]] = []

    @property
    def model(self) -> str:
        return self._model

    async def complete(
        self, system_prompt: str, user_content: str
    ) -> ClassifierResponse:
        items = json.loads(user_content)
        first = str(items[0].get("description", "")) if items else ""
        self.calls.append((system_prompt, items))
        self.events.append(("start", first))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self._delays.get(first, 0))
            answer = self._responder(system_prompt, items)
        finally:
            self.in_flight -= 1
            self.events.append(("end", first))
        if isinstance(answer, ClassifierResponse):
            return answer
        return ClassifierResponse(text=answer)


def categorize_by_description(
    mapping: dict[str, str], default: str = "Other"
) -> Responder:
    def respond(system_prompt: str, items: list[dict[str, Any]]) -> str:
        return json.dumps(
            [
                {
                    "idx": item["idx"],
                    "category": mapping.get(item["description"], default),
                    "rationale": "test",
                }
                for item in items
            ]
        )

    return respond


def match_when(predicate: Callable[[str, dict[str, Any]], bool]) -> Responder:
    """Budget-filter responder; ``predicate(system_prompt, item)`` decides."""

    def respond(system_prompt: str, items: list[dict[str, Any]]) -> str:
        return json.dumps(
            [
                {
                    "idx": item["idx"],
                    "matches": predicate(system_prompt, item),
                    "reason": "test",
                }
                for item in items
            ]
        )

    return respond


def seed_connection(
    db: DB,
    *,
    user_id: str = "user_1",
    item_id: str = "item_1",
    environment: str = "sandbox",
) -> AccountConnection:
    return db.upsert_connection(
        item_id=item_id,
        user_id=user_id,
        access_token=f"access-{item_id}",
        environment=environment,
    )


def seed_transactions(
    db: DB,
    txns: list[PlaidTransaction],
    *,
    user_id: str = "user_1",
    item_id: str = "item_1",
) -> None:
    db.upsert_transactions(txns, user_id=user_id, item_id=item_id)
