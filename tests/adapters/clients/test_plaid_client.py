from __future__ import annotations

from typing import Any

import pytest

from finwire.adapters.clients.plaid import PlaidClient
from finwire.errors import PlaidClientError


class RecordingPost:
    def __init__(self, response: dict[str, Any]) -> None:
        self.response = response
        self.calls: list[tuple[str, dict[str, Any]]] = []

    def __call__(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        self.calls.append((path, payload))
        return self.response


def make_client(
    monkeypatch: Any, response: dict[str, Any]
) -> tuple[PlaidClient, RecordingPost]:
    post = RecordingPost(response)
    client = PlaidClient(client_id="id", secret="secret")
    monkeypatch.setattr(client, "_post", post)
    return client, post


def test_sync_transactions_parses_page(monkeypatch: Any) -> None:
    # input
    response = {
        "added": [
            {
                "transaction_id": "tx_1",
                "account_id": "acc_1",
                "amount": 4.5,
                "iso_currency_code": "USD",
                "date": "2025-01-15",
                "name": "Starbucks",
                "merchant_name": "Starbucks",
                "pending": False,
                "personal_finance_category": {"primary": "FOOD_AND_DRINK"},
                "payment_channel": "in store",
            }
        ],
        "modified": [],
        "removed": [{"transaction_id": "tx_old"}],
        "next_cursor": "cursor_2",
        "has_more": True,
    }
    client, post = make_client(monkeypatch, response)

    # act
    page = client.sync_transactions(
        "access-token", cursor="cursor_1", count=100, account_id="acc_1"
    )

    # assert
    path, payload = post.calls[0]
    assert path == "/transactions/sync"
    assert payload["cursor"] == "cursor_1"
    assert payload["count"] == 100
    assert payload["options"]["account_id"] == "acc_1"
    assert [txn["transaction_id"] for txn in page.added] == ["tx_1"]
    assert page.added[0]["personal_finance_category"] == {
        "primary": "FOOD_AND_DRINK"
    }
    assert page.removed == ["tx_old"]
    assert page.next_cursor == "cursor_2"
    assert page.has_more is True


def test_sync_transactions_without_cursor_requests_full_history(
    monkeypatch: Any,
) -> None:
    client, post = make_client(monkeypatch, {"next_cursor": "c1", "has_more": False})

    page = client.sync_transactions("token", count=900)

    _, payload = post.calls[0]
    assert "cursor" not in payload
    assert payload["count"] == 500
    assert page.added == []
    assert page.next_cursor == "c1"


def test_sync_transactions_keeps_cursor_when_none_returned(monkeypatch: Any) -> None:
    client, post = make_client(monkeypatch, {"has_more": False})

    page = client.sync_transactions("token", cursor="c9")

    assert page.next_cursor == "c9"


def test_get_accounts_parses_balances(monkeypatch: Any) -> None:
    response = {
        "accounts": [
            {
                "account_id": "acc_1",
                "name": "Checking",
                "type": "depository",
                "balances": {"current": 120.5, "available": 100.0},
            }
        ]
    }
    client, post = make_client(monkeypatch, response)

    (account,) = client.get_accounts("token")

    assert account["account_id"] == "acc_1"
    assert account["balances"]["current"] == 120.5
    assert account["balances"]["limit"] is None
    assert post.calls[0] == ("/accounts/get", {"access_token": "token"})


def test_from_env_requires_secret(monkeypatch: Any) -> None:
    monkeypatch.setenv("PLAID_CLIENT_ID", "id")
    monkeypatch.delenv("PLAID_SANDBOX_SECRET", raising=False)

    with pytest.raises(PlaidClientError, match="PLAID_SANDBOX_SECRET"):
        PlaidClient.from_env("sandbox")


def test_from_env_builds_client(monkeypatch: Any) -> None:
    monkeypatch.setenv("PLAID_CLIENT_ID", "id")
    monkeypatch.setenv("PLAID_PRODUCTION_SECRET", "secret")

    client = PlaidClient.from_env("production")

    assert client.env == "production"


def test_invalid_json_response_raises() -> None:
    client = PlaidClient(client_id="id", secret="secret")

    with pytest.raises(PlaidClientError, match="parse"):
        client._parse_json_response("<html>")  # noqa: SLF001
