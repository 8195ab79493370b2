from __future__ import annotations

from dataclasses import dataclass, field
import json
import os
from typing import Any, Self, TypedDict, cast
import urllib.error
import urllib.request

from pydantic import BaseModel, Field

from finwire.core.config import PlaidEnv
from finwire.errors import PlaidClientError

PLAID_ENV_MAP: dict[PlaidEnv, str] = {
    "sandbox": "https://sandbox.plaid.com",
    "development": "https://development.plaid.com",
    "production": "https://production.plaid.com",
}

# Plaid's maximum page size for /transactions/sync.
MAX_SYNC_PAGE_SIZE = 500


class PersonalFinanceCategory(TypedDict, total=False):
    primary: str
    detailed: str
    confidence_level: str


class PlaidTransaction(TypedDict):
    """Transaction fields consumed by the sync engine."""

    transaction_id: str
    account_id: str
    amount: float
    iso_currency_code: str | None
    date: str
    name: str
    merchant_name: str | None
    pending: bool
    personal_finance_category: PersonalFinanceCategory | None


class PlaidBalances(TypedDict):
    current: float | None
    available: float | None
    limit: float | None
    iso_currency_code: str | None


class PlaidAccount(TypedDict):
    account_id: str
    name: str
    official_name: str | None
    mask: str | None
    subtype: str | None
    type: str | None
    balances: PlaidBalances


@dataclass
class SyncPage:
    """One page of /transactions/sync deltas."""

    added: list[PlaidTransaction] = field(default_factory=list)
    modified: list[PlaidTransaction] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    next_cursor: str = ""
    has_more: bool = False


class PlaidBaseModel(BaseModel):
    """Shared base for Plaid response models with a short parse alias."""

    @classmethod
    def parse(cls, data: Any) -> Self:
        return cls.model_validate(data)


class BalancesModel(PlaidBaseModel):
    current: float | None = None
    available: float | None = None
    limit: float | None = None
    iso_currency_code: str | None = None


class AccountsGetAccount(PlaidBaseModel):
    account_id: str
    name: str
    official_name: str | None = None
    mask: str | None = None
    subtype: str | None = None
    type: str | None = None
    balances: BalancesModel = Field(default_factory=BalancesModel)

    def to_typed(self) -> PlaidAccount:
        return {
            "account_id": self.account_id,
            "name": self.name,
            "official_name": self.official_name,
            "mask": self.mask,
            "subtype": self.subtype,
            "type": self.type,
            "balances": {
                "current": self.balances.current,
                "available": self.balances.available,
                "limit": self.balances.limit,
                "iso_currency_code": self.balances.iso_currency_code,
            },
        }


class AccountsGetResponse(PlaidBaseModel):
    accounts: list[AccountsGetAccount]


class PlaidTransactionModel(PlaidBaseModel):
    transaction_id: str
    account_id: str
    amount: float
    iso_currency_code: str | None = None
    date: str
    name: str
    merchant_name: str | None = None
    pending: bool = False
    personal_finance_category: dict[str, Any] | None = None

    def to_typed(self) -> PlaidTransaction:
        txn: PlaidTransaction = {
            "transaction_id": self.transaction_id,
            "account_id": self.account_id,
            "amount": self.amount,
            "iso_currency_code": self.iso_currency_code,
            "date": self.date,
            "name": self.name,
            "merchant_name": self.merchant_name,
            "pending": self.pending,
            "personal_finance_category": cast(
                PersonalFinanceCategory | None, self.personal_finance_category
            ),
        }
        return txn


class RemovedTransactionModel(PlaidBaseModel):
    transaction_id: str


class TransactionsSyncResponse(PlaidBaseModel):
    added: list[PlaidTransactionModel] = Field(default_factory=list)
    modified: list[PlaidTransactionModel] = Field(default_factory=list)
    removed: list[RemovedTransactionModel] = Field(default_factory=list)
    next_cursor: str | None = None
    has_more: bool = False

    def to_sync_page(self, *, fallback_cursor: str | None) -> SyncPage:
        return SyncPage(
            added=[txn.to_typed() for txn in self.added],
            modified=[txn.to_typed() for txn in self.modified],
            removed=[item.transaction_id for item in self.removed],
            next_cursor=self.next_cursor or (fallback_cursor or ""),
            has_more=self.has_more,
        )


class PlaidClient:
    def __init__(
        self,
        *,
        client_id: str,
        secret: str,
        env: PlaidEnv = "sandbox",
        timeout_seconds: float = 30.0,
    ) -> None:
        self._client_id = client_id
        self._secret = secret
        self._env = env
        self._timeout_seconds = timeout_seconds

    @property
    def env(self) -> PlaidEnv:
        return self._env

    @classmethod
    def from_env(cls, env: PlaidEnv | None = None) -> PlaidClient:
        """Construct a PlaidClient from environment variables.

        Required:
        - PLAID_CLIENT_ID
        - PLAID_ENV (defaults to sandbox)
        - PLAID_<ENV>_SECRET (e.g. PLAID_SANDBOX_SECRET)
        """
        env_str = (env or os.getenv("PLAID_ENV", "sandbox")).lower()
        if env_str not in PLAID_ENV_MAP:
            raise PlaidClientError(
                f"Invalid PLAID_ENV={env_str!r}. "
                "Expected one of: sandbox, development, production."
            )
        plaid_env: PlaidEnv = env_str  # type: ignore[assignment]

        client_id = cls._getenv_or_die("PLAID_CLIENT_ID")
        secret = cls._getenv_or_die(f"PLAID_{plaid_env.upper()}_SECRET")
        return cls(client_id=client_id, secret=secret, env=plaid_env)

    @staticmethod
    def _getenv_or_die(name: str) -> str:
        value = os.getenv(name)
        if not value:
            raise PlaidClientError(f"Missing required environment variable: {name}")
        return value

    def _base_url(self) -> str:
        try:
            return PLAID_ENV_MAP[self._env]
        except KeyError as e:
            raise PlaidClientError(
                f"Unsupported Plaid environment: {self._env!r}"
            ) from e

    def _parse_json_response(self, body: str) -> dict[str, Any]:
        try:
            return cast(dict[str, Any], json.loads(body))
        except json.JSONDecodeError as e:
            raise PlaidClientError(
                f"Failed to parse Plaid response as JSON: {e}: {body[:200]}"
            ) from e

    def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        url = self._base_url().rstrip("/") + path
        body_payload = {
            "client_id": self._client_id,
            "secret": self._secret,
            **payload,
        }
        data = json.dumps(body_payload).encode("utf-8")
        req = urllib.request.Request(  # noqa: S310
            url,
            data=data,
            headers={"Content-Type": "application/json"},
            method="POST",
        )

        try:
            with urllib.request.urlopen(  # noqa: S310 - external HTTPS
                req, timeout=self._timeout_seconds
            ) as resp:
                body = resp.read().decode("utf-8")
        except urllib.error.HTTPError as e:  # pragma: no cover - network-dependent
            err_body = e.read().decode("utf-8", "ignore")
            raise PlaidClientError(f"Plaid API error ({e.code}): {err_body}") from e
        except urllib.error.URLError as e:  # pragma: no cover - network-dependent
            raise PlaidClientError(f"Network error calling Plaid API: {e}") from e

        return self._parse_json_response(body)

    # High-level APIs -----------------------------------------------------

    def get_accounts(self, access_token: str) -> list[PlaidAccount]:
        """Return accounts and balances for an item via /accounts/get."""
        resp = AccountsGetResponse.parse(
            self._post("/accounts/get", {"access_token": access_token})
        )
        return [account.to_typed() for account in resp.accounts]

    def sync_transactions(
        self,
        access_token: str,
        *,
        cursor: str | None = None,
        count: int = MAX_SYNC_PAGE_SIZE,
        account_id: str | None = None,
    ) -> SyncPage:
        """Fetch one page from /transactions/sync.

        A missing cursor requests the full transaction history.
        """
        payload: dict[str, Any] = {
            "access_token": access_token,
            "count": min(count, MAX_SYNC_PAGE_SIZE),
            "options": {"include_original_description": False},
        }
        if cursor:
            payload["cursor"] = cursor
        if account_id is not None:
            payload["options"]["account_id"] = account_id

        resp = TransactionsSyncResponse.parse(self._post("/transactions/sync", payload))
        return resp.to_sync_page(fallback_cursor=cursor)

    def remove_item(self, access_token: str) -> None:
        """Invalidate an access token via /item/remove."""
        self._post("/item/remove", {"access_token": access_token})
