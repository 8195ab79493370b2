from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
import os
from typing import Literal

PlaidEnv = Literal["sandbox", "development", "production"]

PLAID_ENVS: frozenset[str] = frozenset({"sandbox", "development", "production"})


@dataclass(frozen=True, slots=True)
class FinwireConfig:
    """Process configuration loaded at startup."""

    database_url: str = "sqlite:///finwire.db"
    plaid_env: PlaidEnv = "sandbox"
    classifier_model: str = "gpt-5.2"
    classifier_max_output_tokens: int = 8192
    categorize_batch_size: int = 50
    budget_batch_size: int = 100
    classifier_concurrency: int = 5
    sync_page_size: int = 500
    classifier_cache_ttl_seconds: int = 0
    ignored_user_ids: frozenset[str] = field(default_factory=frozenset)


def parse_id_list(raw: str) -> frozenset[str]:
    """Parse a comma separated id list, dropping blanks."""
    return frozenset(part.strip() for part in raw.split(",") if part.strip())


def _int_env(env: Mapping[str, str], name: str, default: int, *, minimum: int) -> int:
    raw = env.get(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError as e:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from e
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got {value}")
    return value


def load_config_from_env(env: Mapping[str, str] | None = None) -> FinwireConfig:
    """Load config from env and validate startup requirements."""
    source = os.environ if env is None else env

    plaid_env = source.get("PLAID_ENV", "sandbox").strip().lower()
    if plaid_env not in PLAID_ENVS:
        raise ValueError(
            f"Invalid PLAID_ENV={plaid_env!r}. "
            "Expected one of: sandbox, development, production."
        )

    page_size = _int_env(source, "FINWIRE_SYNC_PAGE_SIZE", 500, minimum=1)
    if page_size > 500:
        raise ValueError("FINWIRE_SYNC_PAGE_SIZE must be <= 500")

    return FinwireConfig(
        database_url=source.get("FINWIRE_DATABASE_URL", "").strip()
        or "sqlite:///finwire.db",
        plaid_env=plaid_env,  # type: ignore[arg-type]
        classifier_model=source.get("FINWIRE_CLASSIFIER_MODEL", "").strip()
        or "gpt-5.2",
        classifier_max_output_tokens=_int_env(
            source, "FINWIRE_CLASSIFIER_MAX_OUTPUT_TOKENS", 8192, minimum=256
        ),
        categorize_batch_size=_int_env(
            source, "FINWIRE_CATEGORIZE_BATCH_SIZE", 50, minimum=1
        ),
        budget_batch_size=_int_env(source, "FINWIRE_BUDGET_BATCH_SIZE", 100, minimum=1),
        classifier_concurrency=_int_env(
            source, "FINWIRE_CLASSIFIER_CONCURRENCY", 5, minimum=1
        ),
        sync_page_size=page_size,
        classifier_cache_ttl_seconds=_int_env(
            source, "FINWIRE_CLASSIFIER_CACHE_TTL_SECONDS", 0, minimum=0
        ),
        ignored_user_ids=parse_id_list(source.get("FINWIRE_IGNORE_USER_IDS", "")),
    )
