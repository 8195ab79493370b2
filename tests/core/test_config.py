from __future__ import annotations

import pytest

from finwire.core.config import FinwireConfig, load_config_from_env, parse_id_list


def test_load_config_defaults_with_empty_env() -> None:
    # act
    config = load_config_from_env({})

    # assert
    assert config == FinwireConfig()
    assert config.plaid_env == "sandbox"
    assert config.categorize_batch_size == 50
    assert config.budget_batch_size == 100
    assert config.classifier_concurrency == 5
    assert config.ignored_user_ids == frozenset()


def test_load_config_reads_overrides() -> None:
    # input
    env = {
        "FINWIRE_DATABASE_URL": "sqlite:///other.db",
        "PLAID_ENV": "Production",
        "FINWIRE_CLASSIFIER_MODEL": "gpt-test",
        "FINWIRE_CATEGORIZE_BATCH_SIZE": "25",
        "FINWIRE_BUDGET_BATCH_SIZE": "40",
        "FINWIRE_CLASSIFIER_CONCURRENCY": "2",
        "FINWIRE_SYNC_PAGE_SIZE": "100",
        "FINWIRE_CLASSIFIER_CACHE_TTL_SECONDS": "3600",
        "FINWIRE_IGNORE_USER_IDS": "user_a, user_b,,",
    }

    # act
    config = load_config_from_env(env)

    # assert
    assert config.database_url == "sqlite:///other.db"
    assert config.plaid_env == "production"
    assert config.classifier_model == "gpt-test"
    assert config.categorize_batch_size == 25
    assert config.budget_batch_size == 40
    assert config.classifier_concurrency == 2
    assert config.sync_page_size == 100
    assert config.classifier_cache_ttl_seconds == 3600
    assert config.ignored_user_ids == frozenset({"user_a", "user_b"})


def test_load_config_rejects_unknown_plaid_env() -> None:
    with pytest.raises(ValueError, match="PLAID_ENV"):
        load_config_from_env({"PLAID_ENV": "staging"})


@pytest.mark.parametrize(
    ("name", "value"),
    [
        ("FINWIRE_CATEGORIZE_BATCH_SIZE", "0"),
        ("FINWIRE_CLASSIFIER_CONCURRENCY", "abc"),
        ("FINWIRE_SYNC_PAGE_SIZE", "501"),
        ("FINWIRE_CLASSIFIER_CACHE_TTL_SECONDS", "-1"),
    ],
)
def test_load_config_rejects_invalid_numbers(name: str, value: str) -> None:
    with pytest.raises(ValueError, match=name):
        load_config_from_env({name: value})


def test_parse_id_list_drops_blanks() -> None:
    assert parse_id_list(" a ,b,, ,c") == frozenset({"a", "b", "c"})
    assert parse_id_list("") == frozenset()
