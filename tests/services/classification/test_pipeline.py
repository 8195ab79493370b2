from __future__ import annotations

import asyncio
import json
from typing import Any

import pytest

from finwire.adapters.cache.expiring_cache import InMemoryExpiringCache
from finwire.adapters.clients.classifier import ClassifierResponse
from finwire.errors import BatchTooLargeError, ClassificationParseError
from finwire.services.classification.pipeline import (
    BatchClassificationPipeline,
    parse_result_array,
)
from finwire.services.classification.tasks import CategorizationTask
from finwire.services.classification.types import (
    CategorizedTransaction,
    ClassifiableTransaction,
)
from tests.fixtures.fakes import FakeClassifier, categorize_by_description

TEMPLATE = "Categorize. Rules: {{CUSTOM_RULES}}"

Pipeline = BatchClassificationPipeline[ClassifiableTransaction, CategorizedTransaction]


def make_items(count: int) -> list[ClassifiableTransaction]:
    return [
        ClassifiableTransaction(
            transaction_id=f"tx_{i}",
            date="2025-01-15",
            description=f"Merchant {i}",
            amount=float(i),
        )
        for i in range(count)
    ]


def echo_description(system_prompt: str, items: list[dict[str, Any]]) -> str:
    return json.dumps(
        [{"idx": item["idx"], "category": item["description"]} for item in items]
    )


def classify(
    pipeline: Pipeline,
    items: list[ClassifiableTransaction],
    *,
    batch_size: int,
    concurrency_limit: int = 5,
) -> list[CategorizedTransaction]:
    return asyncio.run(
        pipeline.classify(
            items,
            "",
            CategorizationTask(template=TEMPLATE),
            batch_size=batch_size,
            concurrency_limit=concurrency_limit,
        )
    )


def test_results_keep_input_order_when_batches_finish_out_of_order() -> None:
    # input
    items = make_items(10)
    # earlier batches finish last
    delays = {"Merchant 0": 0.03, "Merchant 3": 0.02, "Merchant 6": 0.01}
    classifier = FakeClassifier(echo_description, delays=delays)

    # act
    results = classify(Pipeline(classifier), items, batch_size=3, concurrency_limit=2)

    # assert
    assert [r.txn.transaction_id for r in results] == [f"tx_{i}" for i in range(10)]
    assert [r.category for r in results] == [f"Merchant {i}" for i in range(10)]
    assert len(classifier.calls) == 4
    assert classifier.max_in_flight == 2


def test_next_group_waits_for_every_batch_of_the_previous_group() -> None:
    # input
    classifier = FakeClassifier(echo_description, delays={"Merchant 0": 0.05})

    # act
    classify(Pipeline(classifier), make_items(3), batch_size=1, concurrency_limit=2)

    # expected
    # the fast second batch frees a slot early, but the third batch still
    # waits for the slow first one
    expected_events = [
        ("start", "Merchant 0"),
        ("start", "Merchant 1"),
        ("end", "Merchant 1"),
        ("end", "Merchant 0"),
        ("start", "Merchant 2"),
        ("end", "Merchant 2"),
    ]

    # assert
    assert classifier.events == expected_events


def test_results_realign_by_idx_not_position() -> None:
    def reversed_answers(system_prompt: str, items: list[dict[str, Any]]) -> str:
        return json.dumps(
            [
                {"idx": item["idx"], "category": item["description"]}
                for item in reversed(items)
            ]
        )

    results = classify(
        Pipeline(FakeClassifier(reversed_answers)), make_items(3), batch_size=10
    )

    assert [r.category for r in results] == ["Merchant 0", "Merchant 1", "Merchant 2"]


def test_single_batch_makes_one_call() -> None:
    classifier = FakeClassifier(categorize_by_description({}))

    results = classify(Pipeline(classifier), make_items(5), batch_size=5)

    assert len(results) == 5
    assert len(classifier.calls) == 1


def test_empty_input_makes_no_calls() -> None:
    classifier = FakeClassifier(echo_description)

    assert classify(Pipeline(classifier), [], batch_size=5) == []
    assert classifier.calls == []


def test_truncated_batch_fails_the_whole_call() -> None:
    # input
    def truncate_second_batch(system_prompt: str, items: list[dict[str, Any]]) -> Any:
        if items[0]["description"] == "Merchant 2":
            return ClassifierResponse(
                text='[{"idx": 0', truncated=True, max_output_tokens=256
            )
        return echo_description(system_prompt, items)

    pipeline = Pipeline(FakeClassifier(truncate_second_batch))

    # act + assert
    with pytest.raises(BatchTooLargeError) as exc_info:
        classify(pipeline, make_items(4), batch_size=2)
    assert exc_info.value.batch_index == 1
    assert exc_info.value.batch_size == 2
    assert "256 tokens" in str(exc_info.value)


@pytest.mark.parametrize(
    "answer",
    [
        "I could not categorize these",
        '[{"idx": 0, "category": "Food"}]',
        '[{"idx": 0, "category": "Food"}, {"idx": 0, "category": "Food"}]',
        '[{"idx": 0, "category": "Food"}, {"idx": 5, "category": "Food"}]',
        '[{"idx": 0, "category": "Food"}, {"idx": true, "category": "Food"}]',
        '[{"idx": 0, "category": "Food"}, {"idx": 1, "category": ""}]',
        '[{"idx": 0, "category": "Food"}, "Food"]',
    ],
)
def test_malformed_responses_raise_parse_error(answer: str) -> None:
    pipeline = Pipeline(FakeClassifier(lambda prompt, items: answer))

    with pytest.raises(ClassificationParseError):
        classify(pipeline, make_items(2), batch_size=5)


def test_invalid_limits_raise() -> None:
    pipeline = Pipeline(FakeClassifier(echo_description))

    with pytest.raises(ValueError):
        classify(pipeline, make_items(2), batch_size=0)
    with pytest.raises(ValueError):
        classify(pipeline, make_items(2), batch_size=1, concurrency_limit=0)


def test_cache_reuses_identical_batches() -> None:
    # input
    classifier = FakeClassifier(echo_description)
    pipeline = Pipeline(
        classifier, cache=InMemoryExpiringCache(), cache_ttl_seconds=60
    )

    # act
    first = classify(pipeline, make_items(4), batch_size=2)
    second = classify(pipeline, make_items(4), batch_size=2)

    # assert
    assert first == second
    assert len(classifier.calls) == 2


def test_cache_is_disabled_without_ttl() -> None:
    classifier = FakeClassifier(echo_description)
    pipeline = Pipeline(classifier, cache=InMemoryExpiringCache())

    classify(pipeline, make_items(2), batch_size=5)
    classify(pipeline, make_items(2), batch_size=5)

    assert len(classifier.calls) == 2


@pytest.mark.parametrize(
    "text",
    [
        '[{"idx": 0}]',
        '{"results": [{"idx": 0}]}',
        '```json\n[{"idx": 0}]\n```',
        'Here you go: [{"idx": 0}] hope that helps',
    ],
)
def test_parse_result_array_formats(text: str) -> None:
    assert parse_result_array(text) == [{"idx": 0}]


def test_parse_result_array_rejects_other_shapes() -> None:
    with pytest.raises(ClassificationParseError):
        parse_result_array('{"idx": 0}')
