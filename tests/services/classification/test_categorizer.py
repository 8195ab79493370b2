from __future__ import annotations

import asyncio
from typing import Any

from finwire.adapters.db.facade import DB
from finwire.services.classification.categorizer import TransactionCategorizer
from finwire.services.classification.pipeline import BatchClassificationPipeline
from finwire.services.classification.tasks import CategorizationTask
from finwire.services.classification.types import ClassifiableTransaction
from tests.fixtures.fakes import (
    FakeClassifier,
    categorize_by_description,
    make_plaid_txn,
    seed_transactions,
)

TEMPLATE = "Categorize.\nRules: {{CUSTOM_RULES}}"


def make_categorizer(
    db: DB, classifier: FakeClassifier, *, batch_size: int = 50
) -> TransactionCategorizer:
    return TransactionCategorizer(
        BatchClassificationPipeline(classifier),
        db,
        task=CategorizationTask(template=TEMPLATE),
        batch_size=batch_size,
    )


def test_categorize_returns_results_in_order(db: DB) -> None:
    # input
    mapping = {"Netflix": "Entertainment", "Uber": "Transportation"}
    classifier = FakeClassifier(categorize_by_description(mapping))
    items = [
        ClassifiableTransaction.from_plaid(make_plaid_txn("a", name="Uber")),
        ClassifiableTransaction.from_plaid(make_plaid_txn("b", name="Netflix")),
        ClassifiableTransaction.from_plaid(make_plaid_txn("c", name="Mystery")),
    ]

    # act
    results = asyncio.run(make_categorizer(db, classifier).categorize(items))

    # assert
    assert [(r.txn.transaction_id, r.category) for r in results] == [
        ("a", "Transportation"),
        ("b", "Entertainment"),
        ("c", "Other"),
    ]
    assert db.find_transactions("user_1") == []


def test_custom_rules_reach_the_prompt(db: DB) -> None:
    classifier = FakeClassifier(categorize_by_description({}))
    items = [ClassifiableTransaction.from_plaid(make_plaid_txn("a"))]

    asyncio.run(
        make_categorizer(db, classifier).categorize(items, "Starbucks is Treats")
    )

    ((prompt, _),) = classifier.calls
    assert prompt.endswith("Rules: Starbucks is Treats")


def test_categorize_stored_writes_categories(db: DB) -> None:
    # input
    seed_transactions(
        db,
        [
            make_plaid_txn("a", name="Starbucks", category="FOOD_AND_DRINK"),
            make_plaid_txn("b", name="Shell"),
        ],
    )
    classifier = FakeClassifier(
        categorize_by_description({"Starbucks": "Food & Dining", "Shell": "Gas"})
    )

    # act
    updated = asyncio.run(
        make_categorizer(db, classifier).categorize_stored(
            db.find_transactions("user_1")
        )
    )

    # assert
    assert updated == 2
    rows = {row.external_id: row for row in db.find_transactions("user_1")}
    assert rows["a"].custom_category == "Food & Dining"
    assert rows["b"].custom_category == "Gas"
    assert rows["a"].name == "Starbucks"
    assert rows["a"].plaid_category == "FOOD_AND_DRINK"


def test_recategorize_all_uses_upstream_category_hint(db: DB) -> None:
    # input
    seed_transactions(
        db, [make_plaid_txn("a", name="Starbucks", category="FOOD_AND_DRINK")]
    )
    db.update_transaction_categories({"a": "Shopping"})
    db.save_custom_rules("user_1", "Starbucks is Treats")
    hints: list[Any] = []

    def respond(system_prompt: str, items: list[dict[str, Any]]) -> str:
        hints.extend(item["category"] for item in items)
        return categorize_by_description({"Starbucks": "Treats"})(system_prompt, items)

    classifier = FakeClassifier(respond)

    # act
    count = asyncio.run(make_categorizer(db, classifier).recategorize_all("user_1"))

    # assert
    assert count == 1
    assert hints == ["FOOD_AND_DRINK"]
    ((prompt, _),) = classifier.calls
    assert "Starbucks is Treats" in prompt
    (row,) = db.find_transactions("user_1")
    assert row.custom_category == "Treats"


def test_recategorize_all_without_transactions(db: DB) -> None:
    classifier = FakeClassifier(categorize_by_description({}))

    count = asyncio.run(make_categorizer(db, classifier).recategorize_all("user_1"))

    assert count == 0
    assert classifier.calls == []
