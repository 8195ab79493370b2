from __future__ import annotations

from collections.abc import Sequence

import loguru
from loguru import logger

from finwire.adapters.db.facade import DB
from finwire.adapters.db.models import Transaction
from finwire.services.classification.pipeline import (
    DEFAULT_CONCURRENCY_LIMIT,
    BatchClassificationPipeline,
)
from finwire.services.classification.tasks import CategorizationTask
from finwire.services.classification.types import (
    CategorizedTransaction,
    ClassifiableTransaction,
)

DEFAULT_CATEGORIZE_BATCH_SIZE = 50


class CategorizerLogger:
    """Handles all logging for the categorizer with business logic separated."""

    def __init__(self, logger_instance: loguru.Logger = logger) -> None:
        self._logger = logger_instance

    def categorize_start(self, count: int, has_rules: bool) -> None:
        self._logger.bind(count=count, custom_rules=has_rules).info(
            "Categorizing {} transactions{}",
            count,
            " with custom rules" if has_rules else "",
        )

    def stored(self, count: int) -> None:
        self._logger.bind(count=count).info(
            "Stored categories for {} transactions", count
        )

    def recategorize_start(self, user_id: str, count: int) -> None:
        self._logger.bind(user_id=user_id, count=count).info(
            "Recategorizing {} transactions for user {}", count, user_id
        )

    def no_transactions(self, user_id: str) -> None:
        self._logger.bind(user_id=user_id).info(
            "No transactions to recategorize for user {}", user_id
        )


class TransactionCategorizer:
    """Assigns spending categories with the batch pipeline and stores them."""

    def __init__(
        self,
        pipeline: BatchClassificationPipeline[
            ClassifiableTransaction, CategorizedTransaction
        ],
        db: DB,
        *,
        task: CategorizationTask | None = None,
        batch_size: int = DEFAULT_CATEGORIZE_BATCH_SIZE,
        concurrency_limit: int = DEFAULT_CONCURRENCY_LIMIT,
        logger_instance: loguru.Logger = logger,
    ) -> None:
        self._pipeline = pipeline
        self._db = db
        self._task = task or CategorizationTask()
        self._batch_size = batch_size
        self._concurrency_limit = concurrency_limit
        self._logger = CategorizerLogger(logger_instance)

    async def categorize(
        self,
        transactions: Sequence[ClassifiableTransaction],
        rules: str | None = None,
    ) -> list[CategorizedTransaction]:
        """Return one result per transaction, in input order. Nothing is stored."""
        if not transactions:
            return []
        self._logger.categorize_start(len(transactions), bool(rules))
        return await self._pipeline.classify(
            transactions,
            rules or "",
            self._task,
            batch_size=self._batch_size,
            concurrency_limit=self._concurrency_limit,
        )

    async def categorize_stored(
        self,
        rows: Sequence[Transaction],
        rules: str | None = None,
        *,
        prefer_custom: bool = True,
    ) -> int:
        """Categorize stored transactions and write the categories back."""
        items = [
            ClassifiableTransaction.from_row(row, prefer_custom=prefer_custom)
            for row in rows
        ]
        categorized = await self.categorize(items, rules)
        updated = self._db.update_transaction_categories(
            {result.txn.transaction_id: result.category for result in categorized}
        )
        if updated:
            self._logger.stored(updated)
        return updated

    async def recategorize_all(self, user_id: str) -> int:
        """Rewrite every category of a user's transactions under current rules.

        The upstream category is used as the hint so earlier assignments do not
        bias the new pass.
        """
        rows = self._db.find_transactions(user_id)
        if not rows:
            self._logger.no_transactions(user_id)
            return 0
        self._logger.recategorize_start(user_id, len(rows))
        return await self.categorize_stored(
            rows, self._db.get_custom_rules(user_id), prefer_custom=False
        )
