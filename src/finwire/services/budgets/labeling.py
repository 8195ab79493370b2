from __future__ import annotations

from collections.abc import Sequence

import loguru
from loguru import logger

from finwire.adapters.db.facade import DB
from finwire.adapters.db.models import Budget, Transaction
from finwire.services.background import BackgroundTaskRunner
from finwire.services.classification.pipeline import (
    DEFAULT_CONCURRENCY_LIMIT,
    BatchClassificationPipeline,
)
from finwire.services.classification.tasks import BudgetFilterTask
from finwire.services.classification.types import BudgetMatch, ClassifiableTransaction

DEFAULT_BUDGET_BATCH_SIZE = 100


class BudgetLabelingLogger:
    """Handles all logging for budget labeling with business logic separated."""

    def __init__(self, logger_instance: loguru.Logger = logger) -> None:
        self._logger = logger_instance

    def labeling_start(self, txn_count: int, budget_count: int) -> None:
        self._logger.bind(transactions=txn_count, budgets=budget_count).info(
            "Labeling {} transactions for {} budgets", txn_count, budget_count
        )

    def no_transactions(self) -> None:
        self._logger.info("No transactions to label")

    def clearing(self, txn_count: int) -> None:
        self._logger.bind(transactions=txn_count).info(
            "No budgets defined, clearing budget labels on {} transactions", txn_count
        )

    def budget_matched(self, budget: Budget, match_count: int) -> None:
        self._logger.bind(budget_id=budget.budget_id, matches=match_count).info(
            'Budget "{}": {} matching transactions', budget.title, match_count
        )

    def budget_failed(self, budget: Budget, error: Exception) -> None:
        self._logger.bind(budget_id=budget.budget_id).error(
            "Error filtering for budget {}: {}", budget.budget_id, error
        )

    def labeling_complete(self, labeled: int, total: int) -> None:
        self._logger.bind(labeled=labeled, total=total).info(
            "Budget labeling complete: {}/{} transactions labeled", labeled, total
        )

    def single_budget_updated(self, budget: Budget, changed: int) -> None:
        self._logger.bind(budget_id=budget.budget_id, changed=changed).info(
            'Budget "{}": updated membership of {} transactions', budget.title, changed
        )


class BudgetLabeler:
    """Assigns transactions to budgets, one classifier pass per budget filter.

    Budgets are independent: a transaction may belong to any number of them.
    """

    def __init__(
        self,
        pipeline: BatchClassificationPipeline[ClassifiableTransaction, BudgetMatch],
        db: DB,
        *,
        task: BudgetFilterTask | None = None,
        batch_size: int = DEFAULT_BUDGET_BATCH_SIZE,
        concurrency_limit: int = DEFAULT_CONCURRENCY_LIMIT,
        logger_instance: loguru.Logger = logger,
    ) -> None:
        self._pipeline = pipeline
        self._db = db
        self._task = task or BudgetFilterTask()
        self._batch_size = batch_size
        self._concurrency_limit = concurrency_limit
        self._logger = BudgetLabelingLogger(logger_instance)

    async def match_budget(
        self, transactions: Sequence[Transaction], budget: Budget
    ) -> set[str]:
        """Return the external ids of the transactions matching one budget."""
        items = [ClassifiableTransaction.from_row(row) for row in transactions]
        results = await self._pipeline.classify(
            items,
            budget.filter_prompt,
            self._task,
            batch_size=self._batch_size,
            concurrency_limit=self._concurrency_limit,
        )
        return {result.transaction_id for result in results if result.matches}

    async def label_for_budgets(
        self, transactions: Sequence[Transaction], budgets: Sequence[Budget]
    ) -> dict[str, set[str]]:
        """Replace the budget memberships of ``transactions``.

        A budget whose classification fails is logged and skipped; the
        transactions keep whatever membership of that budget they had. With no
        budgets at all, every given transaction ends up in no budget.
        """
        if not transactions:
            self._logger.no_transactions()
            return {}
        external_ids = [row.external_id for row in transactions]

        if not budgets:
            self._logger.clearing(len(transactions))
            memberships: dict[str, set[str]] = {ext: set() for ext in external_ids}
            self._db.set_budget_memberships(memberships)
            return memberships

        self._logger.labeling_start(len(transactions), len(budgets))
        current = self._db.get_budget_memberships(external_ids)
        memberships = {ext: set() for ext in external_ids}

        for budget in budgets:
            try:
                matched = await self.match_budget(transactions, budget)
            except Exception as e:
                self._logger.budget_failed(budget, e)
                for ext in external_ids:
                    if budget.budget_id in current.get(ext, set()):
                        memberships[ext].add(budget.budget_id)
                continue
            for ext in matched:
                memberships[ext].add(budget.budget_id)
            self._logger.budget_matched(budget, len(matched))

        self._db.set_budget_memberships(memberships)
        labeled = sum(1 for budget_ids in memberships.values() if budget_ids)
        self._logger.labeling_complete(labeled, len(transactions))
        return memberships

    async def label_all_for_user(self, user_id: str) -> int:
        """Relabel every transaction of a user against all of their budgets.

        Returns the number of transactions in at least one budget, or the
        number of cleared transactions when the user has no budgets.
        """
        transactions = self._db.find_transactions(user_id)
        if not transactions:
            self._logger.no_transactions()
            return 0
        budgets = self._db.list_budgets(user_id)
        memberships = await self.label_for_budgets(transactions, budgets)
        if not budgets:
            return len(memberships)
        return sum(1 for budget_ids in memberships.values() if budget_ids)

    async def label_for_single_budget(self, user_id: str, budget: Budget) -> int:
        """Add or remove one budget id across all of a user's transactions.

        Only transactions whose membership changes are written. Returns the
        number of matching transactions.
        """
        transactions = self._db.find_transactions(user_id)
        if not transactions:
            self._logger.no_transactions()
            return 0

        matched = await self.match_budget(transactions, budget)
        current = self._db.get_budget_memberships(
            [row.external_id for row in transactions]
        )

        changed: dict[str, set[str]] = {}
        for ext, budget_ids in current.items():
            should_include = ext in matched
            if should_include == (budget.budget_id in budget_ids):
                continue
            updated = set(budget_ids)
            if should_include:
                updated.add(budget.budget_id)
            else:
                updated.discard(budget.budget_id)
            changed[ext] = updated

        if changed:
            self._db.set_budget_memberships(changed)
        self._logger.single_budget_updated(budget, len(changed))
        self._logger.budget_matched(budget, len(matched))
        return len(matched)


class BudgetProcessorLogger:
    def __init__(self, logger_instance: loguru.Logger = logger) -> None:
        self._logger = logger_instance

    def scheduled(self, budget_id: str) -> None:
        self._logger.bind(budget_id=budget_id).info(
            "Background processing started for budget {}", budget_id
        )

    def complete(self, budget_id: str, match_count: int) -> None:
        self._logger.bind(budget_id=budget_id, matches=match_count).info(
            "Budget {} ready: {} transactions matched", budget_id, match_count
        )

    def failed(self, budget_id: str, error: Exception) -> None:
        self._logger.bind(budget_id=budget_id).error(
            "Error processing budget {}: {}", budget_id, error
        )


class BudgetProcessor:
    """Runs single-budget labeling and tracks it on the budget's status."""

    def __init__(
        self,
        labeler: BudgetLabeler,
        db: DB,
        *,
        runner: BackgroundTaskRunner | None = None,
        logger_instance: loguru.Logger = logger,
    ) -> None:
        self._labeler = labeler
        self._db = db
        self._runner = runner or BackgroundTaskRunner(logger_instance)
        self._logger = BudgetProcessorLogger(logger_instance)

    async def process(self, user_id: str, budget_id: str) -> int:
        """Label transactions for one budget: processing, then ready or error.

        Raises:
            ValueError: if the budget does not exist for the user.
        """
        budget = self._db.get_budget(user_id, budget_id)
        if budget is None:
            raise ValueError(f"Budget {budget_id!r} not found for user {user_id!r}")

        self._db.set_budget_status(budget_id, "processing")
        try:
            match_count = await self._labeler.label_for_single_budget(user_id, budget)
        except Exception as e:
            self._logger.failed(budget_id, e)
            self._db.set_budget_status(budget_id, "error", error=str(e) or repr(e))
            raise
        self._db.set_budget_status(budget_id, "ready")
        self._logger.complete(budget_id, match_count)
        return match_count

    def schedule(self, user_id: str, budget_id: str) -> None:
        """Process in the background; the outcome lands on the budget row."""
        self._runner.submit(f"budget:{budget_id}", self.process(user_id, budget_id))
        self._logger.scheduled(budget_id)
