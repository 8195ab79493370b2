from __future__ import annotations

from typing import Any

from finwire.adapters.cache.expiring_cache import ExpiringCache, FileExpiringCache
from finwire.adapters.clients.classifier import ClassifierClient, OpenAIClassifierClient
from finwire.adapters.clients.plaid import PlaidClient
from finwire.adapters.db.facade import DB
from finwire.core.config import FinwireConfig
from finwire.services.budgets.labeling import BudgetLabeler
from finwire.services.classification.categorizer import TransactionCategorizer
from finwire.services.classification.pipeline import BatchClassificationPipeline
from finwire.services.sync.account_sync import AccountSyncEngine


def create_classifier(config: FinwireConfig) -> ClassifierClient:
    return OpenAIClassifierClient(
        model=config.classifier_model,
        max_output_tokens=config.classifier_max_output_tokens,
    )


def create_pipeline(
    config: FinwireConfig,
    classifier: ClassifierClient,
    *,
    cache: ExpiringCache | None = None,
) -> BatchClassificationPipeline[Any, Any]:
    """Build the classification pipeline; the response cache is opt-in via TTL."""
    if cache is None and config.classifier_cache_ttl_seconds > 0:
        cache = FileExpiringCache(namespace="classifier")
    return BatchClassificationPipeline(
        classifier,
        cache=cache,
        cache_ttl_seconds=config.classifier_cache_ttl_seconds,
    )


def create_categorizer(
    config: FinwireConfig, db: DB, pipeline: BatchClassificationPipeline[Any, Any]
) -> TransactionCategorizer:
    return TransactionCategorizer(
        pipeline,
        db,
        batch_size=config.categorize_batch_size,
        concurrency_limit=config.classifier_concurrency,
    )


def create_labeler(
    config: FinwireConfig, db: DB, pipeline: BatchClassificationPipeline[Any, Any]
) -> BudgetLabeler:
    return BudgetLabeler(
        pipeline,
        db,
        batch_size=config.budget_batch_size,
        concurrency_limit=config.classifier_concurrency,
    )


def create_sync_engine(
    *,
    config: FinwireConfig,
    db: DB,
    plaid_client: PlaidClient,
    classifier: ClassifierClient | None = None,
) -> AccountSyncEngine:
    """Create a sync engine; enrichment runs only when a classifier is given."""
    categorizer: TransactionCategorizer | None = None
    labeler: BudgetLabeler | None = None
    if classifier is not None:
        pipeline = create_pipeline(config, classifier)
        categorizer = create_categorizer(config, db, pipeline)
        labeler = create_labeler(config, db, pipeline)
    return AccountSyncEngine(
        plaid_client,
        db,
        categorizer=categorizer,
        labeler=labeler,
        page_size=config.sync_page_size,
    )
