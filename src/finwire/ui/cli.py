from __future__ import annotations

import asyncio
import json

from dotenv import load_dotenv
from loguru import logger
import typer

from finwire.adapters.clients.classifier import ClassifierClient
from finwire.adapters.clients.plaid import PlaidClient
from finwire.adapters.db.facade import DB
from finwire.core.config import FinwireConfig, load_config_from_env
from finwire.core.factory import (
    create_categorizer,
    create_classifier,
    create_labeler,
    create_pipeline,
    create_sync_engine,
)
from finwire.errors import FinwireError, JobConfigurationError
from finwire.jobs.batch_sync.jobs import JOBS, get_job
from finwire.services.budgets.labeling import BudgetProcessor

# Load environment variables from .env
load_dotenv()

app = typer.Typer(
    help="Finwire: bank transaction sync and AI enrichment.",
    no_args_is_help=True,
)

cron_app = typer.Typer(help="Scheduled batch jobs.")
app.add_typer(cron_app, name="cron")


def _load_config() -> FinwireConfig:
    try:
        return load_config_from_env()
    except ValueError as e:
        typer.echo(f"Invalid configuration: {e}", err=True)
        raise typer.Exit(1) from None


def _open_db(config: FinwireConfig) -> DB:
    db = DB(config.database_url)
    db.create_schema()
    return db


def _create_plaid_client(config: FinwireConfig) -> PlaidClient:
    try:
        return PlaidClient.from_env(config.plaid_env)
    except FinwireError as e:
        typer.echo(f"Error initializing Plaid client: {e}", err=True)
        raise typer.Exit(1) from None


def _create_classifier(config: FinwireConfig) -> ClassifierClient:
    try:
        return create_classifier(config)
    except RuntimeError as e:
        typer.echo(f"Error initializing classifier: {e}", err=True)
        raise typer.Exit(1) from None


def _create_optional_classifier(config: FinwireConfig) -> ClassifierClient | None:
    """Sync still runs without a classifier; enrichment is skipped."""
    try:
        return create_classifier(config)
    except RuntimeError as e:
        logger.warning("Classifier unavailable, skipping enrichment: {}", e)
        return None


@app.command("init-db")
def init_db(
    url: str | None = typer.Option(None, help="Database URL (default from env)"),
) -> None:
    """Create all tables."""
    config = _load_config()
    db = DB(url or config.database_url)
    db.create_schema()
    typer.echo(f"Initialized schema at {db.url}")


@cron_app.command("list")
def cron_list() -> None:
    """List available jobs."""
    for name, job in JOBS.items():
        typer.echo(f"{name}\t{job.description}")


@cron_app.command("run")
def cron_run(
    job_name: str = typer.Argument(..., metavar="JOB", help="Job name"),
    fail_on_error: bool = typer.Option(
        True, help="Exit non-zero when any user failed to sync"
    ),
    parallel: bool = typer.Option(False, help="Sync users concurrently"),
) -> None:
    """Run a batch sync job and print its JSON summary."""
    config = _load_config()
    try:
        job = get_job(job_name)
        job.check_environment(config)
    except JobConfigurationError as e:
        typer.echo(str(e), err=True)
        raise typer.Exit(1) from None

    db = _open_db(config)
    engine = create_sync_engine(
        config=config,
        db=db,
        plaid_client=_create_plaid_client(config),
        classifier=_create_optional_classifier(config),
    )
    result = asyncio.run(
        job.run(config=config, db=db, engine=engine, parallel=parallel)
    )
    typer.echo(json.dumps(result.to_dict(), indent=2))
    if result.failed_items and fail_on_error:
        raise typer.Exit(1)


@app.command("sync-connection")
def sync_connection(
    item_id: str = typer.Option(..., help="Plaid item id of the connection"),
) -> None:
    """Sync one connection now."""
    config = _load_config()
    db = _open_db(config)
    connection = db.get_connection(item_id)
    if connection is None:
        typer.echo(f"Connection {item_id} not found.", err=True)
        raise typer.Exit(1)

    engine = create_sync_engine(
        config=config,
        db=db,
        plaid_client=_create_plaid_client(config),
        classifier=_create_optional_classifier(config),
    )
    result = asyncio.run(engine.sync_connection(connection))
    typer.echo(
        json.dumps(
            {
                "item_id": result.item_id,
                "accounts_touched": result.accounts_touched,
                "transactions_synced": result.transactions_synced,
                "error": result.error,
                "refresh_error": result.refresh_error,
                "failed_accounts": result.failed_accounts,
            },
            indent=2,
        )
    )
    if not result.ok:
        raise typer.Exit(1)


@app.command("label-budgets")
def label_budgets(
    user_id: str = typer.Option(..., help="User whose transactions to label"),
    budget_id: str | None = typer.Option(
        None, help="Only (re)label this budget; default is all budgets"
    ),
) -> None:
    """Assign the user's transactions to budgets."""
    config = _load_config()
    db = _open_db(config)
    labeler = create_labeler(
        config, db, create_pipeline(config, _create_classifier(config))
    )

    try:
        if budget_id is None:
            count = asyncio.run(labeler.label_all_for_user(user_id))
        else:
            processor = BudgetProcessor(labeler, db)
            count = asyncio.run(processor.process(user_id, budget_id))
    except (FinwireError, ValueError) as e:
        typer.echo(f"Budget labeling failed: {e}", err=True)
        raise typer.Exit(1) from None
    typer.echo(f"{count} transactions matched.")


@app.command("recategorize")
def recategorize(
    user_id: str = typer.Option(..., help="User whose transactions to recategorize"),
) -> None:
    """Recategorize every transaction of a user with their current rules."""
    config = _load_config()
    db = _open_db(config)
    categorizer = create_categorizer(
        config, db, create_pipeline(config, _create_classifier(config))
    )
    try:
        count = asyncio.run(categorizer.recategorize_all(user_id))
    except FinwireError as e:
        typer.echo(f"Recategorization failed: {e}", err=True)
        raise typer.Exit(1) from None
    typer.echo(f"Recategorized {count} transactions.")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
