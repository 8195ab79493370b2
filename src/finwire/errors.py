from __future__ import annotations


class FinwireError(Exception):
    """Base error for all finwire failures."""


class PlaidClientError(FinwireError):
    """Base error for Plaid client failures."""


class SyncError(FinwireError):
    """A sync page failed; the cursor stays at the last committed page."""

    def __init__(self, message: str, *, account_id: str, pages_committed: int) -> None:
        super().__init__(message)
        self.account_id = account_id
        self.pages_committed = pages_committed


class ConnectionSyncError(FinwireError):
    """One or more accounts of a connection failed to sync."""

    def __init__(
        self,
        item_id: str,
        failed_accounts: dict[str, str],
        *,
        reason: str | None = None,
    ) -> None:
        if reason is None:
            details = "; ".join(
                f"{acc}: {err}" for acc, err in failed_accounts.items()
            )
            reason = f"{len(failed_accounts)} account(s) failed: {details}"
        super().__init__(f"Sync failed for item {item_id}: {reason}")
        self.item_id = item_id
        self.failed_accounts = failed_accounts


class ClassificationError(FinwireError):
    """Base error for classifier call failures."""


class BatchTooLargeError(ClassificationError):
    """The classifier truncated its output for a batch."""

    def __init__(
        self, *, batch_index: int, batch_size: int, max_output_tokens: int | None
    ) -> None:
        limit = f" ({max_output_tokens} tokens)" if max_output_tokens else ""
        super().__init__(
            f"Response truncated for batch {batch_index + 1}: sent {batch_size} "
            f"items but the output limit{limit} was reached. Reduce batch size."
        )
        self.batch_index = batch_index
        self.batch_size = batch_size
        self.max_output_tokens = max_output_tokens


class ClassificationParseError(ClassificationError):
    """The classifier response did not match the expected result shape."""


class JobConfigurationError(FinwireError):
    """A cron job was started against the wrong environment or configuration."""
