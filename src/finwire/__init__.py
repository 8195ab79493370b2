"""Incremental Plaid sync with LLM categorization and budget labeling."""

__version__ = "0.1.0"
