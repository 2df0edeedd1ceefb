"""PriceWatch: grocery price ingestion and product reconciliation."""

__version__ = "0.1.0"
