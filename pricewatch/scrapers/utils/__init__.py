"""Scraper utilities: normalization, retry policy, browser sessions."""

from .normalizer import (
    Quantity,
    calculate_price_per_unit,
    extract_external_id,
    extract_quantity,
    generate_run_id,
    normalize_external_id,
    normalize_product_name,
    normalize_product_url,
    normalize_unit,
    parse_price,
)
from .retry import RETRYABLE_EXCEPTIONS, RetryPolicy, build_retrying, with_retry
from .user_agents import USER_AGENTS, get_random_user_agent

__all__ = [
    # Normalization
    "Quantity",
    "parse_price",
    "extract_quantity",
    "normalize_unit",
    "calculate_price_per_unit",
    "normalize_product_name",
    "normalize_external_id",
    "normalize_product_url",
    "extract_external_id",
    "generate_run_id",
    # Retry
    "RETRYABLE_EXCEPTIONS",
    "RetryPolicy",
    "build_retrying",
    "with_retry",
    # User agents
    "USER_AGENTS",
    "get_random_user_agent",
]
