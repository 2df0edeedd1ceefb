"""Scraper system for grocery price collection.

This package provides:
- Base adapter classes (API and browser) with a shared lifecycle
- Utility modules for retry, browser sessions and data normalization
- Factory for creating adapter instances from source rows
- Orchestrator and scheduler for running sources
"""

from .base import (
    AdapterConfig,
    AdapterState,
    BaseAdapter,
    BaseAPIAdapter,
    BaseBrowserAdapter,
    CategoryConfig,
    ListingData,
    PageInfo,
    PageResult,
    ScrapeStats,
    WaitTimes,
)
from .factory import AdapterFactory, adapter_factory, get_adapter_factory

__all__ = [
    # Base classes
    "BaseAdapter",
    "BaseAPIAdapter",
    "BaseBrowserAdapter",
    "AdapterState",
    # Data structures
    "AdapterConfig",
    "CategoryConfig",
    "ListingData",
    "PageInfo",
    "PageResult",
    "ScrapeStats",
    "WaitTimes",
    # Factory
    "AdapterFactory",
    "adapter_factory",
    "get_adapter_factory",
]
