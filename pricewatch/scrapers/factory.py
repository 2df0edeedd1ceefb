"""Registry of adapter classes and construction of configured instances."""

from dataclasses import asdict
from typing import Any, Dict, List, Optional, Type

import structlog

from pricewatch.config import settings
from pricewatch.core.exceptions import ConfigurationError
from pricewatch.scrapers.base import AdapterConfig, BaseAdapter, CategoryConfig, WaitTimes
from pricewatch.scrapers.utils.retry import RetryPolicy

logger = structlog.get_logger(__name__)


class AdapterFactory:
    """Maps adapter identifiers to adapter classes.

    Adding a source means registering one class here; the orchestrator
    never needs to know about concrete adapters.
    """

    def __init__(self):
        self._adapter_registry: Dict[str, Type[BaseAdapter]] = {}

    def register_adapter(self, adapter_id: str, adapter_class: Type[BaseAdapter]) -> None:
        """Register an adapter class under an identifier.

        Args:
            adapter_id: Registry key stored on the source row (e.g. "lotuss_api")
            adapter_class: Adapter class (must inherit from BaseAdapter)
        """
        if not isinstance(adapter_class, type) or not issubclass(adapter_class, BaseAdapter):
            raise ValueError(f"Adapter class must inherit from BaseAdapter: {adapter_class}")

        self._adapter_registry[adapter_id] = adapter_class
        logger.debug("adapter_registered", adapter_id=adapter_id, adapter_type=adapter_class.adapter_type)

    def get_adapter_class(self, adapter_id: str) -> Type[BaseAdapter]:
        adapter_class = self._adapter_registry.get(adapter_id)
        if adapter_class is None:
            raise ConfigurationError(f"No adapter registered for '{adapter_id}'")
        return adapter_class

    def get_categories(self, adapter_id: str) -> List[CategoryConfig]:
        """Default categories of an adapter, for listing in the CLI."""
        return self.get_adapter_class(adapter_id).get_categories()

    def build_config(self, source: Any, adapter_class: Type[BaseAdapter]) -> AdapterConfig:
        """Merge global settings, adapter defaults and the source's scraper_config.

        Later layers win: settings < adapter class defaults < source row.
        """
        overrides: Dict[str, Any] = dict(getattr(source, "scraper_config", None) or {})

        if overrides.get("categories"):
            categories = [CategoryConfig.from_dict(c) for c in overrides["categories"]]
        else:
            categories = adapter_class.get_categories()

        wait_values = asdict(
            adapter_class.default_wait_times
            or WaitTimes(
                between_requests=settings.SCRAPER_BETWEEN_REQUESTS_SECONDS,
                between_categories=settings.SCRAPER_BETWEEN_REQUESTS_SECONDS * 2,
                jitter=settings.SCRAPER_PACING_JITTER_SECONDS,
            )
        )
        wait_values.update({
            k: float(v) for k, v in (overrides.get("wait_times") or {}).items() if k in wait_values
        })

        retry_policy = RetryPolicy(
            max_retries=int(overrides.get("max_retries", settings.SCRAPER_MAX_RETRIES)),
            initial_delay=float(overrides.get("retry_initial_delay", settings.SCRAPER_RETRY_INITIAL_DELAY)),
            backoff_factor=float(overrides.get("retry_backoff_factor", settings.SCRAPER_RETRY_BACKOFF_FACTOR)),
            max_delay=float(overrides.get("retry_max_delay", settings.SCRAPER_RETRY_MAX_DELAY)),
        )

        source_name = getattr(source, "name", "") or ""
        return AdapterConfig(
            adapter_id=adapter_class.adapter_id or source.adapter_id,
            source_id=getattr(source, "id", None),
            source_name=source_name,
            currency=getattr(source, "currency", None) or adapter_class.default_currency,
            base_url=overrides.get("base_url") or getattr(source, "base_url", None) or adapter_class.default_base_url,
            categories=categories,
            max_pages=int(
                overrides.get("max_pages")
                or adapter_class.default_max_pages
                or settings.SCRAPER_MAX_PAGES
            ),
            retry_policy=retry_policy,
            wait_times=WaitTimes(**wait_values),
            timeout_seconds=float(overrides.get("timeout_seconds", settings.SCRAPER_TIMEOUT_SECONDS)),
            headless=bool(overrides.get("headless", settings.PLAYWRIGHT_HEADLESS)),
            proxy_url=overrides.get("proxy_url") or settings.get_proxy_for(source_name),
            concurrent_pages=max(1, int(overrides.get("concurrent_pages", 1))),
            extra=overrides,
        )

    def create_adapter(self, source: Any, log=None) -> BaseAdapter:
        """Create a configured adapter for a source row.

        Args:
            source: Source (or anything with the same attributes)
            log: Bound logger passed through to the adapter

        Raises:
            ConfigurationError: If the source's adapter_id is not registered
        """
        adapter_class = self.get_adapter_class(source.adapter_id)
        config = self.build_config(source, adapter_class)
        adapter = adapter_class(config, log=log)

        (log or logger).info(
            "adapter_created",
            adapter_id=source.adapter_id,
            adapter_type=adapter.adapter_type,
            categories=len(config.categories),
            has_proxy=bool(config.proxy_url),
        )
        return adapter

    def get_registered_adapters(self) -> List[str]:
        return list(self._adapter_registry.keys())

    def has_adapter(self, adapter_id: str) -> bool:
        return adapter_id in self._adapter_registry


# Global factory instance
adapter_factory = AdapterFactory()


def get_adapter_factory() -> AdapterFactory:
    """Get the global adapter factory instance."""
    return adapter_factory
