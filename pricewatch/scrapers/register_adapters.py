"""Register all source adapters with the factory.

Called once by the runner before it starts a run or the scheduler.
"""

from typing import Optional

import structlog

from pricewatch.scrapers.adapters import LotussApiAdapter, SparAlbaniaAdapter
from pricewatch.scrapers.factory import AdapterFactory, get_adapter_factory

logger = structlog.get_logger(__name__)

ADAPTERS = [
    ("spar_albania", SparAlbaniaAdapter),
    ("lotuss_api", LotussApiAdapter),
]


def register_all_adapters(factory: Optional[AdapterFactory] = None) -> AdapterFactory:
    """Register every built-in adapter and return the factory used."""
    factory = factory or get_adapter_factory()

    for adapter_id, adapter_class in ADAPTERS:
        factory.register_adapter(adapter_id, adapter_class)

    logger.info(
        "all_adapters_registered",
        count=len(factory.get_registered_adapters()),
        adapters=factory.get_registered_adapters(),
    )
    return factory
