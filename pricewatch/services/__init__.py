"""Services for reconciliation and run history.

Services own their own database sessions through an async session factory,
so they can be shared by concurrently running sources.
"""

from pricewatch.services.product_service import BatchResult, ProductService
from pricewatch.services.run_log_service import RunLogService

__all__ = [
    "BatchResult",
    "ProductService",
    "RunLogService",
]
