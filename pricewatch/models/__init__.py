"""SQLAlchemy models for PriceWatch.

All models are imported here so metadata.create_all sees every table.
"""

from pricewatch.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin
from pricewatch.models.source import Source
from pricewatch.models.category import Category
from pricewatch.models.product import Product
from pricewatch.models.product_mapping import ProductMapping
from pricewatch.models.price import Price
from pricewatch.models.run_log import RunLog

__all__ = [
    "Base",
    "TimestampMixin",
    "UUIDPrimaryKeyMixin",
    "Source",
    "Category",
    "Product",
    "ProductMapping",
    "Price",
    "RunLog",
]
