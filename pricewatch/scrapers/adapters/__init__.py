"""Source adapters."""

from .lotuss import LotussApiAdapter
from .spar_albania import SparAlbaniaAdapter

__all__ = [
    "LotussApiAdapter",
    "SparAlbaniaAdapter",
]
