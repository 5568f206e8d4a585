"""MarketRelay Extractors Package"""

from .base import BaseExtractor
from .facebook import FacebookExtractor

__all__ = ["BaseExtractor", "FacebookExtractor"]
