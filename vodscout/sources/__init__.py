from .apple_cms import AppleCmsSource
from .base import BaseCatalogSource

__all__ = [
    "AppleCmsSource",
    "BaseCatalogSource",
]
