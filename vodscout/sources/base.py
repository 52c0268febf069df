"""
Source SDK
Versioned base interface for vodscout catalog sources.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import List, Optional

from ..models.candidate import Candidate


class BaseCatalogSource(ABC):
    """
    Stable contract for catalog sites.

    search() returns [] for "no results" and may raise for transport
    failures; the catalog manager turns those into health records.
    """
    api_version = 1
    key = "unnamed"
    name = "UnnamedSource"
    last_error = ""

    @abstractmethod
    def search(self, query: str) -> List[Candidate]:
        """Return candidates for a query."""
        raise NotImplementedError

    @abstractmethod
    def fetch_detail(self, item_id: str) -> Optional[Candidate]:
        """Return the candidate for an exact id, or None when the site does not know it."""
        raise NotImplementedError

    def reload_from_settings(self) -> None:
        """Optional hook called when source settings are reloaded."""
        return None

