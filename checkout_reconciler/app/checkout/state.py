"""Shared application state mirroring the current company record."""
from __future__ import annotations

from typing import List, Optional, Protocol

from .models import CompanyRecord


class CompanyStateStore(Protocol):
    """Read/write access to the cached company; the synchronizer is the only writer."""

    def get_current(self) -> Optional[CompanyRecord]:
        ...

    def set_current(self, company: Optional[CompanyRecord]) -> None:
        ...


class InMemoryCompanyState:
    """Simple state holder that also keeps a short history for inspection."""

    def __init__(self, company: Optional[CompanyRecord] = None) -> None:
        self._current = company
        self.history: List[Optional[CompanyRecord]] = []

    def get_current(self) -> Optional[CompanyRecord]:
        return self._current

    def set_current(self, company: Optional[CompanyRecord]) -> None:
        self._current = company
        self.history.append(company)
        del self.history[:-20]
