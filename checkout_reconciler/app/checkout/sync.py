"""Pulls the authoritative company record and mirrors it into shared state."""
from __future__ import annotations

import logging
from typing import Optional, Protocol

from .models import CompanyRecord
from .retry import RetryController
from .state import CompanyStateStore

logger = logging.getLogger(__name__)

DEFAULT_FORCE_REFRESH_ATTEMPTS = 5


class CompanyReader(Protocol):
    """Normal data-fetch path for company records."""

    async def get_company(self, company_id: str) -> CompanyRecord:
        ...


class DirectCompanyReader(Protocol):
    """Low-level read that bypasses any caching in the normal fetch path."""

    async def fetch_company(self, company_id: str) -> Optional[CompanyRecord]:
        ...


class StateSynchronizer:
    """Attempts to confirm subscription state; never propagates transport errors."""

    def __init__(
        self,
        *,
        reader: CompanyReader,
        state: CompanyStateStore,
        direct_reader: Optional[DirectCompanyReader] = None,
        retry: Optional[RetryController] = None,
    ) -> None:
        self.reader = reader
        self.state = state
        self.direct_reader = direct_reader
        self.retry = retry or RetryController()

    def apply(self, company: CompanyRecord) -> None:
        self.state.set_current(company)

    def cached_is_active(self) -> bool:
        company = self.state.get_current()
        return company is not None and company.is_active

    async def refresh(self, company_id: str) -> bool:
        try:
            company = await self.reader.get_company(company_id)
        except Exception as exc:
            logger.warning(
                "Company refresh failed: %s",
                exc,
                extra={"company_id": company_id},
            )
            return False
        if company is None:
            return False
        self.apply(company)
        if company.is_active:
            logger.info("Subscription confirmed active", extra={"company_id": company_id})
            return True
        return False

    async def _read_for_force(self, company_id: str) -> bool:
        company = await self.reader.get_company(company_id)
        if company is None:
            return False
        self.apply(company)
        return company.has_any_subscription

    async def force_refresh(self, company_id: str, max_attempts: int = DEFAULT_FORCE_REFRESH_ATTEMPTS) -> bool:
        """Repeat the read with backoff, then fall back to one direct HTTP read."""

        result = await self.retry.run(
            lambda: self._read_for_force(company_id),
            max_attempts,
            label="company refetch",
        )
        if result.succeeded:
            return True

        if self.direct_reader is None:
            return False

        logger.info("Falling back to direct company read", extra={"company_id": company_id})
        try:
            company = await self.direct_reader.fetch_company(company_id)
        except Exception as exc:
            logger.warning("Direct company read failed: %s", exc, extra={"company_id": company_id})
            return False
        if company is None:
            return False
        self.apply(company)
        return company.has_any_subscription


__all__ = [
    "CompanyReader",
    "DEFAULT_FORCE_REFRESH_ATTEMPTS",
    "DirectCompanyReader",
    "StateSynchronizer",
]
