"""Application wiring for the checkout completion service."""
from __future__ import annotations

import logging
from functools import lru_cache
from typing import Any, Dict, Optional

import httpx
from dotenv import load_dotenv

from ...config import ReconcilerConfig, load_reconciler_config
from ..checkout import (
    BackendError,
    CheckoutCompletionService,
    CheckoutSessionParams,
    CheckoutSessionResponse,
    CompanyRecord,
    CompleteCheckoutResponse,
    InMemoryCompanyState,
    JsonFileCheckoutStorage,
    RetryController,
    StateSynchronizer,
)
from ..checkout.state import CompanyStateStore

logger = logging.getLogger("checkout")

_JSON_HEADERS = {"Content-Type": "application/json", "Accept": "application/json"}


def _decode_json(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return None


class HttpCheckoutBackend:
    """Backend API client for checkout completion and company reads."""

    complete_checkout_path = "/subscriptions/complete-checkout/"
    create_checkout_session_path = "/subscriptions/create-checkout-session/"

    def __init__(self, *, api_base_url: str, client: httpx.AsyncClient, owns_client: bool = False) -> None:
        self.api_base_url = api_base_url.rstrip("/")
        self._client = client
        self._owns_client = owns_client

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def company_url(self, company_id: str) -> str:
        return f"{self.api_base_url}/companies/{company_id}/"

    async def _request(self, method: str, url: str, *, json: Optional[Dict[str, Any]] = None) -> Any:
        response = await self._client.request(method, url, json=json, headers=_JSON_HEADERS)
        payload = _decode_json(response)
        if response.is_error:
            raise BackendError.from_payload(response.status_code, payload)
        return payload

    async def complete_checkout(self, session_id: str, company_id: str) -> CompleteCheckoutResponse:
        logger.info(
            "Completing checkout",
            extra={"checkout_session_id": session_id, "company_id": company_id},
        )
        payload = await self._request(
            "POST",
            f"{self.api_base_url}{self.complete_checkout_path}",
            json={"session_id": session_id, "company_id": company_id},
        )
        return CompleteCheckoutResponse.model_validate(payload or {})

    async def get_company(self, company_id: str) -> CompanyRecord:
        payload = await self._request("GET", self.company_url(company_id))
        return CompanyRecord.model_validate(payload or {})

    async def create_checkout_session(self, params: CheckoutSessionParams) -> CheckoutSessionResponse:
        payload = await self._request(
            "POST",
            f"{self.api_base_url}{self.create_checkout_session_path}",
            json=params.model_dump(exclude_none=True),
        )
        return CheckoutSessionResponse.model_validate(payload or {})


class HttpDirectCompanyReader:
    """Plain GET of the company resource, used as the last confirmation tier."""

    def __init__(self, *, backend_base_url: str, client: httpx.AsyncClient) -> None:
        self.backend_base_url = backend_base_url.rstrip("/")
        self._client = client

    def company_url(self, company_id: str) -> str:
        return f"{self.backend_base_url}/api/companies/{company_id}/"

    async def fetch_company(self, company_id: str) -> Optional[CompanyRecord]:
        response = await self._client.get(self.company_url(company_id), headers=_JSON_HEADERS)
        if not response.is_success:
            logger.warning(
                "Direct company read returned HTTP %s",
                response.status_code,
                extra={"company_id": company_id},
            )
            return None
        payload = _decode_json(response)
        if not isinstance(payload, dict) or not payload:
            return None
        return CompanyRecord.model_validate(payload)


def build_checkout_service(
    config: ReconcilerConfig,
    *,
    client: Optional[httpx.AsyncClient] = None,
    state: Optional[CompanyStateStore] = None,
) -> CheckoutCompletionService:
    http_client = client or httpx.AsyncClient(timeout=config.http_timeout_seconds)
    backend = HttpCheckoutBackend(
        api_base_url=config.api_base_url,
        client=http_client,
        owns_client=client is None,
    )
    retry = RetryController()
    synchronizer = StateSynchronizer(
        reader=backend,
        state=state or InMemoryCompanyState(),
        direct_reader=HttpDirectCompanyReader(backend_base_url=config.backend_base_url, client=http_client),
        retry=retry,
    )
    storage = JsonFileCheckoutStorage(
        config.storage_path,
        namespace=config.storage_namespace,
        bypass_ttl=config.bypass_ttl,
    )
    return CheckoutCompletionService(
        backend=backend,
        storage=storage,
        synchronizer=synchronizer,
        retry=retry,
        max_retries=config.max_retries,
        force_refresh_attempts=config.force_refresh_attempts,
        checkout_redirect_base=config.checkout_redirect_base,
    )


@lru_cache(maxsize=1)
def get_checkout_service() -> CheckoutCompletionService:
    load_dotenv()
    return build_checkout_service(load_reconciler_config())


async def close_checkout_service() -> None:
    """Release the cached service's HTTP client; the next lookup builds a fresh one."""

    if get_checkout_service.cache_info().currsize:
        await get_checkout_service().aclose()
    get_checkout_service.cache_clear()


__all__ = [
    "HttpCheckoutBackend",
    "HttpDirectCompanyReader",
    "build_checkout_service",
    "close_checkout_service",
    "get_checkout_service",
]
