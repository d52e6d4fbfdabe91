"""Core service reconciling completed checkouts with the subscription backend."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional, Protocol, Union

from pydantic import ValidationError

from .errors import (
    DEFAULT_ERROR_MESSAGE,
    classify_error,
    extract_message,
    is_duplicate_session_error,
    is_malformed_request_error,
)
from .models import (
    CheckoutCompletionRequest,
    CheckoutLaunch,
    CheckoutSessionParams,
    CheckoutSessionResponse,
    CompleteCheckoutResponse,
    CompletionOutcome,
    CompletionPath,
    ErrorKind,
)
from .retry import DEFAULT_MAX_ATTEMPTS, RetryController
from .storage import CheckoutStorage
from .sync import CompanyReader, DEFAULT_FORCE_REFRESH_ATTEMPTS, StateSynchronizer

logger = logging.getLogger(__name__)

DEFAULT_CHECKOUT_REDIRECT_BASE = "https://checkout.stripe.com/pay/"


class CheckoutBackend(CompanyReader, Protocol):
    """Backend endpoints consumed by the checkout flow."""

    async def complete_checkout(self, session_id: str, company_id: str) -> CompleteCheckoutResponse:
        ...

    async def create_checkout_session(self, params: CheckoutSessionParams) -> CheckoutSessionResponse:
        ...


def _success(path: CompletionPath) -> CompletionOutcome:
    return CompletionOutcome(success=True, path=path)


def _failure(message: str, kind: ErrorKind) -> CompletionOutcome:
    return CompletionOutcome(success=False, path=CompletionPath.FAILED, message=message, error_kind=kind)


@dataclass
class CheckoutCompletionService:
    """Decides, exactly once per session, whether a checkout has been applied."""

    backend: CheckoutBackend
    storage: CheckoutStorage
    synchronizer: StateSynchronizer
    retry: RetryController = field(default_factory=RetryController)
    max_retries: int = DEFAULT_MAX_ATTEMPTS
    force_refresh_attempts: int = DEFAULT_FORCE_REFRESH_ATTEMPTS
    checkout_redirect_base: str = DEFAULT_CHECKOUT_REDIRECT_BASE

    async def complete_checkout_session(
        self,
        request: Union[CheckoutCompletionRequest, None] = None,
        *,
        session_id: Optional[str] = None,
        company_id: Optional[str] = None,
        is_addon: bool = False,
    ) -> CompletionOutcome:
        if request is None:
            try:
                request = CheckoutCompletionRequest(
                    session_id=session_id or "",
                    company_id=company_id or "",
                    is_addon=is_addon,
                )
            except ValidationError:
                logger.error("Missing required parameters for checkout completion")
                return _failure("Missing session or company identifier", ErrorKind.UNKNOWN)

        log_extra = {"checkout_session_id": request.session_id, "company_id": request.company_id}

        if await self.storage.is_processed(request.session_id):
            logger.info("Session already processed", extra=log_extra)
            await self.synchronizer.refresh(request.company_id)
            return _success(CompletionPath.ALREADY_PROCESSED)

        if request.is_addon:
            # Add-ons are applied by the backend asynchronously; only pick up the state.
            logger.info("Processing add-on purchase", extra=log_extra)
            await self.synchronizer.refresh(request.company_id)
            await self.storage.mark_processed(request.session_id)
            return _success(CompletionPath.ADDON)

        if self.synchronizer.cached_is_active():
            logger.info("Company already has an active subscription", extra=log_extra)
            await self.storage.mark_processed(request.session_id)
            return _success(CompletionPath.ALREADY_ACTIVE)

        try:
            result = await self.backend.complete_checkout(request.session_id, request.company_id)
        except Exception as exc:
            return await self._recover_from_error(request, exc)

        return await self._handle_completion_result(request, result)

    async def _handle_completion_result(
        self,
        request: CheckoutCompletionRequest,
        result: CompleteCheckoutResponse,
    ) -> CompletionOutcome:
        log_extra = {"checkout_session_id": request.session_id, "company_id": request.company_id}
        if result.success:
            if result.company is not None:
                self.synchronizer.apply(result.company)
            else:
                await self.synchronizer.refresh(request.company_id)
            await self.storage.mark_processed(request.session_id)
            logger.info("Checkout completed", extra=log_extra)
            return _success(CompletionPath.COMPLETED)

        logger.warning(
            "Backend reported unsuccessful checkout: %s",
            result.error,
            extra={**log_extra, "error_kind": ErrorKind.BUSINESS_FAILURE.value},
        )
        if await self.synchronizer.refresh(request.company_id):
            await self.storage.mark_processed(request.session_id)
            return _success(CompletionPath.COMPLETED_AFTER_REFRESH)
        return _failure(result.error or DEFAULT_ERROR_MESSAGE, ErrorKind.BUSINESS_FAILURE)

    async def _recover_from_error(self, request: CheckoutCompletionRequest, error: Exception) -> CompletionOutcome:
        kind = classify_error(error)
        log_extra = {
            "checkout_session_id": request.session_id,
            "company_id": request.company_id,
            "error_kind": kind.value,
        }
        logger.warning("Checkout completion raised: %s", error, extra=log_extra)

        if is_duplicate_session_error(error):
            # The duplicate signal is proof that earlier work completed.
            await self.storage.mark_processed(request.session_id)
            if await self.synchronizer.refresh(request.company_id):
                return _success(CompletionPath.DUPLICATE_RECOVERED)

            if is_malformed_request_error(error):
                await self.storage.set_extended_bypass()
                await self.storage.mark_processed(request.session_id)
                confirmed = await self.synchronizer.force_refresh(
                    request.company_id, self.force_refresh_attempts
                )
                if confirmed:
                    return _success(CompletionPath.MALFORMED_RECOVERED)
                logger.warning("Granting provisional access while backend converges", extra=log_extra)
                return _success(CompletionPath.MALFORMED_BYPASS)

        message = extract_message(error)
        if self.synchronizer.cached_is_active():
            logger.info("Found active subscription despite error", extra=log_extra)
            return _success(CompletionPath.CACHED_ACTIVE)
        return _failure(message, kind)

    async def _attempt_unit(self, request: CheckoutCompletionRequest) -> CompletionOutcome:
        try:
            return await self.complete_checkout_session(request)
        except Exception as exc:
            logger.exception(
                "Checkout completion failed unexpectedly",
                extra={"checkout_session_id": request.session_id, "company_id": request.company_id},
            )
            return _failure(extract_message(exc), ErrorKind.TRANSIENT_TRANSPORT)

    async def retry_checkout_completion(
        self,
        request: CheckoutCompletionRequest,
        max_retries: Optional[int] = None,
    ) -> CompletionOutcome:
        """Retry the whole dedup, complete, classify and recover sequence as a unit."""

        result = await self.retry.run(
            lambda: self._attempt_unit(request),
            self.max_retries if max_retries is None else max_retries,
            is_success=lambda outcome: outcome.success,
            should_retry=lambda outcome: isinstance(outcome, CompletionOutcome) and outcome.is_retryable,
            label="checkout completion",
        )
        if result.value is not None:
            return result.value
        return _failure(DEFAULT_ERROR_MESSAGE, ErrorKind.UNKNOWN)

    async def create_checkout_session(self, params: CheckoutSessionParams) -> CheckoutLaunch:
        try:
            response = await self.backend.create_checkout_session(params)
        except Exception as exc:
            logger.warning(
                "Error creating checkout session: %s",
                exc,
                extra={"company_id": params.company_id, "error_kind": classify_error(exc).value},
            )
            return CheckoutLaunch(message=extract_message(exc))

        if response.url:
            url = response.url
        elif response.session_id:
            url = f"{self.checkout_redirect_base}{response.session_id}"
        else:
            logger.warning("Invalid checkout response", extra={"company_id": params.company_id})
            return CheckoutLaunch(message="Invalid checkout response")

        await self.storage.start_checkout_flow()
        return CheckoutLaunch(url=url, session_id=response.session_id)

    async def aclose(self) -> None:
        """Close backend resources owned by this service, if the backend holds any."""

        close = getattr(self.backend, "aclose", None)
        if close is not None:
            await close()


__all__ = [
    "CheckoutBackend",
    "CheckoutCompletionService",
    "DEFAULT_CHECKOUT_REDIRECT_BASE",
]
