"""Checkout domain package: dedup storage, classification, sync and orchestration."""

from .errors import (
    BackendError,
    CheckoutError,
    ErrorShape,
    classify_error,
    extract_message,
    is_duplicate_session_error,
    is_malformed_request_error,
    normalize_error,
)
from .models import (
    BypassFlag,
    CheckoutCompletionRequest,
    CheckoutLaunch,
    CheckoutSessionParams,
    CheckoutSessionResponse,
    CompanyRecord,
    CompleteCheckoutResponse,
    CompletionOutcome,
    CompletionPath,
    ErrorKind,
    SubscriptionSnapshot,
    SubscriptionStatus,
)
from .retry import RetryController, RetryResult, delay_for_attempt
from .service import CheckoutBackend, CheckoutCompletionService
from .state import CompanyStateStore, InMemoryCompanyState
from .storage import CheckoutStorage, InMemoryCheckoutStorage, JsonFileCheckoutStorage
from .sync import CompanyReader, DirectCompanyReader, StateSynchronizer

__all__ = [
    "BackendError",
    "BypassFlag",
    "CheckoutBackend",
    "CheckoutCompletionRequest",
    "CheckoutCompletionService",
    "CheckoutError",
    "CheckoutLaunch",
    "CheckoutSessionParams",
    "CheckoutSessionResponse",
    "CheckoutStorage",
    "CompanyReader",
    "CompanyRecord",
    "CompanyStateStore",
    "CompleteCheckoutResponse",
    "CompletionOutcome",
    "CompletionPath",
    "DirectCompanyReader",
    "ErrorKind",
    "ErrorShape",
    "InMemoryCheckoutStorage",
    "InMemoryCompanyState",
    "JsonFileCheckoutStorage",
    "RetryController",
    "RetryResult",
    "StateSynchronizer",
    "SubscriptionSnapshot",
    "SubscriptionStatus",
    "classify_error",
    "delay_for_attempt",
    "extract_message",
    "is_duplicate_session_error",
    "is_malformed_request_error",
    "normalize_error",
]
