"""Domain models for checkout completion reconciliation."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class SubscriptionStatus(str, Enum):
    """Subscription states reported by the backend."""

    ACTIVE = "active"
    TRIALING = "trialing"
    CANCELED = "canceled"
    INACTIVE = "inactive"
    UNKNOWN = "unknown"


class ErrorKind(str, Enum):
    """Categories used to select a recovery path for a failed completion."""

    DUPLICATE_SESSION = "duplicate_session"
    MALFORMED_REQUEST = "malformed_request"
    TRANSIENT_TRANSPORT = "transient_transport"
    BUSINESS_FAILURE = "business_failure"
    UNKNOWN = "unknown"


class CompletionPath(str, Enum):
    """Terminal branch taken by a reconciliation attempt."""

    ALREADY_PROCESSED = "already_processed"
    ADDON = "addon"
    ALREADY_ACTIVE = "already_active"
    COMPLETED = "completed"
    COMPLETED_AFTER_REFRESH = "completed_after_refresh"
    DUPLICATE_RECOVERED = "duplicate_recovered"
    MALFORMED_RECOVERED = "malformed_recovered"
    MALFORMED_BYPASS = "malformed_bypass"
    CACHED_ACTIVE = "cached_active"
    FAILED = "failed"


class SubscriptionSnapshot(BaseModel):
    """Subscription fields mirrored from the company record."""

    status: SubscriptionStatus = SubscriptionStatus.UNKNOWN
    plan: Optional[Any] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="allow")

    @field_validator("status", mode="before")
    @classmethod
    def _coerce_status(cls, value: object) -> object:
        if value is None:
            return SubscriptionStatus.UNKNOWN
        if isinstance(value, SubscriptionStatus):
            return value
        try:
            return SubscriptionStatus(str(value).strip().lower())
        except ValueError:
            return SubscriptionStatus.UNKNOWN


class CompanyRecord(BaseModel):
    """Company payload returned by the backend, including subscription data."""

    id: Optional[str] = None
    name: Optional[str] = None
    subscription: Optional[SubscriptionSnapshot] = None
    has_subscription: Optional[bool] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="allow")

    @field_validator("id", mode="before")
    @classmethod
    def _stringify_id(cls, value: object) -> object:
        if value is None:
            return None
        return str(value)

    @property
    def is_active(self) -> bool:
        """Return ``True`` when the subscription status is ``active``."""
        return self.subscription is not None and self.subscription.status == SubscriptionStatus.ACTIVE

    @property
    def has_any_subscription(self) -> bool:
        """Return ``True`` when the record carries any subscription at all."""
        return self.subscription is not None or self.has_subscription is True


class CheckoutCompletionRequest(BaseModel):
    """Identifies one reconciliation attempt for a checkout session."""

    session_id: str = Field(min_length=1, description="Opaque token issued by the payment processor")
    company_id: str = Field(min_length=1, description="Tenant owning the subscription")
    is_addon: bool = False

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("company_id", mode="before")
    @classmethod
    def _stringify_company(cls, value: object) -> object:
        if isinstance(value, int):
            return str(value)
        return value


class CompletionOutcome(BaseModel):
    """Result handed back to callers; presentation is left to them."""

    success: bool
    path: CompletionPath
    message: Optional[str] = None
    error_kind: Optional[ErrorKind] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @property
    def is_retryable(self) -> bool:
        return not self.success and self.error_kind == ErrorKind.TRANSIENT_TRANSPORT


class CompleteCheckoutResponse(BaseModel):
    """Response of the backend checkout completion endpoint."""

    success: bool = False
    subscription_id: Optional[str] = None
    error: Optional[str] = None
    company: Optional[CompanyRecord] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="allow")


class CheckoutSessionParams(BaseModel):
    """Request body used to open a new checkout session."""

    plan_id: str
    company_id: str
    interval: Optional[str] = None
    new_company: Optional[bool] = None
    trial_days: Optional[int] = Field(default=None, ge=0)

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class CheckoutSessionResponse(BaseModel):
    """Backend response for a new checkout session; either field may be absent."""

    url: Optional[str] = None
    session_id: Optional[str] = Field(default=None, alias="sessionId")

    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="allow")


class CheckoutLaunch(BaseModel):
    """Where to send the user to pay, or why that could not be determined."""

    url: Optional[str] = None
    session_id: Optional[str] = None
    message: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @property
    def ok(self) -> bool:
        return bool(self.url)


class BypassFlag(BaseModel):
    """Provisional access granted while backend state converges."""

    active: bool = False
    expires_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    def is_valid(self, now: datetime) -> bool:
        return self.active and now < self.expires_at


__all__ = [
    "BypassFlag",
    "CheckoutCompletionRequest",
    "CheckoutLaunch",
    "CheckoutSessionParams",
    "CheckoutSessionResponse",
    "CompanyRecord",
    "CompleteCheckoutResponse",
    "CompletionOutcome",
    "CompletionPath",
    "ErrorKind",
    "SubscriptionSnapshot",
    "SubscriptionStatus",
]
