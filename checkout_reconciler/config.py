"""Configuration helpers for checkout reconciliation."""
from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import timedelta
from typing import Mapping, Optional


@dataclass(frozen=True)
class ReconcilerConfig:
    """Settings for the backend client, local storage and retry limits."""

    backend_base_url: str
    api_prefix: str
    checkout_redirect_base: str
    storage_path: str
    storage_namespace: str
    bypass_ttl_seconds: int
    max_retries: int
    force_refresh_attempts: int
    http_timeout_seconds: float

    @property
    def api_base_url(self) -> str:
        return f"{self.backend_base_url}{self.api_prefix}"

    @property
    def bypass_ttl(self) -> timedelta:
        return timedelta(seconds=self.bypass_ttl_seconds)


def _to_int(value: Optional[str], *, default: int) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected integer value, got {value!r}") from exc


def _to_float(value: Optional[str], *, default: float) -> float:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected float value, got {value!r}") from exc


def _normalize_prefix(value: str) -> str:
    value = value.strip().strip("/")
    return f"/{value}" if value else ""


def load_reconciler_config(env: Optional[Mapping[str, str]] = None) -> ReconcilerConfig:
    """Load :class:`ReconcilerConfig` from environment variables."""

    env_mapping = os.environ if env is None else env

    backend_base_url = (env_mapping.get("CHECKOUT_BACKEND_URL") or "http://localhost:8000").strip()
    api_prefix = _normalize_prefix(env_mapping.get("CHECKOUT_API_PREFIX", "/api"))
    checkout_redirect_base = env_mapping.get("CHECKOUT_REDIRECT_BASE") or "https://checkout.stripe.com/pay/"

    storage_path = env_mapping.get("CHECKOUT_STORAGE_PATH") or ".checkout_state.json"
    storage_namespace = (env_mapping.get("CHECKOUT_STORAGE_NAMESPACE") or "checkout").strip() or "checkout"

    bypass_ttl_seconds = _to_int(env_mapping.get("CHECKOUT_BYPASS_TTL_SECONDS"), default=3600)
    if bypass_ttl_seconds <= 0:
        raise ValueError("CHECKOUT_BYPASS_TTL_SECONDS must be positive")

    max_retries = max(1, _to_int(env_mapping.get("CHECKOUT_MAX_RETRIES"), default=3))
    force_refresh_attempts = max(1, _to_int(env_mapping.get("CHECKOUT_FORCE_REFRESH_ATTEMPTS"), default=5))
    http_timeout_seconds = max(0.1, _to_float(env_mapping.get("CHECKOUT_HTTP_TIMEOUT"), default=10.0))

    return ReconcilerConfig(
        backend_base_url=backend_base_url.rstrip("/"),
        api_prefix=api_prefix,
        checkout_redirect_base=checkout_redirect_base,
        storage_path=storage_path,
        storage_namespace=storage_namespace,
        bypass_ttl_seconds=bypass_ttl_seconds,
        max_retries=max_retries,
        force_refresh_attempts=force_refresh_attempts,
        http_timeout_seconds=http_timeout_seconds,
    )


__all__ = ["ReconcilerConfig", "load_reconciler_config"]
