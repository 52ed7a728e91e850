"""Lock PIN issuance for a booking window."""
from __future__ import annotations

import logging
import secrets
import string
import threading
import time
from datetime import datetime, timedelta
from typing import Any, Mapping, Protocol
from zoneinfo import ZoneInfo

import httpx

from app.config import Settings, get_settings
from app.models import Box
from app.utils.errors import CredentialIssueError

logger = logging.getLogger(__name__)

_PIN_KEYS = ("pin", "pinCode", "code", "unlockCode")
_PROVIDER_CONFIG_FIELDS = (
    "LOCK_PIN_PROVIDER",
    "LOCK_CLIENT_ID",
    "LOCK_CLIENT_SECRET",
    "LOCK_DEVICE_ID",
    "LOCK_TOKEN_URL",
    "LOCK_API_BASE_URL",
    "LOCK_TIMEZONE",
    "LOCK_HTTP_TIMEOUT_SECONDS",
    "app_env",
)

_providers: dict[tuple[Any, ...], "PinProvider"] = {}
_providers_lock = threading.Lock()


class PinProvider(Protocol):
    def request_pin(self, *, box: Box, start_at: datetime, end_at: datetime) -> str:
        ...


def format_lock_time(value: datetime, tz_name: str, *, round_up: bool = False) -> str:
    """Render ``value`` at hour precision in the lock's timezone, e.g. ``2026-06-01T10:00:00+02:00``.

    The lock API only accepts whole hours; ``round_up`` moves a partial hour to the next one.
    """

    local = value.astimezone(ZoneInfo(tz_name))
    truncated = local.replace(minute=0, second=0, microsecond=0)
    if round_up and truncated != local:
        truncated = (truncated + timedelta(hours=1)).astimezone(ZoneInfo(tz_name))
    offset = truncated.strftime("%z")
    return f"{truncated.strftime('%Y-%m-%dT%H:00:00')}{offset[:3]}:{offset[3:]}"


def parse_pin(payload: Mapping[str, Any]) -> str | None:
    for key in _PIN_KEYS:
        value = payload.get(key)
        if value not in (None, ""):
            return str(value)
    return None


class StubPinProvider:
    """Random numeric PINs for development and tests."""

    def __init__(self, digits: int = 8) -> None:
        self.digits = digits

    def request_pin(self, *, box: Box, start_at: datetime, end_at: datetime) -> str:
        return "".join(secrets.choice(string.digits) for _ in range(self.digits))


class IglooPinProvider:
    """Hourly algoPIN client using OAuth2 client credentials."""

    def __init__(self, settings: Settings, *, transport: httpx.BaseTransport | None = None) -> None:
        missing = [
            name
            for name in ("LOCK_CLIENT_ID", "LOCK_CLIENT_SECRET", "LOCK_DEVICE_ID")
            if not getattr(settings, name)
        ]
        if missing:
            raise RuntimeError(f"Lock provider is not configured; missing {', '.join(missing)}.")
        self.settings = settings
        self._client = httpx.Client(timeout=settings.LOCK_HTTP_TIMEOUT_SECONDS, transport=transport)
        self._token: str | None = None
        self._token_expires_at = 0.0

    def _access_token(self) -> str:
        if self._token and time.monotonic() < self._token_expires_at:
            return self._token

        response = self._client.post(
            self.settings.LOCK_TOKEN_URL,
            data={"grant_type": "client_credentials"},
            auth=(self.settings.LOCK_CLIENT_ID or "", self.settings.LOCK_CLIENT_SECRET or ""),
        )
        response.raise_for_status()
        data = response.json()
        token = data.get("access_token")
        if not token:
            raise ValueError("Token response did not include an access_token")
        # Refresh a minute early.
        self._token = token
        self._token_expires_at = time.monotonic() + max(int(data.get("expires_in", 3600)) - 60, 0)
        return token

    def request_pin(self, *, box: Box, start_at: datetime, end_at: datetime) -> str:
        tz_name = self.settings.LOCK_TIMEZONE
        url = f"{self.settings.LOCK_API_BASE_URL.rstrip('/')}/{self.settings.LOCK_DEVICE_ID}/algopin/hourly"
        body = {
            "variance": 1,
            "startDate": format_lock_time(start_at, tz_name),
            "endDate": format_lock_time(end_at, tz_name, round_up=True),
            "accessName": "Customer",
        }
        response = self._client.post(
            url,
            json=body,
            headers={"Authorization": f"Bearer {self._access_token()}"},
        )
        if response.status_code == httpx.codes.UNAUTHORIZED:
            self._token = None
        response.raise_for_status()

        pin = parse_pin(response.json())
        if pin is None:
            raise ValueError("Lock API response did not contain a PIN")
        return pin

    def close(self) -> None:
        self._client.close()


def _build_pin_provider(settings: Settings) -> PinProvider:
    provider = settings.LOCK_PIN_PROVIDER.lower()
    if provider == "igloo":
        return IglooPinProvider(settings)
    if provider == "stub":
        if settings.app_env.lower() == "prod":
            logger.warning("Stub lock PIN provider active in production")
        return StubPinProvider()
    raise RuntimeError(f"Unknown LOCK_PIN_PROVIDER '{settings.LOCK_PIN_PROVIDER}'.")


def get_pin_provider(settings: Settings | None = None) -> PinProvider:
    """Return the process-wide provider for the current lock configuration.

    One instance per configuration keeps a single HTTP pool and reuses its access token.
    """

    settings = settings or get_settings()
    key = tuple(getattr(settings, name) for name in _PROVIDER_CONFIG_FIELDS)
    with _providers_lock:
        provider = _providers.get(key)
        if provider is None:
            provider = _build_pin_provider(settings)
            _providers[key] = provider
    return provider


def close_pin_providers() -> None:
    with _providers_lock:
        providers = list(_providers.values())
        _providers.clear()
    for provider in providers:
        close = getattr(provider, "close", None)
        if close is not None:
            close()


def issue_pin(
    provider: PinProvider,
    *,
    box: Box,
    start_at: datetime,
    end_at: datetime,
    settings: Settings | None = None,
) -> str:
    """Request a PIN for the window, retrying with the same parameters.

    Raises :class:`CredentialIssueError` once the attempts are exhausted.
    """

    settings = settings or get_settings()
    attempts = max(settings.LOCK_PIN_MAX_ATTEMPTS, 1)
    last_error: Exception | None = None
    for attempt in range(1, attempts + 1):
        try:
            return provider.request_pin(box=box, start_at=start_at, end_at=end_at)
        except (httpx.HTTPError, ValueError) as exc:
            last_error = exc
            logger.warning(
                "Lock PIN request failed",
                extra={"box_code": box.code, "attempt": attempt, "max_attempts": attempts, "error": str(exc)},
            )
        if attempt < attempts:
            time.sleep(settings.LOCK_PIN_RETRY_BACKOFF_SECONDS * attempt)

    raise CredentialIssueError(
        "Lock PIN could not be issued; the booking will be retried.",
        details={"box_code": box.code, "attempts": attempts},
    ) from last_error


__all__ = [
    "IglooPinProvider",
    "PinProvider",
    "StubPinProvider",
    "close_pin_providers",
    "format_lock_time",
    "get_pin_provider",
    "issue_pin",
    "parse_pin",
]
