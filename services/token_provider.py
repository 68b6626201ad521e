"""Bearer credentials for the generation gateway."""
from __future__ import annotations

import json
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

import google.auth.exceptions
from google.auth.transport.requests import Request
from google.oauth2 import service_account

from config import GOOGLE_CREDENTIALS_JSON, TOKEN_REFRESH_MARGIN_S, VERTEX_ACCESS_TOKEN
from errors import TransportError
from observability.logger import get_logger

LOGGER = get_logger("genjobs.services.token_provider")

CLOUD_PLATFORM_SCOPES = ("https://www.googleapis.com/auth/cloud-platform",)
DEFAULT_TOKEN_LIFETIME_S = 3600.0


@dataclass(frozen=True)
class AccessToken:
    token: str
    expires_at: float


class TokenProvider:
    """Interface: ``get_token()`` returns a usable bearer token and its expiry."""

    def get_token(self) -> AccessToken:
        raise NotImplementedError


class StaticTokenProvider(TokenProvider):
    """Pre-issued token, e.g. from ``gcloud auth print-access-token``."""

    def __init__(self, token: str, *, ttl_s: float = DEFAULT_TOKEN_LIFETIME_S, clock: Callable[[], float] = time.time) -> None:
        if not token:
            raise ValueError("token must not be empty")
        self._token = token
        self._ttl_s = ttl_s
        self._clock = clock

    def get_token(self) -> AccessToken:
        return AccessToken(token=self._token, expires_at=self._clock() + self._ttl_s)


def _service_account_credentials(info: Dict[str, Any]) -> service_account.Credentials:
    return service_account.Credentials.from_service_account_info(info, scopes=list(CLOUD_PLATFORM_SCOPES))


class GoogleTokenProvider(TokenProvider):
    """Service-account token cache refreshed ahead of expiry.

    The cached token is reused while ``clock() < expires_at - refresh_margin_s``.
    A failed refresh clears the cache and raises :class:`errors.TransportError`.
    ``clock`` returns epoch seconds, the scale of the credentials' expiry.
    """

    def __init__(
        self,
        credentials_json: str,
        *,
        clock: Callable[[], float] = time.time,
        refresh_margin_s: float = TOKEN_REFRESH_MARGIN_S,
        credentials_factory: Callable[[Dict[str, Any]], Any] = _service_account_credentials,
    ) -> None:
        self._credentials_json = credentials_json or ""
        self._clock = clock
        self._refresh_margin_s = max(0.0, float(refresh_margin_s))
        self._credentials_factory = credentials_factory
        self._cached: Optional[AccessToken] = None
        self._lock = threading.Lock()

    def get_token(self) -> AccessToken:
        with self._lock:
            now = self._clock()
            cached = self._cached
            if cached and now < cached.expires_at - self._refresh_margin_s:
                return cached
            try:
                self._cached = self._fetch(now)
            except Exception:
                self._cached = None
                raise
            LOGGER.info("access_token_refreshed", extra={"expires_in_s": round(self._cached.expires_at - now, 1)})
            return self._cached

    def invalidate(self) -> None:
        with self._lock:
            self._cached = None

    def _load_info(self) -> Dict[str, Any]:
        if not self._credentials_json.strip():
            raise TransportError("GOOGLE_CREDENTIALS_JSON environment variable is not set or empty.")
        try:
            info = json.loads(self._credentials_json)
        except ValueError as exc:
            raise TransportError(
                "Failed to parse GOOGLE_CREDENTIALS_JSON. Please ensure it's a valid JSON string."
            ) from exc
        if not isinstance(info, dict):
            raise TransportError("GOOGLE_CREDENTIALS_JSON must contain a JSON object.")
        return info

    def _fetch(self, now: float) -> AccessToken:
        info = self._load_info()
        try:
            credentials = self._credentials_factory(info)
            credentials.refresh(Request())
        except (google.auth.exceptions.GoogleAuthError, ValueError) as exc:
            LOGGER.warning("access_token_refresh_failed", extra={"error": str(exc)})
            raise TransportError(f"Failed to get Google Auth Token: {exc}") from exc
        token = getattr(credentials, "token", None)
        if not token:
            raise TransportError("Failed to retrieve access token; token response is invalid.")
        expiry: Optional[datetime] = getattr(credentials, "expiry", None)
        if expiry is None:
            return AccessToken(token=token, expires_at=now + DEFAULT_TOKEN_LIFETIME_S)
        # google-auth reports expiry as naive UTC
        return AccessToken(token=token, expires_at=expiry.replace(tzinfo=timezone.utc).timestamp())


def build_token_provider() -> TokenProvider:
    if VERTEX_ACCESS_TOKEN:
        return StaticTokenProvider(VERTEX_ACCESS_TOKEN)
    return GoogleTokenProvider(GOOGLE_CREDENTIALS_JSON)


__all__ = [
    "AccessToken",
    "TokenProvider",
    "StaticTokenProvider",
    "GoogleTokenProvider",
    "build_token_provider",
]
