"""
Shared Provider Contract v1.0.0

Everything courier and tax adapters have in common:
- credential presence checks (is_configured)
- connection tests that report instead of raising
- OAuth client-credentials token cache, refreshed ahead of expiry
- one HTTP helper that turns vendor/network failures into UpstreamError
"""
import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Mapping, Optional, Tuple

import httpx

from integration_engine.core.config import settings
from integration_engine.core.exceptions import (
    AuthenticationError,
    IntegrationError,
    ProviderTimeoutError,
    UpstreamError,
)

logger = logging.getLogger(__name__)

# Vendor error bodies are truncated before logging
MAX_LOGGED_BODY = 500


@dataclass
class TestConnectionResult:
    """Outcome of a minimal live call against a provider."""
    __test__ = False  # not a pytest test class

    success: bool
    message: str
    details: Optional[Dict[str, Any]] = None
    duration_ms: Optional[int] = None


@dataclass
class OperationResult:
    """Success flag plus message for fire-and-report operations (commit, void, cancel)."""
    success: bool
    message: str
    details: Optional[Dict[str, Any]] = None


@dataclass
class OAuthToken:
    access_token: str
    expires_at: datetime
    token_type: str = "Bearer"

    @classmethod
    def from_expires_in(cls, access_token: str, expires_in: int, token_type: str = "Bearer") -> "OAuthToken":
        return cls(
            access_token=access_token,
            expires_at=datetime.now(timezone.utc) + timedelta(seconds=expires_in),
            token_type=token_type,
        )

    def is_fresh(self, margin_seconds: int) -> bool:
        """True while the token is outside the refresh margin."""
        return datetime.now(timezone.utc) < self.expires_at - timedelta(seconds=margin_seconds)


class BaseProvider(ABC):
    """
    Base class for every third-party adapter.

    Args:
        credentials: Decrypted credential mapping
        is_test_mode: Use the vendor's sandbox endpoints
        options: Non-secret integration settings
        transport: Optional httpx transport (tests inject MockTransport)
        timeout: HTTP timeout in seconds
    """

    provider_id: str = ""
    provider_name: str = ""
    required_credentials: Tuple[str, ...] = ()
    optional_credentials: Tuple[str, ...] = ()

    def __init__(
        self,
        credentials: Optional[Mapping[str, Any]] = None,
        is_test_mode: bool = True,
        options: Optional[Mapping[str, Any]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: Optional[float] = None,
    ):
        self.credentials: Dict[str, Any] = dict(credentials or {})
        self.is_test_mode = is_test_mode
        self.options: Dict[str, Any] = dict(options or {})
        self._transport = transport
        self._timeout = timeout or settings.PROVIDER_HTTP_TIMEOUT_SECONDS
        self._token: Optional[OAuthToken] = None
        self._token_lock = asyncio.Lock()

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}(test_mode={self.is_test_mode})>"

    @property
    @abstractmethod
    def base_url(self) -> str:
        """Vendor API root for the current mode."""
        pass

    def credential(self, name: str) -> str:
        value = self.credentials.get(name)
        return value.strip() if isinstance(value, str) else ""

    def is_configured(self) -> bool:
        """Every required credential is present and non-blank."""
        return all(self.credential(name) for name in self.required_credentials)

    def missing_credentials(self) -> Tuple[str, ...]:
        return tuple(name for name in self.required_credentials if not self.credential(name))

    # ==================== Connection Test ====================

    async def test_connection(self) -> TestConnectionResult:
        """Run one minimal live call. Never raises."""
        started = time.monotonic()

        if not self.is_configured():
            result = TestConnectionResult(
                success=False,
                message=f"Missing required credentials: {', '.join(self.missing_credentials())}",
            )
        else:
            try:
                result = await self._ping()
            except IntegrationError as e:
                result = TestConnectionResult(success=False, message=e.message, details=e.details)
            except Exception as e:
                logger.error(f"{self.provider_name} connection test crashed: {type(e).__name__}: {e}")
                result = TestConnectionResult(success=False, message=f"Unexpected error: {e}")

        result.duration_ms = int((time.monotonic() - started) * 1000)
        return result

    @abstractmethod
    async def _ping(self) -> TestConnectionResult:
        """Provider-specific minimal live call."""
        pass

    # ==================== OAuth Token Cache ====================

    async def _fetch_token(self) -> OAuthToken:
        """Acquire a fresh token. OAuth adapters override this."""
        raise NotImplementedError(f"{self.provider_name} does not use OAuth")

    async def get_access_token(self) -> str:
        """Return a cached token, refreshing it inside the margin before expiry."""
        margin = settings.OAUTH_REFRESH_MARGIN_SECONDS
        if self._token and self._token.is_fresh(margin):
            return self._token.access_token

        async with self._token_lock:
            # Another caller may have refreshed while we waited
            if self._token and self._token.is_fresh(margin):
                return self._token.access_token

            token = await self._fetch_token()
            self._token = token
            logger.info(f"{self.provider_name} OAuth token obtained, expires at {token.expires_at.isoformat()}")
            return token.access_token

    def invalidate_token(self) -> None:
        self._token = None

    async def _request_token(
        self,
        path: str,
        data: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        default_expires_in: int = 3600,
    ) -> OAuthToken:
        """POST a token request and parse the standard access_token/expires_in reply."""
        try:
            async with self._client() as client:
                response = await client.post(path, data=data, headers=headers)
        except httpx.HTTPError as e:
            logger.error(f"{self.provider_name} OAuth request failed: {type(e).__name__}: {e}")
            raise AuthenticationError(
                f"Network error during {self.provider_name} authentication: {e}",
                provider=self.provider_id,
            )

        if response.status_code != 200:
            logger.error(
                f"{self.provider_name} OAuth failed: {response.status_code} - {response.text[:MAX_LOGGED_BODY]}"
            )
            raise AuthenticationError(
                f"Failed to authenticate with {self.provider_name}",
                provider=self.provider_id,
                details={"status_code": response.status_code},
            )

        try:
            payload = response.json()
        except ValueError:
            raise AuthenticationError(
                f"{self.provider_name} returned an unreadable token response",
                provider=self.provider_id,
            )

        access_token = payload.get("access_token") or payload.get("token")
        if not access_token:
            raise AuthenticationError(
                f"{self.provider_name} token response did not include a token",
                provider=self.provider_id,
            )

        expires_in = int(payload.get("expires_in") or default_expires_in)
        return OAuthToken.from_expires_in(access_token, expires_in, payload.get("token_type") or "Bearer")

    # ==================== HTTP ====================

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self._timeout,
            transport=self._transport,
            headers={"User-Agent": settings.HTTP_USER_AGENT},
        )

    async def _auth_headers(self) -> Dict[str, str]:
        """Headers authenticating one request. Static-credential adapters override."""
        token = await self.get_access_token()
        return {"Authorization": f"Bearer {token}"}

    def _extract_error_message(self, payload: Any) -> Optional[str]:
        """Pull a human-readable message out of a vendor error body."""
        if not isinstance(payload, dict):
            return None
        for key in ("message", "detail", "error_description", "error"):
            value = payload.get(key)
            if isinstance(value, str) and value:
                return value
            if isinstance(value, dict) and value.get("message"):
                return str(value["message"])
        errors = payload.get("errors")
        if isinstance(errors, list) and errors and isinstance(errors[0], dict):
            return errors[0].get("message") or errors[0].get("detail")
        return None

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        data: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        authenticate: bool = True,
    ) -> Any:
        """
        Make an authenticated API request.

        Returns the decoded JSON body ({} for empty responses).

        Raises:
            AuthenticationError: token acquisition failed
            ProviderTimeoutError: the HTTP call timed out
            UpstreamError: network failure, status >= 400 or unreadable body
        """
        request_headers = {"Accept": "application/json"}
        if authenticate:
            request_headers.update(await self._auth_headers())
        if headers:
            request_headers.update(headers)

        try:
            async with self._client() as client:
                response = await client.request(
                    method.upper(),
                    path,
                    json=json,
                    data=data,
                    params=params,
                    headers=request_headers,
                )
        except httpx.TimeoutException as e:
            logger.error(f"{self.provider_name} API {method} {path} timed out")
            raise ProviderTimeoutError(
                f"{self.provider_name} request timed out",
                provider=self.provider_id,
            ) from e
        except httpx.HTTPError as e:
            logger.error(f"{self.provider_name} API request failed: {type(e).__name__}: {e}")
            raise UpstreamError(
                f"Network error calling {self.provider_name}: {e}",
                provider=self.provider_id,
                code="NETWORK_ERROR",
            ) from e

        logger.debug(f"{self.provider_name} API {method} {path} -> {response.status_code}")

        if response.status_code >= 400:
            try:
                error_data = response.json()
            except ValueError:
                error_data = {"raw": response.text[:MAX_LOGGED_BODY]}

            if response.status_code == 401:
                self.invalidate_token()

            error_msg = self._extract_error_message(error_data) or f"{self.provider_name} API error"
            logger.error(f"{self.provider_name} API error: {response.status_code} - {error_msg[:MAX_LOGGED_BODY]}")
            raise UpstreamError(
                error_msg,
                provider=self.provider_id,
                status_code=response.status_code,
                details={"response": error_data},
            )

        if response.status_code == 204 or not response.content:
            return {}

        try:
            return response.json()
        except ValueError:
            raise UpstreamError(
                f"{self.provider_name} returned a non-JSON response",
                provider=self.provider_id,
                status_code=response.status_code,
            )
