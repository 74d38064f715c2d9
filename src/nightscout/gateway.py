"""HTTP gateway to a Nightscout site.

Builds request URLs from the configured site, injects authentication and
classifies responses.  Every failure surfaces as a ``NightscoutError``
subclass; callers never see raw ``httpx`` exceptions.

Authentication:
    api-secret header — SHA-1 hex digest of the site's API_SECRET
    token query param — access token created in the Nightscout admin tools

Endpoints used:
    /api/v1/entries          — readings (sgv), calibrations (cal, mbg)
    /api/v1/treatments       — treatments and sensor start events
    /api/v1/devicestatus     — battery levels
    /api/v1/experiments/test — credential verification
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass
from typing import Any

import httpx

from src.nightscout.config_loader import SyncConfig, get_sync_config
from src.nightscout.settings import ConfigProvider, NightscoutSettings

logger = logging.getLogger("nightscout.gateway")

ENTRIES_PATH = "/api/v1/entries"
TREATMENTS_PATH = "/api/v1/treatments"
DEVICE_STATUS_PATH = "/api/v1/devicestatus"
AUTH_TEST_PATH = "/api/v1/experiments/test"


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class NightscoutError(Exception):
    """Base class for all gateway failures."""


class NotConfiguredError(NightscoutError):
    """The site URL or credentials are missing."""


class TransportError(NightscoutError):
    """The request never produced an HTTP response (DNS, connect, timeout)."""


class AuthError(NightscoutError):
    """The site rejected the configured credentials."""


class ServerError(NightscoutError):
    """The site answered with a non-2xx status."""

    def __init__(self, status_code: int, body: str) -> None:
        super().__init__(f"HTTP {status_code}: {body[:200]}")
        self.status_code = status_code
        self.body = body


class DecodeError(NightscoutError):
    """A response expected to be JSON could not be decoded."""


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class GatewayResponse:
    """A successful response.

    ``duplicate`` is True when the site reported the documents as already
    stored; the body is then an error document, not the stored records.
    """

    status_code: int
    content: bytes = b""
    duplicate: bool = False

    def json(self) -> Any:
        try:
            return json.loads(self.content)
        except ValueError as exc:
            raise DecodeError(f"Invalid JSON in response: {exc}") from exc


def hash_api_secret(secret: str) -> str:
    return hashlib.sha1(secret.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------


class NightscoutGateway:
    """Send requests to the configured Nightscout site.

    Site URL and credentials are read from the ``ConfigProvider`` on every
    request, so settings edits apply to the next call without rebuilding
    the gateway.
    """

    def __init__(
        self,
        config_provider: ConfigProvider,
        http_client: httpx.AsyncClient | None = None,
        sync_config: SyncConfig | None = None,
    ) -> None:
        """Initialize the gateway.

        Args:
            config_provider: Source of the site URL, port, secret and token.
            http_client:     Optional pre-configured httpx client (for testing).
            sync_config:     Engine config; the global one by default.
        """
        self._provider = config_provider
        self._http_client = http_client
        self._config = sync_config or get_sync_config()

    # ------------------------------------------------------------------
    # Request building
    # ------------------------------------------------------------------

    def build_url(
        self,
        path: str,
        params: dict[str, Any] | None = None,
        include_token: bool = True,
    ) -> httpx.URL:
        """Return the full URL for ``path`` on the configured site.

        The site may live under a sub-path (``https://host/ns``); ``path`` is
        appended to it.  A non-zero configured port overrides the URL's port.

        Raises:
            NotConfiguredError: If no site URL is configured or it is invalid.
        """
        settings = self._provider.settings()
        if not settings.url:
            raise NotConfiguredError("Nightscout URL is not configured")

        try:
            url = httpx.URL(settings.url)
        except httpx.InvalidURL as exc:
            raise NotConfiguredError(f"Invalid Nightscout URL: {exc}") from exc

        url = url.copy_with(path=url.path.rstrip("/") + path)
        if settings.port:
            url = url.copy_with(port=settings.port)

        query = {k: str(v) for k, v in (params or {}).items()}
        if include_token and settings.token:
            query["token"] = settings.token
        if query:
            url = url.copy_merge_params(query)
        return url

    def _headers(self, settings: NightscoutSettings, auth_test: bool = False) -> dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if settings.api_secret:
            headers["api-secret"] = hash_api_secret(settings.api_secret)
        elif auth_test and settings.token:
            # Credential test only: token sent as-is when no secret is set
            headers["api-secret"] = settings.token
        return headers

    def _require_credentials(self) -> NightscoutSettings:
        settings = self._provider.settings()
        if not settings.url:
            raise NotConfiguredError("Nightscout URL is not configured")
        if not (settings.api_secret or settings.token):
            raise NotConfiguredError("Neither API secret nor token is configured")
        return settings

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _send(
        self,
        method: str,
        url: httpx.URL,
        headers: dict[str, str],
        payload: Any = None,
    ) -> httpx.Response:
        timeout = self._config.gateway.timeout_seconds
        content = json.dumps(payload).encode("utf-8") if payload is not None else None
        try:
            if self._http_client:
                return await self._http_client.request(
                    method, url, headers=headers, content=content, timeout=timeout
                )
            async with httpx.AsyncClient(timeout=timeout) as client:
                return await client.request(method, url, headers=headers, content=content)
        except httpx.RequestError as exc:
            raise TransportError(f"{method} {url.path} failed: {exc!r}") from exc

    def _is_duplicate(self, response: httpx.Response) -> bool:
        if response.status_code != 500:
            return False
        try:
            body = response.json()
        except ValueError:
            return False
        if not isinstance(body, dict):
            return False
        description = body.get("description")
        return (
            isinstance(description, dict)
            and description.get("code") == self._config.gateway.duplicate_error_code
        )

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def upload(
        self,
        path: str,
        payload: Any,
        method: str = "POST",
        duplicate_is_success: bool = False,
    ) -> GatewayResponse:
        """Send ``payload`` as JSON to ``path``.

        Args:
            path:                 API path, e.g. ``ENTRIES_PATH``.
            payload:              JSON-serialisable body (list or dict).
            method:               ``POST`` or ``PUT``.
            duplicate_is_success: Treat the site's duplicate-document error
                                  as success (``GatewayResponse.duplicate``).

        Raises:
            NotConfiguredError: Site URL or credentials missing.
            TransportError:     No HTTP response.
            ServerError:        Non-2xx response.
        """
        settings = self._require_credentials()
        url = self.build_url(path)
        logger.debug("%s %s: %s", method, path, payload)

        response = await self._send(method, url, self._headers(settings), payload)

        if response.is_success:
            return GatewayResponse(response.status_code, response.content)
        if duplicate_is_success and self._is_duplicate(response):
            logger.info("%s %s: documents already stored on the site", method, path)
            return GatewayResponse(response.status_code, response.content, duplicate=True)
        raise ServerError(response.status_code, response.text)

    async def fetch(self, path: str, params: dict[str, Any] | None = None) -> GatewayResponse:
        """GET ``path`` with query ``params``.

        Raises:
            NotConfiguredError, TransportError, ServerError
        """
        settings = self._require_credentials()
        url = self.build_url(path, params)
        response = await self._send("GET", url, self._headers(settings))
        if not response.is_success:
            raise ServerError(response.status_code, response.text)
        return GatewayResponse(response.status_code, response.content)

    async def verify_credentials(self) -> None:
        """Check the configured URL and credentials against the site.

        Raises:
            NotConfiguredError: Site URL or credentials missing.
            TransportError:     No HTTP response.
            AuthError:          The site rejected the request; the message is
                                the response body.
        """
        settings = self._require_credentials()
        url = self.build_url(AUTH_TEST_PATH, include_token=False)
        response = await self._send("GET", url, self._headers(settings, auth_test=True))
        if not response.is_success:
            logger.warning("Credential check failed with HTTP %s", response.status_code)
            raise AuthError(response.text or f"HTTP {response.status_code}")
        logger.info("Credential check succeeded for %s", url.host)
