"""
Shared REST plumbing for the Azure clients.

Every remote service this tool talks to (Resource Manager, Microsoft Graph,
the AVD control plane, Key Vault) is reached over plain HTTPS with a bearer
token from ``azure-identity``.  This module holds the pieces they share:

- token acquisition and caching (refreshed 5 minutes before expiry)
- session checks with an interactive-login fallback
- GET with bounded timeouts and retries for idempotent reads
- single-shot mutating calls (PUT / PATCH / POST / DELETE), never retried
- ``AzureApiError`` carrying the HTTP status and body of a failed call
"""
from __future__ import annotations

import logging
import os
import time
from datetime import datetime, timezone, timedelta
from typing import Any, Iterable

import requests
from azure.core.exceptions import ClientAuthenticationError
from azure.identity import DefaultAzureCredential, InteractiveBrowserCredential

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Defaults -- overridable via env vars or constructor params
# ---------------------------------------------------------------------------
DEFAULT_REQUEST_TIMEOUT = int(os.environ.get("PAW_REQUEST_TIMEOUT", "30"))  # seconds
DEFAULT_READ_RETRIES = int(os.environ.get("PAW_READ_RETRIES", "3"))
DEFAULT_RETRY_BACKOFF = 2  # seconds, multiplied by the attempt number

RETRYABLE_STATUS_CODES = (429, 500, 502, 503, 504)

ARM_ENDPOINT = "https://management.azure.com"
ARM_SCOPE = f"{ARM_ENDPOINT}/.default"
GRAPH_ENDPOINT = "https://graph.microsoft.com/v1.0"
GRAPH_SCOPE = "https://graph.microsoft.com/.default"
KEYVAULT_SCOPE = "https://vault.azure.net/.default"


class AzureApiError(Exception):
    """A remote call returned a non-success status (or never got an answer)."""

    def __init__(self, message: str, status_code: int | None = None, text: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.text = text

    @classmethod
    def from_response(cls, action: str, response) -> "AzureApiError":
        return cls(
            f"{action} failed: {response.status_code} {response.text}",
            status_code=response.status_code,
            text=response.text,
        )


class AzureRestClient:
    """Base class for a token-authenticated Azure REST client.

    Parameters
    ----------
    scope:
        OAuth scope requested for this service (e.g. ``ARM_SCOPE``).
    credential:
        Any ``azure-identity`` credential.  Defaults to
        ``DefaultAzureCredential`` (env vars, managed identity, ``az login``).
    tenant_id:
        Tenant used when an interactive login is needed.
    timeout:
        Per-request timeout in seconds.
    read_retries:
        Attempts made for idempotent GETs before giving up.
    retry_backoff:
        Base sleep between read attempts.
    """

    service_name = "Azure"

    def __init__(
        self,
        scope: str,
        credential=None,
        tenant_id: str | None = None,
        timeout: int = DEFAULT_REQUEST_TIMEOUT,
        read_retries: int = DEFAULT_READ_RETRIES,
        retry_backoff: float = DEFAULT_RETRY_BACKOFF,
    ):
        self.scope = scope
        self.tenant_id = tenant_id
        self.timeout = timeout
        self.read_retries = max(1, read_retries)
        self.retry_backoff = retry_backoff

        if credential is not None:
            self.credential = credential
        else:
            self.credential = DefaultAzureCredential()

        self._token_cache: str | None = None
        self._token_expires: datetime | None = None

    # -- auth --------------------------------------------------------------

    def _get_token(self) -> str:
        """Get an access token for this client's scope (cached)."""
        if self._token_cache and self._token_expires:
            if datetime.now(timezone.utc) < self._token_expires:
                return self._token_cache

        token = self.credential.get_token(self.scope)
        self._token_cache = token.token
        self._token_expires = datetime.fromtimestamp(token.expires_on, tz=timezone.utc) - timedelta(minutes=5)
        return self._token_cache

    def has_live_session(self) -> bool:
        """True when a token for this scope can be obtained without prompting."""
        try:
            self._get_token()
            return True
        except ClientAuthenticationError as exc:
            logger.info("%s: no live session (%s)", self.service_name, exc)
            return False

    def ensure_session(self, interactive: bool = True) -> bool:
        """Make sure this client is authenticated.

        Returns ``True`` when an interactive login was performed and
        ``False`` when an existing session was reused, so re-running against
        an already-authenticated client is a no-op.

        Raises
        ------
        ClientAuthenticationError
            When there is no session and interactive login is disabled or fails.
        """
        if self.has_live_session():
            return False
        if not interactive:
            raise ClientAuthenticationError(
                message=f"{self.service_name}: no live session and interactive login disabled"
            )

        logger.info("%s: starting interactive login", self.service_name)
        kwargs = {"tenant_id": self.tenant_id} if self.tenant_id else {}
        self.credential = InteractiveBrowserCredential(**kwargs)
        self._token_cache = None
        self._token_expires = None
        self._get_token()
        return True

    def _headers(self, extra: dict[str, str] | None = None) -> dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self._get_token()}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if extra:
            headers.update(extra)
        return headers

    # -- reads (retried) ---------------------------------------------------

    def _get(
        self,
        url: str,
        params: dict[str, Any] | None = None,
        *,
        allow_404: bool = False,
        headers: dict[str, str] | None = None,
    ) -> dict[str, Any] | None:
        """GET *url* and return the decoded JSON body.

        Timeouts, connection errors and throttling/5xx answers are retried up
        to ``read_retries`` times.  A 404 returns ``None`` when *allow_404* is
        set and raises otherwise.
        """
        last_error = ""
        for attempt in range(1, self.read_retries + 1):
            try:
                response = requests.get(
                    url,
                    headers=self._headers(headers),
                    params=params,
                    timeout=self.timeout,
                )
            except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as exc:
                last_error = str(exc) or exc.__class__.__name__
                logger.warning("GET %s attempt %d/%d failed: %s", url, attempt, self.read_retries, last_error)
                self._sleep_before_retry(attempt)
                continue

            if response.status_code in RETRYABLE_STATUS_CODES and attempt < self.read_retries:
                last_error = f"{response.status_code} {response.text}"
                logger.warning("GET %s attempt %d/%d returned %s", url, attempt, self.read_retries, response.status_code)
                self._sleep_before_retry(attempt)
                continue

            if response.status_code == 404 and allow_404:
                return None
            if response.status_code != 200:
                raise AzureApiError.from_response(f"GET {url}", response)
            return response.json()

        raise AzureApiError(f"GET {url} failed after {self.read_retries} attempts: {last_error}")

    def _get_all(
        self,
        url: str,
        params: dict[str, Any] | None = None,
        *,
        headers: dict[str, str] | None = None,
    ) -> list[dict[str, Any]]:
        """GET a collection and follow ``nextLink`` / ``@odata.nextLink`` pages."""
        items: list[dict[str, Any]] = []
        next_url: str | None = url
        next_params = params
        while next_url:
            body = self._get(next_url, next_params, headers=headers) or {}
            items.extend(body.get("value", []))
            next_url = body.get("nextLink") or body.get("@odata.nextLink")
            # next links already carry the query string
            next_params = None
        return items

    def _sleep_before_retry(self, attempt: int) -> None:
        if attempt < self.read_retries and self.retry_backoff:
            time.sleep(self.retry_backoff * attempt)

    # -- writes (never retried) -------------------------------------------

    def _send(
        self,
        method: str,
        url: str,
        body: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
        *,
        accept: Iterable[int] = (),
        headers: dict[str, str] | None = None,
    ):
        """Issue a single mutating request and return the response.

        2xx answers and any status listed in *accept* are returned to the
        caller; everything else raises ``AzureApiError``.
        """
        sender = {
            "PUT": requests.put,
            "PATCH": requests.patch,
            "POST": requests.post,
            "DELETE": requests.delete,
        }[method]

        try:
            response = sender(
                url,
                json=body,
                headers=self._headers(headers),
                params=params,
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as exc:
            raise AzureApiError(f"{method} {url} failed: {exc}") from exc

        if 200 <= response.status_code < 300 or response.status_code in tuple(accept):
            return response
        raise AzureApiError.from_response(f"{method} {url}", response)

    @staticmethod
    def _json_or_empty(response) -> dict[str, Any]:
        if response.status_code == 204 or not response.content:
            return {}
        return response.json()
