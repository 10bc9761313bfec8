"""PIM API client - GraphQL transport and response handling."""

import json
import sys
from datetime import datetime
from typing import Any

import httpx

from ..models import (
    APIConfiguration,
    AuthenticationError,
    NetworkError,
    QueryError,
    RateLimitError,
    ServerFaultError,
)

# Messages the API edge produces for faults that clear up on their own, even
# when the HTTP exchange itself looked fine.
TRANSIENT_FAULT_SIGNATURES = ("socket hang up", "ECONNRESET", "502 Bad Gateway")


def log_event(message: str, component: str = "CLIENT") -> None:
    """Log an event to stderr with timestamp and consistent formatting."""
    timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    print(f"[{timestamp}] [{component}] {message}", file=sys.stderr, flush=True)


def _log(message: str, component: str = "CLIENT") -> None:
    log_event(message, component)


class _ClientLogger:
    """Lightweight logger that delegates to log_event.

    Used by the client modules instead of the logging module, which the MCP
    stdio transport swallows. Methods accept arbitrary *args/**kwargs for
    compatibility but only the first message argument is used.
    """

    def __init__(self, component: str = "CLIENT") -> None:
        self._component = component

    def _msg(self, msg: object) -> str:
        try:
            return str(msg)
        except Exception:
            return repr(msg)

    def info(self, msg: object, *args: object, **kwargs: object) -> None:  # noqa: D401
        _log(self._msg(msg), self._component)

    def warning(self, msg: object, *args: object, **kwargs: object) -> None:
        _log(f"WARNING: {self._msg(msg)}", self._component)

    def error(self, msg: object, *args: object, **kwargs: object) -> None:
        _log(f"ERROR: {self._msg(msg)}", self._component)

    def debug(self, msg: object, *args: object, **kwargs: object) -> None:
        _log(f"DEBUG: {self._msg(msg)}", self._component)


def is_transient_fault(message: str) -> bool:
    return any(sig in message for sig in TRANSIENT_FAULT_SIGNATURES)


class PIMClientCore:
    """GraphQL transport against the PIM API.

    call_api() performs exactly one HTTP exchange. It never retries; retry,
    backoff and concurrency belong to the RequestScheduler.
    """

    def __init__(self, config: APIConfiguration):
        self.config = config
        self.api_url = config.api_url
        self._client: httpx.AsyncClient | None = None

    def _auth_headers(self) -> dict[str, str]:
        if self.config.session_id:
            return {"Cookie": f"connect.sid={self.config.session_id}"}
        headers = {
            "X-Crystallize-Access-Token-Id": self.config.access_token_id,
            "X-Crystallize-Access-Token-Secret": self.config.access_token_secret.get_secret_value(),
        }
        if self.config.static_auth_token:
            headers["X-Crystallize-Static-Auth-Token"] = self.config.static_auth_token
        return headers

    @property
    def client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None:
            headers = {
                "Content-Type": "application/json",
                "Accept": "application/json",
                **self._auth_headers(),
            }
            self._client = httpx.AsyncClient(
                headers=headers,
                timeout=httpx.Timeout(self.config.timeout),
                follow_redirects=True,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "PIMClientCore":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    async def _handle_response(self, response: httpx.Response) -> dict[str, Any]:
        """Handle API response and errors."""
        if response.status_code in (401, 403):
            raise AuthenticationError("Invalid access token or unauthorized access")

        if response.status_code == 429:
            retry_after = response.headers.get("Retry-After")
            raise RateLimitError(retry_after=int(retry_after) if retry_after and retry_after.isdigit() else None)

        if response.status_code == 502:
            raise ServerFaultError(f"502 Bad Gateway: {response.text[:200]}")

        if response.status_code >= 500:
            raise NetworkError(f"Server error: {response.status_code}")

        try:
            payload = response.json()
        except json.JSONDecodeError as err:
            if response.status_code >= 400:
                raise QueryError(f"API error: {response.status_code}") from err
            raise ServerFaultError("Invalid response format from API") from err

        errors = payload.get("errors") if isinstance(payload, dict) else None
        if errors:
            message = "; ".join(str(e.get("message", e)) for e in errors if isinstance(e, dict)) or json.dumps(errors)
            if is_transient_fault(message):
                raise ServerFaultError(message)
            raise QueryError(message, errors)

        if response.status_code >= 400:
            raise QueryError(f"API error: {response.status_code}")

        return payload.get("data") or {}

    async def call_api(self, query: str, variables: dict[str, Any] | None = None) -> dict[str, Any]:
        """POST one GraphQL document and return its `data`."""
        try:
            response = await self.client.post(
                self.api_url, json={"query": query, "variables": variables or {}}
            )
        except httpx.RemoteProtocolError as err:
            # Server closed the connection mid-exchange: the socket hang up case
            raise ServerFaultError(f"reason: socket hang up ({err})") from err
        except httpx.TransportError as err:
            message = str(err) or type(err).__name__
            if is_transient_fault(message):
                raise ServerFaultError(message) from err
            raise NetworkError(message) from err
        return await self._handle_response(response)
