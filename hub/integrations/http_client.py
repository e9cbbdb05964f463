"""
Integration Hub Provider HTTP Client.

Thin httpx wrapper that every adapter uses to talk to its provider:
- Bearer-token auth header, JSON bodies
- Structured error classification at the HTTP boundary (status code and
  provider error-code fields, never message text)
- Cursor / next-link pagination with a page cap

Breaker, rate-limit suppression and retries are NOT done here; adapters
wrap calls in ProtectedCallExecutor.execute.
"""
from __future__ import annotations
from typing import Any, Iterable, Mapping, Optional
import logging

import httpx

from hub.errors import AuthenticationError, RateLimitError, UpstreamError
from hub.resilience.rate_limit import rate_limit_from_headers

logger = logging.getLogger(__name__)

DEFAULT_RATE_LIMIT_CODES = frozenset({
    "RATE_LIMIT_EXCEEDED",
    "rate_limited",
    "ratelimited",
    "TOO_MANY_REQUESTS",
})

MAX_PAGES = 100


def provider_error_code(body: Any) -> Optional[str]:
    """Pull a machine-readable error code out of a provider JSON body."""
    if not isinstance(body, Mapping):
        return None
    for key in ("error_code", "code", "errorCode"):
        value = body.get(key)
        if isinstance(value, (str, int)) and value != "":
            return str(value)
    error = body.get("error")
    if isinstance(error, Mapping):
        return provider_error_code(error)
    if isinstance(error, str):
        # OAuth style: {"error": "invalid_grant"}
        return error
    return None


def _decode(response: httpx.Response) -> Any:
    if not response.content:
        return None
    if response.headers.get("content-type", "").startswith("application/json"):
        try:
            return response.json()
        except ValueError:
            return response.text
    return response.text


class ProviderHttpClient:
    """HTTP access to one provider's REST API."""

    def __init__(
        self,
        provider: str,
        base_url: str = "",
        client: httpx.AsyncClient | None = None,
        rate_limit_codes: Iterable[str] = (),
        timeout: float = 30.0,
    ):
        self.provider = provider
        self.base_url = base_url
        self._client = client
        self.rate_limit_codes = DEFAULT_RATE_LIMIT_CODES | frozenset(rate_limit_codes)
        self.timeout = timeout

    def _url(self, path: str) -> str:
        if path.startswith(("http://", "https://")):
            return path
        return f"{self.base_url.rstrip('/')}/{path.lstrip('/')}"

    async def request(
        self,
        method: str,
        path: str,
        *,
        token: Optional[str] = None,
        params: Optional[dict[str, Any]] = None,
        json: Any = None,
        data: Optional[dict[str, Any]] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> Any:
        """Send one request and return the decoded body, or raise a classified error."""
        all_headers = {"Accept": "application/json"}
        if token:
            all_headers["Authorization"] = f"Bearer {token}"
        all_headers.update(headers or {})

        kwargs: dict[str, Any] = {
            "params": params or None,
            "headers": all_headers,
            "timeout": self.timeout,
        }
        if json is not None:
            kwargs["json"] = json
        if data is not None:
            kwargs["data"] = data

        if self._client is not None:
            response = await self._client.request(method, self._url(path), **kwargs)
        else:
            async with httpx.AsyncClient() as client:
                response = await client.request(method, self._url(path), **kwargs)

        body = _decode(response)
        if response.is_success:
            return body
        raise self.classify(response, body, operation=f"{method} {path}")

    def classify(self, response: httpx.Response, body: Any = None, operation: Optional[str] = None) -> Exception:
        """Map a non-2xx response onto the error taxonomy."""
        status = response.status_code
        code = provider_error_code(body)

        if status == 429 or (code is not None and code in self.rate_limit_codes):
            info, retry_after = rate_limit_from_headers(response.headers)
            return RateLimitError(
                f"{self.provider} rate limited ({code or status}), retry after {retry_after:.0f}s",
                retry_after=retry_after,
                provider=self.provider,
                rate_limit=info,
                provider_code=code,
            )
        if status in (401, 403):
            return AuthenticationError(
                f"{self.provider} rejected credentials (HTTP {status}, {code or 'no code'})",
                provider=self.provider,
                details={"status_code": status, "provider_code": code},
            )
        return UpstreamError(
            f"{self.provider} returned HTTP {status}" + (f" ({code})" if code else ""),
            status_code=status,
            provider_code=code,
            provider=self.provider,
        )

    async def paginate(
        self,
        path: str,
        *,
        token: Optional[str] = None,
        params: Optional[dict[str, Any]] = None,
        cursor_param: str = "cursor",
        max_pages: int = MAX_PAGES,
    ) -> list[Any]:
        """Fetch every page of a list endpoint (capped at ``max_pages``)."""
        items: list[Any] = []
        params = dict(params or {})
        next_path = path

        for _ in range(max_pages):
            body = await self.request("GET", next_path, token=token, params=params)
            items.extend(self.extract_items(body))

            cursor = self.extract_next(body)
            if cursor is None:
                return items
            if cursor.startswith(("http://", "https://")):
                next_path, params = cursor, {}
            else:
                params[cursor_param] = cursor

        logger.warning("%s pagination of %s stopped at %d pages", self.provider, path, max_pages)
        return items

    @staticmethod
    def extract_items(body: Any) -> list[Any]:
        if isinstance(body, list):
            return body
        if not isinstance(body, Mapping):
            return []
        for key in ("items", "data", "results"):
            value = body.get(key)
            if isinstance(value, list):
                return value
        return []

    @staticmethod
    def extract_next(body: Any) -> Optional[str]:
        if not isinstance(body, Mapping):
            return None
        paging = body.get("paging")
        nxt = (
            body.get("next_cursor")
            or body.get("nextPageToken")
            or (paging.get("next") if isinstance(paging, Mapping) else None)
        )
        return str(nxt) if nxt else None
