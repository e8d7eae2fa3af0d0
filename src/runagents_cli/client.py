"""Synchronous HTTP client for the RunAgents platform API."""

from __future__ import annotations

from dataclasses import dataclass
from time import monotonic
from typing import Any, Mapping, MutableMapping, Optional, Union

import httpx

from .logging import get_logger, redact_headers


DEFAULT_TIMEOUT = 30.0

_logger = get_logger("runagents.client")


class ClientError(Exception):
    """Base class for failures that prevent a response from being received."""


class RequestBuildError(ClientError):
    """Raised when a request cannot be constructed (bad URL, bad payload)."""


class NetworkError(ClientError):
    """Raised on transport failures: DNS, refused connections, timeouts, TLS."""


@dataclass(frozen=True)
class Success:
    """A response with a status code below 400."""

    status_code: int
    body: bytes


@dataclass(frozen=True)
class ApiError:
    """A response with a status code of 400 or above."""

    status_code: int
    body: str

    def __str__(self) -> str:
        return f"API error (HTTP {self.status_code}): {self.body}"


Result = Union[Success, ApiError]


class APIClient:
    """
    HTTP client bound to one endpoint and an optional API key.

    Every call performs exactly one blocking request and returns a tagged
    ``Success`` or ``ApiError``. Responses are classified purely by status
    code; bodies are passed through untouched.

    Usage:
        with APIClient("http://localhost:8092", api_key="...") as client:
            result = client.get("/api/agents")
    """

    def __init__(
        self,
        endpoint: str,
        api_key: str = "",
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        headers: MutableMapping[str, str] = {}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self.endpoint = endpoint
        self.timeout = timeout
        try:
            self._client = httpx.Client(
                base_url=endpoint,
                headers=headers,
                timeout=timeout,
                transport=transport,
                follow_redirects=True,
            )
        except httpx.InvalidURL as exc:
            raise RequestBuildError(f"failed to create request: {exc}") from exc

    def __enter__(self) -> "APIClient":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def close(self) -> None:
        self._client.close()

    def request(
        self,
        method: str,
        path: str,
        payload: Any = None,
        params: Optional[Mapping[str, str]] = None,
    ) -> Result:
        """
        Perform one request and classify the response.

        Args:
            method: HTTP method (GET, POST, PATCH, DELETE)
            path: API path appended to the endpoint (e.g., /api/agents)
            payload: JSON-serializable body; ``None`` sends no body at all
            params: Optional query parameters

        Returns:
            ``Success`` with the raw body for status < 400, else ``ApiError``

        Raises:
            RequestBuildError: The URL or payload could not be encoded
            NetworkError: The request did not complete
        """
        try:
            if payload is None:
                request = self._client.build_request(method, path, params=params)
            else:
                request = self._client.build_request(method, path, params=params, json=payload)
        except (httpx.InvalidURL, TypeError, ValueError) as exc:
            raise RequestBuildError(f"failed to create request: {exc}") from exc

        _logger.debug(
            "API request",
            extra={
                "method": method,
                "url": str(request.url),
                "headers": redact_headers(dict(request.headers)),
            },
        )

        deadline = monotonic() + self.timeout
        try:
            response = self._client.send(request, stream=True)
            try:
                content = self._read_body(response, deadline)
            finally:
                response.close()
        except httpx.RequestError as exc:
            _logger.debug(
                "API request failed",
                extra={"method": method, "path": path, "error": str(exc)},
            )
            raise NetworkError(f"request failed: {exc}") from exc

        _logger.debug(
            "API response",
            extra={
                "method": method,
                "path": path,
                "status_code": response.status_code,
                "bytes": len(content),
            },
        )

        if response.status_code >= 400:
            text = content.decode(response.encoding or "utf-8", errors="replace")
            return ApiError(response.status_code, text)
        return Success(response.status_code, content)

    def _read_body(self, response: httpx.Response, deadline: float) -> bytes:
        """Read the body in chunks, giving up once the overall deadline passes."""
        chunks = []
        for chunk in response.iter_bytes():
            chunks.append(chunk)
            if monotonic() > deadline:
                raise httpx.ReadTimeout(
                    f"response not completed within {self.timeout:g}s",
                    request=response.request,
                )
        return b"".join(chunks)

    def get(self, path: str, params: Optional[Mapping[str, str]] = None) -> Result:
        """Make a GET request."""
        return self.request("GET", path, params=params)

    def post(self, path: str, payload: Any = None) -> Result:
        """Make a POST request."""
        return self.request("POST", path, payload=payload)

    def patch(self, path: str, payload: Any = None) -> Result:
        """Make a PATCH request."""
        return self.request("PATCH", path, payload=payload)

    def delete(self, path: str) -> Result:
        """Make a DELETE request. Callers ignore the body of a success."""
        return self.request("DELETE", path)
