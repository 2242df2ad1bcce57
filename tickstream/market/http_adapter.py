"""Shared plumbing for adapters that speak JSON over HTTPS."""

from __future__ import annotations

import logging
from abc import abstractmethod
from typing import Any

import httpx

from .interface import FailureKind, ProviderAdapter, ProviderResult
from .models import Instrument

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 8.0


class MalformedPayload(ValueError):
    """Raised by `_parse` when a payload is missing a required field."""


class HttpJsonAdapter(ProviderAdapter):
    """ProviderAdapter that issues one GET and parses a JSON body.

    Subclasses provide `_request` (path + query params) and `_parse`
    (payload -> ProviderResult). Status codes, timeouts and decode errors
    are classified here so every HTTP provider fails the same way.

    The httpx client is shared across adapters and owned by the caller.
    """

    base_url: str = ""

    def __init__(
        self,
        client: httpx.AsyncClient,
        base_url: str | None = None,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self._client = client
        self._base_url = (base_url or self.base_url).rstrip("/")
        self._timeout = timeout

    async def fetch(self, instrument: Instrument, symbol: str) -> ProviderResult:
        path, params = self._request(symbol)
        url = f"{self._base_url}{path}"
        try:
            response = await self._client.get(url, params=params, timeout=self._timeout)
        except httpx.TimeoutException as e:
            return self._failure(FailureKind.TIMEOUT, f"{type(e).__name__} after {self._timeout}s")
        except httpx.HTTPError as e:
            return self._failure(FailureKind.NETWORK_ERROR, f"{type(e).__name__}: {e}")

        if response.status_code == 429:
            return self._failure(FailureKind.RATE_LIMITED, "HTTP 429")
        if response.status_code == 404:
            return self._failure(FailureKind.NOT_FOUND, "HTTP 404")
        if not response.is_success:
            return self._failure(FailureKind.HTTP_ERROR, f"HTTP {response.status_code}")

        try:
            payload = response.json()
        except ValueError as e:
            return self._failure(FailureKind.MALFORMED, f"invalid JSON: {e}")

        try:
            return self._parse(instrument, symbol, payload)
        except (MalformedPayload, KeyError, TypeError, ValueError) as e:
            logger.debug("%s: malformed payload for %s: %r", self.name, symbol, payload)
            return self._failure(FailureKind.MALFORMED, str(e))

    @abstractmethod
    def _request(self, symbol: str) -> tuple[str, dict[str, Any]]:
        """Return (path, query params) for the quote request."""

    @abstractmethod
    def _parse(self, instrument: Instrument, symbol: str, payload: Any) -> ProviderResult:
        """Turn a decoded payload into a result. May raise MalformedPayload."""


def positive_float(value: Any, field: str) -> float:
    """Coerce a numeric (or numeric string) field that must be > 0."""
    if value is None:
        raise MalformedPayload(f"missing field {field!r}")
    number = float(value)
    if number <= 0:
        raise MalformedPayload(f"non-positive {field!r}: {value!r}")
    return number


def optional_float(value: Any) -> float | None:
    """Coerce an optional numeric field; None and empty strings stay None."""
    if value is None or value == "":
        return None
    return float(value)
