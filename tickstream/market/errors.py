"""Exceptions raised by the market data core."""

from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .interface import ProviderFailure


class MarketDataError(Exception):
    """Base class for market data errors."""


class NotAvailableError(MarketDataError):
    """No provider could serve the instrument (or the id is unknown)."""

    def __init__(self, instrument_id: str, failures: Sequence[ProviderFailure] = ()) -> None:
        self.instrument_id = instrument_id
        self.failures = list(failures)
        if self.failures:
            detail = ", ".join(f"{f.provider}={f.kind.value}" for f in self.failures)
            message = f"No data available for {instrument_id} ({detail})"
        else:
            message = f"No data available for {instrument_id}"
        super().__init__(message)


class ValidationError(MarketDataError):
    """A request was rejected before any work was done."""

    def __init__(self, message: str, unknown_ids: Sequence[str] = ()) -> None:
        self.unknown_ids = list(unknown_ids)
        super().__init__(message)


class TransportError(MarketDataError):
    """The stream transport failed (disconnect, network drop, bad status)."""
