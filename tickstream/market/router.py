"""Priority-ordered provider selection with sequential fallback."""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from collections.abc import Mapping

from .errors import NotAvailableError
from .http_adapter import DEFAULT_TIMEOUT
from .interface import FailureKind, ProviderAdapter, ProviderFailure, ProviderSuccess
from .models import MarketTick
from .registry import InstrumentRegistry

logger = logging.getLogger(__name__)


class SourceRouter:
    """Resolves an instrument id to a tick by trying its providers in order.

    Candidates are tried one at a time: the first success wins and is
    stamped with the provider name and route priority. The worst case is
    the sum of the candidates' timeouts. Apart from the registry the router
    keeps no state between calls.
    """

    def __init__(
        self,
        registry: InstrumentRegistry,
        adapters: Mapping[str, ProviderAdapter],
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self._registry = registry
        self._adapters = dict(adapters)
        self._timeout = timeout

    @property
    def providers(self) -> list[str]:
        return list(self._adapters)

    async def resolve(self, instrument_id: str) -> MarketTick:
        """Freshest tick for `instrument_id`. Raises NotAvailableError."""
        result = await self.resolve_result(instrument_id)
        return result.tick

    async def resolve_result(self, instrument_id: str) -> ProviderSuccess:
        """Like resolve(), but keeps the winning provider's identity."""
        instrument = self._registry.get(instrument_id)
        if instrument is None:
            raise NotAvailableError(instrument_id)

        failures: list[ProviderFailure] = []
        for route in self._registry.routes_for(instrument_id):
            adapter = self._adapters.get(route.provider)
            if adapter is None:
                logger.debug("No adapter for %s, skipping route for %s", route.provider, instrument_id)
                continue

            try:
                result = await asyncio.wait_for(
                    adapter.fetch(instrument, route.symbol),
                    timeout=self._timeout,
                )
            except asyncio.TimeoutError:
                result = ProviderFailure(route.provider, FailureKind.TIMEOUT, f"no result after {self._timeout}s")
            except Exception as e:
                logger.exception("Adapter %s crashed fetching %s", route.provider, instrument_id)
                result = ProviderFailure(route.provider, FailureKind.FETCH_ERROR, f"{type(e).__name__}: {e}")

            if isinstance(result, ProviderSuccess):
                tick = dataclasses.replace(
                    result.tick,
                    source=route.provider,
                    source_priority=route.priority,
                )
                if failures:
                    logger.info(
                        "%s served by %s (priority %d) after %d failure(s)",
                        instrument_id,
                        route.provider,
                        route.priority,
                        len(failures),
                    )
                return ProviderSuccess(tick=tick, provider=route.provider)

            if isinstance(result, ProviderFailure):
                logger.warning(
                    "Provider %s failed for %s: %s %s",
                    route.provider,
                    instrument_id,
                    result.kind.value,
                    result.message,
                )
                failures.append(result)
            else:
                raise TypeError(f"Adapter {route.provider} returned {type(result).__name__}")

        raise NotAvailableError(instrument_id, failures)
