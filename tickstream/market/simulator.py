"""Simulated price evolution and the offline fallback provider."""

from __future__ import annotations

import logging
import math
from abc import ABC, abstractmethod

import numpy as np

from .interface import ProviderAdapter, ProviderResult
from .models import AssetClass, Instrument
from .registry import InstrumentRegistry, volatility_for
from .ticks import build_tick

logger = logging.getLogger(__name__)


class PriceEvolution(ABC):
    """Strategy that produces the next price of an instrument.

    The stream engine only depends on this interface, so a real upstream
    push feed can replace the simulation without touching the engine.
    """

    @abstractmethod
    def next_price(self, instrument: Instrument, price: float) -> float:
        """Return the price that follows `price`. Must be > 0."""


class RandomWalkEvolution(PriceEvolution):
    """Bounded uniform random walk.

    Each step multiplies the price by (1 + u * volatility) with u drawn from
    [-0.5, 0.5), so a single move never exceeds half the asset-class
    volatility bound (1% for Crypto, 0.25% for Equity).
    """

    def __init__(self, rng: np.random.Generator | None = None) -> None:
        self._rng = rng or np.random.default_rng()

    def next_price(self, instrument: Instrument, price: float) -> float:
        change = self._rng.uniform(-0.5, 0.5) * volatility_for(instrument.asset_class)
        return price * (1 + change)


class GBMEvolution(PriceEvolution):
    """Geometric Brownian Motion with rare jump events.

    Math:
        S(t+dt) = S(t) * exp((mu - sigma^2/2) * dt + sigma * sqrt(dt) * Z)

    Where:
        mu     = annualized drift (expected return)
        sigma  = annualized volatility for the asset class
        dt     = time step as fraction of a trading year
        Z      = standard normal random variable

    The tiny dt (~1e-7 for ~1s ticks over 252 trading days * 6.5h/day)
    produces sub-cent moves per tick that accumulate naturally over time.
    """

    # 252 trading days * 6.5 hours/day * 3600 seconds/hour = 5,896,800 seconds
    TRADING_SECONDS_PER_YEAR = 252 * 6.5 * 3600
    DEFAULT_DT = 1.0 / TRADING_SECONDS_PER_YEAR

    ANNUAL_SIGMA: dict[AssetClass, float] = {
        AssetClass.CRYPTO: 0.80,
        AssetClass.EQUITY: 0.25,
        AssetClass.INDEX: 0.18,
        AssetClass.FX: 0.08,
        AssetClass.COMMODITY: 0.20,
        AssetClass.REAL_ESTATE: 0.20,
        AssetClass.BOND: 0.10,
    }

    def __init__(
        self,
        rng: np.random.Generator | None = None,
        dt: float = DEFAULT_DT,
        mu: float = 0.05,
        event_probability: float = 0.001,
    ) -> None:
        self._rng = rng or np.random.default_rng()
        self._dt = dt
        self._mu = mu
        self._event_prob = event_probability

    def next_price(self, instrument: Instrument, price: float) -> float:
        sigma = self.ANNUAL_SIGMA.get(instrument.asset_class, 0.25)
        drift = (self._mu - 0.5 * sigma**2) * self._dt
        diffusion = sigma * math.sqrt(self._dt) * self._rng.standard_normal()
        price *= math.exp(drift + diffusion)

        # Random event: ~0.1% chance per tick
        if self._rng.random() < self._event_prob:
            shock = self._rng.uniform(0.02, 0.05) * self._rng.choice([-1, 1])
            price *= 1 + shock
            logger.debug("Random event on %s: %+.1f%%", instrument.id, shock * 100)
        return price


def create_price_evolution(model: str, rng: np.random.Generator | None = None) -> PriceEvolution:
    """Build the evolution strategy named by MARKET_PRICE_MODEL."""
    if model == "gbm":
        return GBMEvolution(rng=rng)
    if model == "random-walk":
        return RandomWalkEvolution(rng=rng)
    raise ValueError(f"Unknown price model {model!r}")


class SimulatedAdapter(ProviderAdapter):
    """Offline provider that always answers.

    Prices start from the registry seed (or a random 50-300 for unseeded
    instruments) and move by one evolution step per fetch. Change fields are
    measured against the seed, which plays the role of the previous close.
    """

    name = "simulator"

    def __init__(
        self,
        registry: InstrumentRegistry,
        evolution: PriceEvolution | None = None,
        rng: np.random.Generator | None = None,
        sparkline_length: int = 24,
    ) -> None:
        self._registry = registry
        self._rng = rng or np.random.default_rng()
        self._evolution = evolution or RandomWalkEvolution(self._rng)
        self._sparkline_length = sparkline_length
        self._reference: dict[str, float] = {}
        self._prices: dict[str, float] = {}

    async def fetch(self, instrument: Instrument, symbol: str) -> ProviderResult:
        reference = self._reference.get(instrument.id)
        if reference is None:
            reference = self._registry.seed_price(instrument.id) or float(self._rng.uniform(50.0, 300.0))
            self._reference[instrument.id] = reference

        price = self._evolution.next_price(instrument, self._prices.get(instrument.id, reference))
        self._prices[instrument.id] = price

        tick = build_tick(
            instrument,
            last=price,
            prev_close=reference,
            volume=float(self._rng.integers(1_000_000, 50_000_000)),
            sparkline_length=self._sparkline_length,
            rng=self._rng,
        )
        return self._success(tick)
