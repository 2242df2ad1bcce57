"""Helpers that turn raw provider numbers into complete MarketTick records."""

from __future__ import annotations

import time
from collections.abc import Sequence

import numpy as np

from .models import OHLC, Instrument, MarketTick
from .registry import precision_for, session_for

DEFAULT_SPARKLINE_LENGTH = 24


def now_ms() -> int:
    return int(time.time() * 1000)


def synth_sparkline(
    price: float,
    length: int = DEFAULT_SPARKLINE_LENGTH,
    rng: np.random.Generator | None = None,
    precision: int = 4,
) -> tuple[float, ...]:
    """Plausible intraday path that ends exactly at `price`.

    Used when a provider only reports the current quote and there is no
    recorded history for the instrument yet.
    """
    if length <= 0:
        return ()
    rng = rng or np.random.default_rng()
    start = price * rng.uniform(0.98, 1.02)
    steps = 1.0 + rng.uniform(-0.01, 0.01, size=length)
    path = start * np.cumprod(steps)
    path[-1] = price
    return tuple(round(float(p), precision) for p in path)


def roll_sparkline(previous: Sequence[float], price: float, length: int) -> tuple[float, ...]:
    """Append `price` to a previous sparkline, keeping the newest `length` points."""
    if length <= 0:
        return ()
    return (*previous, price)[-length:]


def build_tick(
    instrument: Instrument,
    *,
    last: float,
    prev_close: float | None = None,
    change_abs: float | None = None,
    change_pct: float | None = None,
    open_: float | None = None,
    high: float | None = None,
    low: float | None = None,
    volume: float = 0,
    market_cap: float | None = None,
    ts: int | None = None,
    sparkline: Sequence[float] | None = None,
    sparkline_length: int = DEFAULT_SPARKLINE_LENGTH,
    rng: np.random.Generator | None = None,
) -> MarketTick:
    """Normalize one provider quote into a self-consistent MarketTick.

    Change fields are derived from `prev_close` when the provider does not
    report them. A percentage-only change (as CoinGecko reports it) is
    converted back to an absolute change against the implied previous close.
    """
    digits = precision_for(instrument.asset_class)

    if change_abs is None:
        if prev_close:
            change_abs = last - prev_close
        elif change_pct is not None and change_pct > -100:
            change_abs = last - last / (1 + change_pct / 100)
        else:
            change_abs = 0.0
    if change_pct is None:
        reference = prev_close or (last - change_abs)
        change_pct = change_abs / reference * 100 if reference else 0.0

    open_price = open_ if open_ else (prev_close or last)
    day_high = max((v for v in (high, open_price, last) if v), default=last)
    day_low = min((v for v in (low, open_price, last) if v), default=last)

    if sparkline:
        line = roll_sparkline(sparkline, round(last, digits), sparkline_length)
    else:
        line = synth_sparkline(round(last, digits), sparkline_length, rng, precision=max(digits, 4))

    return MarketTick(
        id=instrument.id,
        name=instrument.name,
        asset_class=instrument.asset_class,
        exchange=instrument.exchange,
        currency=instrument.currency,
        timezone=instrument.timezone,
        last=round(last, digits),
        change_abs=round(change_abs, digits + 2),
        change_pct=round(change_pct, 2),
        day_high=round(day_high, digits),
        day_low=round(day_low, digits),
        volume=volume or 0,
        session=session_for(instrument.asset_class),
        sparkline=line,
        ohlc=OHLC(
            open=round(open_price, digits),
            high=round(day_high, digits),
            low=round(day_low, digits),
            close=round(last, digits),
        ),
        ts=ts if ts is not None else now_ms(),
        market_cap=market_cap,
    )
