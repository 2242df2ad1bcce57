"""Tests for MarketConfig."""

import os
from unittest.mock import patch

import pytest

from tickstream.market.config import MarketConfig


class TestMarketConfig:
    """Environment parsing and validation."""

    def test_defaults(self):
        config = MarketConfig.from_env({})
        assert config.cache_ttl == 5.0
        assert config.provider_timeout == 8.0
        assert config.heartbeat_interval == 25.0
        assert config.simulator_fallback is True
        assert config.finnhub_api_key == ""
        assert config.refresh_interval == config.cache_ttl

    def test_reads_os_environ(self):
        with patch.dict(os.environ, {"MARKET_CACHE_TTL": "2.5", "FINNHUB_API_KEY": "  abc  "}, clear=True):
            config = MarketConfig.from_env()
        assert config.cache_ttl == 2.5
        assert config.finnhub_api_key == "abc"

    def test_overrides(self):
        config = MarketConfig.from_env(
            {
                "MARKET_TICK_INTERVAL_MIN": "0.1",
                "MARKET_TICK_INTERVAL_MAX": "0.2",
                "MARKET_STREAM_QUEUE_SIZE": "16",
                "MARKET_SIMULATOR_FALLBACK": "off",
                "MARKET_PRICE_MODEL": "gbm",
                "LOG_LEVEL": "debug",
            }
        )
        assert config.tick_interval_min == 0.1
        assert config.tick_interval_max == 0.2
        assert config.stream_queue_size == 16
        assert config.simulator_fallback is False
        assert config.price_model == "gbm"
        assert config.log_level == "DEBUG"

    def test_empty_values_use_defaults(self):
        """Whitespace-only values count as unset."""
        config = MarketConfig.from_env({"MARKET_CACHE_TTL": "  ", "MASSIVE_API_KEY": ""})
        assert config.cache_ttl == 5.0
        assert config.massive_api_key == ""

    @pytest.mark.parametrize(
        "env",
        [
            {"MARKET_CACHE_TTL": "soon"},
            {"MARKET_SIMULATOR_FALLBACK": "maybe"},
            {"MARKET_TICK_INTERVAL_MIN": "3", "MARKET_TICK_INTERVAL_MAX": "1"},
            {"MARKET_STREAM_QUEUE_SIZE": "0"},
        ],
    )
    def test_invalid_values(self, env):
        with pytest.raises(ValueError):
            MarketConfig.from_env(env)
