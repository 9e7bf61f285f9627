"""
Unit Tests for the Exchange Interface

These tests verify that:
- Feature flags drive supports() and require_capability()
- Adapter configuration is applied from a snapshot
- Streaming channel names are built and parsed consistently

Run with:
    pytest tests/unit/test_exchange_interface.py -v
"""

import pytest

from core.errors import CapabilityNotSupportedError
from core.exchange_interface import (
    ExchangeInterface,
    TickerCapable,
    channel,
    parse_channel,
    require_capability,
)
from core.schemas import AssetClass, Instrument
from exchanges.binance import BinanceExchange
from tests.fake_exchange import FakeExchange


class TickerOnly(ExchangeInterface, TickerCapable):
    name = "tickeronly"
    capabilities = {"ticker": True}

    async def fetch_ticker(self, instrument, asset_class):
        raise NotImplementedError

    async def update_ticker(self, instrument, asset_class):
        raise NotImplementedError


class TestCapabilities:
    """Tests for feature flags"""

    def test_supports_reads_flags(self):
        """Verify undeclared features are unsupported"""
        exchange = TickerOnly()
        assert exchange.supports("ticker")
        assert not exchange.supports("orderbook")

    def test_require_capability_raises(self):
        """Verify require_capability names the venue and the feature"""
        with pytest.raises(CapabilityNotSupportedError, match="tickeronly does not support submit_order"):
            require_capability(TickerOnly(), "submit_order")

    def test_require_capability_passes(self):
        """Verify a declared feature passes"""
        require_capability(TickerOnly(), "ticker")

    def test_binance_is_market_data_only(self):
        """Verify the Binance adapter declares no order features"""
        exchange = BinanceExchange()
        assert exchange.supports("ticker")
        assert exchange.supports("orderbook")
        assert exchange.supports("websocket")
        assert not exchange.supports("submit_order")
        assert exchange.supported_asset_classes() == frozenset({AssetClass.PERPETUAL_SWAP})


class TestSetup:
    """Tests for setup() and identity"""

    def test_setup_sets_enabled_and_asset_classes(self):
        """Verify setup applies the enabled flag and asset classes"""
        exchange = FakeExchange()
        exchange.setup({"name": "fake", "enabled": False, "asset_classes": ["spot"]})

        assert not exchange.is_enabled()
        assert exchange.supports_asset_class(AssetClass.SPOT)
        assert not exchange.supports_asset_class(AssetClass.PERPETUAL_SWAP)

    def test_setup_copies_config(self):
        """Verify the adapter keeps its own copy of the configuration"""
        config = {"name": "fake", "http_timeout": 5}
        exchange = FakeExchange()
        exchange.setup(config)
        config["http_timeout"] = 50

        assert exchange.config_snapshot()["http_timeout"] == 5

    def test_repr(self):
        """Verify repr shows the adapter name"""
        assert repr(TickerOnly()) == "<TickerOnly(name='tickeronly')>"


class TestChannels:
    """Tests for streaming channel helpers"""

    def test_channel_format(self):
        """Verify channels are '<kind>:<BASE>-<QUOTE>' whatever the delimiter"""
        assert channel("ticker", Instrument.parse("eth_usdt")) == "ticker:ETH-USDT"

    def test_unknown_kind(self):
        """Verify only ticker and orderbook channels exist"""
        with pytest.raises(ValueError):
            channel("trades", Instrument.parse("BTC-USDT"))

    def test_parse_channel(self):
        """Verify parse_channel inverts channel"""
        kind, instrument = parse_channel("orderbook:BTC-USDT")
        assert kind == "orderbook"
        assert instrument == Instrument(base="BTC", quote="USDT")

    @pytest.mark.parametrize("value", ["orderbook", "trades:BTC-USDT", "ticker:"])
    def test_parse_invalid_channel(self, value):
        """Verify malformed channels raise ValueError"""
        with pytest.raises(ValueError):
            parse_channel(value)
