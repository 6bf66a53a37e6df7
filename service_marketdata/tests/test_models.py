"""
Unit tests for data requests and canonical records.
"""

import pytest

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from service_marketdata.app.models import (
    DataRequest,
    DatasetClass,
    MarketChartRecord,
    SimplePriceRecord,
    record_from_dict,
)
from shared.errors import SchemaMismatch, ValidationError


class TestDataRequest:
    """Test cases for DataRequest construction and cache keys."""

    def test_simple_price_cache_key(self):
        """Test simple-price keys carry no interval or range."""
        request = DataRequest.create("simple-price", "BTC", "USD")

        assert request.dataset_class is DatasetClass.SIMPLE_PRICE
        assert request.cache_key() == "simple-price:btc:usd"

    def test_market_chart_cache_key(self):
        """Test market-chart keys include interval and range."""
        request = DataRequest.create(DatasetClass.MARKET_CHART, "ETH", "usd", "daily", 30)

        assert request.cache_key() == "market-chart:eth:usd:daily:30"

    def test_cache_key_is_deterministic(self):
        """Test logically equal requests share one key regardless of spelling."""
        first = DataRequest.create("market-chart", " Ethereum ", "USD", "Daily", "30")
        second = DataRequest.create("market-chart", "ethereum", "usd", "daily", 30)

        assert first == second
        assert first.cache_key() == second.cache_key()

    def test_market_chart_defaults_to_daily(self):
        request = DataRequest.create("market-chart", "bitcoin", "usd", range_descriptor="max")

        assert request.interval == "daily"
        assert request.cache_key() == "market-chart:bitcoin:usd:daily:max"

    @pytest.mark.parametrize(
        "args",
        [
            ("unknown", "bitcoin", "usd", None, None),
            ("simple-price", "", "usd", None, None),
            ("simple-price", "bit coin", "usd", None, None),
            ("simple-price", "bitcoin", "usd", "daily", None),
            ("market-chart", "bitcoin", "usd", "daily", None),
            ("market-chart", "bitcoin", "usd", "daily", "0"),
            ("market-chart", "bitcoin", "usd", "daily", "-3"),
            ("market-chart", "bitcoin", "usd", "weekly", "30"),
        ],
    )
    def test_invalid_requests_rejected(self, args):
        """Test invalid input raises ValidationError before anything else runs."""
        with pytest.raises(ValidationError):
            DataRequest.create(*args)

    def test_from_dict_reads_range_key(self):
        request = DataRequest.from_dict(
            {"dataset_class": "market-chart", "asset_id": "bitcoin", "currency": "eur", "range": "7"}
        )

        assert request.cache_key() == "market-chart:bitcoin:eur:daily:7"


class TestCanonicalRecords:
    """Test cases for record serialization."""

    @pytest.fixture
    def chart_record(self):
        return MarketChartRecord(
            asset_id="eth",
            currency="usd",
            source_provider="coingecko",
            fetched_at="2023-11-14T22:13:20.000Z",
            chart_interval="daily",
            range_descriptor="30",
            prices=((1_699_833_600_000, 1780.25), (1_699_920_000_000, 1800.0)),
            market_caps=((1_699_920_000_000, 2.1e11),),
        )

    def test_to_dict_is_tagged(self, chart_record):
        payload = chart_record.to_dict()

        assert payload["dataset_class"] == "market-chart"
        assert payload["prices"] == [[1_699_833_600_000, 1780.25], [1_699_920_000_000, 1800.0]]
        assert payload["total_volumes"] == []

    def test_round_trip_through_dict(self, chart_record):
        """Test record_from_dict rebuilds an equal record."""
        assert record_from_dict(chart_record.to_dict()) == chart_record

    def test_interval_property(self, chart_record):
        simple = SimplePriceRecord(
            asset_id="btc", currency="usd", source_provider="coingecko",
            fetched_at="2023-11-14T22:13:20.000Z", price=1.0,
        )

        assert chart_record.interval == "daily"
        assert simple.interval is None

    def test_observed_span_uses_series_bounds(self, chart_record):
        start, end = chart_record.observed_span()

        assert int(start.timestamp() * 1000) == 1_699_833_600_000
        assert int(end.timestamp() * 1000) == 1_699_920_000_000

    def test_unknown_tag_rejected(self, chart_record):
        payload = chart_record.to_dict()
        payload["dataset_class"] = "order-book"

        with pytest.raises(SchemaMismatch):
            record_from_dict(payload)

    def test_unknown_field_rejected(self, chart_record):
        payload = chart_record.to_dict()
        payload["extra"] = 1

        with pytest.raises(SchemaMismatch) as exc_info:
            record_from_dict(payload)
        assert exc_info.value.details["fields"] == ["extra"]

    def test_missing_field_rejected(self, chart_record):
        payload = chart_record.to_dict()
        del payload["prices"]

        with pytest.raises(SchemaMismatch):
            record_from_dict(payload)
