import pytest
import requests

from candle_aggregator import Candle
from market_data import (
    AssetSnapshot,
    HyperliquidInfoClient,
    candles_from_payload,
    parse_l2_book,
    parse_snapshot,
)

UNIVERSE = [{"name": "BTC"}, {"name": "ETH"}]
CTXS = [
    {"midPx": "50000", "prevDayPx": "48000", "dayNtlVlm": "1000000"},
    {"midPx": "3000", "prevDayPx": "3100", "dayNtlVlm": "500"},
]


class FakeResponse:
    def __init__(self, payload):
        self.payload = payload

    def raise_for_status(self):
        return None

    def json(self):
        return self.payload


class FakeSession:
    def __init__(self, payload=None, error=None):
        self.payload = payload
        self.error = error
        self.requests = []

    def post(self, url, json=None, headers=None, timeout=None):
        self.requests.append(json)
        if self.error is not None:
            raise self.error
        return FakeResponse(self.payload)


def test_parse_snapshot_array_shape():
    snapshots = parse_snapshot([{"universe": UNIVERSE}, CTXS])
    assert snapshots["BTC"] == AssetSnapshot("BTC", 50_000.0, 48_000.0, 1_000_000.0)
    assert snapshots["ETH"].change_24h == pytest.approx(-3.2258, abs=1e-4)


def test_parse_snapshot_object_shape():
    snapshots = parse_snapshot({"universe": UNIVERSE, "assetCtxs": CTXS})
    assert set(snapshots) == {"BTC", "ETH"}
    assert snapshots["BTC"].change_24h == pytest.approx(4.1667, abs=1e-4)


def test_parse_snapshot_tolerates_short_contexts_and_bad_shapes():
    snapshots = parse_snapshot([UNIVERSE, CTXS[:1]])
    assert snapshots["ETH"].price == 0.0
    assert snapshots["ETH"].change_24h == 0.0
    assert parse_snapshot("oops") == {}
    assert parse_snapshot({"universe": UNIVERSE}) == {}


def test_candles_from_payload_converts_sorts_and_cleans():
    raw = [
        {"t": 1_700_000_900_000, "o": "2", "h": "3", "l": "1", "c": "2.5"},
        {"t": 1_700_000_000_000, "o": "1", "h": "2", "l": "0.5", "c": "2"},
        {"t": 1_700_001_800_000, "o": "x", "h": "3", "l": "1", "c": "2"},
        {"t": 1_700_002_700_000, "o": "0", "h": "3", "l": "1", "c": "2"},
        "not a row",
    ]
    candles = candles_from_payload(raw)
    assert candles == [
        Candle(1_700_000_000, 1.0, 2.0, 0.5, 2.0),
        Candle(1_700_000_900, 2.0, 3.0, 1.0, 2.5),
    ]


def test_candles_from_payload_dedupes_times():
    raw = [
        {"t": 900_000, "o": 1, "h": 1, "l": 1, "c": 1},
        {"t": 900_000, "o": 2, "h": 2, "l": 2, "c": 2},
    ]
    candles = candles_from_payload(raw)
    assert len(candles) == 1
    assert candles[0].close == 2.0
    assert candles_from_payload([]) == []
    assert candles_from_payload({"error": "x"}) == []


def test_parse_l2_book_with_side_markers():
    data = {
        "levels": [
            {"px": "99", "sz": "1", "side": "B"},
            {"px": "100", "sz": "2", "side": "B"},
            {"px": "102", "sz": "1", "side": "A"},
            {"px": "101", "sz": "3", "side": "A"},
        ]
    }
    book = parse_l2_book(data, depth=1)
    assert book.best_bid == 100.0
    assert book.best_ask == 101.0
    assert len(book.bids) == len(book.asks) == 1


def test_parse_l2_book_nested_levels():
    data = {"levels": [[{"px": "10", "sz": "1"}, {"px": "11", "sz": "1"}], [{"px": "12", "sz": "2"}]]}
    book = parse_l2_book(data)
    assert [lvl.px for lvl in book.bids] == [11.0, 10.0]
    assert book.best_ask == 12.0
    assert parse_l2_book({"levels": "bad"}) is None


def test_client_fetch_candles_posts_window():
    session = FakeSession([{"t": 0, "o": 1, "h": 1, "l": 1, "c": 1}])
    client = HyperliquidInfoClient("http://info", session=session)

    candles = client.fetch_candles("SOL", lookback_hours=1, now=7200.0)

    request = session.requests[0]
    assert request["type"] == "candleSnapshot"
    assert request["req"] == {"coin": "SOL", "interval": "15m", "startTime": 3_600_000, "endTime": 7_200_000}
    assert candles == [Candle(0, 1.0, 1.0, 1.0, 1.0)]


def test_client_fetch_snapshot_and_book():
    client = HyperliquidInfoClient("http://info", session=FakeSession([UNIVERSE, CTXS]))
    assert client.fetch_snapshot()["BTC"].price == 50_000.0

    book_session = FakeSession({"levels": [[{"px": "1", "sz": "1"}], []]})
    book = HyperliquidInfoClient("http://info", session=book_session).fetch_l2_book("BTC")
    assert book_session.requests[0] == {"type": "l2Book", "coin": "BTC"}
    assert book.best_bid == 1.0
    assert book.best_ask is None


def test_client_returns_neutral_values_on_errors():
    client = HyperliquidInfoClient("http://info", session=FakeSession(error=requests.Timeout("slow")))
    assert client.fetch_snapshot() == {}
    assert client.fetch_candles("BTC") == []
    assert client.fetch_l2_book("BTC") is None
