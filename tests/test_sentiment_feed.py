from __future__ import annotations

import json
from http.client import RemoteDisconnected
from types import SimpleNamespace

import pytest
import requests

import sentiment_feed
from sentiment_feed import (
    FearGreedIndexFetcher,
    NewsBuffer,
    NewsItem,
    classify_score,
    collect_news,
    fetch_rss_headlines,
    parse_fear_greed,
    score_headline,
)


def test_score_headline_polarity():
    sentiment, score = score_headline("Bitcoin ETF approval sparks rally")
    assert sentiment == "BULLISH"
    assert score == 1.0

    sentiment, score = score_headline("Exchange hack drains wallets")
    assert sentiment == "BEARISH"
    assert score == pytest.approx(-0.95)

    assert score_headline("Markets open today") == ("NEUTRAL", 0.0)


def test_negation_flips_and_damps_next_hit():
    assert score_headline("Regulators will not approve")[1] == pytest.approx(-0.48)
    # Any non-dictionary word between the negation and the hit cancels it.
    assert score_headline("Regulators not really approve")[1] == pytest.approx(0.8)
    assert score_headline("Prices never crash")[0] == "BULLISH"


def test_exclamation_boosts_and_score_is_clamped():
    assert score_headline("Gain!")[1] == pytest.approx(0.44)
    assert score_headline("Hack exploit fraud!")[1] == -1.0


def test_classify_score_thresholds():
    assert classify_score(0.15) == "BULLISH"
    assert classify_score(-0.15) == "BEARISH"
    assert classify_score(0.1) == "NEUTRAL"


def test_news_buffer_dedupes_and_keeps_newest_first():
    buffer = NewsBuffer(max_items=2)
    assert buffer.add(NewsItem(headline="First", source="a", score=0.1))
    assert not buffer.add(NewsItem(headline="  first ", source="b", score=0.9))
    assert buffer.add(NewsItem(headline="Second", source="a", score=0.3))
    assert buffer.add(NewsItem(headline="Third", source="a", score=0.5))

    assert [item.headline for item in buffer.recent()] == ["Third", "Second"]
    assert len(buffer) == 2
    assert buffer.average_score(3) == pytest.approx(0.4)
    assert NewsBuffer().average_score() == 0.0


def test_news_item_scored_and_summary():
    item = NewsItem.scored("ETF approval", "wire", timestamp=5.0)
    assert item.sentiment == "BULLISH"
    assert item.timestamp == 5.0
    assert item.summary() == "ETF approval (1.00)"


def test_collect_news_scores_and_skips_duplicates():
    feeds = {"feed-a": [("Exchange hack", "A"), ("ETF approval", "A")], "feed-b": [("exchange hack", "B")]}
    buffer = NewsBuffer()

    added = collect_news(buffer, feeds, fetcher=lambda url, limit: feeds[url])

    assert [item.headline for item in added] == ["Exchange hack", "ETF approval"]
    assert added[0].sentiment == "BEARISH"
    assert len(buffer) == 2


def test_collect_news_uses_custom_scorer():
    buffer = NewsBuffer()
    added = collect_news(
        buffer,
        ["feed"],
        fetcher=lambda url, limit: [("Anything", "src")],
        scorer=lambda headline: ("BULLISH", 0.9),
    )
    assert added[0].score == 0.9


def test_fetch_rss_headlines_reads_entries(monkeypatch):
    parsed = SimpleNamespace(feed={"title": "CoinDesk"}, entries=[{"title": " A "}, {"title": ""}, {"title": "B"}])
    monkeypatch.setattr(sentiment_feed.feedparser, "parse", lambda url: parsed)

    assert fetch_rss_headlines("http://rss", limit=2) == [("A", "CoinDesk")]


def test_fetch_rss_headlines_failure_returns_empty(monkeypatch):
    def boom(url):
        raise OSError("offline")

    monkeypatch.setattr(sentiment_feed.feedparser, "parse", boom)
    assert fetch_rss_headlines("http://rss") == []


class FakeResponse:
    def __init__(self, payload, status=200):
        self.payload = payload
        self.status = status

    def raise_for_status(self):
        if self.status >= 400:
            raise requests.HTTPError(f"status {self.status}")

    def json(self):
        return self.payload


def test_fear_greed_success_is_remembered_and_persisted(tmp_path, monkeypatch):
    cache = tmp_path / "nested" / "fear.json"
    fetcher = FearGreedIndexFetcher(cache_path=cache)
    monkeypatch.setattr(
        sentiment_feed.requests, "get", lambda url, timeout: FakeResponse({"data": [{"value": "17"}]})
    )

    assert fetcher.fetch() == 17
    assert fetcher.last_value == 17
    assert json.loads(cache.read_text())["value"] == 17


def test_fear_greed_outage_keeps_last_reading(tmp_path, monkeypatch):
    fetcher = FearGreedIndexFetcher(cache_path=tmp_path / "fear.json")
    monkeypatch.setattr(
        sentiment_feed.requests, "get", lambda url, timeout: FakeResponse({"data": [{"value": 64}]})
    )
    assert fetcher.fetch() == 64

    def disconnected(url, timeout):
        raise RemoteDisconnected("boom")

    monkeypatch.setattr(sentiment_feed.requests, "get", disconnected)
    assert fetcher.fetch() == 64


def test_fear_greed_restart_reads_persisted_value(tmp_path, monkeypatch):
    cache = tmp_path / "fear.json"
    cache.write_text(json.dumps({"value": 42}))
    monkeypatch.setattr(sentiment_feed.requests, "get", lambda url, timeout: FakeResponse({}, status=503))

    assert FearGreedIndexFetcher(cache_path=cache).fetch() == 42


def test_fear_greed_without_history_returns_neutral(tmp_path, monkeypatch):
    cache = tmp_path / "fear.json"
    cache.write_text("{not json")
    monkeypatch.setattr(
        sentiment_feed.requests, "get", lambda url, timeout: FakeResponse({"data": [{"value": "140"}]})
    )

    assert FearGreedIndexFetcher(cache_path=cache).fetch() == 50


def test_parse_fear_greed_validates_payload():
    assert parse_fear_greed({"data": [{"value": "73"}]}) == 73
    assert parse_fear_greed({"data": [{"value": 49.6}]}) == 50
    assert parse_fear_greed({"data": []}) is None
    assert parse_fear_greed({"data": [{"value": "140"}]}) is None
    assert parse_fear_greed({"data": [{"value": "nan"}]}) is None
    assert parse_fear_greed(["data"]) is None
