"""Market sentiment inputs: Fear & Greed index and scored news headlines."""
from __future__ import annotations

import json
import math
import os
import re
import threading
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from http.client import RemoteDisconnected
from pathlib import Path
from typing import Any, Callable, Deque, Iterable, List, Optional, Tuple

import feedparser
import requests

from config import NEWS_BUFFER_SIZE
from log_utils import setup_logger

logger = setup_logger(__name__)

DEFAULT_FEAR_GREED = 50

CRYPTO_PANIC_RSS = "https://cryptopanic.com/news/rss/"
COINDESK_RSS = "https://www.coindesk.com/arc/outboundfeeds/rss/"

BULLISH_THRESHOLD = 0.15
BEARISH_THRESHOLD = -0.15

# Keyword weights for the offline headline scorer.
SENTIMENT_DICTIONARY = {
    "surge": 0.6, "jump": 0.5, "soar": 0.7, "rally": 0.6, "record": 0.5, "high": 0.4,
    "gain": 0.4, "green": 0.3, "bull": 0.5, "bullish": 0.6, "adoption": 0.6, "approve": 0.8,
    "approval": 0.8, "etf": 0.5, "launch": 0.4, "mainnet": 0.5, "partnership": 0.4,
    "growth": 0.3, "accumulate": 0.4, "buy": 0.3, "long": 0.2, "support": 0.3,
    "upgrade": 0.4, "breakthrough": 0.7, "influx": 0.5, "cut": 0.4, "burn": 0.5,
    "halving": 0.6, "stimulus": 0.5, "legal": 0.2, "win": 0.5,
    "crash": -0.8, "dump": -0.7, "drop": -0.5, "fall": -0.4, "bear": -0.5, "bearish": -0.6,
    "ban": -0.9, "regulation": -0.4, "sue": -0.7, "lawsuit": -0.6, "sec": -0.3,
    "delay": -0.4, "hack": -0.95, "exploit": -0.95, "risk": -0.3, "warn": -0.4,
    "sell": -0.5, "short": -0.3, "down": -0.3, "resistance": -0.3, "liquidate": -0.6,
    "insolvent": -0.95, "fail": -0.8, "hike": -0.5, "inflation": -0.4,
    "investigation": -0.6, "fraud": -0.9, "delist": -0.8,
}
NEGATIONS = frozenset({"not", "no", "never", "dont", "wont", "prevent"})
NEGATION_FACTOR = -0.6
EXCLAMATION_BOOST = 1.1

_TOKEN_STRIP = re.compile(r"[^\w\s]")


# ---------------------------------------------------------------------------
# Headline scoring
# ---------------------------------------------------------------------------


def classify_score(score: float) -> str:
    if score >= BULLISH_THRESHOLD:
        return "BULLISH"
    if score <= BEARISH_THRESHOLD:
        return "BEARISH"
    return "NEUTRAL"


def score_headline(headline: str) -> Tuple[str, float]:
    """Return ``(sentiment, score)`` for ``headline`` using keyword weights.

    A negation word flips and damps the next dictionary hit; any other word in
    between cancels the negation. An exclamation mark boosts the total by
    10%. The score is clamped to ``[-1, 1]``.
    """

    tokens = _TOKEN_STRIP.sub("", headline.lower()).split()
    total = 0.0
    negated = False
    for word in tokens:
        if word in NEGATIONS:
            negated = True
            continue
        weight = SENTIMENT_DICTIONARY.get(word)
        if weight is None:
            negated = False
            continue
        if negated:
            weight *= NEGATION_FACTOR
            negated = False
        total += weight
    if "!" in headline:
        total *= EXCLAMATION_BOOST
    score = max(-1.0, min(1.0, total))
    return classify_score(score), score


# ---------------------------------------------------------------------------
# News buffer
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class NewsItem:
    headline: str
    source: str
    sentiment: str = "NEUTRAL"
    score: float = 0.0
    timestamp: float = field(default_factory=time.time)
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:9])

    @classmethod
    def scored(cls, headline: str, source: str, timestamp: Optional[float] = None) -> "NewsItem":
        sentiment, score = score_headline(headline)
        return cls(
            headline=headline,
            source=source,
            sentiment=sentiment,
            score=score,
            timestamp=time.time() if timestamp is None else timestamp,
        )

    def summary(self) -> str:
        return f"{self.headline} ({self.score:.2f})"


class NewsBuffer:
    """Most-recent-first bounded buffer of scored headlines."""

    def __init__(self, max_items: int = NEWS_BUFFER_SIZE) -> None:
        self._items: Deque[NewsItem] = deque(maxlen=max_items)
        self._seen: Deque[str] = deque(maxlen=max_items * 4)
        self._lock = threading.Lock()

    def add(self, item: NewsItem) -> bool:
        """Insert ``item`` unless the same headline was seen recently."""

        key = item.headline.strip().lower()
        with self._lock:
            if key in self._seen:
                return False
            self._seen.append(key)
            self._items.appendleft(item)
            return True

    def recent(self, limit: Optional[int] = None) -> List[NewsItem]:
        with self._lock:
            items = list(self._items)
        return items if limit is None else items[:limit]

    def average_score(self, limit: int = 3) -> float:
        items = self.recent(limit)
        if not items:
            return 0.0
        return sum(item.score for item in items) / len(items)

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)


def fetch_rss_headlines(url: str, limit: int = 10) -> List[Tuple[str, str]]:
    """Return ``(title, source)`` pairs from an RSS feed, ``[]`` on failure."""

    try:
        feed = feedparser.parse(url)
    except Exception as exc:
        logger.warning("Failed to fetch RSS %s: %s", url, exc, exc_info=True)
        return []
    source = ""
    meta = getattr(feed, "feed", None)
    if meta is not None:
        source = str(meta.get("title", "") or "")
    results: List[Tuple[str, str]] = []
    for entry in list(getattr(feed, "entries", []))[:limit]:
        title = str(entry.get("title", "") or "").strip()
        if title:
            results.append((title, source or url))
    return results


HeadlineScorer = Callable[[str], Tuple[str, float]]


def collect_news(
    buffer: NewsBuffer,
    feeds: Iterable[str] = (CRYPTO_PANIC_RSS, COINDESK_RSS),
    *,
    fetcher: Callable[[str, int], List[Tuple[str, str]]] = fetch_rss_headlines,
    scorer: Optional[HeadlineScorer] = None,
    limit: int = 10,
) -> List[NewsItem]:
    """Fetch headlines from ``feeds``, score them and push new ones into ``buffer``."""

    scorer = scorer or score_headline
    added: List[NewsItem] = []
    for url in feeds:
        for title, source in fetcher(url, limit):
            sentiment, score = scorer(title)
            item = NewsItem(headline=title, source=source, sentiment=sentiment, score=score)
            if buffer.add(item):
                added.append(item)
    if added:
        logger.info("Collected %d new headlines", len(added))
    return added


# ---------------------------------------------------------------------------
# Fear & Greed
# ---------------------------------------------------------------------------

FEAR_GREED_URL = "https://api.alternative.me/fng/"


def _index_value(raw: Any) -> Optional[int]:
    """Coerce ``raw`` to an index reading in ``0..100``, else ``None``."""

    try:
        number = float(raw)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    value = int(round(number))
    return value if 0 <= value <= 100 else None


def parse_fear_greed(payload: Any) -> Optional[int]:
    """Extract the latest reading from an alternative.me ``/fng/`` response."""

    entries = payload.get("data") if isinstance(payload, dict) else None
    if not isinstance(entries, list) or not entries or not isinstance(entries[0], dict):
        return None
    return _index_value(entries[0].get("value"))


class FearGreedIndexFetcher:
    """Poll the Fear & Greed index, remembering the last good reading.

    The last reading is kept in memory and mirrored to a small JSON file
    (``FEAR_GREED_CACHE_PATH``) so a restart during an API outage does not
    fall back to neutral.
    """

    def __init__(
        self,
        cache_path: Optional[Path] = None,
        *,
        url: str = FEAR_GREED_URL,
        timeout: float = 10.0,
    ) -> None:
        self.cache_path = Path(cache_path or os.getenv("FEAR_GREED_CACHE_PATH", "data/fear_greed.json"))
        self.url = url
        self.timeout = timeout
        self.last_value: Optional[int] = None

    def fetch(self) -> int:
        value = self._request()
        if value is not None:
            self._remember(value)
            return value
        if self.last_value is not None:
            return self.last_value
        stored = self.stored_value()
        return stored if stored is not None else DEFAULT_FEAR_GREED

    def stored_value(self) -> Optional[int]:
        try:
            with self.cache_path.open() as handle:
                payload = json.load(handle)
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as exc:
            logger.debug("Ignoring unreadable fear index file %s: %s", self.cache_path, exc)
            return None
        return _index_value(payload.get("value")) if isinstance(payload, dict) else None

    def _request(self) -> Optional[int]:
        try:
            response = requests.get(self.url, timeout=self.timeout)
            response.raise_for_status()
            payload = response.json()
        except (RemoteDisconnected, requests.RequestException, ValueError) as exc:
            logger.warning("Fear & Greed request failed, keeping last reading: %s", exc)
            return None
        value = parse_fear_greed(payload)
        if value is None:
            logger.warning("Fear & Greed response had no usable value: %.200r", payload)
        return value

    def _remember(self, value: int) -> None:
        self.last_value = value
        try:
            self.cache_path.parent.mkdir(parents=True, exist_ok=True)
            with self.cache_path.open("w") as handle:
                json.dump({"value": value, "updated_at": time.time()}, handle)
        except OSError as exc:
            logger.debug("Could not persist fear index to %s: %s", self.cache_path, exc)


__all__ = [
    "DEFAULT_FEAR_GREED",
    "FearGreedIndexFetcher",
    "NewsBuffer",
    "NewsItem",
    "classify_score",
    "collect_news",
    "fetch_rss_headlines",
    "parse_fear_greed",
    "score_headline",
]
