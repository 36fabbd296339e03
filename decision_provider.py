"""Decision providers: turn a market context into a trade decision.

The scheduler only depends on ``analyze(context) -> Decision``. Concrete
providers talk to Groq (through the SDK) or to any OpenAI-compatible chat
endpoint (OpenRouter, a local Ollama). Transport failures surface as
:class:`ProviderError`; the scheduler degrades those to a WAIT decision.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence, Tuple

from groq import (
    APIConnectionError,
    APIError,
    APIStatusError,
    APITimeoutError,
    AuthenticationError,
    Groq,
)
from groq import RateLimitError as GroqRateLimitError

from config import OPENROUTER_BASE_URL, TradeConfig
from indicators import rsi_zone
from json_utils import coerce_number, parse_llm_json_response
from llm_http import (
    ProviderAuthError,
    ProviderError,
    RateLimitError,
    chat_completions_url,
    http_chat_completion,
)
from log_utils import setup_logger
from observability import log_event
from position_ledger import Position, TradeSide
from sentiment_feed import NewsItem, classify_score, score_headline

logger = setup_logger(__name__)


@dataclass(frozen=True)
class Decision:
    decision: TradeSide
    leverage: int
    confidence: float
    reasoning: str
    suggested_stop_loss: Optional[float] = None
    suggested_take_profit: Optional[float] = None

    @classmethod
    def wait(cls, reasoning: str) -> "Decision":
        return cls(decision=TradeSide.WAIT, leverage=1, confidence=0.0, reasoning=reasoning)

    @classmethod
    def from_payload(cls, data: Mapping[str, Any], max_leverage: Optional[int] = None) -> "Decision":
        """Build a decision from a parsed model reply, clamping every field."""

        side = TradeSide.parse(data.get("decision", "WAIT"))
        leverage = int(max(1.0, coerce_number(data.get("leverage"), 1.0)))
        if max_leverage is not None:
            leverage = min(leverage, int(max_leverage))
        confidence = max(0.0, min(100.0, coerce_number(data.get("confidence"), 0.0)))
        stop = data.get("suggestedStopLoss", data.get("suggested_stop_loss"))
        target = data.get("suggestedTakeProfit", data.get("suggested_take_profit"))
        return cls(
            decision=side,
            leverage=leverage,
            confidence=confidence,
            reasoning=str(data.get("reasoning") or ""),
            suggested_stop_loss=_optional_price(stop),
            suggested_take_profit=_optional_price(target),
        )

    @property
    def actionable(self) -> bool:
        return self.decision != TradeSide.WAIT


def _optional_price(value: Any) -> Optional[float]:
    price = coerce_number(value, 0.0) if value is not None else 0.0
    return price if price > 0 else None


@dataclass(frozen=True)
class MarketContext:
    asset: str
    price: float
    change_24h: float
    rsi: float
    fear_greed_index: int
    equity: float
    news: Tuple[NewsItem, ...] = field(default_factory=tuple)
    recent_trades: Tuple[Position, ...] = field(default_factory=tuple)


class DecisionProvider(Protocol):
    name: str

    def analyze(self, context: MarketContext) -> Decision:
        ...


# ---------------------------------------------------------------------------
# Prompting
# ---------------------------------------------------------------------------

SYSTEM_PROMPT = (
    "Role: Senior Crypto Quantitative Trader.\n"
    "Task: Analyze market data and output strictly valid JSON.\n"
    'Response Schema: { "decision": "LONG"|"SHORT"|"WAIT", "leverage": int(1-{max_leverage}), '
    '"confidence": int(0-100), "reasoning": string, "suggestedStopLoss": number, '
    '"suggestedTakeProfit": number }'
)

SENTIMENT_SYSTEM_PROMPT = (
    "Role: Expert Crypto Sentiment Analyst.\n"
    "Task: Analyze the headline and assign a sentiment score.\n"
    'Output: JSON with keys "sentiment" (BULLISH/BEARISH/NEUTRAL), "score" (-1.0 to 1.0), and "reasoning".'
)


def summarize_trades(trades: Sequence[Position], limit: int = 3) -> str:
    """One-line WIN/LOSS feedback for the most recent closed trades."""

    parts = [
        f"{t.side.value} on {t.asset} resulted in {'WIN' if t.pnl > 0 else 'LOSS'} ({t.pnl:.2f})"
        for t in list(trades)[:limit]
    ]
    return "; ".join(parts) or "None"


def build_messages(context: MarketContext, max_leverage: int = 5) -> List[Dict[str, str]]:
    news_lines = "\n".join(f"- {item.headline} ({item.score:.2f})" for item in context.news[:3]) or "- None"
    user_prompt = (
        f"Analyze data for {context.asset}.\n"
        f"Price: ${context.price:.2f} | 24h: {context.change_24h:.2f}%\n"
        f"RSI: {context.rsi:.2f} ({rsi_zone(context.rsi)}) | Fear&Greed: {context.fear_greed_index}\n"
        f"Equity: ${context.equity:.2f}\n\n"
        f"News:\n{news_lines}\n\n"
        f"Recent Trades: {summarize_trades(context.recent_trades)}\n\n"
        "Constraints:\n"
        f"- MAX Leverage: {max_leverage}x.\n"
        "- Risk Averse.\n"
        "- RSI > 75 Overbought, < 25 Oversold."
    )
    return [
        {"role": "system", "content": SYSTEM_PROMPT.replace("{max_leverage}", str(max_leverage))},
        {"role": "user", "content": user_prompt},
    ]


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------


class LLMDecisionProvider:
    """Shared prompt/parse logic; subclasses implement ``_complete``."""

    name = "llm"

    def __init__(self, max_leverage: int = 5) -> None:
        self.max_leverage = max_leverage

    def _complete(self, messages: List[Dict[str, str]], *, json_mode: bool = True) -> str:
        raise NotImplementedError

    def analyze(self, context: MarketContext) -> Decision:
        started = time.perf_counter()
        raw = self._complete(build_messages(context, self.max_leverage))
        data, ok = parse_llm_json_response(raw, logger=logger)
        if not ok:
            raise ProviderError(f"{self.name} returned unparsable decision: {raw[:120]!r}")
        decision = Decision.from_payload(data, self.max_leverage)
        log_event(
            logger,
            "decision_received",
            provider=self.name,
            asset=context.asset,
            decision=decision.decision.value,
            confidence=decision.confidence,
            latency=round(time.perf_counter() - started, 3),
        )
        return decision

    def score_headline(self, headline: str) -> Tuple[str, float]:
        """Model-scored headline sentiment, falling back to keyword scoring."""

        messages = [
            {"role": "system", "content": SENTIMENT_SYSTEM_PROMPT},
            {"role": "user", "content": f'Headline: "{headline}"'},
        ]
        try:
            raw = self._complete(messages)
        except ProviderError as exc:
            logger.debug("Headline scoring fell back to keywords: %s", exc)
            return score_headline(headline)
        data, ok = parse_llm_json_response(raw, logger=logger)
        if not ok or "score" not in data:
            return score_headline(headline)
        score = max(-1.0, min(1.0, coerce_number(data.get("score"), 0.0)))
        return classify_score(score), score


@lru_cache(maxsize=4)
def get_groq_client(api_key: str) -> Groq:
    """Return a cached Groq SDK client for ``api_key``."""

    logger.debug("Initialising shared Groq client")
    return Groq(api_key=api_key)


class GroqDecisionProvider(LLMDecisionProvider):
    """Groq chat completions with an ordered model fallback list."""

    name = "groq"

    def __init__(
        self,
        api_key: str,
        models: Sequence[str],
        *,
        max_leverage: int = 5,
        client: Optional[Any] = None,
        temperature: float = 0.2,
    ) -> None:
        super().__init__(max_leverage)
        if not api_key and client is None:
            raise ProviderAuthError("Groq API key missing")
        self.models = [m for m in models if m]
        self.temperature = temperature
        self._client = client or get_groq_client(api_key)

    def _complete(self, messages: List[Dict[str, str]], *, json_mode: bool = True) -> str:
        last_error: Optional[Exception] = None
        for model in self.models:
            kwargs: Dict[str, Any] = {"model": model, "messages": messages, "temperature": self.temperature}
            if json_mode:
                kwargs["response_format"] = {"type": "json_object"}
            try:
                response = self._client.chat.completions.create(**kwargs)
            except GroqRateLimitError as exc:
                logger.warning("Groq rate limit on %s: %s", model, exc)
                raise RateLimitError("Quota Exceeded") from exc
            except AuthenticationError as exc:
                raise ProviderAuthError("Groq authentication failed") from exc
            except (APIStatusError, APIConnectionError, APITimeoutError, APIError) as exc:
                logger.warning("Groq request on %s failed: %s", model, exc)
                last_error = exc
                continue
            content = response.choices[0].message.content if response.choices else None
            if content:
                return content
            last_error = ProviderError(f"empty response from {model}")
        raise ProviderError(f"all Groq models failed: {last_error}")


class OpenAICompatibleDecisionProvider(LLMDecisionProvider):
    """OpenRouter or a local Ollama server via ``/v1/chat/completions``."""

    def __init__(
        self,
        base_url: str,
        model: str,
        *,
        api_key: str = "",
        name: str = "openai-compatible",
        max_leverage: int = 5,
        temperature: float = 0.2,
        timeout: Optional[float] = None,
    ) -> None:
        super().__init__(max_leverage)
        self.url = chat_completions_url(base_url)
        self.model = model
        self.api_key = api_key
        self.name = name
        self.temperature = temperature
        self.timeout = timeout

    def _complete(self, messages: List[Dict[str, str]], *, json_mode: bool = True) -> str:
        return http_chat_completion(
            url=self.url,
            model=self.model,
            messages=messages,
            api_key=self.api_key,
            temperature=self.temperature,
            json_mode=json_mode,
            timeout=self.timeout,
        )


class UnavailableDecisionProvider:
    """Always answers WAIT; used when the configured backend cannot run."""

    name = "unavailable"

    def __init__(self, reason: str) -> None:
        self.reason = reason

    def analyze(self, context: MarketContext) -> Decision:
        return Decision.wait(self.reason)

    def score_headline(self, headline: str) -> Tuple[str, float]:
        return score_headline(headline)


def build_decision_provider(config: TradeConfig):
    """Instantiate the provider selected by ``config.ai_provider``."""

    provider = config.ai_provider
    if provider == "OPENROUTER":
        if not config.openrouter_api_key:
            return UnavailableDecisionProvider("OpenRouter API Key Missing")
        return OpenAICompatibleDecisionProvider(
            OPENROUTER_BASE_URL,
            config.openrouter_model,
            api_key=config.openrouter_api_key,
            name="openrouter",
            max_leverage=config.max_leverage,
        )
    if provider == "OLLAMA":
        return OpenAICompatibleDecisionProvider(
            config.ollama_base_url,
            config.ollama_model,
            api_key="ollama",
            name="ollama",
            max_leverage=config.max_leverage,
        )
    if not config.groq_api_key:
        return UnavailableDecisionProvider("Groq API Key Missing")
    return GroqDecisionProvider(
        config.groq_api_key,
        [config.groq_model, config.groq_fallback_model],
        max_leverage=config.max_leverage,
    )


__all__ = [
    "Decision",
    "DecisionProvider",
    "GroqDecisionProvider",
    "LLMDecisionProvider",
    "MarketContext",
    "OpenAICompatibleDecisionProvider",
    "ProviderAuthError",
    "ProviderError",
    "RateLimitError",
    "SYSTEM_PROMPT",
    "UnavailableDecisionProvider",
    "build_decision_provider",
    "build_messages",
    "get_groq_client",
    "summarize_trades",
]
