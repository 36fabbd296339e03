"""Central configuration loader for environment variables."""
from __future__ import annotations

import os
from dataclasses import asdict, dataclass, field, replace
from typing import Any, Dict, Tuple

from dotenv import load_dotenv

# Load environment variables once when this module is imported.
load_dotenv()


# ---------------------------------------------------------------------------
# Trading constants
# ---------------------------------------------------------------------------

TRADING_FEE_RATE = 0.001
INITIAL_BALANCE = 10_000.0
CANDLE_WINDOW_SECONDS = 900
CANDLE_CLOCK_SECONDS = 1.0
MIN_DECISION_CONFIDENCE = 75.0
REPORT_PROBABILITY = 0.005
NEWS_BUFFER_SIZE = 30

HYPERLIQUID_INFO_URL = "https://api.hyperliquid.xyz/info"
HYPERLIQUID_WS_URL = "wss://api.hyperliquid.xyz/ws"

DEFAULT_ASSETS: Tuple[str, ...] = ("BTC", "ETH", "SOL", "HYPE", "ARB")

AI_PROVIDERS = ("GROQ", "OPENROUTER", "OLLAMA")
EXECUTION_MODES = ("SIMULATION", "REAL")

DEFAULT_GROQ_MODEL = "llama-3.3-70b-versatile"
DEFAULT_GROQ_FALLBACK_MODEL = "llama-3.1-8b-instant"
DEFAULT_OPENROUTER_MODEL = "google/gemini-2.0-flash-exp:free"
DEFAULT_OLLAMA_MODEL = "llama3"
OPENROUTER_BASE_URL = "https://openrouter.ai/api"
DEFAULT_OLLAMA_BASE_URL = "http://localhost:11434"


# ---------------------------------------------------------------------------
# Environment helpers
# ---------------------------------------------------------------------------


def _clean(value: str | None) -> str:
    """Return ``value`` without inline comments or surrounding whitespace."""

    if not value:
        return ""
    return value.split("#", 1)[0].strip()


def get(key: str, default: str | None = None) -> str | None:
    """Retrieve an environment variable with an optional default."""
    return os.getenv(key, default)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    normalized = raw.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return float(default)
    try:
        return float(raw)
    except (TypeError, ValueError):
        return float(default)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return int(default)
    try:
        return int(float(raw))
    except (TypeError, ValueError, OverflowError):
        return int(default)


def _env_list(name: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    raw = _clean(os.getenv(name))
    if not raw:
        return tuple(default)
    items = [part.strip().upper() for part in raw.split(",")]
    return tuple(item for item in items if item)


def _env_choice(name: str, choices: Tuple[str, ...], default: str) -> str:
    raw = _clean(os.getenv(name)).upper()
    return raw if raw in choices else default


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


# ---------------------------------------------------------------------------
# Trade configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TradeConfig:
    """User-facing trading knobs plus provider and output settings."""

    assets: Tuple[str, ...] = DEFAULT_ASSETS
    max_leverage: int = 5
    risk_per_trade: float = 0.1
    stop_loss_pct: float = 0.02
    take_profit_pct: float = 0.04
    analysis_interval_mins: float = 15.0
    assets_per_cycle: int = 1
    initial_balance: float = INITIAL_BALANCE
    ai_provider: str = "GROQ"
    groq_api_key: str = field(default="", repr=False)
    groq_model: str = DEFAULT_GROQ_MODEL
    groq_fallback_model: str = DEFAULT_GROQ_FALLBACK_MODEL
    openrouter_api_key: str = field(default="", repr=False)
    openrouter_model: str = DEFAULT_OPENROUTER_MODEL
    ollama_base_url: str = DEFAULT_OLLAMA_BASE_URL
    ollama_model: str = DEFAULT_OLLAMA_MODEL
    notifications_enabled: bool = False
    telegram_bot_token: str = field(default="", repr=False)
    telegram_chat_id: str = ""
    execution_mode: str = "SIMULATION"
    wallet_private_key: str = field(default="", repr=False)
    data_dir: str = "data"

    def __post_init__(self) -> None:
        # Frozen dataclass: normalise through object.__setattr__.
        object.__setattr__(self, "assets", tuple(a.strip().upper() for a in self.assets if a and a.strip()))
        object.__setattr__(self, "max_leverage", max(1, int(self.max_leverage)))
        object.__setattr__(self, "risk_per_trade", _clamp(float(self.risk_per_trade), 0.0, 1.0))
        object.__setattr__(self, "stop_loss_pct", _clamp(float(self.stop_loss_pct), 0.0, 1.0))
        object.__setattr__(self, "take_profit_pct", max(0.0, float(self.take_profit_pct)))
        object.__setattr__(self, "analysis_interval_mins", max(1.0, float(self.analysis_interval_mins)))
        object.__setattr__(self, "assets_per_cycle", max(1, int(self.assets_per_cycle)))
        object.__setattr__(self, "initial_balance", max(0.0, float(self.initial_balance)))
        provider = str(self.ai_provider).upper()
        object.__setattr__(self, "ai_provider", provider if provider in AI_PROVIDERS else "GROQ")
        mode = str(self.execution_mode).upper()
        object.__setattr__(self, "execution_mode", mode if mode in EXECUTION_MODES else "SIMULATION")

    @property
    def interval_seconds(self) -> float:
        return self.analysis_interval_mins * 60.0

    @property
    def is_real_mode(self) -> bool:
        return self.execution_mode == "REAL"

    def replace(self, **changes: Any) -> "TradeConfig":
        """Return a copy with ``changes`` applied (and re-validated)."""

        return replace(self, **changes)

    def public_dict(self) -> Dict[str, Any]:
        """Return the config without secrets, suitable for persistence."""

        data = asdict(self)
        for secret in ("groq_api_key", "openrouter_api_key", "telegram_bot_token", "wallet_private_key"):
            data[secret] = bool(data[secret])
        data["assets"] = list(self.assets)
        return data


def load_trade_config() -> TradeConfig:
    """Load the trade configuration from environment variables."""

    return TradeConfig(
        assets=_env_list("TRADE_ASSETS", DEFAULT_ASSETS),
        max_leverage=_env_int("MAX_LEVERAGE", 5),
        risk_per_trade=_env_float("RISK_PER_TRADE", 0.1),
        stop_loss_pct=_env_float("STOP_LOSS_PCT", 0.02),
        take_profit_pct=_env_float("TAKE_PROFIT_PCT", 0.04),
        analysis_interval_mins=_env_float("ANALYSIS_INTERVAL_MINS", 15.0),
        assets_per_cycle=_env_int("ASSETS_PER_CYCLE", 1),
        initial_balance=_env_float("INITIAL_BALANCE", INITIAL_BALANCE),
        ai_provider=_env_choice("AI_PROVIDER", AI_PROVIDERS, "GROQ"),
        groq_api_key=_clean(os.getenv("GROQ_API_KEY")),
        groq_model=_clean(os.getenv("GROQ_MODEL")) or DEFAULT_GROQ_MODEL,
        groq_fallback_model=_clean(os.getenv("GROQ_FALLBACK_MODEL")) or DEFAULT_GROQ_FALLBACK_MODEL,
        openrouter_api_key=_clean(os.getenv("OPENROUTER_API_KEY")),
        openrouter_model=_clean(os.getenv("OPENROUTER_MODEL")) or DEFAULT_OPENROUTER_MODEL,
        ollama_base_url=_clean(os.getenv("OLLAMA_BASE_URL")) or DEFAULT_OLLAMA_BASE_URL,
        ollama_model=_clean(os.getenv("OLLAMA_MODEL")) or DEFAULT_OLLAMA_MODEL,
        notifications_enabled=_env_bool("NOTIFICATIONS_ENABLED", False),
        telegram_bot_token=_clean(os.getenv("TELEGRAM_BOT_TOKEN")),
        telegram_chat_id=_clean(os.getenv("TELEGRAM_CHAT_ID")),
        execution_mode=_env_choice("EXECUTION_MODE", EXECUTION_MODES, "SIMULATION"),
        wallet_private_key=_clean(os.getenv("WALLET_PRIVATE_KEY")),
        data_dir=_clean(os.getenv("DATA_DIR")) or "data",
    )


__all__ = [
    "AI_PROVIDERS",
    "CANDLE_CLOCK_SECONDS",
    "CANDLE_WINDOW_SECONDS",
    "DEFAULT_ASSETS",
    "EXECUTION_MODES",
    "HYPERLIQUID_INFO_URL",
    "HYPERLIQUID_WS_URL",
    "INITIAL_BALANCE",
    "MIN_DECISION_CONFIDENCE",
    "NEWS_BUFFER_SIZE",
    "REPORT_PROBABILITY",
    "TRADING_FEE_RATE",
    "TradeConfig",
    "get",
    "load_trade_config",
]
