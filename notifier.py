import os
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from html import escape
from typing import Any, Optional, Sequence

import requests
from dotenv import load_dotenv

from config import _env_int
from log_utils import setup_logger
from performance import compute_performance
from position_ledger import Portfolio, Position, PositionStatus

load_dotenv()

DEFAULT_SMTP_SERVER = "smtp.gmail.com"
DEFAULT_SMTP_PORT = 587
TELEGRAM_API = "https://api.telegram.org"

__all__ = [
    "Notifier",
    "format_performance_report",
    "format_trade_message",
]

logger = setup_logger(__name__)


def _coerce_number(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.replace(",", "").replace("$", ""))
        except ValueError:
            return None
    return None


def _format_currency(value: Any) -> str:
    number = _coerce_number(value)
    if number is None:
        return "N/A"
    sign = "-" if number < 0 else ""
    return f"{sign}${abs(number):,.2f}"


def _format_price(value: Any) -> str:
    number = _coerce_number(value)
    if number is None:
        return "N/A"
    if abs(number) >= 100:
        return f"{number:,.2f}"
    if abs(number) >= 1:
        return f"{number:,.4f}"
    return f"{number:.6f}"


def format_trade_message(position: Position) -> str:
    """Human-readable HTML (Telegram flavour) for an open or close event."""

    side = position.side.value
    if position.status == PositionStatus.OPEN:
        lines = [
            f"🚀 <b>OPENED {side} {escape(position.asset)}</b>",
            f"Entry: {_format_price(position.entry_price)}",
            f"Size: {_format_currency(position.size)} x{position.leverage}",
            f"Confidence: {position.confidence:.0f}%",
        ]
        snapshot = position.snapshot or {}
        if snapshot:
            lines.append(
                "RSI {rsi:.1f} | F&G {fear:.0f} | News {news:+.2f}".format(
                    rsi=float(snapshot.get("rsi", 50.0)),
                    fear=float(snapshot.get("fear_index", 50.0)),
                    news=float(snapshot.get("news_score", 0.0)),
                )
            )
    else:
        icon = "✅" if position.pnl > 0 else "🛑"
        lines = [
            f"{icon} <b>CLOSED {side} {escape(position.asset)}</b>",
            f"Reason: {escape(position.close_reason or 'N/A')}",
            f"Entry: {_format_price(position.entry_price)} → Exit: {_format_price(position.exit_price)}",
            f"PnL: {_format_currency(position.pnl)} (fees {_format_currency(position.fees)})",
        ]
    if position.reasoning:
        lines.append(f"<i>{escape(position.reasoning[:300])}</i>")
    return "\n".join(lines)


def format_performance_report(portfolio: Portfolio, history: Sequence[Position]) -> str:
    stats = compute_performance(history)
    return "\n".join(
        [
            "📊 <b>Performance Report</b>",
            f"Balance: {_format_currency(portfolio.balance)}",
            f"Equity: {_format_currency(portfolio.equity)}",
            f"Available margin: {_format_currency(portfolio.available_margin)}",
            f"Closed trades: {stats.count} | Win rate: {stats.win_rate:.1f}%",
            f"Net PnL: {_format_currency(stats.total_pnl)} | Fees: {_format_currency(stats.total_fees)}",
            f"Best: {_format_currency(stats.best_trade)} | Worst: {_format_currency(stats.worst_trade)}",
        ]
    )


class Notifier:
    """Deliver alerts to Telegram and, optionally, e-mail.

    ``send`` never raises: delivery problems are logged and reported via the
    boolean return value.
    """

    def __init__(
        self,
        *,
        enabled: bool = False,
        telegram_token: str = "",
        telegram_chat_id: str = "",
        email_address: Optional[str] = None,
        email_password: Optional[str] = None,
        email_receiver: Optional[str] = None,
        smtp_server: Optional[str] = None,
        smtp_port: Optional[int] = None,
        timeout: float = 10.0,
    ) -> None:
        self.enabled = enabled
        self.telegram_token = telegram_token
        self.telegram_chat_id = telegram_chat_id
        self.email_address = email_address if email_address is not None else os.getenv("EMAIL_ADDRESS")
        self.email_password = email_password if email_password is not None else os.getenv("EMAIL_PASSWORD")
        self.email_receiver = email_receiver if email_receiver is not None else os.getenv("EMAIL_RECEIVER")
        self.smtp_server = smtp_server or os.getenv("SMTP_SERVER") or DEFAULT_SMTP_SERVER
        self.smtp_port = smtp_port if smtp_port is not None else _env_int("SMTP_PORT", DEFAULT_SMTP_PORT)
        self.timeout = timeout

    @classmethod
    def from_config(cls, config) -> "Notifier":
        return cls(
            enabled=config.notifications_enabled,
            telegram_token=config.telegram_bot_token,
            telegram_chat_id=config.telegram_chat_id,
        )

    @property
    def telegram_configured(self) -> bool:
        return bool(self.telegram_token and self.telegram_chat_id)

    @property
    def email_configured(self) -> bool:
        return bool(self.email_address and self.email_password and self.email_receiver)

    def send(self, text: str, subject: str = "NeuroLiquid Alert") -> bool:
        if not self.enabled or not text:
            return False
        delivered = False
        if self.telegram_configured:
            delivered = self._send_telegram(text) or delivered
        if self.email_configured:
            delivered = self._send_email(subject, text) or delivered
        if not (self.telegram_configured or self.email_configured):
            logger.debug("Notifications enabled but no channel configured")
        return delivered

    def notify_trade(self, position: Position) -> bool:
        action = "Opened" if position.status == PositionStatus.OPEN else "Closed"
        return self.send(format_trade_message(position), subject=f"{action} {position.side.value} {position.asset}")

    def _send_telegram(self, text: str) -> bool:
        url = f"{TELEGRAM_API}/bot{self.telegram_token}/sendMessage"
        payload = {"chat_id": self.telegram_chat_id, "text": text, "parse_mode": "HTML"}
        try:
            response = requests.post(url, json=payload, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as exc:
            logger.error("Telegram delivery failed: %s", exc)
            return False
        return True

    def _send_email(self, subject: str, text: str) -> bool:
        try:
            msg = MIMEMultipart()
            msg["From"] = self.email_address
            msg["To"] = self.email_receiver
            msg["Subject"] = subject
            msg.attach(MIMEText(text.replace("\n", "<br>"), "html"))
            server = smtplib.SMTP(self.smtp_server, self.smtp_port, timeout=self.timeout)
            try:
                server.starttls()
                server.login(self.email_address, self.email_password)
                server.send_message(msg)
            finally:
                server.quit()
        except (smtplib.SMTPException, OSError) as exc:
            logger.error("Email sending failed: %s", exc, exc_info=True)
            return False
        logger.info("Alert email sent: %s", subject)
        return True
