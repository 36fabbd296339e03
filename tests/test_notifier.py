import requests

import notifier as notifier_module
from config import TradeConfig
from notifier import Notifier, format_performance_report, format_trade_message
from position_ledger import Portfolio, Position, PositionStatus, TradeSide


def _position(**overrides):
    values = dict(
        id="abc", asset="ETH", side=TradeSide.LONG, size=1_000.0, leverage=5, entry_price=3_000.0,
        entry_time=0.0, confidence=82.0, reasoning="RSI <30 bounce",
        snapshot={"rsi": 28.0, "fear_index": 20.0, "news_score": 0.25},
    )
    values.update(overrides)
    return Position(**values)


def _notifier(**overrides):
    values = dict(
        enabled=True, telegram_token="token", telegram_chat_id="42",
        email_address="", email_password="", email_receiver="",
    )
    values.update(overrides)
    return Notifier(**values)


def test_open_message_lists_entry_details():
    text = format_trade_message(_position())
    assert "OPENED LONG ETH" in text
    assert "Entry: 3,000.00" in text
    assert "Size: $1,000.00 x5" in text
    assert "RSI 28.0 | F&G 20 | News +0.25" in text
    assert "RSI &lt;30 bounce" in text


def test_close_message_reports_pnl_and_reason():
    position = _position(
        status=PositionStatus.CLOSED, pnl=-12.5, fees=10.1, exit_price=2_950.0, close_reason="Stop Loss"
    )
    text = format_trade_message(position)
    assert "CLOSED LONG ETH" in text
    assert "Reason: Stop Loss" in text
    assert "PnL: -$12.50" in text


def test_performance_report_summarises_history():
    closed = [
        _position(id="a", status=PositionStatus.CLOSED, pnl=30.0, fees=1.0),
        _position(id="b", status=PositionStatus.CLOSED, pnl=-10.0, fees=1.0),
    ]
    report = format_performance_report(Portfolio(10_020.0, 10_020.0, 9_000.0), closed)
    assert "Balance: $10,020.00" in report
    assert "Closed trades: 2 | Win rate: 50.0%" in report
    assert "Net PnL: $20.00" in report


def test_send_posts_to_telegram(monkeypatch):
    calls = []

    class Response:
        def raise_for_status(self):
            return None

    def fake_post(url, json=None, timeout=None):
        calls.append((url, json))
        return Response()

    monkeypatch.setattr(notifier_module.requests, "post", fake_post)

    assert _notifier().send("hello")
    url, payload = calls[0]
    assert url == "https://api.telegram.org/bottoken/sendMessage"
    assert payload == {"chat_id": "42", "text": "hello", "parse_mode": "HTML"}


def test_send_is_noop_when_disabled(monkeypatch):
    def fail(*args, **kwargs):
        raise AssertionError("should not post")

    monkeypatch.setattr(notifier_module.requests, "post", fail)
    assert _notifier(enabled=False).send("hello") is False
    assert _notifier(telegram_token="").send("hello") is False


def test_send_failure_is_logged_not_raised(monkeypatch):
    def broken(*args, **kwargs):
        raise requests.ConnectionError("offline")

    monkeypatch.setattr(notifier_module.requests, "post", broken)
    assert _notifier().send("hello") is False


def test_notify_trade_uses_trade_subject(monkeypatch):
    notifier = _notifier()
    sent = []
    monkeypatch.setattr(notifier, "send", lambda text, subject: sent.append(subject) or True)
    assert notifier.notify_trade(_position())
    assert sent == ["Opened LONG ETH"]


def test_from_config_copies_settings():
    notifier = Notifier.from_config(
        TradeConfig(notifications_enabled=True, telegram_bot_token="t", telegram_chat_id="c")
    )
    assert notifier.enabled
    assert notifier.telegram_configured


def test_malformed_smtp_port_falls_back_to_default(monkeypatch):
    monkeypatch.setenv("SMTP_PORT", "not-a-port")
    assert Notifier().smtp_port == 587
    monkeypatch.setenv("SMTP_PORT", "2525")
    assert Notifier().smtp_port == 2525


def test_email_mirror_uses_configured_server(monkeypatch):
    opened = []

    class FakeSMTP:
        def __init__(self, host, port, timeout=None):
            opened.append((host, port))

        def starttls(self):
            return None

        def login(self, user, password):
            return None

        def send_message(self, msg):
            opened.append(msg["Subject"])

        def quit(self):
            return None

    monkeypatch.setattr(notifier_module.smtplib, "SMTP", FakeSMTP)
    notifier = Notifier(
        enabled=True,
        email_address="bot@example.com",
        email_password="pw",
        email_receiver="me@example.com",
        smtp_server="mail.example.com",
        smtp_port=2525,
    )

    assert notifier.send("hello", subject="Ping")
    assert opened == [("mail.example.com", 2525), "Ping"]
