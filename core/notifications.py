"""
Telegram alerts for trades that need an operator.
"""
from __future__ import annotations

import logging

import httpx
from django.conf import settings

logger = logging.getLogger(__name__)

E_ERROR = "\U0001F6A8"
E_SIREN = "\U0001F6A8\U0001F6A8"
E_UP = "⬆️"
E_DOWN = "⬇️"
E_WARN = "⚠️"


def send_telegram(message: str, parse_mode: str | None = "HTML") -> bool:
    """Send a Telegram message. Returns True if successful."""
    if not getattr(settings, "TELEGRAM_ENABLED", False):
        return False
    token = getattr(settings, "TELEGRAM_BOT_TOKEN", "")
    chat_id = getattr(settings, "TELEGRAM_CHAT_ID", "")
    if not token or not chat_id:
        logger.debug("Telegram not configured (missing token or chat_id)")
        return False

    url = f"https://api.telegram.org/bot{token}/sendMessage"
    try:
        payload = {"chat_id": chat_id, "text": message}
        if parse_mode:
            payload["parse_mode"] = parse_mode
        resp = httpx.post(url, json=payload, timeout=10)
        if resp.status_code == 200:
            return True

        # Telegram rejects stray HTML entities; resend as plain text.
        if parse_mode and resp.status_code == 400 and "can't parse entities" in resp.text.lower():
            logger.warning("Telegram parse error with parse_mode=%s; retrying as plain text", parse_mode)
            fallback_resp = httpx.post(url, json={"chat_id": chat_id, "text": message}, timeout=10)
            if fallback_resp.status_code == 200:
                return True
            logger.warning(
                "Telegram API error %s after fallback: %s",
                fallback_resp.status_code,
                fallback_resp.text[:200],
            )
            return False

        logger.warning("Telegram API error %s: %s", resp.status_code, resp.text[:200])
        return False
    except Exception as exc:
        logger.warning("Telegram send failed: %s", exc)
        return False


def notify_trade_executed(
    symbol: str,
    side: str,
    quantity: float,
    price: float,
    username: str = "",
    mode: str = "auto",
):
    """Alert: auto or manual trade filled."""
    icon = E_UP if side == "buy" else E_DOWN
    msg = (
        f"{icon} <b>{side.upper()} {symbol}</b> ({mode})\n"
        f"<b>Qty:</b> {quantity:.8g}\n"
        f"<b>Price:</b> {price:.8g}\n"
        f"<b>Total:</b> {quantity * price:.2f}"
    )
    if username:
        msg += f"\n<b>User:</b> {username}"
    send_telegram(msg)


def notify_error(context: str, error: str = ""):
    """Alert: system error."""
    msg = f"{E_ERROR} <b>ERROR</b>\n<b>Context:</b> {context}"
    if error:
        msg += f"\n<b>Error:</b> {error[:500]}"
    send_telegram(msg)


def notify_critical(context: str, error: str = "", reconcile: bool = True):
    """Alert: money may have moved without a matching ledger entry."""
    msg = f"{E_SIREN} <b>CRITICAL</b>\n<b>Context:</b> {context}"
    if error:
        msg += f"\n<b>Error:</b> {error[:500]}"
    if reconcile:
        msg += f"\n{E_WARN} Manual reconciliation required"
    send_telegram(msg)
