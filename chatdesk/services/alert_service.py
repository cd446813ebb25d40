"""Operational alerts to a Telegram chat.

Raised for failures an operator has to look at: a reply that could not be
delivered to the gateway, a webhook event rolled back, a ticket that could
not be recorded. Alerting never raises; an unconfigured bot only logs.
"""

from typing import Optional

import httpx

from chatdesk.config import settings
from chatdesk.logging_config import get_logger

logger = get_logger("alert_service")

ALERT_EMOJI = {"ERROR": "❌", "CRITICAL": "🔥"}
MAX_CONTEXT_VALUE = 300


def format_alert(level: str, message: str, context: Optional[dict] = None) -> str:
    text = f"{ALERT_EMOJI.get(level, '📢')} *{level}* chatdesk\n\n{message}"
    if context:
        lines = "\n".join(f"  {key}: {str(value)[:MAX_CONTEXT_VALUE]}" for key, value in context.items())
        text += f"\n\n```\n{lines}\n```"
    return text


def send_alert(level: str, message: str, context: Optional[dict] = None) -> bool:
    """Post the alert to the configured chat. Returns True when Telegram accepted it."""
    bot_token = settings.alert_bot_token
    chat_id = settings.alert_chat_id
    if not bot_token or not chat_id:
        logger.warning(f"Alert not configured: {level} - {message}", extra={"context": context or {}})
        return False

    try:
        with httpx.Client(timeout=settings.http_timeout_seconds) as client:
            response = client.post(
                f"https://api.telegram.org/bot{bot_token}/sendMessage",
                json={"chat_id": chat_id, "text": format_alert(level, message, context), "parse_mode": "Markdown"},
            )
            return response.status_code == 200
    except Exception as e:
        logger.error(f"Failed to send alert: {e}")
        return False


def alert_error(message: str, context: Optional[dict] = None) -> bool:
    return send_alert("ERROR", message, context)


def alert_critical(message: str, context: Optional[dict] = None) -> bool:
    return send_alert("CRITICAL", message, context)
