"""Operator alerts sent to a Telegram chat."""

import threading
import time
from typing import Optional

import httpx
import redis

from flowpay.config import settings
from flowpay.logging_config import get_logger

logger = get_logger("alert_service")

_redis_client = None
_redis_url = None
_local_sent_at: dict[str, float] = {}
_local_lock = threading.Lock()


def _get_redis():
    global _redis_client, _redis_url

    if not settings.redis_url:
        return None

    if _redis_client is None or _redis_url != settings.redis_url:
        _redis_url = settings.redis_url
        _redis_client = redis.Redis.from_url(
            settings.redis_url,
            decode_responses=True,
            socket_connect_timeout=settings.redis_socket_timeout_seconds,
            socket_timeout=settings.redis_socket_timeout_seconds,
        )

    return _redis_client


def claim_alert_slot(dedupe_key: str) -> bool:
    """True when no alert with this key went out within `alert_dedupe_seconds`."""
    ttl_seconds = settings.alert_dedupe_seconds
    redis_client = _get_redis()
    if redis_client:
        try:
            return bool(redis_client.set(f"flowpay:alert:{dedupe_key}", "1", ex=ttl_seconds, nx=True))
        except redis.RedisError as e:
            logger.warning(f"Alert dedupe redis unavailable, using process memory: {e}")

    now = time.monotonic()
    with _local_lock:
        last_sent = _local_sent_at.get(dedupe_key)
        if last_sent is not None and now - last_sent < ttl_seconds:
            return False
        _local_sent_at[dedupe_key] = now
        return True


def send_alert(level: str, message: str, context: Optional[dict] = None, dedupe_key: Optional[str] = None) -> bool:
    """Send alert to the operator chat.

    Args:
        level: INFO, WARNING, ERROR, CRITICAL
        message: Alert message
        context: Optional context dict
        dedupe_key: Alerts sharing a key are sent at most once per `alert_dedupe_seconds`

    Returns:
        True if sent successfully
    """
    if not settings.alert_bot_token or not settings.alert_chat_id:
        logger.warning(f"Alert not configured: {level} - {message}", extra={"context": context or {}})
        return False

    if dedupe_key and not claim_alert_slot(dedupe_key):
        logger.info(f"Alert suppressed as repeat: {message}", extra={"context": {"dedupe_key": dedupe_key}})
        return False

    emoji = {"INFO": "ℹ️", "WARNING": "⚠️", "ERROR": "❌", "CRITICAL": "🔥"}

    text = f"{emoji.get(level, '📢')} *{level}*\n\n{message}"

    if context:
        context_str = "\n".join(f"  {k}: {v}" for k, v in context.items())
        text += f"\n\n```\n{context_str}\n```"

    try:
        with httpx.Client(timeout=settings.http_timeout_seconds) as client:
            response = client.post(
                f"https://api.telegram.org/bot{settings.alert_bot_token}/sendMessage",
                json={"chat_id": settings.alert_chat_id, "text": text, "parse_mode": "Markdown"},
            )
            return response.status_code == 200
    except Exception as e:
        logger.error(f"Failed to send alert: {e}")
        return False


def alert_error(message: str, context: Optional[dict] = None, dedupe_key: Optional[str] = None) -> bool:
    """Shortcut for ERROR level alert."""
    return send_alert("ERROR", message, context, dedupe_key=dedupe_key)


def alert_critical(message: str, context: Optional[dict] = None, dedupe_key: Optional[str] = None) -> bool:
    """Shortcut for CRITICAL level alert."""
    return send_alert("CRITICAL", message, context, dedupe_key=dedupe_key)


def alert_warning(message: str, context: Optional[dict] = None, dedupe_key: Optional[str] = None) -> bool:
    """Shortcut for WARNING level alert."""
    return send_alert("WARNING", message, context, dedupe_key=dedupe_key)
