"""
Enrichment pipeline — Telegram alerts for aborted and stuck jobs.
"""

import re
import logging

import aiohttp

from prospect_api.config import settings

logger = logging.getLogger("enrichment.notify")


def _esc_md(s: str) -> str:
    """Escape MarkdownV2 special characters."""
    return re.sub(r"([_*\[\]()~`>#+\-=|{}.!\\])", r"\\\1", str(s))


async def send_alert(title: str, lines: list[str] | None = None) -> bool:
    """Send a Telegram alert. Returns True on success, never raises."""
    token = settings.telegram_bot_token
    chat_id = settings.telegram_chat_id

    if not token or not chat_id:
        logger.warning("Telegram not configured — skipping alert: %s", title)
        return False

    message = "\n".join(
        [f"⚠️ *{_esc_md(title)}*", ""] + [_esc_md(line) for line in (lines or [])]
    )
    payload = {
        "chat_id": chat_id,
        "text": message,
        "parse_mode": "MarkdownV2",
    }
    return await _send_tg_message(payload)


async def _send_tg_message(payload: dict) -> bool:
    """Low-level Telegram sendMessage wrapper."""
    token = settings.telegram_bot_token
    try:
        timeout = aiohttp.ClientTimeout(total=10)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            url = f"https://api.telegram.org/bot{token}/sendMessage"
            async with session.post(url, json=payload) as resp:
                if resp.status == 200:
                    logger.info("Telegram alert sent")
                    return True
                body = await resp.text()
                logger.error(f"Telegram API {resp.status}: {body[:200]}")
                return False
    except Exception as e:
        logger.error(f"Telegram failed: {e}")
        return False
