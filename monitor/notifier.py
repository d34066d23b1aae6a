"""Best-effort outbound notifications (Telegram and a local JSONL sink)."""

from __future__ import annotations

import asyncio
import json
import logging
import os
from html import escape
from typing import Any, Protocol

from telegram import Bot

import config
from utils.log_contracts import local_event

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    async def notify(self, event: dict[str, Any]) -> bool: ...

    async def close(self) -> None: ...


def explorer_link(signature: str) -> str:
    return config.EXPLORER_TX_URL.format(signature=signature)


class TelegramNotifier:
    def __init__(self, token: str | None = None, chat_id: str | None = None, bot: Any = None) -> None:
        self.chat_id = str(chat_id or config.TELEGRAM_CHAT_ID).strip()
        self._bot = bot or Bot(token or config.TELEGRAM_BOT_TOKEN)

    @staticmethod
    def _format(event: dict[str, Any]) -> str:
        title = escape(str(event.get("title", "") or "event"))
        text = escape(str(event.get("text", "") or ""))
        link = str(event.get("explorer_url", "") or "")
        parts = [f"<b>{title}</b>"]
        if text:
            parts.append(text)
        if link:
            parts.append(f'<a href="{escape(link)}">View transaction</a>')
        return "\n".join(parts)

    async def notify(self, event: dict[str, Any]) -> bool:
        try:
            await self._bot.send_message(
                chat_id=self.chat_id,
                text=self._format(event),
                parse_mode="HTML",
                disable_web_page_preview=True,
            )
            return True
        except Exception as exc:
            logger.warning("NOTIFY_FAILED channel=telegram title=%s err=%s", event.get("title", ""), exc)
            return False

    async def close(self) -> None:
        try:
            await self._bot.shutdown()
        except Exception:
            logger.debug("Telegram bot shutdown failed", exc_info=True)


class LocalNotifier:
    def __init__(self, events_file: str | None = None) -> None:
        self.events_file = events_file or config.LOCAL_EVENTS_FILE
        os.makedirs(os.path.dirname(self.events_file) or ".", exist_ok=True)

    async def notify(self, event: dict[str, Any]) -> bool:
        payload = local_event(dict(event or {}), run_tag=config.RUN_TAG)
        try:
            await asyncio.to_thread(self._append_line, json.dumps(payload, ensure_ascii=False))
        except OSError as exc:
            logger.warning("NOTIFY_FAILED channel=local file=%s err=%s", self.events_file, exc)
            return False
        logger.info("Local event title=%s severity=%s", payload["title"], payload["severity"])
        return True

    def _append_line(self, line: str) -> None:
        with open(self.events_file, "a", encoding="utf-8") as f:
            f.write(line + "\n")

    async def close(self) -> None:
        return None


class MultiNotifier:
    def __init__(self, channels: list[Any]) -> None:
        self.channels = list(channels)

    async def notify(self, event: dict[str, Any]) -> bool:
        delivered = False
        for channel in self.channels:
            try:
                delivered = bool(await channel.notify(event)) or delivered
            except Exception as exc:
                logger.warning("NOTIFY_FAILED channel=%s err=%s", type(channel).__name__, exc)
        return delivered

    async def close(self) -> None:
        for channel in self.channels:
            await channel.close()


def build_notifier() -> MultiNotifier:
    channels: list[Any] = []
    if config.LOCAL_EVENTS_FILE:
        channels.append(LocalNotifier(config.LOCAL_EVENTS_FILE))
    if config.TELEGRAM_BOT_TOKEN and config.TELEGRAM_CHAT_ID:
        channels.append(TelegramNotifier())
    logger.info("NOTIFIER channels=%s", ",".join(type(c).__name__ for c in channels) or "none")
    return MultiNotifier(channels)
