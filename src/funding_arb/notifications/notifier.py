"""
Operator alerts over Telegram and Discord.

Every ``send_*`` call is fire-and-forget: it formats the message, schedules
delivery on the running event loop and returns. Delivery runs the blocking
``requests`` call in a worker thread, logs failures and never raises into
the caller. ``drain()`` waits for whatever is still in flight.
"""

from __future__ import annotations

import asyncio
import html
import logging
import re
from enum import Enum
from typing import Mapping, Optional, Set

import requests

from funding_arb.core.config import NotificationConfig
from funding_arb.core.models import utc_now


TELEGRAM_URL = "https://api.telegram.org/bot{token}/sendMessage"
REQUEST_TIMEOUT = 10            # seconds
DISCORD_MAX_CONTENT = 2000      # webhook content limit


class NotificationType(Enum):
    SYSTEM_START = "system_start"
    SYSTEM_STOP = "system_stop"
    TRADE_EXECUTED = "trade_executed"
    TRADE_CLOSED = "trade_closed"
    SYSTEM_ERROR = "system_error"
    TRADE_ERROR = "trade_error"
    UNHEDGED_EXPOSURE = "unhedged_exposure"


def format_message(
    kind: NotificationType,
    message: str,
    trade: Optional[Mapping] = None,
    details: Optional[Mapping] = None,
    error=None,
    timestamp: Optional[str] = None,
) -> str:
    """Render a notification as Telegram HTML."""
    timestamp = timestamp or utc_now().isoformat()
    lines = [f"<b>[{kind.value}]</b>", html.escape(message)]

    if error is not None:
        lines += ["", f"Error: {html.escape(str(error))}"]

    if trade is not None:
        lines += ["", "Trade Details:"]
        for label in ("exchange", "symbol", "side", "size", "price"):
            lines.append(f"{label.capitalize()}: {html.escape(str(trade.get(label, '-')))}")

    if details:
        lines += ["", "Details:"]
        lines += [f"{html.escape(str(k))}: {html.escape(str(v))}" for k, v in details.items()]

    lines.append(f"Timestamp: {timestamp}")
    return "\n".join(lines)


def html_to_markdown(text: str) -> str:
    text = re.sub(r"</?b>", "**", text)
    return html.unescape(text)


class NotificationService:

    def __init__(self, config: Optional[NotificationConfig] = None, logger: Optional[logging.Logger] = None) -> None:
        self.config = config or NotificationConfig()
        self.logger = logger or logging.getLogger(__name__)
        self._pending: Set[asyncio.Task] = set()

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def send_system_notification(self, kind, message: str) -> None:
        self._dispatch(kind, message)

    def send_trade_notification(self, kind, message: str, trade: Mapping, details: Optional[Mapping] = None) -> None:
        self._dispatch(kind, message, trade=trade, details=details)

    def send_error_notification(self, kind, message: str, error) -> None:
        self._dispatch(kind, message, error=error)

    async def drain(self) -> None:
        """Wait for every scheduled delivery to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _dispatch(self, kind, message: str, **parts) -> None:
        if not self.config.enabled:
            return

        try:
            kind = NotificationType(kind)
        except ValueError:
            self.logger.warning(f"Unknown notification kind {kind!r}, dropping: {message}")
            return

        text = format_message(kind, message, **parts)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.logger.warning(f"No running event loop, dropping {kind.value} notification")
            return

        task = loop.create_task(self._deliver(text))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _deliver(self, text: str) -> None:
        telegram = self.config.telegram
        if telegram.bot_token and telegram.chat_id:
            await self._run_channel("Telegram", self._post_telegram, text)

        if self.config.discord.webhook_url:
            await self._run_channel("Discord", self._post_discord, text)

    async def _run_channel(self, channel: str, post, text: str) -> None:
        try:
            await asyncio.to_thread(post, text)
            self.logger.debug(f"{channel} notification sent.")
        except Exception as exc:
            self.logger.error(f"Error sending {channel} notification: {exc}")

    def _post_telegram(self, text: str) -> None:
        telegram = self.config.telegram
        response = requests.post(
            TELEGRAM_URL.format(token=telegram.bot_token),
            json={"chat_id": telegram.chat_id, "text": text, "parse_mode": "HTML"},
            timeout=REQUEST_TIMEOUT,
        )
        response.raise_for_status()

    def _post_discord(self, text: str) -> None:
        response = requests.post(
            self.config.discord.webhook_url,
            json={"content": html_to_markdown(text)[:DISCORD_MAX_CONTENT]},
            timeout=REQUEST_TIMEOUT,
        )
        response.raise_for_status()
