"""Telegram notification adapter — implements NotificationPort.

Wraps a telegram.Bot instance to satisfy the NotificationPort protocol and
translates Telegram errors into the port's own exceptions.
"""

from __future__ import annotations

import logging

from telegram import Bot
from telegram.error import BadRequest, Forbidden, TelegramError

from src.ports.notification_port import NotificationError, RecipientUnavailable

logger = logging.getLogger(__name__)


class TelegramNotifier:
    """Telegram implementation of NotificationPort."""

    def __init__(self, bot: Bot) -> None:
        self._bot = bot

    async def send_message(self, user_id: int, text: str) -> None:
        try:
            await self._bot.send_message(chat_id=user_id, text=text)
        except Forbidden as exc:
            raise RecipientUnavailable(str(exc)) from exc
        except BadRequest as exc:
            if "chat not found" in str(exc).lower():
                raise RecipientUnavailable(str(exc)) from exc
            raise NotificationError(str(exc)) from exc
        except TelegramError as exc:
            raise NotificationError(str(exc)) from exc
