"""
Outbound relay: validates a (chat_id, message) pair and forwards it to
the Telegram Bot API with bounded retry and exponential backoff.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

import httpx

from app.config import Settings
from app.errors import (
    ConfigurationError,
    DeliveryExhausted,
    EmptyMessage,
    MessageTooLong,
    MissingDestination,
    PlatformRejected,
    RelayError,
    RequestFailed,
)
from app.metrics import record_relay_attempt, record_relay_send
from app.telegram import ChatId, TelegramBotClient

logger = logging.getLogger(__name__)

MAX_MESSAGE_LENGTH = 2048


def utf16_length(text: str) -> int:
    """Length in UTF-16 code units, the unit browser callers count in."""
    return len(text.encode("utf-16-le")) // 2


def backoff_delay(attempt: int, base: float) -> float:
    """Seconds to wait after failed attempt `attempt` (1-indexed)."""
    return (2 ** attempt) * base


@dataclass
class SendResult:
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None
    reason: Optional[RelayError] = None


class OutboundRelay:
    """
    Delivers text messages to Telegram chats.

    `send` is the caller-facing operation and never raises; every failure
    comes back as a SendResult carrying the matching RelayError.
    `deliver` runs the attempt loop and raises, for internal callers
    (the webhook handler) that build their own markup.
    """

    def __init__(
        self,
        bot: Optional[TelegramBotClient],
        max_attempts: int = 3,
        backoff_base: float = 0.5,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.bot = bot
        self.max_attempts = max(1, max_attempts)
        self.backoff_base = backoff_base
        self.sleep = sleep

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "OutboundRelay":
        bot = None
        if settings.TELEGRAM_BOT_TOKEN:
            bot = TelegramBotClient(
                token=settings.TELEGRAM_BOT_TOKEN,
                api_base=settings.TELEGRAM_API_BASE,
                timeout=settings.TELEGRAM_TIMEOUT_SECONDS,
                transport=transport,
            )
        return cls(
            bot=bot,
            max_attempts=settings.RELAY_MAX_ATTEMPTS,
            backoff_base=settings.RELAY_BACKOFF_SECONDS,
        )

    def validate(self, chat_id: Optional[ChatId], message: Optional[str]) -> None:
        """Raise the first violated rule, in contract order."""
        if self.bot is None:
            raise ConfigurationError()

        # bool is an int subclass but never a chat identifier
        if not isinstance(chat_id, (int, str)) or isinstance(chat_id, bool) or str(chat_id).strip() == "":
            raise MissingDestination()

        if not isinstance(message, str) or not message.strip():
            raise EmptyMessage()

        # Length is checked on the message as received, before trimming
        if utf16_length(message) > MAX_MESSAGE_LENGTH:
            raise MessageTooLong()

    async def send(self, chat_id: Optional[ChatId], message: Optional[str]) -> SendResult:
        logger.info(
            "Relay send requested",
            extra={"chat_id": chat_id, "message_length": len(message) if isinstance(message, str) else None},
        )

        try:
            self.validate(chat_id, message)
            message_id = await self.deliver(chat_id, message)
        except RelayError as e:
            result = _result_label(e)
            logger.error(f"Relay send failed: {e.message}", extra={"chat_id": chat_id, "result": result})
            record_relay_send(result)
            return SendResult(success=False, error=e.message, reason=e)
        except Exception as e:
            # Callers read failures from the result, nothing escapes send()
            logger.exception(f"Unexpected relay failure: {e!r}", extra={"chat_id": chat_id})
            record_relay_send("internal_error")
            return SendResult(success=False, error=str(e) or "Unknown error")

        record_relay_send("sent")
        return SendResult(success=True, message_id=message_id)

    async def deliver(
        self,
        chat_id: ChatId,
        text: str,
        reply_markup: Optional[dict] = None,
    ) -> str:
        """
        Send with retry on transport errors only.

        Returns:
            Telegram message_id as a string

        Raises:
            ConfigurationError: no bot token
            PlatformRejected: Telegram answered ok=false (not retried)
            DeliveryExhausted: every attempt failed in transport
            RequestFailed: request could not be built or response not read
        """
        if self.bot is None:
            raise ConfigurationError()

        last_error: Optional[httpx.TransportError] = None

        for attempt in range(1, self.max_attempts + 1):
            try:
                body = await self.bot.send_message(chat_id, text, reply_markup=reply_markup)
            except httpx.TransportError as e:
                last_error = e
                record_relay_attempt("transport_error")
                logger.warning(
                    f"Attempt {attempt} failed: {e!r}",
                    extra={"chat_id": chat_id, "attempt": attempt, "outcome": "transport_error"},
                )
                if attempt < self.max_attempts:
                    delay = backoff_delay(attempt, self.backoff_base)
                    logger.info(f"Waiting {delay:.1f}s before retry", extra={"attempt": attempt})
                    await self.sleep(delay)
                continue
            except (httpx.HTTPError, httpx.InvalidURL) as e:
                record_relay_attempt("request_error")
                logger.error(
                    f"Attempt {attempt} failed without retry: {e!r}",
                    extra={"chat_id": chat_id, "attempt": attempt, "outcome": "request_error"},
                )
                raise RequestFailed(str(e) or type(e).__name__) from e

            if not body.get("ok"):
                record_relay_attempt("rejected")
                logger.error(
                    f"Telegram API rejected message: {body.get('description')}",
                    extra={"chat_id": chat_id, "attempt": attempt, "outcome": "rejected"},
                )
                raise PlatformRejected(body.get("description"))

            sent = body.get("result")
            if not isinstance(sent, dict) or sent.get("message_id") is None:
                record_relay_attempt("request_error")
                logger.error(
                    "Telegram API answered ok without a message_id",
                    extra={"chat_id": chat_id, "attempt": attempt, "outcome": "request_error"},
                )
                raise RequestFailed("Invalid response from Telegram API")

            record_relay_attempt("delivered")
            message_id = sent["message_id"]
            logger.info(
                "Message delivered",
                extra={"chat_id": chat_id, "attempt": attempt, "outcome": "delivered", "message_id": message_id},
            )
            return str(message_id)

        raise DeliveryExhausted(last_error, attempts=self.max_attempts)


def _result_label(error: RelayError) -> str:
    if isinstance(error, ConfigurationError):
        return "config_error"
    if isinstance(error, PlatformRejected):
        return "rejected"
    if isinstance(error, RequestFailed):
        return "request_error"
    if isinstance(error, DeliveryExhausted):
        return "exhausted"
    return "validation_error"
