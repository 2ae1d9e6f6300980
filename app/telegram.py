"""
Telegram Bot API client and inbound Update models.

Thin wrapper around sendMessage plus the subset of the Update payload
the webhook handler reads.
"""

import logging
from typing import Optional, Union

import httpx
from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)

DEFAULT_API_BASE = "https://api.telegram.org"

ChatId = Union[int, str]


class TelegramBotClient:
    """
    Sends messages through the Telegram Bot API.

    One POST per call, no retry. Transport failures (connection errors,
    timeouts) are raised as httpx.TransportError for the caller to handle.
    """

    def __init__(
        self,
        token: str,
        api_base: str = DEFAULT_API_BASE,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.token = token
        self.api_base = api_base.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    def method_url(self, method: str) -> str:
        return f"{self.api_base}/bot{self.token}/{method}"

    async def send_message(
        self,
        chat_id: ChatId,
        text: str,
        parse_mode: Optional[str] = "HTML",
        reply_markup: Optional[dict] = None,
    ) -> dict:
        """
        Send message to a Telegram chat.

        Args:
            chat_id: Telegram chat ID
            text: Message text
            parse_mode: Parse mode (HTML by default)
            reply_markup: Optional keyboard markup

        Returns:
            Decoded Bot API response body. Logical failures come back
            as {"ok": false, "description": ...} whatever the HTTP status.
        """
        payload = {
            "chat_id": chat_id,
            "text": text,
        }

        if parse_mode:
            payload["parse_mode"] = parse_mode

        if reply_markup is not None:
            payload["reply_markup"] = reply_markup

        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            response = await client.post(self.method_url("sendMessage"), json=payload)

        try:
            body = response.json()
        except ValueError:
            logger.error(
                "Non-JSON response from Telegram API",
                extra={"status": response.status_code},
            )
            body = None

        if not isinstance(body, dict):
            return {"ok": False, "description": "Invalid response from Telegram API"}

        return body


def contact_request_keyboard(label: str) -> dict:
    """One-time reply keyboard with a single share-contact button."""
    return {
        "keyboard": [[{"text": label, "request_contact": True}]],
        "resize_keyboard": True,
        "one_time_keyboard": True,
    }


def remove_keyboard() -> dict:
    return {"remove_keyboard": True}


# =============================================================================
# Inbound Update Models
# =============================================================================

class TelegramChat(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int


class TelegramUser(BaseModel):
    """Subset of Telegram user data stored on the identity record."""

    model_config = ConfigDict(extra="ignore")

    id: Optional[int] = None
    username: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None


class TelegramContact(BaseModel):
    model_config = ConfigDict(extra="ignore")

    phone_number: Optional[str] = None


class TelegramMessage(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    chat: TelegramChat
    from_user: Optional[TelegramUser] = Field(default=None, alias="from")
    text: Optional[str] = None
    contact: Optional[TelegramContact] = None


class Update(BaseModel):
    """
    Top-level Telegram update.

    Only `message` is handled; every other variant (edited_message,
    callback_query, ...) is accepted and ignored.
    """

    model_config = ConfigDict(extra="ignore")

    update_id: Optional[int] = None
    message: Optional[TelegramMessage] = None
