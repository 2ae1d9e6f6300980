"""
Inbound Telegram webhook processing.

Every update is acknowledged with ok=true: a non-2xx answer or ok=false
makes Telegram redeliver the update, so internal failures are logged and
reported in the `error` field only.
"""

import html
import logging
from dataclasses import dataclass
from typing import Any, Optional

from pydantic import ValidationError
from sqlalchemy.orm import Session

from app.errors import RelayError
from app.identity import IdentityProfile, UpsertResult, normalize_phone, upsert_identity
from app.metrics import record_webhook_outcome
from app.relay import OutboundRelay
from app.telegram import Update, contact_request_keyboard, remove_keyboard

START_COMMAND = "/start"

SHARE_PHONE_BUTTON = "Поделиться номером телефона"

PHONE_SAVED_TEMPLATE = (
    "Номер телефона сохранен: <b>{phone}</b>\n"
    "Теперь можно отправлять вам сообщения из приложения."
)

WELCOME_TEMPLATE = (
    "Привет, {first_name}!\n\n"
    "Ваш Telegram ID: <b>{chat_id}</b>\n\n"
    "Чтобы связать Telegram с контактом в приложении, "
    "нажмите кнопку ниже и поделитесь номером телефона."
)


@dataclass
class WebhookAck:
    ok: bool = True
    error: Optional[str] = None
    result: str = "processed"
    chat_id: Optional[int] = None


class WebhookHandler:
    """
    Handles one Telegram update.

    Upserts the sender's identity, confirms a shared phone number and
    answers /start with the onboarding prompt. The two notifications are
    triggered independently and may both fire for one update.
    """

    def __init__(self, db: Session, relay: OutboundRelay, logger: Optional[logging.Logger] = None):
        self.db = db
        self.relay = relay
        self.logger = logger or logging.getLogger(__name__)

    async def handle(self, payload: Any) -> WebhookAck:
        if not isinstance(payload, dict) or payload.get("message") is None:
            self.logger.debug("Update without message, ignoring")
            record_webhook_outcome("ignored")
            return WebhookAck(result="ignored")

        try:
            update = Update.model_validate(payload)
        except ValidationError as e:
            self.logger.error(f"Invalid Telegram update: {e}", extra={"update_id": payload.get("update_id")})
            record_webhook_outcome("invalid_payload")
            return WebhookAck(error="Invalid update payload", result="invalid_payload")

        message = update.message
        chat_id = message.chat.id
        sender = message.from_user
        text = message.text or ""
        phone_number = normalize_phone(message.contact.phone_number if message.contact else None)

        self.logger.info(
            "Message received",
            extra={
                "chat_id": chat_id,
                "username": sender.username if sender else None,
                "has_phone": phone_number is not None,
                "text_length": len(text),
            },
        )

        errors = []

        upsert = upsert_identity(
            self.db,
            IdentityProfile(
                chat_id=str(chat_id),
                username=sender.username if sender else None,
                first_name=sender.first_name if sender else None,
                last_name=sender.last_name if sender else None,
                phone_number=phone_number,
            ),
        )
        if not self._record_upsert(chat_id, upsert):
            errors.append(f"Identity store error: {upsert.error}")

        if phone_number:
            error = await self._notify(
                chat_id,
                PHONE_SAVED_TEMPLATE.format(phone=html.escape(phone_number)),
                remove_keyboard(),
                kind="phone_confirmation",
            )
            if error:
                errors.append(error)

        if text == START_COMMAND:
            first_name = sender.first_name if sender and sender.first_name else ""
            error = await self._notify(
                chat_id,
                WELCOME_TEMPLATE.format(first_name=html.escape(first_name), chat_id=chat_id),
                contact_request_keyboard(SHARE_PHONE_BUTTON),
                kind="welcome",
            )
            if error:
                errors.append(error)

        result = "processed" if upsert.ok else "store_error"
        record_webhook_outcome(result)
        return WebhookAck(error="; ".join(errors) or None, result=result, chat_id=chat_id)

    def _record_upsert(self, chat_id: int, upsert: UpsertResult) -> bool:
        """Log the upsert outcome. A store failure is recorded, not propagated."""
        if not upsert.ok:
            self.logger.error(
                f"Identity upsert failed: {upsert.error}",
                extra={"chat_id": chat_id, "result": "store_error"},
            )
            return False

        self.logger.info(
            "Identity upserted",
            extra={"chat_id": chat_id, "new_identity": upsert.created, "state": upsert.state.value},
        )
        return True

    async def _notify(self, chat_id: int, text: str, reply_markup: dict, kind: str) -> Optional[str]:
        try:
            await self.relay.deliver(chat_id, text, reply_markup=reply_markup)
        except RelayError as e:
            self.logger.error(f"Failed to send {kind} message: {e.message}", extra={"chat_id": chat_id})
            return f"{kind} not delivered: {e.message}"

        self.logger.info(f"Sent {kind} message", extra={"chat_id": chat_id})
        return None
