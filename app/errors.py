"""
Error taxonomy for the outbound relay.

Every error carries the user-facing string returned to callers of
POST /send-telegram-message in the `error` field.
"""

from typing import Optional


class RelayError(Exception):
    """Base class for all relay failures."""

    message: str = "Failed to send message"

    def __init__(self, message: Optional[str] = None):
        if message is not None:
            self.message = message
        super().__init__(self.message)


class ConfigurationError(RelayError):
    """Bot token is missing. Never retried."""

    message = "Telegram bot token not configured"


class MissingDestination(RelayError):
    message = "chat_id is required"


class EmptyMessage(RelayError):
    message = "message is required"


class MessageTooLong(RelayError):
    message = "Message too long (max 2048 characters)"


class PlatformRejected(RelayError):
    """
    Telegram answered with ok=false (blocked bot, unknown chat, bad markup).
    Not retried: the same request cannot succeed on a second attempt.
    """

    def __init__(self, description: Optional[str] = None):
        self.description = description
        super().__init__(description or "Failed to send message")


class RequestFailed(RelayError):
    """
    The request could not be built or its response could not be read
    (bad token characters, undecodable body). Not retried.
    """


class DeliveryExhausted(RelayError):
    """Every attempt failed with a transport error."""

    def __init__(self, last_error: Optional[BaseException] = None, attempts: int = 0):
        self.last_error = last_error
        self.attempts = attempts
        # httpx errors raised without a message stringify to ""
        super().__init__(str(last_error or "") or "All retry attempts failed")
