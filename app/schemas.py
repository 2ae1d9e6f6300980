"""
Pydantic schemas for request/response validation.

This module contains:
- Request models for the outbound relay
- Response models for the relay, webhook and identity routes
"""

from typing import Any, Optional

from pydantic import BaseModel, Field


# =============================================================================
# Pydantic Request Models
# =============================================================================

class SendMessageRequest(BaseModel):
    """
    Body of POST /send-telegram-message.

    Both fields are optional here: missing or empty values are reported
    by the relay as structured errors, not as 422 responses.
    """
    chat_id: Optional[Any] = Field(
        None,
        description="Telegram chat ID of the recipient"
    )
    message: Optional[Any] = Field(
        None,
        description="Message text, up to 2048 characters, HTML parse mode"
    )

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "chat_id": "123456789",
                    "message": "Hello from the contact center"
                }
            ]
        }
    }


# =============================================================================
# Pydantic Response Models
# =============================================================================

class SendMessageResponse(BaseModel):
    """Relay result. HTTP status is 200 for both outcomes."""
    success: bool = Field(..., description="Whether Telegram accepted the message")
    message_id: Optional[str] = Field(None, description="Telegram message ID on success")
    error: Optional[str] = Field(None, description="Failure description")


class WebhookAckResponse(BaseModel):
    """Acknowledgment returned to Telegram for every update."""
    ok: bool = Field(default=True, description="Always true")
    error: Optional[str] = Field(None, description="Internal processing failure, if any")


class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Error description")


class TelegramUserResponse(BaseModel):
    """Identity record as exposed to the contacts UI."""
    chat_id: str = Field(..., description="Telegram chat ID")
    username: Optional[str] = Field(None, description="Telegram username")
    first_name: Optional[str] = Field(None, description="First name")
    last_name: Optional[str] = Field(None, description="Last name")
    phone_number: Optional[str] = Field(None, description="Shared phone number, E.164-like")
    state: str = Field(..., description="identified or phone_verified")
    created_at: str = Field(..., description="First seen (ISO-8601 UTC)")
    updated_at: str = Field(..., description="Last update (ISO-8601 UTC)")

    model_config = {"from_attributes": True}


class TelegramUsersListResponse(BaseModel):
    """
    Response model for GET /telegram-users with pagination.

    Contains:
    - data: identity records matching filters
    - total: total count matching filters (ignoring pagination)
    - limit: number of records per page
    - offset: starting position
    """
    data: list[TelegramUserResponse] = Field(
        default_factory=list,
        description="List of identity records"
    )
    total: int = Field(..., ge=0, description="Total records matching filters")
    limit: int = Field(..., ge=1, le=100, description="Maximum records per page")
    offset: int = Field(..., ge=0, description="Number of records skipped")


class StatsResponse(BaseModel):
    """Identity store analytics for GET /stats."""
    total_users: int = Field(..., ge=0, description="Total identity records")
    phone_verified: int = Field(..., ge=0, description="Records with a shared phone number")
    identified_only: int = Field(..., ge=0, description="Records without a phone number")
    last_seen_at: Optional[str] = Field(None, description="Latest update timestamp (null if empty)")


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
