"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.
"""

from sqlalchemy import Column, String

from app.storage import Base


class TelegramUserRecord(Base):
    """
    Identity record for a Telegram chat.

    Table: telegram_users
    Primary Key: chat_id (one record per chat, immutable once created)
    """
    __tablename__ = "telegram_users"

    chat_id = Column(String, primary_key=True, index=True)
    username = Column(String, nullable=True, index=True)
    first_name = Column(String, nullable=True)
    last_name = Column(String, nullable=True)
    phone_number = Column(String, nullable=True, index=True)  # E.164-like, leading +
    created_at = Column(String, nullable=False)  # Server time ISO-8601
    updated_at = Column(String, nullable=False, index=True)  # Refreshed on every update
