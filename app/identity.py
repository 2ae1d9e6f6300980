"""
Contact identity state and the upsert rule for Telegram users.

A chat moves UNIDENTIFIED -> IDENTIFIED on its first message and
IDENTIFIED -> PHONE_VERIFIED when the user shares a phone number.
No transition regresses.

Merge rule ("fill missing, refresh present"): an incoming non-empty value
replaces the stored one, an absent value never erases a stored one.
"""

import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.storage import get_identity, insert_identity, update_identity, utc_now

logger = logging.getLogger(__name__)


class IdentityState(str, Enum):
    UNIDENTIFIED = "unidentified"
    IDENTIFIED = "identified"
    PHONE_VERIFIED = "phone_verified"


_STATE_RANK = {
    IdentityState.UNIDENTIFIED: 0,
    IdentityState.IDENTIFIED: 1,
    IdentityState.PHONE_VERIFIED: 2,
}


@dataclass(frozen=True)
class IdentityProfile:
    chat_id: str
    username: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone_number: Optional[str] = None

    @classmethod
    def from_record(cls, record) -> "IdentityProfile":
        return cls(
            chat_id=record.chat_id,
            username=record.username,
            first_name=record.first_name,
            last_name=record.last_name,
            phone_number=record.phone_number,
        )

    def fields(self) -> dict:
        return {
            "username": self.username,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "phone_number": self.phone_number,
        }


@dataclass
class UpsertResult:
    """
    Outcome of an identity upsert.

    `error` is set instead of raising so the webhook handler decides
    explicitly what to do with a store failure.
    """
    profile: Optional[IdentityProfile] = None
    created: bool = False
    state: IdentityState = IdentityState.UNIDENTIFIED
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def normalize_phone(raw: Optional[str]) -> Optional[str]:
    """Prefix a shared phone number with '+' when Telegram omits it."""
    if not raw:
        return None
    raw = raw.strip()
    if not raw:
        return None
    return raw if raw.startswith("+") else f"+{raw}"


def _present(value: Optional[str]) -> bool:
    return value is not None and value != ""


def merge_profile(existing: IdentityProfile, incoming: IdentityProfile) -> IdentityProfile:
    """
    Combine a stored profile with newly received fields.

    Present incoming values win; absent ones keep what is stored.
    chat_id always comes from the stored profile.
    """
    merged = {
        field: value if _present(value) else getattr(existing, field)
        for field, value in incoming.fields().items()
    }
    return replace(existing, **merged)


def state_of(profile: Optional[IdentityProfile]) -> IdentityState:
    if profile is None:
        return IdentityState.UNIDENTIFIED
    if _present(profile.phone_number):
        return IdentityState.PHONE_VERIFIED
    return IdentityState.IDENTIFIED


def transition(state: IdentityState, incoming: IdentityProfile) -> IdentityState:
    """State after a message carrying `incoming` is seen."""
    target = IdentityState.PHONE_VERIFIED if _present(incoming.phone_number) else IdentityState.IDENTIFIED
    if _STATE_RANK[target] > _STATE_RANK[state]:
        return target
    return state


def upsert_identity(db: Session, incoming: IdentityProfile, now: Optional[str] = None) -> UpsertResult:
    """
    Insert the profile for a first-seen chat, merge it into the stored one otherwise.

    Store failures are returned on the result, never raised.
    """
    now = now or utc_now()

    try:
        record = get_identity(db, incoming.chat_id)
    except Exception as e:
        logger.error(f"Error checking user {incoming.chat_id}: {e}")
        return UpsertResult(error=e)

    if record is None:
        values = {field: value if _present(value) else None for field, value in incoming.fields().items()}
        try:
            insert_identity(db, incoming.chat_id, now=now, **values)
            profile = IdentityProfile(chat_id=incoming.chat_id, **values)
            return UpsertResult(
                profile=profile,
                created=True,
                state=transition(IdentityState.UNIDENTIFIED, profile),
            )
        except IntegrityError:
            # Another delivery of the same chat inserted first; merge into it
            logger.info(f"Concurrent insert for chat_id={incoming.chat_id}, merging")
            try:
                record = get_identity(db, incoming.chat_id)
            except Exception as e:
                logger.error(f"Error re-reading user {incoming.chat_id}: {e}")
                return UpsertResult(error=e)
            if record is None:
                return UpsertResult(error=LookupError(f"chat_id {incoming.chat_id} vanished after conflict"))
        except Exception as e:
            logger.error(f"Error inserting user {incoming.chat_id}: {e}")
            return UpsertResult(error=e)

    existing = IdentityProfile.from_record(record)
    merged = merge_profile(existing, incoming)

    try:
        update_identity(db, incoming.chat_id, merged.fields(), now=now)
    except Exception as e:
        logger.error(f"Error updating user {incoming.chat_id}: {e}")
        return UpsertResult(profile=existing, state=state_of(existing), error=e)

    return UpsertResult(
        profile=merged,
        created=False,
        state=transition(state_of(existing), incoming),
    )
