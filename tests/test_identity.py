"""
Tests for the identity merge rule, state machine and store upsert.
"""

import pytest
from sqlalchemy.exc import OperationalError

from app import identity
from app.identity import (
    IdentityProfile,
    IdentityState,
    merge_profile,
    normalize_phone,
    state_of,
    transition,
    upsert_identity,
)
from app.storage import SessionLocal, get_identity, insert_identity


class TestNormalizePhone:

    def test_adds_plus(self):
        assert normalize_phone("79991234567") == "+79991234567"

    def test_keeps_existing_plus(self):
        assert normalize_phone("+79991234567") == "+79991234567"

    @pytest.mark.parametrize("raw", [None, "", "  "])
    def test_absent(self, raw):
        assert normalize_phone(raw) is None


class TestMergeProfile:

    def test_absent_values_keep_stored_ones(self):
        existing = IdentityProfile("1", username="ivan", first_name="Ivan", last_name="Petrov", phone_number="+7999")
        incoming = IdentityProfile("1")

        assert merge_profile(existing, incoming) == existing

    def test_empty_strings_count_as_absent(self):
        existing = IdentityProfile("1", username="ivan", first_name="Ivan")
        incoming = IdentityProfile("1", username="", first_name="")

        merged = merge_profile(existing, incoming)

        assert merged.username == "ivan"
        assert merged.first_name == "Ivan"

    def test_present_values_refresh(self):
        existing = IdentityProfile("1", username="ivan", first_name="Ivan", phone_number="+7000")
        incoming = IdentityProfile("1", username="ivan_new", phone_number="+7111")

        merged = merge_profile(existing, incoming)

        assert merged.username == "ivan_new"
        assert merged.first_name == "Ivan"
        assert merged.phone_number == "+7111"

    def test_chat_id_never_changes(self):
        merged = merge_profile(IdentityProfile("1"), IdentityProfile("2", first_name="X"))

        assert merged.chat_id == "1"


class TestStateMachine:

    def test_state_of(self):
        assert state_of(None) == IdentityState.UNIDENTIFIED
        assert state_of(IdentityProfile("1")) == IdentityState.IDENTIFIED
        assert state_of(IdentityProfile("1", phone_number="+7999")) == IdentityState.PHONE_VERIFIED

    def test_first_message_identifies(self):
        assert transition(IdentityState.UNIDENTIFIED, IdentityProfile("1")) == IdentityState.IDENTIFIED

    def test_contact_share_verifies(self):
        incoming = IdentityProfile("1", phone_number="+7999")

        assert transition(IdentityState.IDENTIFIED, incoming) == IdentityState.PHONE_VERIFIED
        assert transition(IdentityState.UNIDENTIFIED, incoming) == IdentityState.PHONE_VERIFIED

    def test_never_regresses(self):
        assert transition(IdentityState.PHONE_VERIFIED, IdentityProfile("1")) == IdentityState.PHONE_VERIFIED


class TestUpsertIdentity:

    def test_insert_on_first_message(self, db):
        result = upsert_identity(db, IdentityProfile("42", username="ivan", first_name="Ivan"), now="2025-01-15T10:00:00.000Z")

        assert result.ok
        assert result.created is True
        assert result.state == IdentityState.IDENTIFIED

        record = get_identity(db, "42")
        assert record.first_name == "Ivan"
        assert record.phone_number is None
        assert record.created_at == "2025-01-15T10:00:00.000Z"
        assert record.updated_at == "2025-01-15T10:00:00.000Z"

    def test_second_message_does_not_erase_fields(self, db):
        upsert_identity(db, IdentityProfile("42", username="ivan", first_name="Ivan", last_name="Petrov"), now="2025-01-15T10:00:00.000Z")

        result = upsert_identity(db, IdentityProfile("42", first_name=None), now="2025-01-15T11:00:00.000Z")

        assert result.ok
        assert result.created is False
        db.expire_all()
        record = get_identity(db, "42")
        assert record.first_name == "Ivan"
        assert record.last_name == "Petrov"
        assert record.username == "ivan"
        assert record.created_at == "2025-01-15T10:00:00.000Z"
        assert record.updated_at == "2025-01-15T11:00:00.000Z"

    def test_phone_share_updates_phone(self, db):
        upsert_identity(db, IdentityProfile("42", first_name="Ivan", phone_number="+7000"))

        result = upsert_identity(db, IdentityProfile("42", phone_number="+79991234567"))

        assert result.state == IdentityState.PHONE_VERIFIED
        db.expire_all()
        assert get_identity(db, "42").phone_number == "+79991234567"

    def test_exactly_one_record_per_chat(self, db):
        from app.models import TelegramUserRecord

        for name in ("A", "B", None):
            upsert_identity(db, IdentityProfile("42", first_name=name))

        assert db.query(TelegramUserRecord).filter(TelegramUserRecord.chat_id == "42").count() == 1

    def test_concurrent_insert_falls_back_to_merge(self, db, monkeypatch):
        # Simulate another delivery inserting between our lookup and insert
        with SessionLocal() as other:
            insert_identity(other, "42", first_name="Ivan", now="2025-01-15T10:00:00.000Z")
        calls = []
        real_get = identity.get_identity

        def racing_get(session, chat_id):
            calls.append(chat_id)
            if len(calls) == 1:
                return None
            return real_get(session, chat_id)

        monkeypatch.setattr(identity, "get_identity", racing_get)

        result = upsert_identity(db, IdentityProfile("42", phone_number="+7999"), now="2025-01-15T10:00:01.000Z")

        assert result.ok
        assert result.created is False
        db.expire_all()
        record = get_identity(db, "42")
        assert record.first_name == "Ivan"
        assert record.phone_number == "+7999"

    def test_lookup_failure_is_returned(self, db, monkeypatch):
        def broken_get(session, chat_id):
            raise OperationalError("SELECT", {}, Exception("database is locked"))

        monkeypatch.setattr(identity, "get_identity", broken_get)

        result = upsert_identity(db, IdentityProfile("42", first_name="Ivan"))

        assert not result.ok
        assert isinstance(result.error, OperationalError)

    def test_update_failure_is_returned(self, db, monkeypatch):
        upsert_identity(db, IdentityProfile("42", first_name="Ivan"))

        def broken_update(*args, **kwargs):
            raise OperationalError("UPDATE", {}, Exception("disk I/O error"))

        monkeypatch.setattr(identity, "update_identity", broken_update)

        result = upsert_identity(db, IdentityProfile("42", phone_number="+7999"))

        assert not result.ok
        assert result.state == IdentityState.IDENTIFIED
