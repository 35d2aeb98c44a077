"""Tests for session tokens, OAuth state and token encryption."""

import uuid

import pytest

from vesta_calendar.core.config import settings
from vesta_calendar.core.encryption import (
    decrypt_token,
    encrypt_token,
    verify_encrypted_token,
)
from vesta_calendar.core.security import (
    create_oauth_state,
    create_session_token,
    decode_session_token,
    verify_oauth_state,
)


def test_oauth_state_round_trip_for_same_user():
    user_id = uuid.uuid4()
    state = create_oauth_state(user_id)

    assert verify_oauth_state(state, user_id) == (True, "")


def test_oauth_state_is_bound_to_user():
    state = create_oauth_state(uuid.uuid4())

    valid, reason = verify_oauth_state(state, uuid.uuid4())

    assert valid is False
    assert reason == "State issued for a different user"


def test_oauth_state_rejects_session_tokens():
    user_id = uuid.uuid4()
    session_token = create_session_token(user_id, token_version=1)

    valid, reason = verify_oauth_state(session_token, user_id)

    assert valid is False
    assert reason == "State purpose mismatch"


def test_oauth_state_expires(monkeypatch):
    user_id = uuid.uuid4()
    monkeypatch.setattr(settings, "OAUTH_STATE_MAX_AGE_SECONDS", -10)
    state = create_oauth_state(user_id)

    valid, reason = verify_oauth_state(state, user_id)

    assert valid is False
    assert reason == "Invalid or expired state"


def test_oauth_state_rejects_tampering():
    user_id = uuid.uuid4()
    state = create_oauth_state(user_id)

    assert verify_oauth_state(state[:-4] + "abcd", user_id)[0] is False
    assert verify_oauth_state("not-a-jwt", user_id)[0] is False


def test_session_token_decodes_with_previous_secret_during_rotation(monkeypatch):
    user_id = uuid.uuid4()
    monkeypatch.setattr(settings, "JWT_SECRET", "old-secret")
    token = create_session_token(user_id, token_version=3)

    monkeypatch.setattr(settings, "JWT_SECRET", "new-secret")
    monkeypatch.setattr(settings, "JWT_SECRET_PREVIOUS", "old-secret")
    payload = decode_session_token(token)

    assert payload["sub"] == str(user_id)
    assert payload["token_version"] == 3


def test_encrypted_tokens_round_trip_and_are_not_plaintext():
    encrypted = encrypt_token("ya29.secret")

    assert encrypted != "ya29.secret"
    assert decrypt_token(encrypted) == "ya29.secret"


def test_decrypt_rejects_corrupted_tokens():
    with pytest.raises(ValueError):
        decrypt_token("gAAAAA-not-a-token")


def test_verify_encrypted_token():
    encrypted = encrypt_token("channel-token")

    assert verify_encrypted_token(encrypted, "channel-token") is True
    assert verify_encrypted_token(encrypted, "other-token") is False
    assert verify_encrypted_token(encrypted, None) is False
    assert verify_encrypted_token(None, "channel-token") is False
