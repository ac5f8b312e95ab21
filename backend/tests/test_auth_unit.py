"""Unit tests for authentication helpers and endpoints."""

from __future__ import annotations

from datetime import timedelta

import pytest
from fastapi import HTTPException

from app.api.deps import get_user_from_token
from app.core.errors import InvalidBody
from app.core.security import create_access_token, decode_access_token
from app.services.users import UserDirectory, UsernameTaken


@pytest.fixture()
def user(db_session, clock):
    registered = UserDirectory(db_session, clock=clock).register("Tester", "supersecret")
    db_session.commit()
    return registered


def test_authenticate_matches_username_case_insensitively(db_session, user):
    """Credentials resolve regardless of username case."""

    directory = UserDirectory(db_session)

    assert directory.authenticate("tester", "supersecret").id == user.id
    assert directory.authenticate("TESTER", "supersecret").id == user.id
    assert directory.authenticate("tester", "wrong") is None
    assert directory.authenticate("ghost", "supersecret") is None


def test_register_rejects_taken_and_malformed_usernames(db_session, user):
    directory = UserDirectory(db_session)

    with pytest.raises(UsernameTaken):
        directory.register("tESTER", "supersecret")
    with pytest.raises(InvalidBody):
        directory.register("ab", "supersecret")
    with pytest.raises(InvalidBody):
        directory.register("x" * 21, "supersecret")


def test_get_user_from_token(db_session, user):
    """Tokens should resolve to existing users."""

    token = create_access_token({"sub": user.id})
    resolved = get_user_from_token(token, db_session)

    assert resolved.id == user.id
    assert resolved.username == "Tester"


def test_get_user_from_token_invalid_payload(db_session):
    """Invalid tokens must result in a 401 error."""

    with pytest.raises(HTTPException) as exc:
        get_user_from_token("invalid-token", db_session)

    assert exc.value.status_code == 401
    assert "Could not validate credentials" in exc.value.detail


def test_get_user_from_token_unknown_user(db_session):
    token = create_access_token({"sub": "0" * 32})

    with pytest.raises(HTTPException) as exc:
        get_user_from_token(token, db_session)

    assert exc.value.status_code == 401


def test_expired_token_is_rejected():
    token = create_access_token({"sub": "someone"}, expires_delta=timedelta(seconds=-1))

    with pytest.raises(HTTPException) as exc:
        decode_access_token(token)

    assert exc.value.detail == "Token has expired"
