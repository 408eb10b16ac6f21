from contextlib import contextmanager

import psycopg2
import pytest

from lostfound.auth import PostgresSessionAuthProvider, StaticTokenAuthProvider, parse_bearer
from lostfound.errors import AuthError
from lostfound.models import ADMIN_ROLE, USER_ROLE


@pytest.mark.parametrize("header", [None, "", "Bearer", "Bearer   ", "Basic abc", "token-without-scheme"])
def test_parse_bearer_rejects(header):
    with pytest.raises(AuthError):
        parse_bearer(header)


def test_parse_bearer():
    assert parse_bearer("Bearer abc123") == "abc123"
    assert parse_bearer("bearer  abc123 ") == "abc123"


def test_static_tokens_from_string():
    provider = StaticTokenAuthProvider.from_string(
        "t1:Alice@Example.com, t2:mod@example.com:admin,")

    alice = provider.authenticate("t1")
    assert alice.email == "alice@example.com"
    assert alice.role == USER_ROLE
    assert provider.authenticate("t2").is_admin

    with pytest.raises(AuthError):
        provider.authenticate("t3")


@pytest.mark.parametrize("entries", ["justatoken", ":a@b.c", "t1:a@b.c:root"])
def test_static_tokens_reject_bad_entries(entries):
    with pytest.raises(ValueError):
        StaticTokenAuthProvider.from_string(entries)


class FakeCursor:
    def __init__(self, db):
        self.db = db

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, sql, params=None):
        if self.db.fail:
            raise psycopg2.OperationalError("connection refused")
        self.db.params = params

    def fetchone(self):
        return self.db.sessions.get(self.db.params[0])


class FakeConnection:
    def __init__(self, db):
        self.db = db

    def cursor(self, **kwargs):
        return FakeCursor(self.db)


class FakeDBManager:
    def __init__(self, sessions=None):
        self.sessions = sessions or {}
        self.params = None
        self.fail = False

    @contextmanager
    def get_connection(self):
        yield FakeConnection(self)


def test_postgres_sessions():
    db = FakeDBManager({
        "s1": {"email": "Alice@Example.com", "role": "user", "is_active": True},
        "s2": {"email": "mod@example.com", "role": ADMIN_ROLE, "is_active": True},
        "s3": {"email": "gone@example.com", "role": "user", "is_active": False},
    })
    provider = PostgresSessionAuthProvider(db, session_hours=12)

    alice = provider.authenticate("s1")
    assert alice.email == "alice@example.com"
    assert not alice.is_admin
    assert db.params == ("s1", 12)
    assert provider.authenticate("s2").is_admin

    for token in ("s3", "unknown"):
        with pytest.raises(AuthError):
            provider.authenticate(token)


def test_postgres_outage_is_an_auth_error():
    db = FakeDBManager()
    db.fail = True
    with pytest.raises(AuthError):
        PostgresSessionAuthProvider(db).authenticate("s1")
