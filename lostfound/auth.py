"""
Auth providers: resolve a bearer token into an ``Identity``.

The administrative override on delete comes from the identity's role,
which each provider reads from its own source.
"""

import logging
from abc import ABC, abstractmethod
from typing import Dict, Optional

import psycopg2
from psycopg2.extras import RealDictCursor

from .blob_store import DatabaseManager
from .errors import AuthError
from .models import ADMIN_ROLE, USER_ROLE, Identity

logger = logging.getLogger(__name__)


def parse_bearer(header: Optional[str]) -> str:
    if not header:
        raise AuthError("Unauthorized")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthError("Unauthorized")
    return token.strip()


class AuthProvider(ABC):
    @abstractmethod
    def authenticate(self, token: str) -> Identity:
        """Return the identity behind a token or raise AuthError."""


class StaticTokenAuthProvider(AuthProvider):
    """Fixed token table, e.g. from ``AUTH_STATIC_TOKENS``."""

    def __init__(self, tokens: Dict[str, Identity] = None):
        self.tokens = dict(tokens or {})

    @classmethod
    def from_string(cls, entries: str) -> "StaticTokenAuthProvider":
        """Parse ``token:email[:role],token:email[:role]``."""
        tokens = {}
        for entry in filter(None, (e.strip() for e in entries.split(","))):
            parts = entry.split(":")
            if len(parts) < 2 or not parts[0] or not parts[1]:
                raise ValueError(f"Invalid auth token entry: {entry!r}")
            role = parts[2] if len(parts) > 2 and parts[2] else USER_ROLE
            if role not in (USER_ROLE, ADMIN_ROLE):
                raise ValueError(f"Unknown role {role!r} for {parts[1]}")
            tokens[parts[0]] = Identity(email=parts[1].lower(), role=role)
        return cls(tokens)

    def authenticate(self, token: str) -> Identity:
        identity = self.tokens.get(token)
        if identity is None:
            raise AuthError("Invalid or expired session")
        return identity


class PostgresSessionAuthProvider(AuthProvider):
    """Looks tokens up in ``user_sessions`` joined to ``users``."""

    def __init__(self, db_manager: DatabaseManager, session_hours: int = 24):
        self.db_manager = db_manager
        self.session_hours = session_hours

    def authenticate(self, token: str) -> Identity:
        try:
            with self.db_manager.get_connection() as conn:
                with conn.cursor(cursor_factory=RealDictCursor) as cur:
                    cur.execute("""
                        SELECT u.email, u.role, u.is_active
                        FROM user_sessions s
                        JOIN users u ON s.user_id = u.user_id
                        WHERE s.session_id = %s
                          AND s.created_at > NOW() - (%s * INTERVAL '1 hour')
                    """, (token, self.session_hours))
                    user = cur.fetchone()
        except psycopg2.Error as e:
            logger.error(f"Session lookup failed: {e}")
            raise AuthError("Could not verify session") from e

        if not user or not user["is_active"]:
            raise AuthError("Invalid or expired session")
        role = ADMIN_ROLE if user["role"] == ADMIN_ROLE else USER_ROLE
        return Identity(email=user["email"].lower(), role=role)
