"""
Initialization script for the PostgreSQL side of the service: the blob table,
users with roles, and sessions used by the session auth provider.
"""

import sys
import argparse
import logging
import secrets
from pathlib import Path

# Add project root to path for proper package imports
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from lostfound.blob_store import BLOB_SCHEMA, DatabaseConfig, DatabaseManager
from lostfound.config import Config
from lostfound.models import ADMIN_ROLE, USER_ROLE

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

USER_SCHEMA = """
    CREATE TABLE IF NOT EXISTS users (
        user_id SERIAL PRIMARY KEY,
        email TEXT UNIQUE NOT NULL,
        role TEXT NOT NULL DEFAULT 'user' CHECK (role IN ('user', 'admin')),
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    );
    CREATE TABLE IF NOT EXISTS user_sessions (
        session_id TEXT PRIMARY KEY,
        user_id INTEGER NOT NULL REFERENCES users(user_id) ON DELETE CASCADE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    );
"""


def setup_database(db_manager: DatabaseManager):
    """Create tables if they do not exist."""
    logger.info("Setting up database schema...")
    with db_manager.get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute(BLOB_SCHEMA)
            cur.execute(USER_SCHEMA)
        conn.commit()
    logger.info("Database setup completed successfully")


def create_user_session(db_manager: DatabaseManager, email: str, role: str) -> str:
    """Create (or update) a user and issue a session token for it."""
    session_id = secrets.token_urlsafe(32)
    with db_manager.get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute("""
                INSERT INTO users (email, role) VALUES (%s, %s)
                ON CONFLICT (email) DO UPDATE SET role = EXCLUDED.role
                RETURNING user_id
            """, (email.lower(), role))
            user_id = cur.fetchone()[0]
            cur.execute(
                "INSERT INTO user_sessions (session_id, user_id) VALUES (%s, %s)",
                (session_id, user_id)
            )
        conn.commit()
    return session_id


def main():
    parser = argparse.ArgumentParser(description="Initialize lost & found database tables")
    parser.add_argument("--email", help="Create a user and print a session token")
    parser.add_argument("--role", choices=[USER_ROLE, ADMIN_ROLE], default=USER_ROLE)
    args = parser.parse_args()

    db_manager = DatabaseManager(DatabaseConfig(**Config.get_db_config()))
    try:
        setup_database(db_manager)
        if args.email:
            token = create_user_session(db_manager, args.email, args.role)
            logger.info(f"Session token for {args.email} ({args.role}): {token}")
    except Exception as e:
        logger.error(f"Initialization failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
