"""
Blob storage for item photos.

Two backends share the ``BlobStore`` interface: a directory on local disk and
a PostgreSQL table. Both hand back a public URL served by ``GET /images/{name}``.
"""

import logging
import os
import re
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Optional
from urllib.parse import unquote, urlparse

import psycopg2

from .errors import BlobStoreError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]")


def make_blob_name(item_id: str, filename: Optional[str]) -> str:
    """Blob name for an item photo: ``<item id>-<sanitised original name>``."""
    base = os.path.basename(filename or "") or "image"
    base = re.sub(r"\s", "_", base)
    base = _UNSAFE_CHARS.sub("", base).lstrip(".") or "image"
    return f"{item_id}-{base[:100]}"


class BlobStore(ABC):
    """Stores raw image bytes under a name and returns a retrievable URL."""

    def __init__(self, public_base_url: str = "http://localhost:8000"):
        self.public_base_url = public_base_url.rstrip("/")

    def url_for(self, name: str) -> str:
        return f"{self.public_base_url}/images/{name}"

    def name_from_url(self, url_or_name: str) -> str:
        """Accept a URL produced by ``url_for`` or a bare blob name."""
        path = urlparse(url_or_name).path if "://" in url_or_name else url_or_name
        name = unquote(path.rstrip("/").split("/")[-1])
        if not name or name in (".", "..") or _UNSAFE_CHARS.search(name):
            raise ValidationError(f"Invalid blob name: {url_or_name!r}")
        return name

    def owns(self, url: str) -> bool:
        return url.startswith(self.public_base_url + "/images/")

    @abstractmethod
    def put(self, name: str, data: bytes, content_type: Optional[str] = None) -> str:
        """Store bytes and return the public URL."""

    @abstractmethod
    def get(self, url_or_name: str) -> bytes:
        """Return stored bytes; NotFoundError if absent."""

    @abstractmethod
    def delete(self, url_or_name: str):
        """Remove a blob; NotFoundError if absent."""

    @abstractmethod
    def exists(self, url_or_name: str) -> bool:
        pass

    def content_type(self, url_or_name: str) -> str:
        return "image/jpeg"


class LocalBlobStore(BlobStore):
    """Keeps blobs as files in one directory."""

    def __init__(self, root: str, public_base_url: str = "http://localhost:8000"):
        super().__init__(public_base_url)
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, url_or_name: str) -> Path:
        return self.root / self.name_from_url(url_or_name)

    def put(self, name: str, data: bytes, content_type: Optional[str] = None) -> str:
        path = self._path(name)
        tmp = path.with_name(path.name + ".part")
        try:
            with open(tmp, "wb") as f:
                f.write(data)
            os.replace(tmp, path)
        except OSError as e:
            try:
                tmp.unlink(missing_ok=True)
            except OSError as cleanup_error:
                logger.warning(f"Could not remove partial blob {tmp}: {cleanup_error}")
            raise BlobStoreError(f"Failed to store {name}: {e}") from e
        return self.url_for(path.name)

    def get(self, url_or_name: str) -> bytes:
        path = self._path(url_or_name)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            raise NotFoundError(f"Blob {path.name} not found")
        except OSError as e:
            raise BlobStoreError(f"Failed to read {path.name}: {e}") from e

    def delete(self, url_or_name: str):
        path = self._path(url_or_name)
        try:
            path.unlink()
        except FileNotFoundError:
            raise NotFoundError(f"Blob {path.name} not found")
        except OSError as e:
            raise BlobStoreError(f"Failed to delete {path.name}: {e}") from e

    def exists(self, url_or_name: str) -> bool:
        return self._path(url_or_name).exists()

    def content_type(self, url_or_name: str) -> str:
        suffix = Path(self.name_from_url(url_or_name)).suffix.lower()
        return {
            ".png": "image/png",
            ".gif": "image/gif",
            ".webp": "image/webp",
            ".bmp": "image/bmp",
        }.get(suffix, "image/jpeg")


@dataclass
class DatabaseConfig:
    """Database configuration.

    Values default to environment variables when not provided so that
    creating `DatabaseConfig()` picks up settings from `.env` or the
    environment (matching `lostfound/config.py`).
    """
    host: str = None
    port: int = None
    dbname: str = None
    user: str = None
    password: str = None

    def __post_init__(self):
        self.host = self.host or os.getenv("DB_HOST", "localhost")
        self.port = int(self.port or os.getenv("DB_PORT", 5432))
        self.dbname = self.dbname or os.getenv("DB_NAME", "lostfound")
        self.user = self.user or os.getenv("DB_USER", "postgres")
        self.password = self.password or os.getenv("DB_PASSWORD", "postgres123")

    def get_connection_string(self) -> str:
        return f"host={self.host} port={self.port} dbname={self.dbname} user={self.user} password={self.password}"


class DatabaseManager:
    """
    Manages PostgreSQL connections for the blob table and user sessions.
    """

    def __init__(self, config: DatabaseConfig = None):
        self.config = config or DatabaseConfig()

    @contextmanager
    def get_connection(self):
        """Context manager for database connections."""
        conn = None
        try:
            conn = psycopg2.connect(self.config.get_connection_string())
            yield conn
        except Exception as e:
            if conn:
                conn.rollback()
            logger.error(f"Database error: {e}")
            raise
        finally:
            if conn:
                conn.close()


BLOB_SCHEMA = """
    CREATE TABLE IF NOT EXISTS item_blobs (
        file_name TEXT PRIMARY KEY,
        content_type TEXT,
        data BYTEA NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    );
"""


class PostgresBlobStore(BlobStore):
    """Keeps blobs as BYTEA rows in the ``item_blobs`` table."""

    def __init__(self, db_manager: DatabaseManager, public_base_url: str = "http://localhost:8000"):
        super().__init__(public_base_url)
        self.db_manager = db_manager

    def ensure_schema(self):
        with self.db_manager.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(BLOB_SCHEMA)
            conn.commit()
        logger.info("item_blobs table ready")

    def put(self, name: str, data: bytes, content_type: Optional[str] = None) -> str:
        name = self.name_from_url(name)
        try:
            with self.db_manager.get_connection() as conn:
                with conn.cursor() as cur:
                    cur.execute("""
                        INSERT INTO item_blobs (file_name, content_type, data)
                        VALUES (%s, %s, %s)
                    """, (name, content_type, psycopg2.Binary(data)))
                    conn.commit()
        except psycopg2.Error as e:
            raise BlobStoreError(f"Failed to store {name}: {e}") from e
        return self.url_for(name)

    def _fetch(self, name: str, column: str):
        try:
            with self.db_manager.get_connection() as conn:
                with conn.cursor() as cur:
                    cur.execute(f"SELECT {column} FROM item_blobs WHERE file_name = %s", (name,))
                    return cur.fetchone()
        except psycopg2.Error as e:
            raise BlobStoreError(f"Failed to read {name}: {e}") from e

    def get(self, url_or_name: str) -> bytes:
        name = self.name_from_url(url_or_name)
        row = self._fetch(name, "data")
        if not row:
            raise NotFoundError(f"Blob {name} not found")
        data = row[0]
        if isinstance(data, memoryview):
            data = data.tobytes()
        return bytes(data)

    def delete(self, url_or_name: str):
        name = self.name_from_url(url_or_name)
        try:
            with self.db_manager.get_connection() as conn:
                with conn.cursor() as cur:
                    cur.execute("DELETE FROM item_blobs WHERE file_name = %s", (name,))
                    deleted = cur.rowcount
                    conn.commit()
        except psycopg2.Error as e:
            raise BlobStoreError(f"Failed to delete {name}: {e}") from e
        if not deleted:
            raise NotFoundError(f"Blob {name} not found")

    def exists(self, url_or_name: str) -> bool:
        return self._fetch(self.name_from_url(url_or_name), "1") is not None

    def content_type(self, url_or_name: str) -> str:
        row = self._fetch(self.name_from_url(url_or_name), "content_type")
        return (row[0] if row and row[0] else None) or "image/jpeg"
