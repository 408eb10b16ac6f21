"""
Configuration management for the lost & found similarity search service.
"""

import os
from pathlib import Path
from typing import Dict, Any
from dotenv import load_dotenv

# Load environment variables from .env file
env_path = Path(__file__).parent / ".env"
if env_path.exists():
    load_dotenv(env_path)
load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


class Config:
    """Application configuration class."""

    # Database Configuration (postgres blob store / session auth)
    DB_HOST: str = os.getenv("DB_HOST", "localhost")
    DB_PORT: int = int(os.getenv("DB_PORT", 5432))
    DB_NAME: str = os.getenv("DB_NAME", "lostfound")
    DB_USER: str = os.getenv("DB_USER", "postgres")
    DB_PASSWORD: str = os.getenv("DB_PASSWORD", "postgres123")

    # Model Configuration
    MODEL_NAME: str = os.getenv("MODEL_NAME", "openai/clip-vit-base-patch32")
    DEVICE: str = os.getenv("DEVICE", "auto")
    EMBEDDING_DIM: int = int(os.getenv("EMBEDDING_DIM", 512))
    MAX_IMAGE_SIZE: int = int(os.getenv("MAX_IMAGE_SIZE", 512))  # pixels
    MODEL_CACHE_DIR: str = os.getenv("MODEL_CACHE_DIR", "")

    # FAISS Configuration
    FAISS_INDEX_PATH: str = os.getenv("FAISS_INDEX_PATH", "data/items.faiss")
    PERSIST_INDEX: bool = _env_bool("PERSIST_INDEX", "true")

    # Blob store
    BLOB_BACKEND: str = os.getenv("BLOB_BACKEND", "local")  # local | postgres
    BLOB_DIR: str = os.getenv("BLOB_DIR", "data/item-images")
    PUBLIC_BASE_URL: str = os.getenv("PUBLIC_BASE_URL", "http://localhost:8000")

    # Auth
    AUTH_BACKEND: str = os.getenv("AUTH_BACKEND", "static")  # static | postgres
    # "token:email:role" entries separated by commas
    AUTH_STATIC_TOKENS: str = os.getenv("AUTH_STATIC_TOKENS", "")

    # Search
    DEFAULT_SEARCH_LIMIT: int = int(os.getenv("DEFAULT_SEARCH_LIMIT", 20))
    DEFAULT_MIN_SIMILARITY: float = float(os.getenv("DEFAULT_MIN_SIMILARITY", 0.2))

    # Ingestion status tracking
    STATUS_GRACE_SECONDS: float = float(os.getenv("STATUS_GRACE_SECONDS", 300))
    STATUS_MAX_ATTEMPTS: int = int(os.getenv("STATUS_MAX_ATTEMPTS", 150))
    STATUS_MAX_LIFETIME_SECONDS: float = float(os.getenv("STATUS_MAX_LIFETIME_SECONDS", 3600))
    STATUS_PRUNE_INTERVAL: float = float(os.getenv("STATUS_PRUNE_INTERVAL", 30))

    # API Configuration
    MAX_UPLOAD_SIZE: int = int(os.getenv("MAX_UPLOAD_SIZE", 10 * 1024 * 1024))  # 10MB
    MAX_TEXT_LENGTH: int = int(os.getenv("MAX_TEXT_LENGTH", 2000))
    API_HOST: str = os.getenv("API_HOST", "0.0.0.0")
    API_PORT: int = int(os.getenv("API_PORT", 8000))
    CORS_ORIGINS: str = os.getenv("CORS_ORIGINS", "*")

    # Logging
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    @classmethod
    def get_db_config(cls) -> Dict[str, Any]:
        """Get database configuration as dictionary."""
        return {
            "host": cls.DB_HOST,
            "port": cls.DB_PORT,
            "dbname": cls.DB_NAME,
            "user": cls.DB_USER,
            "password": cls.DB_PASSWORD
        }

    @classmethod
    def get_all_config(cls) -> Dict[str, Any]:
        """Get all configuration as dictionary (secrets omitted)."""
        return {
            "db_host": cls.DB_HOST,
            "db_port": cls.DB_PORT,
            "db_name": cls.DB_NAME,
            "db_user": cls.DB_USER,
            "model_name": cls.MODEL_NAME,
            "device": cls.DEVICE,
            "embedding_dim": cls.EMBEDDING_DIM,
            "max_image_size": cls.MAX_IMAGE_SIZE,
            "faiss_index_path": cls.FAISS_INDEX_PATH,
            "persist_index": cls.PERSIST_INDEX,
            "blob_backend": cls.BLOB_BACKEND,
            "blob_dir": cls.BLOB_DIR,
            "public_base_url": cls.PUBLIC_BASE_URL,
            "auth_backend": cls.AUTH_BACKEND,
            "default_search_limit": cls.DEFAULT_SEARCH_LIMIT,
            "default_min_similarity": cls.DEFAULT_MIN_SIMILARITY,
            "status_grace_seconds": cls.STATUS_GRACE_SECONDS,
            "status_max_attempts": cls.STATUS_MAX_ATTEMPTS,
            "status_max_lifetime_seconds": cls.STATUS_MAX_LIFETIME_SECONDS,
            "status_prune_interval": cls.STATUS_PRUNE_INTERVAL,
            "max_upload_size": cls.MAX_UPLOAD_SIZE,
            "max_text_length": cls.MAX_TEXT_LENGTH,
            "api_host": cls.API_HOST,
            "api_port": cls.API_PORT,
            "log_level": cls.LOG_LEVEL
        }

# Create global config instance
config = Config()
