"""
Lost & Found Similarity Search Module

This module matches lost and found items by semantic and visual similarity:
- CLIP image/text embeddings (Hugging Face transformers)
- FAISS-powered cosine similarity search
- Ingestion pipeline with compensating rollback
- Ingestion status tracking for client polling
- REST API backend with FastAPI

Main components:
- embedder: image preprocessing and lazily loaded CLIP model
- vector_store: FAISS index of item vectors and metadata
- ingestion: upload -> blob -> embedding -> record pipeline
- search: text, image and "find similar" queries
- deletion: owner/admin deletion of records and blobs
- main: FastAPI web application and REST endpoints
- config: Configuration management and environment variables
"""

__version__ = "1.0.0"

from .config import Config, config
from .errors import (LostFoundError, ValidationError, AuthError, AuthorizationError,
                     NotFoundError, UpstreamError, EmbeddingError, BlobStoreError,
                     StoreError, IngestError)
from .models import Identity, ItemRecord, ResultItem, IngestionStatus, StatusState
from .vector_store import FaissVectorStore, SearchHit
from .status_tracker import StatusTracker
from .ingestion import IngestionPipeline, BackgroundIngestor
from .search import SearchService
from .deletion import DeletionCoordinator

__all__ = [
    'Config',
    'config',
    'LostFoundError',
    'ValidationError',
    'AuthError',
    'AuthorizationError',
    'NotFoundError',
    'UpstreamError',
    'EmbeddingError',
    'BlobStoreError',
    'StoreError',
    'IngestError',
    'Identity',
    'ItemRecord',
    'ResultItem',
    'IngestionStatus',
    'StatusState',
    'FaissVectorStore',
    'SearchHit',
    'StatusTracker',
    'IngestionPipeline',
    'BackgroundIngestor',
    'SearchService',
    'DeletionCoordinator',
]
