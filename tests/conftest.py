import hashlib
import sys
from pathlib import Path

import numpy as np
import pytest

# Ensure project root is on sys.path so `lostfound` package can be imported
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from lostfound.blob_store import LocalBlobStore
from lostfound.errors import BlobStoreError, EmbeddingError, StoreError
from lostfound.ingestion import IngestionPipeline
from lostfound.models import ADMIN_ROLE, Identity
from lostfound.search import SearchService
from lostfound.status_tracker import StatusTracker
from lostfound.vector_store import FaissVectorStore

DIM = 8


def unit(index, dim=DIM):
    v = np.zeros(dim, dtype='float32')
    v[index] = 1.0
    return v


class StubEmbedder:
    """Deterministic embedder: fixed vectors for known inputs, hashed ones otherwise."""

    def __init__(self, dim=DIM, text_vectors=None, image_vectors=None):
        self.dim = dim
        self.text_vectors = dict(text_vectors or {})
        self.image_vectors = dict(image_vectors or {})
        self.calls = []
        self.fail = False
        self.is_loaded = True

    def _hashed(self, key: bytes):
        seed = int.from_bytes(hashlib.sha256(key).digest()[:8], 'little')
        v = np.random.default_rng(seed).standard_normal(self.dim).astype('float32')
        return v / np.linalg.norm(v)

    def embed_text(self, text):
        self.calls.append(('text', text))
        if self.fail:
            raise EmbeddingError("stub text embedding failure")
        key = text.strip()
        if key in self.text_vectors:
            return np.asarray(self.text_vectors[key], dtype='float32')
        return self._hashed(key.lower().encode())

    def embed_image(self, raw_bytes, mime=None):
        self.calls.append(('image', raw_bytes))
        if self.fail:
            raise EmbeddingError("stub image embedding failure")
        if raw_bytes in self.image_vectors:
            return np.asarray(self.image_vectors[raw_bytes], dtype='float32')
        return self._hashed(raw_bytes)


class FlakyBlobStore(LocalBlobStore):
    def __init__(self, root, fail_put=False, fail_delete=False):
        super().__init__(root)
        self.fail_put = fail_put
        self.fail_delete = fail_delete

    def put(self, name, data, content_type=None):
        if self.fail_put:
            raise BlobStoreError("storage unavailable")
        return super().put(name, data, content_type)

    def delete(self, url_or_name):
        if self.fail_delete:
            raise BlobStoreError("storage unavailable")
        return super().delete(url_or_name)


class FlakyVectorStore(FaissVectorStore):
    def __init__(self, dim=DIM):
        super().__init__(embedding_dim=dim)
        self.fail_insert = False

    def insert(self, item_id, vector, metadata):
        if self.fail_insert:
            raise StoreError("vector store unavailable")
        return super().insert(item_id, vector, metadata)


@pytest.fixture
def embedder():
    return StubEmbedder()


@pytest.fixture
def vector_store():
    return FlakyVectorStore()


@pytest.fixture
def blob_store(tmp_path):
    return FlakyBlobStore(tmp_path / "blobs")


@pytest.fixture
def tracker():
    return StatusTracker(grace_seconds=60, max_attempts=10, max_lifetime_seconds=600)


@pytest.fixture
def pipeline(embedder, vector_store, blob_store, tracker):
    return IngestionPipeline(embedder, vector_store, blob_store, tracker, max_upload_size=1024)


@pytest.fixture
def search_service(embedder, vector_store, blob_store):
    return SearchService(embedder, vector_store, blob_store, default_top_k=10, default_min_similarity=-1.0)


@pytest.fixture
def alice():
    return Identity(email="alice@example.com")


@pytest.fixture
def bob():
    return Identity(email="bob@example.com")


@pytest.fixture
def admin():
    return Identity(email="moderator@example.com", role=ADMIN_ROLE)
