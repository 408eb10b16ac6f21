"""
Vector store for item embeddings.
Keeps (vector, metadata) records in a FAISS inner-product index and answers
thresholded nearest-neighbour queries.
"""

import logging
import os
import pickle
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, NamedTuple, Optional, Tuple, Union

import faiss
import numpy as np

from .errors import NotFoundError, StoreError, ValidationError

logger = logging.getLogger(__name__)

ALL = "all"

TopK = Union[int, str, None]


class SearchHit(NamedTuple):
    id: str
    similarity: float
    metadata: Dict[str, Any]


@dataclass
class _Row:
    faiss_id: int
    vector: np.ndarray
    metadata: Dict[str, Any]


class FaissVectorStore:
    """
    Stores item vectors in ``IndexIDMap(IndexFlatIP)``.

    Vectors are L2-normalised on insert so the inner product is the cosine
    similarity. FAISS ids come from a monotonic counter, which doubles as the
    insertion order used to break similarity ties (newest first).
    """

    def __init__(self, embedding_dim: int = 512, index_path: Optional[str] = None):
        self.embedding_dim = embedding_dim
        self.index_path = index_path
        self.index = self._create_index()
        self._rows: Dict[str, _Row] = {}
        self._by_faiss_id: Dict[int, str] = {}
        self._next_id = 0
        self._lock = threading.RLock()
        # disk writes are serialised separately so searches never wait on I/O
        self._save_lock = threading.Lock()
        self._generation = 0
        self._saved_generations: Dict[str, int] = {}

    def _create_index(self) -> faiss.Index:
        return faiss.IndexIDMap(faiss.IndexFlatIP(self.embedding_dim))

    def __len__(self) -> int:
        with self._lock:
            return len(self._rows)

    def contains(self, item_id: str) -> bool:
        with self._lock:
            return item_id in self._rows

    def _prepare(self, vector) -> np.ndarray:
        try:
            vector = np.asarray(vector, dtype='float32').reshape(-1)
        except (TypeError, ValueError) as e:
            raise StoreError(f"Invalid vector: {e}") from e
        if vector.shape[0] != self.embedding_dim:
            raise StoreError(
                f"Vector dimension {vector.shape[0]} does not match store dimension {self.embedding_dim}"
            )
        if not np.all(np.isfinite(vector)):
            raise StoreError("Vector contains non-finite values")
        norm = np.linalg.norm(vector)
        if norm == 0:
            raise StoreError("Cannot store a zero vector")
        return vector / norm

    def insert(self, item_id: str, vector, metadata: Dict[str, Any]):
        """
        Add a record. It becomes searchable as a whole or not at all.

        With an ``index_path`` the store is written to disk after the lock is
        released; if that write fails the record is taken out again.

        Raises:
            StoreError: duplicate id, bad vector, or persistence failure
        """
        vector = self._prepare(vector)
        with self._lock:
            if item_id in self._rows:
                raise StoreError(f"Item {item_id} already exists")
            faiss_id = self._next_id
            self._next_id += 1
            try:
                self.index.add_with_ids(vector.reshape(1, -1), np.array([faiss_id], dtype='int64'))
            except Exception as e:
                raise StoreError(f"Index insert failed: {e}") from e
            row = _Row(faiss_id, vector, dict(metadata))
            self._rows[item_id] = row
            self._by_faiss_id[faiss_id] = item_id
            snapshot = self._snapshot() if self.index_path else None

        if snapshot is not None:
            try:
                self._write_snapshot(self.index_path, snapshot)
            except StoreError:
                with self._lock:
                    if self._rows.get(item_id) is row:
                        self._remove_row(item_id)
                raise

    def _remove_row(self, item_id: str) -> _Row:
        row = self._rows.pop(item_id)
        del self._by_faiss_id[row.faiss_id]
        self.index.remove_ids(np.array([row.faiss_id], dtype='int64'))
        return row

    def _restore_row(self, item_id: str, row: _Row):
        self.index.add_with_ids(row.vector.reshape(1, -1), np.array([row.faiss_id], dtype='int64'))
        self._rows[item_id] = row
        self._by_faiss_id[row.faiss_id] = item_id

    def delete(self, item_id: str) -> Dict[str, Any]:
        """Remove a record and return its metadata."""
        with self._lock:
            if item_id not in self._rows:
                raise NotFoundError(f"Item {item_id} not found")
            try:
                row = self._remove_row(item_id)
            except Exception as e:
                raise StoreError(f"Index delete failed: {e}") from e
            snapshot = self._snapshot() if self.index_path else None

        if snapshot is not None:
            try:
                self._write_snapshot(self.index_path, snapshot)
            except StoreError:
                # put it back so memory and disk agree
                with self._lock:
                    if item_id not in self._rows:
                        self._restore_row(item_id, row)
                raise
        return row.metadata

    def get(self, item_id: str) -> Tuple[np.ndarray, Dict[str, Any]]:
        """Return (vector, metadata) for a stored record."""
        with self._lock:
            row = self._rows.get(item_id)
            if row is None:
                raise NotFoundError(f"Item {item_id} not found")
            return row.vector.copy(), dict(row.metadata)

    def search(self, query_vector, top_k: TopK = 10, min_similarity: float = -1.0) -> List[SearchHit]:
        """
        Search for the records most similar to a query vector.

        Every record is scored, records below ``min_similarity`` are dropped,
        and only then is the list cut to ``top_k`` so each returned hit meets
        the threshold.

        Args:
            query_vector: query embedding (normalised here)
            top_k: maximum number of hits, or "all"/None for no cap
            min_similarity: cosine similarity floor in [-1, 1]

        Returns:
            Hits sorted by similarity descending, newest first on ties
        """
        if top_k is not None and top_k != ALL:
            if isinstance(top_k, bool) or not isinstance(top_k, int) or top_k < 1:
                raise ValidationError(f"top_k must be a positive integer or '{ALL}'")
        query = self._prepare(query_vector).reshape(1, -1)

        with self._lock:
            ntotal = self.index.ntotal
            if ntotal == 0:
                return []
            distances, ids = self.index.search(query, ntotal)
            candidates = []
            for score, faiss_id in zip(distances[0], ids[0]):
                if faiss_id == -1:
                    continue
                item_id = self._by_faiss_id.get(int(faiss_id))
                if item_id is None:
                    continue
                candidates.append((float(score), int(faiss_id), item_id, dict(self._rows[item_id].metadata)))

        hits = []
        for score, faiss_id, item_id, metadata in candidates:
            # float32 rounding can push identical vectors past 1.0
            score = max(-1.0, min(1.0, score))
            if score >= min_similarity:
                hits.append((score, faiss_id, item_id, metadata))

        hits.sort(key=lambda h: (-h[0], -h[1]))
        if top_k is not None and top_k != ALL:
            hits = hits[:top_k]

        return [SearchHit(item_id, score, metadata) for score, _, item_id, metadata in hits]

    def recent(self, limit: int = 20) -> List[Tuple[str, Dict[str, Any]]]:
        """Most recently inserted records, newest first."""
        with self._lock:
            rows = sorted(self._rows.items(), key=lambda kv: kv[1].faiss_id, reverse=True)
            return [(item_id, dict(row.metadata)) for item_id, row in rows[:limit]]

    def _snapshot(self):
        """Copy the index and sidecar state. Caller holds the store lock."""
        self._generation += 1
        index_bytes = faiss.serialize_index(self.index)
        metadata = {
            'embedding_dim': self.embedding_dim,
            'next_id': self._next_id,
            'rows': {item_id: (row.faiss_id, row.vector, row.metadata)
                     for item_id, row in self._rows.items()},
        }
        return self._generation, index_bytes, metadata

    def _write_snapshot(self, filepath: str, snapshot):
        generation, index_bytes, metadata = snapshot
        with self._save_lock:
            # a later snapshot already on disk includes this one's change
            path = Path(filepath)
            if generation <= self._saved_generations.get(str(path), 0):
                return
            try:
                path.parent.mkdir(parents=True, exist_ok=True)
                tmp_index = str(path) + '.tmp'
                with open(tmp_index, 'wb') as f:
                    f.write(index_bytes.tobytes())

                tmp_meta = str(path) + '.meta.tmp'
                with open(tmp_meta, 'wb') as f:
                    pickle.dump(metadata, f)

                os.replace(tmp_index, str(path))
                os.replace(tmp_meta, str(path) + '.meta')
            except OSError as e:
                raise StoreError(f"Failed to save index to {filepath}: {e}") from e
            self._saved_generations[str(path)] = generation

    def save(self, filepath: str):
        """Save FAISS index and the id/metadata sidecar to disk.

        State is copied under the store lock and written after releasing it,
        so searches are not held up by disk I/O.
        """
        with self._lock:
            snapshot = self._snapshot()
        self._write_snapshot(filepath, snapshot)

    def load(self, filepath: str):
        """Load FAISS index and sidecar from disk."""
        metadata_path = filepath + '.meta'
        if not os.path.exists(metadata_path):
            raise StoreError(f"Index metadata not found: {metadata_path}")

        with self._lock:
            try:
                index = faiss.read_index(filepath)
                with open(metadata_path, 'rb') as f:
                    metadata = pickle.load(f)
            except (OSError, RuntimeError, pickle.UnpicklingError) as e:
                raise StoreError(f"Failed to load index from {filepath}: {e}") from e

            if metadata.get('embedding_dim') != self.embedding_dim:
                raise StoreError(
                    f"Index dimension {metadata.get('embedding_dim')} does not match {self.embedding_dim}"
                )

            self.index = index
            self._next_id = metadata['next_id']
            self._rows = {item_id: _Row(fid, vec, meta)
                          for item_id, (fid, vec, meta) in metadata['rows'].items()}
            self._by_faiss_id = {row.faiss_id: item_id for item_id, row in self._rows.items()}
            logger.info(f"Loaded {len(self._rows)} items from {filepath}")
