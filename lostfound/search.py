"""
Search service: text, image and "find similar" queries over found items.
"""

import logging
import time
from typing import List, Optional

from .blob_store import BlobStore
from .errors import ValidationError
from .events import log_event
from .models import ResultItem
from .vector_store import ALL, FaissVectorStore, SearchHit, TopK

logger = logging.getLogger(__name__)


class SearchService:
    def __init__(self, embedder, vector_store: FaissVectorStore, blob_store: BlobStore = None,
                 default_top_k: TopK = 20, default_min_similarity: float = 0.2):
        self.embedder = embedder
        self.vector_store = vector_store
        self.blob_store = blob_store
        self.default_top_k = default_top_k
        self.default_min_similarity = default_min_similarity

    def _params(self, min_similarity: Optional[float], top_k: TopK):
        if min_similarity is None:
            min_similarity = self.default_min_similarity
        if top_k is None:
            top_k = self.default_top_k
        try:
            min_similarity = float(min_similarity)
        except (TypeError, ValueError):
            raise ValidationError("min_similarity must be a number")
        if not -1.0 <= min_similarity <= 1.0:
            raise ValidationError("min_similarity must be between -1 and 1")
        if isinstance(top_k, str):
            if top_k.lower() != ALL:
                raise ValidationError(f"top_k must be a positive integer or '{ALL}'")
            top_k = ALL
        elif isinstance(top_k, bool) or not isinstance(top_k, int) or top_k < 1:
            raise ValidationError(f"top_k must be a positive integer or '{ALL}'")
        return min_similarity, top_k

    @staticmethod
    def _to_result(hit: SearchHit) -> ResultItem:
        meta = hit.metadata
        return ResultItem(
            id=hit.id,
            title=meta.get("title", ""),
            description=meta.get("description", ""),
            location=meta.get("location", ""),
            image_url=meta.get("image_url", ""),
            submitter_email=meta.get("submitter_identity", ""),
            score=hit.similarity,
            created_at=meta.get("created_at"),
        )

    def _run(self, kind: str, query_vector, min_similarity: float, top_k: TopK,
             exclude_id: Optional[str] = None) -> List[ResultItem]:
        start = time.time()
        if exclude_id is not None and top_k != ALL:
            # the source item always matches itself; ask for one extra
            hits = self.vector_store.search(query_vector, top_k + 1, min_similarity)
            hits = [h for h in hits if h.id != exclude_id][:top_k]
        else:
            hits = self.vector_store.search(query_vector, top_k, min_similarity)
            if exclude_id is not None:
                hits = [h for h in hits if h.id != exclude_id]
        results = [self._to_result(h) for h in hits]

        log_event("search", kind, results=len(results), top_k=top_k, min_similarity=min_similarity,
                  top_score=results[0].score if results else None,
                  elapsed=round(time.time() - start, 4))
        return results

    def search_by_text(self, query: str, min_similarity: float = None, top_k: TopK = None) -> List[ResultItem]:
        """Find items matching a text description. Blank queries match nothing."""
        if not query or not query.strip():
            return []
        min_similarity, top_k = self._params(min_similarity, top_k)
        vector = self.embedder.embed_text(query)
        return self._run("text", vector, min_similarity, top_k)

    def search_by_image(self, image_bytes: bytes, min_similarity: float = None, top_k: TopK = None,
                        content_type: Optional[str] = None) -> List[ResultItem]:
        """Find items that look like the given photo."""
        if not image_bytes:
            raise ValidationError("No image provided")
        min_similarity, top_k = self._params(min_similarity, top_k)
        vector = self.embedder.embed_image(image_bytes, content_type)
        return self._run("image", vector, min_similarity, top_k)

    def search_by_image_url(self, url: str, min_similarity: float = None,
                            top_k: TopK = None) -> List[ResultItem]:
        """
        "Find similar" from an image URL.

        Only URLs of stored item images are accepted; the photo is read back
        from the blob store and sent through ``search_by_image``, the same
        path as a fresh upload. See ``search_similar_to_item`` for the
        variant that reuses the stored vector instead.
        """
        if not url:
            raise ValidationError("No image URL provided")
        if self.blob_store is None or not self.blob_store.owns(url):
            raise ValidationError("Image URL is not a stored item image")
        image_bytes = self.blob_store.get(url)
        return self.search_by_image(image_bytes, min_similarity, top_k)

    def search_similar_to_item(self, item_id: str, min_similarity: float = None,
                               top_k: TopK = None) -> List[ResultItem]:
        """Items similar to a stored one, using its stored vector. Excludes the item itself."""
        min_similarity, top_k = self._params(min_similarity, top_k)
        vector, _ = self.vector_store.get(item_id)
        return self._run("similar", vector, min_similarity, top_k, exclude_id=item_id)
