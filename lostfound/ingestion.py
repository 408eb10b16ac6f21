"""
Ingestion pipeline: turns a found-item submission into a searchable record.

Steps: store the photo, embed it, write the vector record, mark the status
indexed. Every step with an external side effect registers an undo action,
so a failure at any point leaves neither a record nor a blob behind.
"""

import asyncio
import logging
import time
import uuid
from typing import Callable, Optional, Set, Union

from .blob_store import BlobStore, make_blob_name
from .errors import (BlobStoreError, EmbeddingError, IngestError, LostFoundError,
                     NotFoundError, StoreError, ValidationError)
from .events import log_event
from .models import Identity, ItemRecord, StatusState, utcnow
from .saga import Saga
from .status_tracker import StatusTracker

logger = logging.getLogger(__name__)


def new_item_id() -> str:
    return uuid.uuid4().hex


class IngestionPipeline:
    def __init__(self, embedder, vector_store, blob_store: BlobStore, status_tracker: StatusTracker,
                 max_text_length: int = 2000, max_upload_size: int = 10 * 1024 * 1024,
                 id_factory: Callable[[], str] = new_item_id):
        self.embedder = embedder
        self.vector_store = vector_store
        self.blob_store = blob_store
        self.status_tracker = status_tracker
        self.max_text_length = max_text_length
        self.max_upload_size = max_upload_size
        self.id_factory = id_factory

    def validate(self, title: str, description: str, location: str, image_bytes: bytes,
                 submitter: Union[Identity, str, None], content_type: Optional[str] = None):
        """Check a submission before anything is stored.

        Returns the cleaned (title, description, location, submitter email).
        """
        email = submitter.email if isinstance(submitter, Identity) else submitter
        if not email:
            raise ValidationError("Submitter identity is required")

        title = (title or "").strip()
        description = (description or "").strip()
        location = (location or "").strip()
        if not title or not location:
            raise ValidationError("Missing required fields")
        for name, value in (("title", title), ("description", description), ("location", location)):
            if len(value) > self.max_text_length:
                raise ValidationError(f"{name} exceeds {self.max_text_length} characters")

        if not image_bytes:
            raise ValidationError("Missing required fields")
        if len(image_bytes) > self.max_upload_size:
            raise ValidationError("File too large")
        if content_type and not content_type.startswith("image/"):
            raise ValidationError("File must be an image")
        return title, description, location, email

    def _set_status(self, item_id: str, state: StatusState, message: str):
        try:
            self.status_tracker.mark(item_id, state, message)
        except NotFoundError:
            logger.warning(f"Status entry for {item_id} was pruned before it reached {state.value}")

    def _fail(self, item_id: str, saga: Saga, error: LostFoundError, started: float) -> IngestError:
        saga.compensate()
        message = error.message
        if saga.failed_compensations:
            message += f" (cleanup incomplete: {', '.join(saga.failed_compensations)})"
        self._set_status(item_id, StatusState.FAILED, message)
        log_event("ingestion", "failed", item_id=item_id, error=type(error).__name__,
                  message=message, elapsed=round(time.time() - started, 3))
        return IngestError(message, cause=error)

    def ingest(self, title: str, description: str, location: str, image_bytes: bytes,
               submitter: Union[Identity, str], *, filename: Optional[str] = None,
               content_type: Optional[str] = None, item_id: Optional[str] = None) -> ItemRecord:
        """
        Store, embed and index a found item.

        Args:
            title, description, location: item metadata
            image_bytes: raw photo upload
            submitter: identity of the uploader (owner of the record)
            filename: original upload name, used for the blob name
            content_type: upload MIME type
            item_id: pre-allocated id (background uploads); generated otherwise

        Returns:
            The indexed ItemRecord

        Raises:
            IngestError: any step failed; prior side effects were undone
        """
        started = time.time()
        item_id = item_id or self.id_factory()
        if self.status_tracker.peek(item_id) is None:
            self.status_tracker.start(item_id)
        saga = Saga(f"ingest:{item_id}")

        try:
            title, description, location, email = self.validate(
                title, description, location, image_bytes, submitter, content_type)
        except ValidationError as e:
            raise self._fail(item_id, saga, e, started) from e

        self._set_status(item_id, StatusState.PROCESSING, "Uploading image")
        blob_name = make_blob_name(item_id, filename)

        # 1. blob
        try:
            image_url = self.blob_store.put(blob_name, image_bytes, content_type)
        except LostFoundError as e:
            err = e if isinstance(e, BlobStoreError) else BlobStoreError(f"Failed to upload image: {e.message}")
            raise self._fail(item_id, saga, err, started) from e
        except Exception as e:
            raise self._fail(item_id, saga, BlobStoreError(f"Failed to upload image: {e}"), started) from e
        saga.add_compensation(f"delete blob {blob_name}", lambda: self.blob_store.delete(blob_name))
        log_event("ingestion", "blob_stored", item_id=item_id, blob=blob_name, size=len(image_bytes))

        # 2. embedding
        self._set_status(item_id, StatusState.PROCESSING, "Generating image embedding")
        try:
            embedding = self.embedder.embed_image(image_bytes, content_type)
        except EmbeddingError as e:
            raise self._fail(item_id, saga, e, started) from e
        except Exception as e:
            raise self._fail(item_id, saga, EmbeddingError(f"Failed to process image: {e}"), started) from e
        log_event("ingestion", "embedded", item_id=item_id, dim=int(embedding.shape[0]))

        # 3. vector record
        record = ItemRecord(
            id=item_id,
            embedding=embedding,
            title=title,
            description=description,
            location=location,
            image_url=image_url,
            submitter_identity=email,
            created_at=utcnow(),
        )
        try:
            self.vector_store.insert(item_id, embedding, record.metadata())
        except StoreError as e:
            raise self._fail(item_id, saga, e, started) from e
        except Exception as e:
            raise self._fail(item_id, saga, StoreError(f"Failed to save to database: {e}"), started) from e
        saga.complete()

        # 4. status
        self._set_status(item_id, StatusState.INDEXED, "Item is searchable")
        log_event("ingestion", "indexed", item_id=item_id, submitter=email,
                  elapsed=round(time.time() - started, 3))
        return record


class BackgroundIngestor:
    """
    Runs ingestions off the request path.

    ``submit`` allocates the id and the status entry up front, so the caller
    can hand the id to the client for polling, then runs the pipeline in a
    worker thread. Tasks are kept until finished so shutdown can wait for
    them instead of cutting a pipeline in half.
    """

    def __init__(self, pipeline: IngestionPipeline):
        self.pipeline = pipeline
        self._tasks: Set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def submit(self, title: str, description: str, location: str, image_bytes: bytes,
               submitter: Identity, filename: Optional[str] = None,
               content_type: Optional[str] = None) -> str:
        self.pipeline.validate(title, description, location, image_bytes, submitter, content_type)
        item_id = self.pipeline.id_factory()
        self.pipeline.status_tracker.start(item_id)

        async def _run():
            try:
                await asyncio.to_thread(
                    self.pipeline.ingest, title, description, location, image_bytes, submitter,
                    filename=filename, content_type=content_type, item_id=item_id)
            except IngestError as e:
                logger.warning(f"Background ingestion {item_id} failed: {e.message}")
            except Exception:
                logger.exception(f"Background ingestion {item_id} crashed")
                self.pipeline._set_status(item_id, StatusState.FAILED, "Internal error")

        task = asyncio.get_running_loop().create_task(_run())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return item_id

    async def drain(self):
        """Wait for every in-flight ingestion to finish."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
