"""
Deletion coordinator: removes an item record and its photo.

The vector entry goes first. Once it is gone the item can no longer be
found, so a failed blob delete only leaks storage; the reverse order could
leave a searchable item pointing at a missing photo.
"""

import logging
from typing import Optional

from .blob_store import BlobStore
from .errors import AuthError, AuthorizationError, LostFoundError, NotFoundError
from .events import log_event
from .models import Identity, ItemRecord
from .status_tracker import StatusTracker
from .vector_store import FaissVectorStore

logger = logging.getLogger(__name__)


class DeletionCoordinator:
    def __init__(self, vector_store: FaissVectorStore, blob_store: BlobStore,
                 status_tracker: Optional[StatusTracker] = None):
        self.vector_store = vector_store
        self.blob_store = blob_store
        self.status_tracker = status_tracker

    @staticmethod
    def can_delete(requester: Identity, submitter: str) -> bool:
        return requester.is_admin or requester.email.lower() == (submitter or "").lower()

    def delete(self, item_id: str, requester: Identity) -> ItemRecord:
        """
        Delete an item on behalf of ``requester``.

        Raises:
            AuthError: no requester
            NotFoundError: unknown item (also on a repeated delete)
            AuthorizationError: requester is neither the submitter nor an admin
            StoreError: the vector entry could not be removed
        """
        if requester is None:
            raise AuthError("Unauthorized")

        vector, metadata = self.vector_store.get(item_id)
        record = ItemRecord.from_metadata(item_id, vector, metadata)
        if not self.can_delete(requester, record.submitter_identity):
            log_event("deletion", "denied", item_id=item_id, requester=requester.email)
            raise AuthorizationError("You can only delete items you submitted")

        # NotFoundError here means a concurrent delete won the race
        self.vector_store.delete(item_id)
        log_event("deletion", "record_removed", item_id=item_id, requester=requester.email,
                  admin_override=requester.is_admin and requester.email != record.submitter_identity)

        if self.status_tracker is not None:
            self.status_tracker.discard(item_id)

        if record.image_url:
            try:
                self.blob_store.delete(record.image_url)
                log_event("deletion", "blob_removed", item_id=item_id)
            except NotFoundError:
                logger.warning(f"Blob for {item_id} was already gone: {record.image_url}")
            except LostFoundError as e:
                logger.error(f"Orphaned blob for deleted item {item_id} ({record.image_url}): {e.message}")
        return record
