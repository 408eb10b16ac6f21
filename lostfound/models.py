"""
Domain records for items, search results, ingestion status and identities.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

import numpy as np


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StatusState(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    INDEXED = "indexed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (StatusState.INDEXED, StatusState.FAILED)


ADMIN_ROLE = "admin"
USER_ROLE = "user"


@dataclass(frozen=True)
class Identity:
    """Caller identity as resolved by the auth provider."""
    email: str
    role: str = USER_ROLE

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN_ROLE


@dataclass
class ItemRecord:
    """A found item as stored in the vector store."""
    id: str
    embedding: np.ndarray
    title: str
    description: str
    location: str
    image_url: str
    submitter_identity: str
    created_at: datetime = field(default_factory=utcnow)

    def metadata(self) -> Dict[str, Any]:
        """Metadata stored next to the vector (everything but the embedding)."""
        return {
            "title": self.title,
            "description": self.description,
            "location": self.location,
            "image_url": self.image_url,
            "submitter_identity": self.submitter_identity,
            "created_at": self.created_at,
        }

    @classmethod
    def from_metadata(cls, item_id: str, embedding: np.ndarray, metadata: Dict[str, Any]) -> "ItemRecord":
        return cls(
            id=item_id,
            embedding=embedding,
            title=metadata.get("title", ""),
            description=metadata.get("description", ""),
            location=metadata.get("location", ""),
            image_url=metadata.get("image_url", ""),
            submitter_identity=metadata.get("submitter_identity", ""),
            created_at=metadata.get("created_at") or utcnow(),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Public JSON shape (no embedding)."""
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "location": self.location,
            "image_url": self.image_url,
            "submitter_email": self.submitter_identity,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class ResultItem:
    id: str
    title: str
    description: str
    location: str
    image_url: str
    submitter_email: str
    score: float
    created_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "location": self.location,
            "image_url": self.image_url,
            "submitter_email": self.submitter_email,
            "score": self.score,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


@dataclass
class IngestionStatus:
    item_id: str
    state: StatusState = StatusState.PENDING
    message: str = ""
    attempt_count: int = 0
    last_checked_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "item_id": self.item_id,
            "state": self.state.value,
            "message": self.message,
            "attempt_count": self.attempt_count,
            "last_checked_at": self.last_checked_at.isoformat() if self.last_checked_at else None,
        }
