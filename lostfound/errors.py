"""
Error taxonomy shared by the ingestion, search and deletion components.

Every error carries the HTTP status the API layer reports it with.
"""


class LostFoundError(Exception):
    """Base class for all service errors."""

    status_code = 500

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message or self.__class__.__name__


class ValidationError(LostFoundError):
    """Missing or malformed input. Raised before any side effect."""

    status_code = 400


class AuthError(LostFoundError):
    """Missing or invalid identity."""

    status_code = 401


class AuthorizationError(AuthError):
    """Identity is valid but not allowed to perform the operation."""

    status_code = 403


class NotFoundError(LostFoundError):
    status_code = 404


class UpstreamError(LostFoundError):
    """Blob Store or Embedding Model failure."""


class EmbeddingError(UpstreamError):
    pass


class BlobStoreError(UpstreamError):
    pass


class StoreError(LostFoundError):
    """Vector Store failure."""


class IngestError(LostFoundError):
    """Ingestion failed after its side effects were rolled back.

    ``cause`` holds the error from the failing step; the status code is
    taken from it so upstream and store failures still surface as 500 and
    validation failures as 400.
    """

    def __init__(self, message: str, cause: LostFoundError = None):
        super().__init__(message)
        self.cause = cause
        if cause is not None:
            self.status_code = cause.status_code
