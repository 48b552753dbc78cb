"""Exception types for chatsync.

Most entry points never raise: failures are logged and the local state is left
untouched. The attachment-creation path is the exception, and raises the typed
errors below so callers can tell an upload failure from a silent no-op.
"""

from __future__ import annotations

from enum import Enum


class ChatError(Exception):
    """Base class for all chatsync errors."""

    pass


class RemoteStoreError(ChatError):
    """Raised by a RemoteStore adapter when a remote operation fails."""

    pass


class NotInitializedError(ChatError):
    """Raised when no remote store adapter is attached."""

    pass


class MissingUserError(ChatError):
    """Raised when the current user id is not set."""

    pass


class RoomNotFoundError(ChatError):
    """Raised when a referenced room document does not exist."""

    def __init__(self, room_id: str):
        super().__init__(f"Room not found: {room_id}")
        self.room_id = room_id


class MalformedInputError(ChatError):
    """Raised when an operation is called with invalid arguments."""

    pass


class AttachmentError(ChatError):
    """Base class for attachment staging failures."""

    pass


class ImageProcessingError(AttachmentError):
    """Raised when an image cannot be decoded or re-encoded.

    This is permanent: retrying with the same bytes will fail again.
    """

    pass


class AttachmentUploadError(AttachmentError):
    """Raised when an attachment upload or its document write fails."""

    pass


class FetchFailure(str, Enum):
    """Why an attachment download did not produce data."""

    NOT_INITIALIZED = "not_initialized"
    MISSING_TOKEN = "missing_token"
    DELETED = "deleted"
    IO_ERROR = "io_error"


class AttachmentFetchError(AttachmentError):
    """Reported (never raised) through fetch_attachment's completion callback."""

    def __init__(self, cause: FetchFailure, message: str):
        super().__init__(message)
        self.cause = cause
