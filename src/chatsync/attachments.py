"""Attachment pipeline.

Images are sent as two attachments: a small JPEG thumbnail, committed first
so the message shows up immediately, and the untouched full-resolution bytes,
uploaded afterwards and patched onto the message. Files are sent as one.

Downloads are callback-driven and never block: progress is reported as a
fraction in [0, 1], and completion as an AttachmentResult.
"""

from __future__ import annotations

import inspect
import logging
import re
from dataclasses import dataclass, field
from io import BytesIO
from pathlib import Path
from typing import Callable, Literal

from PIL import Image

from .context import ChatContext
from .errors import (
    AttachmentFetchError,
    AttachmentUploadError,
    FetchFailure,
    ImageProcessingError,
    NotInitializedError,
    RemoteStoreError,
)
from .models import AttachmentToken, utc_now_iso
from .store import (
    Attachment,
    AttachmentCompleted,
    AttachmentDeleted,
    AttachmentEvent,
    AttachmentProgress,
    Handle,
)

logger = logging.getLogger(__name__)

# Longest side of a thumbnail, in pixels
THUMBNAIL_MAX_SIZE = 282
THUMBNAIL_QUALITY = 100

AttachmentRole = Literal["thumbnail", "large", "file"]


@dataclass
class AttachmentSource:
    """Bytes to upload plus the name they came from."""

    name: str
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def extension(self) -> str | None:
        suffix = Path(self.name).suffix
        return suffix[1:] if suffix else None

    @classmethod
    def from_path(cls, path: str | Path) -> "AttachmentSource":
        path = Path(path)
        return cls(name=path.name, data=path.read_bytes())


@dataclass
class AttachmentResult:
    success: bool
    data: bytes | None = None
    metadata: dict[str, str] = field(default_factory=dict)
    error: AttachmentFetchError | None = None


def _convert_to_rgb(img: Image.Image) -> Image.Image:
    """Flatten any color mode to RGB, compositing transparency onto white."""
    if img.mode == "RGB":
        return img

    if img.mode == "P" and "transparency" in img.info:
        img = img.convert("RGBA")
    if img.mode == "LA":
        img = img.convert("RGBA")

    if img.mode == "RGBA":
        background = Image.new("RGB", img.size, (255, 255, 255))
        background.paste(img, mask=img.split()[-1])
        return background

    return img.convert("RGB")


def make_thumbnail(data: bytes, max_size: int = THUMBNAIL_MAX_SIZE) -> bytes:
    """Scale an image so its longest side is at most ``max_size``; re-encode as JPEG.

    Aspect ratio is kept and small images are never upscaled.

    Raises:
        ImageProcessingError: If the bytes are not a decodable image.
    """
    try:
        with Image.open(BytesIO(data)) as img:
            # Force load to detect corrupt images early
            img.load()
            thumb = _convert_to_rgb(img)
            thumb.thumbnail((max_size, max_size), Image.Resampling.LANCZOS)

            buffer = BytesIO()
            thumb.save(buffer, format="JPEG", quality=THUMBNAIL_QUALITY)
            return buffer.getvalue()
    except Image.DecompressionBombError as e:
        raise ImageProcessingError(f"Image exceeds maximum size limit: {e}") from e
    except Image.UnidentifiedImageError as e:
        raise ImageProcessingError(f"Cannot identify image format: {e}") from e
    except OSError as e:
        raise ImageProcessingError(f"Corrupted or truncated image: {e}") from e


def attachment_metadata(
    user_id: str,
    user_name: str,
    role: AttachmentRole,
    source: AttachmentSource,
    timestamp: str | None = None,
) -> dict[str, str]:
    """Metadata map stored alongside an attachment.

    Images are always stored as JPEG; files keep their own extension.
    """
    timestamp = timestamp or utc_now_iso()
    clean_name = re.sub(r"\s", "-", user_name)
    clean_timestamp = timestamp.replace(":", "-")
    extension = (source.extension or "bin") if role == "file" else "jpg"

    return {
        "filename": f"{clean_name}_{role}_{clean_timestamp}.{extension}",
        "userId": user_id,
        "username": user_name,
        "fileformat": f".{extension}",
        "filesize": str(source.size),
        "timestamp": timestamp,
        "originalName": source.name,
    }


ProgressCallback = Callable[[float], None]
CompleteCallback = Callable[[AttachmentResult], None]


class AttachmentPipeline:
    def __init__(self, ctx: ChatContext):
        self._ctx = ctx

    async def upload(self, data: bytes, metadata: dict[str, str]) -> AttachmentToken:
        """Stage bytes in the remote store.

        Raises:
            NotInitializedError: If no store is attached.
            AttachmentUploadError: If the store rejects the upload.
        """
        store = self._ctx.store
        if store is None:
            raise NotInitializedError("No remote store attached")
        try:
            async with self._ctx.metrics.timed("attachment:new"):
                return await store.new_attachment(data, metadata)
        except RemoteStoreError as e:
            raise AttachmentUploadError(f"Upload of {metadata.get('filename')!r} failed: {e}") from e

    def fetch_attachment(
        self,
        token: AttachmentToken | None,
        on_progress: ProgressCallback,
        on_complete: CompleteCallback,
    ) -> Handle | None:
        """Start a download. Failures are reported through ``on_complete``; no retry."""

        def complete(result: AttachmentResult) -> None:
            try:
                on_complete(result)
            except Exception:
                logger.warning("Attachment completion callback failed", exc_info=True)

        def fail(cause: FetchFailure, message: str) -> None:
            complete(AttachmentResult(success=False, error=AttachmentFetchError(cause, message)))

        store = self._ctx.store
        if store is None:
            fail(FetchFailure.NOT_INITIALIZED, "No remote store attached")
            return None
        if token is None or not token.id:
            fail(FetchFailure.MISSING_TOKEN, "No attachment token provided")
            return None

        def on_event(event: AttachmentEvent) -> None:
            if isinstance(event, AttachmentProgress):
                fraction = event.downloaded_bytes / (event.total_bytes or 1)
                on_progress(min(max(fraction, 0.0), 1.0))
            elif isinstance(event, AttachmentCompleted):
                self._finish(event.attachment, complete, fail)
            elif isinstance(event, AttachmentDeleted):
                fail(FetchFailure.DELETED, "Attachment was deleted")

        try:
            return store.fetch_attachment(token, on_event)
        except RemoteStoreError as e:
            fail(FetchFailure.IO_ERROR, f"Failed to fetch attachment: {e}")
            return None

    def _finish(
        self,
        attachment: Attachment,
        complete: CompleteCallback,
        fail: Callable[[FetchFailure, str], None],
    ) -> None:
        try:
            data = attachment.get_data()
        except Exception as e:
            fail(FetchFailure.IO_ERROR, f"Error reading attachment data: {e}")
            return

        if not inspect.isawaitable(data):
            complete(AttachmentResult(success=True, data=data, metadata=dict(attachment.metadata)))
            return

        async def await_data() -> None:
            try:
                payload = await data
            except Exception as e:
                fail(FetchFailure.IO_ERROR, f"Error reading attachment data: {e}")
                return
            complete(AttachmentResult(success=True, data=payload, metadata=dict(attachment.metadata)))

        if self._ctx.tasks.spawn(await_data(), name="attachment-data") is None:
            fail(FetchFailure.IO_ERROR, "No event loop to read attachment data")
