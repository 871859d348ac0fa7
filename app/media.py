"""
Media Resolver: turns a message attachment into a URL the agent UI can load.

Remote URLs pass through untouched. Inline base64 payloads are decoded and
written to object storage under media/<conversation_id>/<random>.<ext>.
Failures are logged and answered with None so the message is still stored.
"""

import base64
import binascii
import logging
import re
import uuid
from pathlib import Path
from typing import Optional, Protocol

import httpx

from app.config import settings
from app.envelopes import Attachment
from app.errors import UpstreamError
from app.metrics import record_media_outcome
from app.models import MessageType

logger = logging.getLogger(__name__)

MIME_EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/gif": "gif",
    "image/webp": "webp",
    "audio/ogg": "ogg",
    "audio/mpeg": "mp3",
    "audio/mp4": "m4a",
    "audio/aac": "aac",
    "audio/wav": "wav",
    "video/mp4": "mp4",
    "video/webm": "webm",
    "video/quicktime": "mov",
    "application/pdf": "pdf",
    "application/msword": "doc",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": "docx",
    "application/vnd.ms-excel": "xls",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet": "xlsx",
    "application/zip": "zip",
    "text/plain": "txt",
    "text/csv": "csv",
}

# Used when the provider declares no MIME type
KIND_FALLBACKS = {
    MessageType.IMAGE: ("jpg", "image/jpeg"),
    MessageType.AUDIO: ("ogg", "audio/ogg"),
    MessageType.VIDEO: ("mp4", "video/mp4"),
    MessageType.DOCUMENT: ("pdf", "application/pdf"),
    MessageType.STICKER: ("webp", "image/webp"),
}

DEFAULT_EXTENSION = ("bin", "application/octet-stream")

_DATA_URI_PREFIX = re.compile(r"^data:[^;,]*;base64,")
_SAFE_EXTENSION = re.compile(r"^[a-z0-9]{1,8}$")


class ObjectStorage(Protocol):
    def put(self, key: str, data: bytes, content_type: str) -> str:
        """Store ``data`` under ``key`` and return its public URL."""
        ...


class LocalObjectStorage:
    """Writes objects below a directory served at ``public_base_url``."""

    def __init__(self, root: str, public_base_url: str):
        self.root = Path(root)
        self.public_base_url = public_base_url.rstrip("/")

    def put(self, key: str, data: bytes, content_type: str) -> str:
        path = self.root / key
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
        except OSError as e:
            raise UpstreamError(f"local storage write failed: {e}") from e
        return f"{self.public_base_url}/{key}"


class HttpObjectStorage:
    """
    Object storage behind a REST API:
    PUT {base_url}/object/{bucket}/{key}, public at
    {base_url}/object/public/{bucket}/{key}.
    """

    def __init__(
        self,
        base_url: str,
        bucket: str,
        api_key: Optional[str],
        timeout: float,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.bucket = bucket
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport

    def put(self, key: str, data: bytes, content_type: str) -> str:
        headers = {"Content-Type": content_type, "x-upsert": "true"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        try:
            with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
                response = client.put(
                    f"{self.base_url}/object/{self.bucket}/{key}",
                    content=data,
                    headers=headers,
                )
                response.raise_for_status()
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise UpstreamError(f"object upload failed: {e}") from e
        return f"{self.base_url}/object/public/{self.bucket}/{key}"


def get_media_storage() -> ObjectStorage:
    """FastAPI dependency providing the configured storage backend."""
    if settings.MEDIA_STORAGE_BACKEND == "http":
        if not settings.MEDIA_STORAGE_URL:
            raise RuntimeError("MEDIA_STORAGE_URL is required for the http storage backend")
        return HttpObjectStorage(
            base_url=settings.MEDIA_STORAGE_URL,
            bucket=settings.MEDIA_BUCKET,
            api_key=settings.MEDIA_STORAGE_KEY,
            timeout=settings.MEDIA_UPLOAD_TIMEOUT_SECONDS,
        )
    return LocalObjectStorage(settings.MEDIA_STORAGE_DIR, settings.MEDIA_PUBLIC_BASE_URL)


def decode_inline(data: str) -> bytes:
    """Decode base64 media, tolerating a data-URI prefix and line breaks."""
    cleaned = _DATA_URI_PREFIX.sub("", data.strip()).replace("\r", "").replace("\n", "")
    try:
        return base64.b64decode(cleaned, validate=True)
    except (binascii.Error, ValueError) as e:
        raise UpstreamError(f"attachment is not valid base64: {e}") from e


def infer_extension(attachment: Attachment, message_type: MessageType) -> tuple:
    """
    Pick (extension, content type) for an inline attachment.

    File name extension first, then the declared MIME type, then the
    per-kind fallback table.
    """
    mime = (attachment.mime_type or "").split(";", 1)[0].strip().lower()

    if attachment.file_name and "." in attachment.file_name:
        extension = attachment.file_name.rsplit(".", 1)[1].lower()
        if _SAFE_EXTENSION.match(extension):
            return extension, mime or "application/octet-stream"

    if mime in MIME_EXTENSIONS:
        return MIME_EXTENSIONS[mime], mime

    extension, content_type = KIND_FALLBACKS.get(message_type, DEFAULT_EXTENSION)
    return extension, mime or content_type


def storage_key(conversation_id: str, extension: str) -> str:
    return f"media/{conversation_id}/{uuid.uuid4().hex}.{extension}"


def resolve_media(
    attachment: Optional[Attachment],
    message_type: MessageType,
    conversation_id: str,
    storage: ObjectStorage,
) -> Optional[str]:
    """
    Return a media URL for the attachment, or None.

    Never raises: decode or upload failures are logged and produce None.
    """
    if attachment is None:
        return None

    if attachment.url:
        record_media_outcome("passthrough")
        return attachment.url

    if not attachment.data:
        return None

    try:
        payload = decode_inline(attachment.data)
        extension, content_type = infer_extension(attachment, message_type)
        key = storage_key(conversation_id, extension)
        url = storage.put(key, payload, content_type)
    except UpstreamError as e:
        logger.warning(f"Media resolution failed for conversation {conversation_id}: {e.detail}")
        record_media_outcome("failed")
        return None
    except Exception as e:
        # Storage backends are pluggable; any failure must still leave the message storable
        logger.exception(f"Unexpected media storage failure for conversation {conversation_id}: {e}")
        record_media_outcome("failed")
        return None

    logger.info(f"Stored {len(payload)} bytes of {message_type.value} media at {key}")
    record_media_outcome("uploaded")
    return url
