"""Copy inbound media from the gateway to durable storage.

The gateway's media URLs are encrypted and short-lived, so the binary is
fetched through the gateway's "get base64 from media message" call and
written to local storage served by ``GET /media/{path}`` with signed,
expiring URLs. Every failure degrades to keeping the original URL.
"""

import base64
import binascii
import hashlib
import hmac
import re
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional
from urllib.parse import quote
from uuid import UUID, uuid4

from chatdesk.config import settings
from chatdesk.logging_config import get_logger
from chatdesk.schemas.webhook import InboundMessage
from chatdesk.services.gateway_service import fetch_media_base64
from chatdesk.services.result import Result

logger = get_logger("media_service")

MIME_EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/png": "png",
    "image/gif": "gif",
    "image/webp": "webp",
    "video/mp4": "mp4",
    "video/3gpp": "3gp",
    "audio/ogg": "ogg",
    "audio/mpeg": "mp3",
    "audio/mp4": "m4a",
    "application/pdf": "pdf",
}
DEFAULT_EXTENSION = "bin"

_DATA_URL_PREFIX = re.compile(r"^data:[^;,]*;base64,", re.IGNORECASE)


def extension_for_mime(mime: Optional[str]) -> str:
    if not mime:
        return DEFAULT_EXTENSION
    return MIME_EXTENSIONS.get(mime.split(";")[0].strip().lower(), DEFAULT_EXTENSION)


def _normalize_media_path(path: str) -> str:
    normalized = (path or "").strip().lstrip("/")
    return normalized.replace("\\", "/")


def _sign_media_path(path: str, expires: int, secret: str) -> str:
    payload = f"{path}:{expires}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def build_media_url(relative_path: str, *, ttl_seconds: Optional[int] = None) -> str:
    """Public URL for a stored file; signed and expiring when a signing secret is configured."""
    normalized_path = _normalize_media_path(relative_path)
    quoted_path = quote(normalized_path, safe="/")
    base_url = f"{settings.public_base_url.rstrip('/')}/media/{quoted_path}"
    secret = settings.media_signing_secret
    if not secret:
        return base_url
    ttl = ttl_seconds if ttl_seconds is not None else settings.media_url_ttl_seconds
    expires = int(time.time()) + max(int(ttl), 60)
    signature = _sign_media_path(normalized_path, expires, secret)
    return f"{base_url}?expires={expires}&sig={signature}"


def verify_signed_media_path(relative_path: str, expires: Optional[int], signature: Optional[str]) -> bool:
    secret = settings.media_signing_secret
    if not secret:
        return True
    if not signature or expires is None:
        return False
    if expires < int(time.time()):
        return False
    expected = _sign_media_path(_normalize_media_path(relative_path), expires, secret)
    return hmac.compare_digest(expected, signature)


class LocalMediaStorage:
    """Object storage on the local filesystem."""

    def __init__(self, base_dir: Optional[str] = None):
        self.base_dir = Path(base_dir or settings.media_storage_dir)

    def resolve(self, relative_path: str) -> Optional[Path]:
        """Absolute path inside the storage dir, or None when the path escapes it."""
        base_dir = self.base_dir.resolve()
        target = (base_dir / _normalize_media_path(relative_path)).resolve()
        if base_dir not in target.parents:
            return None
        return target

    def upload(self, path: str, data: bytes, content_type: Optional[str] = None) -> str:
        target = self.resolve(path)
        if target is None:
            raise ValueError(f"Invalid media path: {path}")
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)
        logger.debug(f"Stored {len(data)} bytes ({content_type}) at {target}")
        return build_media_url(path)


def _safe_media_id(value: Optional[str]) -> str:
    if not value:
        return uuid4().hex
    cleaned = re.sub(r"[^a-zA-Z0-9_-]", "", value)
    return cleaned or uuid4().hex


def build_media_path(
    company_id: UUID,
    conversation_id: UUID,
    message_id: Optional[str],
    mime: Optional[str],
    *,
    now: Optional[datetime] = None,
) -> str:
    timestamp = int((now or datetime.now(timezone.utc)).timestamp() * 1000)
    return f"{company_id}/{conversation_id}/{timestamp}-{_safe_media_id(message_id)}.{extension_for_mime(mime)}"


def decode_base64_payload(value: str) -> bytes:
    cleaned = _DATA_URL_PREFIX.sub("", value.strip())
    return base64.b64decode(cleaned, validate=False)


@dataclass
class FetchedMedia:
    data: bytes
    mime_type: Optional[str]


async def fetch_media(
    inbound: InboundMessage,
    *,
    api_key: Optional[str],
    max_bytes: Optional[int] = None,
) -> Result[FetchedMedia]:
    """Download and decode the inbound message's media through the gateway. Never raises."""
    if inbound.media is None:
        return Result.failure("Message has no media", code="no_media")

    max_bytes = max_bytes if max_bytes is not None else settings.media_max_bytes
    log_context = {"message_id": inbound.message_id, "instance": inbound.instance}

    try:
        payload = await fetch_media_base64(inbound.instance, inbound.raw, api_key=api_key)
    except Exception as e:
        logger.warning(f"Media fetch failed: {e}", extra={"context": log_context})
        return Result.failure(str(e), code="fetch_failed")

    encoded = (payload or {}).get("base64")
    if not isinstance(encoded, str) or not encoded.strip():
        logger.warning("Gateway returned no media data", extra={"context": log_context})
        return Result.failure("Empty media payload", code="empty_payload")

    if (len(encoded) * 3) // 4 > max_bytes:
        return Result.failure("Media exceeds size limit", code="too_large")
    try:
        data = decode_base64_payload(encoded)
    except (binascii.Error, ValueError) as e:
        logger.warning(f"Media decode failed: {e}", extra={"context": log_context})
        return Result.failure(str(e), code="decode_failed")
    if len(data) > max_bytes:
        return Result.failure("Media exceeds size limit", code="too_large")

    return Result.success(FetchedMedia(data=data, mime_type=inbound.media.mime_type or payload.get("mimetype")))


def store_media(
    fetched: Result[FetchedMedia],
    inbound: InboundMessage,
    company_id: UUID,
    conversation_id: UUID,
    *,
    storage: Optional[LocalMediaStorage] = None,
) -> Result[str]:
    """Write fetched media under the conversation's folder; passes fetch failures through."""
    if not fetched.ok:
        return Result.failure(fetched.error, code=fetched.error_code)

    storage = storage or LocalMediaStorage()
    media = fetched.value
    path = build_media_path(company_id, conversation_id, inbound.message_id, media.mime_type)
    log_context = {"message_id": inbound.message_id, "conversation_id": str(conversation_id)}
    try:
        url = storage.upload(path, media.data, media.mime_type)
    except (OSError, ValueError) as e:
        logger.error(f"Media upload failed: {e}", extra={"context": log_context})
        return Result.failure(str(e), code="upload_failed")

    logger.info(f"Relocated media ({len(media.data)} bytes)", extra={"context": {**log_context, "path": path}})
    return Result.success(url)


async def relocate_media(
    inbound: InboundMessage,
    company_id: UUID,
    conversation_id: UUID,
    *,
    api_key: Optional[str],
    storage: Optional[LocalMediaStorage] = None,
    max_bytes: Optional[int] = None,
) -> Result[str]:
    """Fetch, decode and store the inbound message's media. Never raises."""
    fetched = await fetch_media(inbound, api_key=api_key, max_bytes=max_bytes)
    return store_media(fetched, inbound, company_id, conversation_id, storage=storage)


def build_attachment(inbound: InboundMessage, relocated: Optional[Result[str]] = None) -> Optional[dict]:
    """Attachment JSON stored on the message; None for plain text."""
    if inbound.location is not None:
        location = inbound.location
        return {
            "type": "location",
            "latitude": location.latitude,
            "longitude": location.longitude,
            "name": location.name,
            "address": location.address,
        }

    media = inbound.media
    if media is None:
        return None

    attachment = {
        "type": "image" if media.media_type == "sticker" else media.media_type,
        "url": media.url,
        "mime_type": media.mime_type,
        "file_name": media.file_name,
    }
    if relocated is not None and relocated.ok:
        attachment["url"] = relocated.value
        attachment["relocated"] = True
    else:
        attachment["unavailable"] = True
        if relocated is not None:
            attachment["error"] = relocated.error_code
    return attachment
