"""Normalize Evolution gateway webhook payloads into canonical events."""

from typing import Any, Optional

from pydantic import ValidationError

from chatdesk.logging_config import get_logger
from chatdesk.schemas.webhook import InboundLocation, InboundMedia, InboundMessage, WebhookEnvelope

logger = get_logger("webhook_decoder")

EVENT_MESSAGES_UPSERT = "MESSAGES_UPSERT"
EVENT_CONNECTION_UPDATE = "CONNECTION_UPDATE"

# Addresses that never represent a 1:1 customer chat
IGNORED_JID_SUFFIXES = ("@g.us", "@broadcast", "@newsletter")

MEDIA_MESSAGE_TYPES = {
    "imageMessage": "image",
    "videoMessage": "video",
    "audioMessage": "audio",
    "documentMessage": "document",
    "stickerMessage": "sticker",
}

MEDIA_PLACEHOLDERS = {
    "image": "[Imagem]",
    "video": "[Vídeo]",
    "audio": "[Áudio]",
    "document": "[Documento]",
    "sticker": "[Figurinha]",
}
LOCATION_PLACEHOLDER = "[Localização]"
UNSUPPORTED_PLACEHOLDER = "[Mensagem não suportada]"

ALT_JID_KEYS = ("senderPn", "remoteJidAlt", "participantPn")


class MalformedPayloadError(ValueError):
    """Webhook body can't be interpreted as a gateway envelope."""


def normalize_event_type(event: str) -> str:
    """Map provider format variants (messages.upsert, MESSAGES_UPSERT, ...) to one key."""
    normalized = (event or "").strip().upper()
    for separator in (".", "-", " "):
        normalized = normalized.replace(separator, "_")
    return normalized


def decode_envelope(payload: Any) -> tuple[WebhookEnvelope, list[dict]]:
    """Validate the envelope and return it with its data items as a list."""
    if not isinstance(payload, dict):
        raise MalformedPayloadError("Payload is not a JSON object")

    try:
        envelope = WebhookEnvelope.model_validate(payload)
    except ValidationError as exc:
        raise MalformedPayloadError(f"Invalid envelope: {exc.errors()[0].get('loc')}") from exc

    data = envelope.data
    if isinstance(data, list):
        raw_items = data
    elif isinstance(data, dict):
        raw_items = [data]
    else:
        raw_items = []

    items = [item for item in raw_items if isinstance(item, dict)]
    if len(items) != len(raw_items):
        logger.warning(
            "Dropped non-object webhook items",
            extra={"context": {"event": envelope.event, "dropped": len(raw_items) - len(items)}},
        )
    return envelope, items


def _coerce_timestamp(value: Any) -> Optional[int]:
    if isinstance(value, dict):
        value = value.get("low")
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _unwrap_message(message: dict) -> dict:
    # Evolution wraps some payloads (captioned documents, ephemeral chats) one level deeper.
    for wrapper in ("ephemeralMessage", "viewOnceMessage", "viewOnceMessageV2", "documentWithCaptionMessage"):
        inner = message.get(wrapper)
        if isinstance(inner, dict) and isinstance(inner.get("message"), dict):
            return inner["message"]
    return message


def _extract_media(message: dict) -> Optional[InboundMedia]:
    for key, media_type in MEDIA_MESSAGE_TYPES.items():
        body = message.get(key)
        if not isinstance(body, dict):
            continue
        return InboundMedia(
            media_type=media_type,
            mime_type=body.get("mimetype"),
            url=body.get("url"),
            file_name=body.get("fileName") or body.get("title"),
            caption=(body.get("caption") or "").strip() or None,
        )
    return None


def _extract_location(message: dict) -> Optional[InboundLocation]:
    body = message.get("locationMessage") or message.get("liveLocationMessage")
    if not isinstance(body, dict):
        return None
    try:
        return InboundLocation(
            latitude=float(body.get("degreesLatitude")),
            longitude=float(body.get("degreesLongitude")),
            name=body.get("name"),
            address=body.get("address"),
        )
    except (TypeError, ValueError):
        return None


def extract_message_text(
    message: dict,
    media: Optional[InboundMedia] = None,
    location: Optional[InboundLocation] = None,
) -> str:
    if isinstance(message.get("conversation"), str) and message["conversation"].strip():
        return message["conversation"]

    extended = message.get("extendedTextMessage")
    if isinstance(extended, dict) and isinstance(extended.get("text"), str) and extended["text"].strip():
        return extended["text"]

    if media:
        if media.caption:
            return media.caption
        placeholder = MEDIA_PLACEHOLDERS.get(media.media_type, UNSUPPORTED_PLACEHOLDER)
        if media.media_type == "document" and media.file_name:
            return f"{placeholder} {media.file_name}"
        return placeholder

    if location:
        return LOCATION_PLACEHOLDER

    return UNSUPPORTED_PLACEHOLDER


def is_ignored_jid(remote_jid: str) -> bool:
    return remote_jid.endswith(IGNORED_JID_SUFFIXES) or remote_jid == "status@broadcast"


def parse_inbound_message(item: dict, instance: str) -> Optional[InboundMessage]:
    """Decode one MESSAGES_UPSERT item; None when it is not a processable inbound message."""
    key = item.get("key")
    if not isinstance(key, dict) or not key.get("remoteJid"):
        logger.warning("Message item without key.remoteJid", extra={"context": {"keys": list(item.keys())[:20]}})
        return None

    remote_jid = str(key["remoteJid"]).strip()
    if key.get("fromMe"):
        logger.debug(f"Skipping outgoing message {key.get('id')}")
        return None
    if is_ignored_jid(remote_jid):
        logger.debug(f"Skipping non-direct chat {remote_jid}")
        return None

    original = item.get("message") if isinstance(item.get("message"), dict) else {}
    message = _unwrap_message(original)
    media = _extract_media(message)
    location = _extract_location(message)

    alt_jid = None
    for alt_key in ALT_JID_KEYS:
        candidate = key.get(alt_key) or item.get(alt_key)
        if isinstance(candidate, str) and candidate.strip():
            alt_jid = candidate.strip()
            break

    return InboundMessage(
        instance=instance,
        message_id=key.get("id"),
        remote_jid=remote_jid,
        from_me=False,
        push_name=(item.get("pushName") or "").strip() or None,
        alt_jid=alt_jid,
        text=extract_message_text(message, media, location),
        timestamp=_coerce_timestamp(item.get("messageTimestamp")),
        media=media,
        location=location,
        raw={"key": key, "message": original},
    )
