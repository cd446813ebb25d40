import hashlib
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import UUID

from sqlalchemy import text
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.orm import Session

from chatdesk.logging_config import get_logger
from chatdesk.models import Message

logger = get_logger("message_service")


def build_inbound_message_id(
    message_id: Optional[str],
    remote_jid: Optional[str],
    timestamp: Optional[int],
    message_text: Optional[str],
) -> Optional[str]:
    """Idempotency key: provider id, else remote_jid + timestamp, else a content digest."""
    if message_id and message_id.strip():
        return message_id.strip()
    if remote_jid and timestamp is not None:
        return f"{remote_jid}:{timestamp}"
    if remote_jid and message_text:
        digest = hashlib.sha256(message_text.encode("utf-8")).hexdigest()[:16]
        return f"{remote_jid}:{digest}"
    return None


def is_duplicate_message(db: Session, external_id: Optional[str]) -> bool:
    if not external_id:
        return False
    return db.query(Message.id).filter(Message.external_id == external_id).first() is not None


def save_inbound_message(
    db: Session,
    conversation_id: UUID,
    content: str,
    external_id: Optional[str],
    attachment: Optional[dict] = None,
    message_metadata: Optional[dict] = None,
) -> Optional[Message]:
    """Insert a contact message; None when a message with this external id already exists."""
    now = datetime.now(timezone.utc)
    stmt = (
        insert(Message)
        .values(
            id=uuid.uuid4(),
            conversation_id=conversation_id,
            content=content,
            sender_type="contact",
            external_id=external_id,
            attachment=attachment,
            created_at=now,
        )
        .on_conflict_do_nothing(
            index_elements=["external_id"],
            index_where=text("external_id IS NOT NULL"),
        )
        .returning(Message.id)
    )
    new_id = db.execute(stmt).scalar_one_or_none()
    if new_id is None:
        logger.info(f"Duplicate message detected at insert: {external_id}")
        return None

    message = db.get(Message, new_id)
    if message_metadata:
        message.message_metadata = message_metadata
        db.flush()
    return message


def save_bot_message(
    db: Session,
    conversation_id: UUID,
    content: str,
    message_metadata: Optional[dict] = None,
) -> Message:
    """Save outbound bot message to database."""
    message = Message(
        conversation_id=conversation_id,
        content=content,
        sender_type="bot",
        message_metadata=message_metadata or {},
        created_at=datetime.now(timezone.utc),
    )
    db.add(message)
    db.flush()
    return message


def has_recent_bot_reply(
    db: Session,
    conversation_id: UUID,
    window_seconds: float,
    *,
    now: Optional[datetime] = None,
) -> bool:
    """True when the bot already answered this conversation inside the anti-flood window."""
    if window_seconds <= 0:
        return False
    now = now or datetime.now(timezone.utc)
    cutoff = now - timedelta(seconds=window_seconds)
    recent = (
        db.query(Message.id)
        .filter(
            Message.conversation_id == conversation_id,
            Message.sender_type == "bot",
            Message.created_at >= cutoff,
        )
        .first()
    )
    return recent is not None
