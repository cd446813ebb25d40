import uuid
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from pydantic import ValidationError
from sqlalchemy import text
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import flag_modified

from chatdesk.logging_config import get_logger
from chatdesk.models import Conversation, Operator
from chatdesk.models.conversation import ACTIVE_STATUSES
from chatdesk.schemas.flow import ConversationFlowState
from chatdesk.services.state_machine import ConversationStatus, hand_off

logger = get_logger("conversation_service")

FLOW_STATE_KEY = "flow_state"


def _find_active_conversation(db: Session, contact_id: UUID, channel: str) -> Optional[Conversation]:
    return (
        db.query(Conversation)
        .filter(
            Conversation.contact_id == contact_id,
            Conversation.channel == channel,
            Conversation.status.in_(ACTIVE_STATUSES),
        )
        .order_by(Conversation.created_at.desc())
        .first()
    )


def get_or_create_conversation(db: Session, company_id: UUID, contact_id: UUID, channel: str) -> Conversation:
    """Find the open/pending conversation for (contact, channel) or create one.

    Creation is an insert-on-conflict against the partial unique index, so two
    concurrent deliveries for a new contact end up sharing one row.
    """
    now = datetime.now(timezone.utc)
    conversation = _find_active_conversation(db, contact_id, channel)
    if conversation is not None:
        conversation.last_message_at = now
        conversation.updated_at = now
        db.flush()
        return conversation

    stmt = (
        insert(Conversation)
        .values(
            id=uuid.uuid4(),
            company_id=company_id,
            contact_id=contact_id,
            channel=channel,
            status=ConversationStatus.OPEN.value,
            last_message_at=now,
            created_at=now,
            updated_at=now,
        )
        .on_conflict_do_nothing(
            index_elements=["contact_id", "channel"],
            index_where=text("status IN ('open', 'pending')"),
        )
        .returning(Conversation.id)
    )
    new_id = db.execute(stmt).scalar_one_or_none()
    if new_id is not None:
        logger.info(
            "Created conversation",
            extra={"context": {"conversation_id": str(new_id), "contact_id": str(contact_id), "channel": channel}},
        )
        return db.get(Conversation, new_id)

    conversation = _find_active_conversation(db, contact_id, channel)
    if conversation is None:
        raise RuntimeError(f"Conversation insert conflicted but no active row for contact {contact_id}")
    logger.debug(f"Reusing concurrently created conversation {conversation.id}")
    conversation.last_message_at = now
    db.flush()
    return conversation


def get_flow_state(conversation: Conversation) -> Optional[ConversationFlowState]:
    """Stored flow position, or None when absent or unreadable."""
    raw = (conversation.conversation_metadata or {}).get(FLOW_STATE_KEY)
    if not isinstance(raw, dict):
        return None
    try:
        return ConversationFlowState.model_validate(raw)
    except ValidationError as e:
        logger.warning(f"Discarding unreadable flow state for conversation {conversation.id}: {e.error_count()} errors")
        return None


def save_flow_state(db: Session, conversation: Conversation, state: ConversationFlowState) -> None:
    metadata = dict(conversation.conversation_metadata or {})
    metadata[FLOW_STATE_KEY] = state.to_metadata()
    conversation.conversation_metadata = metadata
    flag_modified(conversation, "conversation_metadata")
    conversation.updated_at = datetime.now(timezone.utc)
    db.flush()


def find_available_operator(db: Session, company_id: UUID) -> Optional[Operator]:
    return (
        db.query(Operator)
        .filter(
            Operator.company_id == company_id,
            Operator.is_active.is_(True),
            Operator.status == "available",
        )
        .order_by(Operator.created_at.asc())
        .first()
    )


def transfer_to_human(db: Session, conversation: Conversation) -> Optional[Operator]:
    """Move the conversation to pending and assign the first available operator."""
    current = ConversationStatus(conversation.status)
    if current != ConversationStatus.PENDING:
        conversation.status = hand_off(current).value

    operator = None
    if conversation.assigned_operator_id is None:
        operator = find_available_operator(db, conversation.company_id)
        if operator is not None:
            conversation.assigned_operator_id = operator.id

    conversation.updated_at = datetime.now(timezone.utc)
    db.flush()
    logger.info(
        "Conversation handed off",
        extra={
            "context": {
                "conversation_id": str(conversation.id),
                "operator_id": str(operator.id) if operator else None,
            }
        },
    )
    return operator


def is_bot_muted(conversation: Conversation) -> bool:
    """A pending conversation that a human operator owns is not answered by the bot."""
    return conversation.status == ConversationStatus.PENDING.value and conversation.assigned_operator_id is not None
