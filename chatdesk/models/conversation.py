import uuid

from sqlalchemy import Column, ForeignKey, Index, Text, text
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP, UUID
from sqlalchemy.orm import relationship

from chatdesk.database import Base

ACTIVE_STATUSES = ("open", "pending")


class Conversation(Base):
    __tablename__ = "conversations"
    __table_args__ = (
        # At most one open/pending conversation per (contact, channel).
        Index(
            "uq_conversations_active_contact_channel",
            "contact_id",
            "channel",
            unique=True,
            postgresql_where=text("status IN ('open', 'pending')"),
        ),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    company_id = Column(UUID(as_uuid=True), ForeignKey("companies.id"), nullable=False)
    contact_id = Column(UUID(as_uuid=True), ForeignKey("contacts.id"), nullable=False)
    channel = Column(Text, nullable=False)  # whatsapp
    status = Column(Text, nullable=False, default="open")  # open, pending, resolved
    assigned_operator_id = Column(UUID(as_uuid=True), ForeignKey("operators.id"))
    last_message_at = Column(TIMESTAMP(timezone=True))
    conversation_metadata = Column("metadata", JSONB, nullable=False, default={})
    created_at = Column(TIMESTAMP(timezone=True), nullable=False)
    updated_at = Column(TIMESTAMP(timezone=True))

    contact = relationship("Contact", back_populates="conversations")
    messages = relationship("Message", back_populates="conversation")
    tickets = relationship("Ticket", back_populates="conversation")
