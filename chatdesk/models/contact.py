import uuid

from sqlalchemy import Column, ForeignKey, Index, Text, text
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP, UUID
from sqlalchemy.orm import relationship

from chatdesk.database import Base


class Contact(Base):
    __tablename__ = "contacts"
    __table_args__ = (
        Index(
            "uq_contacts_company_phone",
            "company_id",
            "phone",
            unique=True,
            postgresql_where=text("phone IS NOT NULL"),
        ),
        Index("idx_contacts_company_remote_jid", "company_id", "remote_jid"),
        # Opaque @lid senders have no phone; their address is the identity
        Index(
            "uq_contacts_company_remote_jid_no_phone",
            "company_id",
            "remote_jid",
            unique=True,
            postgresql_where=text("phone IS NULL"),
        ),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    company_id = Column(UUID(as_uuid=True), ForeignKey("companies.id"), nullable=False)
    name = Column(Text)
    phone = Column(Text)  # digits only, never derived from an @lid address
    remote_jid = Column(Text)  # last address seen for this contact
    avatar_url = Column(Text)
    contact_metadata = Column("metadata", JSONB, nullable=False, default={})
    created_at = Column(TIMESTAMP(timezone=True), nullable=False)
    updated_at = Column(TIMESTAMP(timezone=True))

    conversations = relationship("Conversation", back_populates="contact")
