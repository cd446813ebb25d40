import uuid

from sqlalchemy import Column, ForeignKey, Text
from sqlalchemy.dialects.postgresql import TIMESTAMP, UUID
from sqlalchemy.orm import relationship

from chatdesk.database import Base


class WhatsAppInstance(Base):
    __tablename__ = "whatsapp_instances"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    instance_name = Column(Text, nullable=False, unique=True)
    company_id = Column(UUID(as_uuid=True), ForeignKey("companies.id"))
    status = Column(Text, default="unknown")  # open, connecting, close
    api_key = Column(Text)  # instance-scoped gateway key, falls back to the global one
    updated_at = Column(TIMESTAMP(timezone=True))

    company = relationship("Company", back_populates="instances")
