import uuid

from sqlalchemy import Column, ForeignKey, Integer, Text
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP, UUID

from chatdesk.database import Base


class BotFlow(Base):
    __tablename__ = "bots"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    company_id = Column(UUID(as_uuid=True), ForeignKey("companies.id"), nullable=False)
    name = Column(Text, nullable=False)
    channels = Column(JSONB, nullable=False, default=[])  # ["whatsapp", "web"]
    status = Column(Text, nullable=False, default="draft")  # draft, published
    version = Column(Integer, nullable=False, default=1)
    flows = Column(JSONB, nullable=False, default={})  # {"nodes": [...], "edges": [...]}
    created_at = Column(TIMESTAMP(timezone=True))
    updated_at = Column(TIMESTAMP(timezone=True))
