from sqlalchemy import JSON, Column, Integer, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP

from orderbot.database import Base


class ConversationSessionRow(Base):
    __tablename__ = "conversation_sessions"
    __table_args__ = (UniqueConstraint("tenant_id", "customer_key", name="uq_session_tenant_customer"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(Text, nullable=False)
    customer_key = Column(Text, nullable=False)  # canonical digits, never channel-prefixed
    stage = Column(Text, nullable=False, default="idle")
    version = Column(Integer, nullable=False, default=0)
    generation = Column(Integer, nullable=False, default=0)
    state = Column(JSON().with_variant(JSONB, "postgresql"), nullable=False, default=dict)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False)
    updated_at = Column(TIMESTAMP(timezone=True), nullable=False)
