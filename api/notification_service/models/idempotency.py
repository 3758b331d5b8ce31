"""Idempotency key model for collapsing duplicate creates."""

from sqlalchemy import (
    JSON,
    TIMESTAMP,
    Column,
    Index,
    String,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB

from notification_service.database import Base


class IdempotencyKey(Base):
    """
    Producer-supplied idempotency token.

    Scoped by (key, producer) to prevent cross-producer collisions.
    Stores the first response so that a replay returns it verbatim.
    """

    __tablename__ = "idempotency_keys"

    key = Column(String(255), primary_key=True)
    producer = Column(String(120), primary_key=True)
    request_hash = Column(String(64), nullable=False)  # SHA256 of the canonical request
    notification_id = Column(Uuid(as_uuid=True), nullable=False)
    response_body = Column(JSON().with_variant(JSONB(), "postgresql"))
    created_at = Column(TIMESTAMP(timezone=True), nullable=False)

    __table_args__ = (
        Index("idx_idempotency_created", "created_at"),
    )
