# lineage/models/block.py
from sqlalchemy import Boolean, Column, String, DateTime, ForeignKey
from datetime import datetime
from lineage.database import Base
import uuid


class Block(Base):
    """An actor barred from editing anything in the tree."""

    __tablename__ = "blocks"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))

    blocked_actor_id = Column(
        String,
        ForeignKey("nodes.id"),
        nullable=False,
        index=True,
    )

    reason = Column(String, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(
        DateTime,
        default=datetime.utcnow,
        nullable=False,
    )
