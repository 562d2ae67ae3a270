from sqlalchemy import Column, String, DateTime, Boolean, ForeignKey
from datetime import datetime
from lineage.database import Base
import uuid


class BranchModerator(Base):
    """
    Grants moderation over every node whose path starts with `branch_path`.
    """

    __tablename__ = "branch_moderators"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))

    actor_id = Column(String, ForeignKey("nodes.id"), nullable=False, index=True)
    branch_path = Column(String, nullable=False)

    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
