from sqlalchemy import Column, Integer, String, DateTime
from datetime import datetime
from lineage.database import Base
import uuid


class OperationGroup(Base):
    """
    Groups the audit entries of one logical batch action
    (e.g. a cascading subtree delete) so they can be undone together.
    """

    __tablename__ = "operation_groups"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))

    actor_id = Column(String, nullable=True)
    kind = Column(String, nullable=False)
    description = Column(String, nullable=True)

    # active / undone / failed
    undo_state = Column(String, default="active", nullable=False)
    operation_count = Column(Integer, default=0, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    closed_at = Column(DateTime, nullable=True)
