from datetime import datetime

from sqlalchemy import Column, String, DateTime, ForeignKey

from lineage.database import Base
import uuid


class Union(Base):
    """
    A partner/couple pair. Symmetric: (a, b) means the same as (b, a).
    Not part of the tree shape, only read by the permission evaluator.
    """

    __tablename__ = "unions"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))

    partner_a_id = Column(
        String,
        ForeignKey("nodes.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    partner_b_id = Column(
        String,
        ForeignKey("nodes.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    # current / divorced / widowed
    status = Column(String, default="current", nullable=False)

    deleted_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
