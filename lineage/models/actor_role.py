from sqlalchemy import Column, String, DateTime, ForeignKey
from datetime import datetime
from lineage.database import Base


class ActorRole(Base):
    """
    Read model of the external role source.
    role: admin / super_admin
    """

    __tablename__ = "actor_roles"

    actor_id = Column(String, ForeignKey("nodes.id"), primary_key=True)
    role = Column(String, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
