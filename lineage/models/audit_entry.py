from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Boolean, JSON, Index
from datetime import datetime
from lineage.database import Base


class AuditEntry(Base):
    """
    Immutable record of one mutation.

    `before` / `after` hold the minimal field diff needed to invert it.
    Only the undo columns are ever written after insert.
    """

    __tablename__ = "audit_entries"

    # Monotonic: group undo replays entries in reverse id order
    id = Column(Integer, primary_key=True)

    actor_id = Column(String, nullable=True)
    node_id = Column(String, ForeignKey("nodes.id"), nullable=True, index=True)

    # insert / update_fields / reparent / reorder / soft_delete / restore
    action = Column(String, nullable=False)

    before = Column(JSON, nullable=True)
    after = Column(JSON, nullable=True)

    operation_group_id = Column(
        String,
        ForeignKey("operation_groups.id"),
        nullable=True,
        index=True,
    )

    is_undoable = Column(Boolean, default=True, nullable=False)
    undone_at = Column(DateTime, nullable=True)
    undone_by = Column(String, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("ix_audit_entries_created_at", "created_at"),
    )
