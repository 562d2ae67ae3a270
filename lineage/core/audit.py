"""
Audit ledger writes.

Every mutation records exactly one AuditEntry inside its own transaction.
Batch actions wrap their entries in an OperationGroup.
"""

from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterator, Optional

import structlog
from sqlalchemy.orm import Session

from lineage.models.audit_entry import AuditEntry
from lineage.models.node import Node
from lineage.models.operation_group import OperationGroup

logger = structlog.get_logger()

# Columns captured for structural actions
POSITION_FIELDS = ("parent_id", "path", "generation", "sibling_index")


def _now() -> datetime:
    return datetime.utcnow()


def snapshot(node: Node, fields: tuple[str, ...]) -> dict[str, Any]:
    return {f: getattr(node, f) for f in fields}


def record(
    db: Session,
    actor_id: Optional[str],
    node_id: Optional[str],
    action: str,
    before: Optional[dict[str, Any]],
    after: Optional[dict[str, Any]],
    group: Optional[OperationGroup] = None,
) -> AuditEntry:
    entry = AuditEntry(
        actor_id=actor_id,
        node_id=node_id,
        action=action,
        before=before,
        after=after,
        operation_group_id=group.id if group else None,
        created_at=_now(),
    )
    db.add(entry)
    if group is not None:
        group.operation_count = (group.operation_count or 0) + 1
    db.flush()
    return entry


def open_group(
    db: Session,
    actor_id: Optional[str],
    kind: str,
    description: Optional[str] = None,
) -> OperationGroup:
    group = OperationGroup(
        actor_id=actor_id,
        kind=kind,
        description=description,
        undo_state="active",
        operation_count=0,
        created_at=_now(),
    )
    db.add(group)
    db.flush()
    logger.info("operation_group_opened", group_id=group.id, kind=kind)
    return group


def close_group(db: Session, group: OperationGroup) -> OperationGroup:
    group.closed_at = _now()
    db.flush()
    logger.info(
        "operation_group_closed",
        group_id=group.id,
        operation_count=group.operation_count,
    )
    return group


@contextmanager
def operation_group(
    db: Session,
    actor_id: Optional[str],
    kind: str,
    description: Optional[str] = None,
) -> Iterator[OperationGroup]:
    """
    Open a group, hand it to the batch, close it with the final count.

    The batch runs inside the caller's transaction; if it raises, the group
    rows vanish with the rollback, so nothing half-done stays behind.
    """
    group = open_group(db, actor_id, kind, description)
    try:
        yield group
    except Exception:
        logger.warning("operation_group_aborted", group_id=group.id, kind=kind)
        raise
    close_group(db, group)


def entries_for_node(db: Session, node_id: str, limit: int = 100) -> list[AuditEntry]:
    return (
        db.query(AuditEntry)
        .filter(AuditEntry.node_id == node_id)
        .order_by(AuditEntry.id.desc())
        .limit(limit)
        .all()
    )


def entries_for_group(db: Session, group_id: str) -> list[AuditEntry]:
    """Group entries, newest first (undo order)."""
    return (
        db.query(AuditEntry)
        .filter(AuditEntry.operation_group_id == group_id)
        .order_by(AuditEntry.id.desc())
        .all()
    )
