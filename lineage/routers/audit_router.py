from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from lineage.auth import get_current_actor
from lineage.core import audit, undo
from lineage.core.permissions import ADMIN_LEVELS, EDIT_LEVELS, require_permission
from lineage.database import get_db
from lineage.models.audit_entry import AuditEntry
from lineage.models.node import Node
from lineage.schemas.report_schema import AuditEntryOut, UndoReport

router = APIRouter(prefix="/audit", tags=["Audit"])


# ============================================================
# LIST ENTRIES
# ============================================================

@router.get("/entries", response_model=List[AuditEntryOut])
def list_entries(
    node_id: Optional[str] = None,
    group_id: Optional[str] = None,
    limit: int = Query(default=100, ge=1, le=500),
    db: Session = Depends(get_db),
    actor: Node = Depends(get_current_actor),
):
    """
    History of one node (anyone who may edit it), or of a group / the whole
    ledger (admins).
    """
    if node_id and not group_id:
        require_permission(db, actor.id, node_id, EDIT_LEVELS)
        entries = audit.entries_for_node(db, node_id, limit=limit)
    else:
        require_permission(db, actor.id, None, ADMIN_LEVELS)
        if group_id:
            entries = audit.entries_for_group(db, group_id)[:limit]
        else:
            entries = (
                db.query(AuditEntry)
                .order_by(AuditEntry.id.desc())
                .limit(limit)
                .all()
            )

    return [AuditEntryOut.model_validate(e) for e in entries]


# ============================================================
# UNDO
# ============================================================

@router.post("/entries/{entry_id}/undo", response_model=UndoReport)
def undo_entry(
    entry_id: int,
    db: Session = Depends(get_db),
    actor: Node = Depends(get_current_actor),
):
    # permission and window checks happen inside, against the entry itself
    return undo.undo_single(db, actor.id, entry_id)


@router.post("/groups/{group_id}/undo", response_model=UndoReport)
def undo_group(
    group_id: str,
    db: Session = Depends(get_db),
    actor: Node = Depends(get_current_actor),
):
    return undo.undo_group(db, actor.id, group_id)
