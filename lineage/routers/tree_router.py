# lineage/routers/tree_router.py

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from lineage.auth import get_current_actor
from lineage.core import mutations
from lineage.core.permissions import (
    ADMIN_LEVELS,
    EDIT_LEVELS,
    STRUCTURE_LEVELS,
    can_edit,
    evaluate_permission,
    is_blocked,
    require_permission,
)
from lineage.core.traversal import get_branch
from lineage.database import get_db
from lineage.errors import PermissionDenied
from lineage.models.node import Node
from lineage.schemas.branch_schema import NodeView
from lineage.schemas.node_schema import (
    ChildOrder,
    NodeCreate,
    NodeFieldChanges,
    NodeMove,
    NodeOut,
)
from lineage.schemas.report_schema import PermissionOut, UpdateReport

router = APIRouter(prefix="/tree", tags=["Tree"])


# ============================================================
# BRANCH READ
# ============================================================

@router.get("/branch", response_model=List[NodeView])
def read_branch(
    start_path: Optional[str] = None,
    max_depth: int = 3,
    limit: int = 200,
    db: Session = Depends(get_db),
    actor: Node = Depends(get_current_actor),
):
    return get_branch(db, start_path=start_path, max_depth=max_depth, limit=limit)


# ============================================================
# GET NODE
# ============================================================

@router.get("/nodes/{node_id}", response_model=NodeOut)
def read_node(
    node_id: str,
    db: Session = Depends(get_db),
    actor: Node = Depends(get_current_actor),
):
    node = db.query(Node).filter(Node.id == node_id).first()
    if not node:
        raise HTTPException(404, "Node not found")
    return NodeOut.model_validate(node)


# ============================================================
# INSERT
# ============================================================

@router.post("/nodes", response_model=NodeOut, status_code=201)
def create_node(
    payload: NodeCreate,
    db: Session = Depends(get_db),
    actor: Node = Depends(get_current_actor),
):
    if payload.parent_id is not None:
        require_permission(db, actor.id, payload.parent_id, EDIT_LEVELS)
    elif payload.placed:
        # a new root
        require_permission(db, actor.id, None, ADMIN_LEVELS)
    elif is_blocked(db, actor.id):
        raise PermissionDenied("You are blocked", actor_id=actor.id)

    fields = payload.model_dump(exclude={"parent_id", "placed"})
    node = mutations.insert(db, actor.id, payload.parent_id, fields, placed=payload.placed)
    return NodeOut.model_validate(node)


# ============================================================
# FIELD EDITS
# ============================================================

@router.patch("/nodes/{node_id}", response_model=NodeOut)
def edit_node(
    node_id: str,
    payload: NodeFieldChanges,
    expected_version: Optional[int] = Query(default=None, ge=1),
    db: Session = Depends(get_db),
    actor: Node = Depends(get_current_actor),
):
    require_permission(db, actor.id, node_id, EDIT_LEVELS)

    node = mutations.update_fields(
        db, actor.id, node_id, payload, expected_version=expected_version
    )
    return NodeOut.model_validate(node)


# ============================================================
# MOVE
# ============================================================

@router.post("/nodes/{node_id}/move", response_model=NodeOut)
def move_node(
    node_id: str,
    payload: NodeMove,
    expected_version: Optional[int] = Query(default=None, ge=1),
    db: Session = Depends(get_db),
    actor: Node = Depends(get_current_actor),
):
    require_permission(db, actor.id, node_id, STRUCTURE_LEVELS)
    if payload.new_parent_id is None:
        require_permission(db, actor.id, None, ADMIN_LEVELS)
    else:
        require_permission(db, actor.id, payload.new_parent_id, STRUCTURE_LEVELS)

    node = mutations.reparent(
        db,
        actor.id,
        node_id,
        payload.new_parent_id,
        payload.new_sibling_index,
        expected_version=expected_version,
    )
    return NodeOut.model_validate(node)


# ============================================================
# REORDER CHILDREN
# ============================================================

@router.put("/nodes/{node_id}/children/order", response_model=UpdateReport)
def reorder_children(
    node_id: str,
    payload: ChildOrder,
    db: Session = Depends(get_db),
    actor: Node = Depends(get_current_actor),
):
    require_permission(db, actor.id, node_id, EDIT_LEVELS)
    return mutations.reorder(db, actor.id, node_id, payload.ordered_child_ids)


# ============================================================
# DELETE / RESTORE
# ============================================================

@router.delete("/nodes/{node_id}")
def delete_node(
    node_id: str,
    cascade: bool = False,
    expected_version: Optional[int] = Query(default=None, ge=1),
    db: Session = Depends(get_db),
    actor: Node = Depends(get_current_actor),
):
    require_permission(db, actor.id, node_id, STRUCTURE_LEVELS if cascade else EDIT_LEVELS)

    group = mutations.soft_delete(
        db, actor.id, node_id, cascade=cascade, expected_version=expected_version
    )

    return {
        "status": "deleted",
        "node_id": node_id,
        "operation_group_id": group.id if group else None,
    }


@router.post("/nodes/{node_id}/restore", response_model=NodeOut)
def restore_node(
    node_id: str,
    sibling_index: Optional[int] = Query(default=None, ge=1),
    db: Session = Depends(get_db),
    actor: Node = Depends(get_current_actor),
):
    require_permission(db, actor.id, node_id, STRUCTURE_LEVELS)

    node = mutations.restore(db, actor.id, node_id, sibling_index=sibling_index)
    return NodeOut.model_validate(node)


# ============================================================
# PERMISSIONS
# ============================================================

@router.get("/permissions/{target_id}", response_model=PermissionOut)
def read_permission(
    target_id: str,
    db: Session = Depends(get_db),
    actor: Node = Depends(get_current_actor),
):
    level = evaluate_permission(db, actor.id, target_id)
    return PermissionOut(
        actor_id=actor.id,
        target_id=target_id,
        level=level.value,
        can_edit=can_edit(level),
    )
