from pydantic import BaseModel
from typing import Optional, List, Any
from datetime import datetime


# --------------------------------------------------
# PER-ITEM OUTCOMES (partial-success batches)
# --------------------------------------------------
class ItemOutcome(BaseModel):
    id: str
    ok: bool
    error: Optional[str] = None
    sibling_index: Optional[int] = None


class UpdateReport(BaseModel):
    parent_id: Optional[str] = None
    succeeded: int = 0
    failed: int = 0
    items: List[ItemOutcome] = []


class UndoReport(BaseModel):
    group_id: Optional[str] = None
    undo_state: Optional[str] = None
    succeeded: int = 0
    failed: int = 0
    items: List[ItemOutcome] = []


# --------------------------------------------------
# AUDIT
# --------------------------------------------------
class AuditEntryOut(BaseModel):
    id: int
    actor_id: Optional[str] = None
    node_id: Optional[str] = None
    action: str
    before: Optional[Any] = None
    after: Optional[Any] = None
    operation_group_id: Optional[str] = None
    is_undoable: bool
    undone_at: Optional[datetime] = None
    undone_by: Optional[str] = None
    created_at: datetime

    model_config = {"from_attributes": True}


# --------------------------------------------------
# PERMISSION / RECONCILE
# --------------------------------------------------
class PermissionOut(BaseModel):
    actor_id: str
    target_id: str
    level: str
    can_edit: bool


class ViolationOut(BaseModel):
    kind: str
    node_id: Optional[str] = None
    message: str
    expected: Optional[Any] = None
    actual: Optional[Any] = None
