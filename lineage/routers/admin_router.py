from typing import List

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from lineage.auth import get_current_actor
from lineage.core.permissions import ADMIN_LEVELS, require_permission
from lineage.core.reconcile import find_violations
from lineage.database import get_db
from lineage.models.node import Node
from lineage.schemas.report_schema import ViolationOut

router = APIRouter(prefix="/admin", tags=["Admin"])


# --------------------------------------------------
# INVARIANT REPORT (read-only)
# --------------------------------------------------
@router.get("/reconcile", response_model=List[ViolationOut])
def reconcile(
    include_informational: bool = True,
    db: Session = Depends(get_db),
    actor: Node = Depends(get_current_actor),
):
    require_permission(db, actor.id, None, ADMIN_LEVELS)
    return find_violations(db, include_informational=include_informational)
