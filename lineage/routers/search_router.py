from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from lineage.auth import get_current_actor
from lineage.core.search import search_by_name_sequence
from lineage.database import get_db
from lineage.models.node import Node
from lineage.schemas.search_schema import MatchResult

router = APIRouter(prefix="/tree", tags=["Search"])


# --------------------------------------------------
# SEARCH BY NAME SEQUENCE
#   /tree/search?names=Ali&names=Hassan&gender=male
# --------------------------------------------------
@router.get("/search", response_model=List[MatchResult])
def search(
    names: List[str] = Query(...),
    limit: int = 50,
    offset: int = 0,
    gender: Optional[str] = None,
    db: Session = Depends(get_db),
    actor: Node = Depends(get_current_actor),
):
    return search_by_name_sequence(db, names, limit=limit, offset=offset, gender=gender)
