from pydantic import BaseModel
from typing import Optional


class NodeView(BaseModel):
    """One row of a branch read."""

    id: str
    path: str
    generation: int
    sibling_index: Optional[int] = None
    parent_id: Optional[str] = None
    display_name: str
    gender: Optional[str] = None
    status: str

    relative_depth: int
    descendant_count: int
    has_more_descendants: bool

    model_config = {"from_attributes": True}
