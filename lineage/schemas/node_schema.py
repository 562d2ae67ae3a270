from pydantic import BaseModel, Field, field_validator
from typing import Optional, Literal, List
from datetime import datetime


# Closed whitelist of columns a caller may edit directly
EDITABLE_FIELDS = (
    "display_name",
    "gender",
    "status",
    "birth_year",
    "death_year",
    "bio",
    "mother_id",
)


def _clean_name(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = " ".join(value.split())
    if not value:
        raise ValueError("display_name cannot be empty")
    return value


# --------------------------------------------------
# CREATE
# --------------------------------------------------
class NodeFields(BaseModel):
    display_name: str
    gender: Optional[Literal["male", "female"]] = None
    status: Literal["alive", "deceased"] = "alive"
    birth_year: Optional[int] = Field(default=None, ge=1, le=9999)
    death_year: Optional[int] = Field(default=None, ge=1, le=9999)
    bio: Optional[str] = Field(default=None, max_length=1000)
    mother_id: Optional[str] = None

    @field_validator("display_name")
    @classmethod
    def name_not_blank(cls, v):
        return _clean_name(v)


class NodeCreate(NodeFields):
    parent_id: Optional[str] = None
    placed: bool = True


# --------------------------------------------------
# UPDATE (partial, whitelisted)
# --------------------------------------------------
class NodeFieldChanges(BaseModel):
    display_name: Optional[str] = None
    gender: Optional[Literal["male", "female"]] = None
    status: Optional[Literal["alive", "deceased"]] = None
    birth_year: Optional[int] = Field(default=None, ge=1, le=9999)
    death_year: Optional[int] = Field(default=None, ge=1, le=9999)
    bio: Optional[str] = Field(default=None, max_length=1000)
    mother_id: Optional[str] = None

    model_config = {"extra": "forbid"}

    @field_validator("display_name")
    @classmethod
    def name_not_blank(cls, v):
        return _clean_name(v)


# --------------------------------------------------
# MOVE / REORDER
# --------------------------------------------------
class NodeMove(BaseModel):
    new_parent_id: Optional[str] = None
    new_sibling_index: int


class ChildOrder(BaseModel):
    ordered_child_ids: List[str]


# --------------------------------------------------
# OUT
# --------------------------------------------------
class NodeOut(BaseModel):
    id: str
    path: Optional[str] = None
    generation: Optional[int] = None
    sibling_index: Optional[int] = None
    parent_id: Optional[str] = None
    mother_id: Optional[str] = None
    descendant_count: int

    display_name: str
    gender: Optional[str] = None
    status: str
    birth_year: Optional[int] = None
    death_year: Optional[int] = None
    bio: Optional[str] = None

    version: int
    deleted_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}
