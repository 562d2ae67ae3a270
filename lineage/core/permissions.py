from enum import Enum
from typing import Optional

from sqlalchemy.orm import Session

from lineage.core import paths
from lineage.errors import NotFound, PermissionDenied
from lineage.models.actor_role import ActorRole
from lineage.models.block import Block
from lineage.models.branch_moderator import BranchModerator
from lineage.models.node import Node
from lineage.models.union import Union


class PermissionLevel(str, Enum):
    SELF = "self"
    INNER = "inner"
    MODERATOR = "moderator"
    ADMIN = "admin"
    SUPER_ADMIN = "super_admin"
    NONE = "none"
    BLOCKED = "blocked"


# Levels allowed to edit a node directly; NONE goes through suggestions
EDIT_LEVELS = {
    PermissionLevel.SELF,
    PermissionLevel.INNER,
    PermissionLevel.MODERATOR,
    PermissionLevel.ADMIN,
    PermissionLevel.SUPER_ADMIN,
}

# Levels allowed to move, cascade-delete or restore
STRUCTURE_LEVELS = {
    PermissionLevel.MODERATOR,
    PermissionLevel.ADMIN,
    PermissionLevel.SUPER_ADMIN,
}

ADMIN_LEVELS = {PermissionLevel.ADMIN, PermissionLevel.SUPER_ADMIN}


def can_edit(level: PermissionLevel) -> bool:
    return level in EDIT_LEVELS


def can_restructure(level: PermissionLevel) -> bool:
    return level in STRUCTURE_LEVELS


def is_blocked(db: Session, actor_id: str) -> bool:
    """
    Returns True if the actor is on the active block list.
    """
    return (
        db.query(Block)
        .filter(
            Block.blocked_actor_id == actor_id,
            Block.is_active == True,  # noqa: E712
        )
        .first()
        is not None
    )


def role_level(db: Session, actor_id: str) -> Optional[PermissionLevel]:
    role = db.query(ActorRole.role).filter(ActorRole.actor_id == actor_id).scalar()
    if role == "super_admin":
        return PermissionLevel.SUPER_ADMIN
    if role == "admin":
        return PermissionLevel.ADMIN
    return None


def moderates(db: Session, actor_id: str, target_path: Optional[str]) -> bool:
    if not target_path:
        return False
    grants = (
        db.query(BranchModerator.branch_path)
        .filter(
            BranchModerator.actor_id == actor_id,
            BranchModerator.is_active == True,  # noqa: E712
        )
        .all()
    )
    # segment-aware: a grant on "1.1" must not cover "1.10"
    return any(paths.is_descendant_of(target_path, branch) for (branch,) in grants)


def are_partners(db: Session, a_id: str, b_id: str) -> bool:
    return (
        db.query(Union)
        .filter(
            Union.status == "current",
            Union.deleted_at.is_(None),
            (
                ((Union.partner_a_id == a_id) & (Union.partner_b_id == b_id))
                | ((Union.partner_a_id == b_id) & (Union.partner_b_id == a_id))
            ),
        )
        .first()
        is not None
    )


def in_inner_circle(db: Session, actor: Node, target: Node) -> bool:
    """Parent, child, sibling or current partner."""
    actor_parents = {p for p in (actor.parent_id, actor.mother_id) if p}
    target_parents = {p for p in (target.parent_id, target.mother_id) if p}

    # parent / child, either direction
    if target.id in actor_parents or actor.id in target_parents:
        return True

    # siblings share a father or a mother
    if (actor.parent_id and actor.parent_id == target.parent_id) or (
        actor.mother_id and actor.mother_id == target.mother_id
    ):
        return True

    return are_partners(db, actor.id, target.id)


def evaluate_permission(db: Session, actor_id: str, target_id: str) -> PermissionLevel:
    """
    Edit authorization of `actor_id` over `target_id`.

    Blocked wins over everything; then roles, then a moderator grant over
    the target's branch, then self, then the inner circle.
    """
    actor = db.query(Node).filter(Node.id == actor_id, Node.deleted_at.is_(None)).first()
    target = db.query(Node).filter(Node.id == target_id).first()
    if actor is None or target is None:
        return PermissionLevel.NONE

    if is_blocked(db, actor.id):
        return PermissionLevel.BLOCKED

    role = role_level(db, actor.id)
    if role is not None:
        return role

    if moderates(db, actor.id, target.path):
        return PermissionLevel.MODERATOR

    if actor.id == target.id:
        return PermissionLevel.SELF

    if in_inner_circle(db, actor, target):
        return PermissionLevel.INNER

    return PermissionLevel.NONE


def actor_level(db: Session, actor_id: str) -> PermissionLevel:
    """Level independent of any target (roles and blocks only)."""
    if is_blocked(db, actor_id):
        return PermissionLevel.BLOCKED
    return role_level(db, actor_id) or PermissionLevel.NONE


def require_permission(
    db: Session,
    actor_id: str,
    target_id: Optional[str],
    levels: set = EDIT_LEVELS,
) -> PermissionLevel:
    """
    Guard used before a direct write. A None target means the forest root
    itself (new roots, moves to the top level), where only roles count.
    """
    if target_id is None:
        level = actor_level(db, actor_id)
    else:
        if db.query(Node.id).filter(Node.id == target_id).first() is None:
            raise NotFound("Node not found", node_id=target_id)
        level = evaluate_permission(db, actor_id, target_id)

    if level not in levels:
        raise PermissionDenied(
            "You do not have permission to do this",
            actor_id=actor_id,
            target_id=target_id,
            level=level.value,
        )
    return level
