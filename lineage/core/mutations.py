"""
Structural writes: insert, field edits, reparent, reorder, soft delete, restore.

Each public function is one transaction: validate, apply, write its audit
entry, commit; any error rolls the whole thing back. The `_do_*` variants
do the same work without committing so the undo ledger can replay them
inside its own transaction.

Path strings are only ever produced here, through the path codec.
"""

from datetime import datetime
from typing import Any, Iterable, Optional, Union as TypingUnion
import uuid

import pydantic
import structlog
from sqlalchemy import and_, func, literal, or_
from sqlalchemy.orm import Session

from lineage.config import settings
from lineage.core import audit, paths
from lineage.core.locking import lock_node, lock_nodes, path_conflicts_as_busy
from lineage.core.search import schedule_invalidation
from lineage.database import transaction
from lineage.errors import (
    CascadeTooLarge,
    CycleDetected,
    FieldValidation,
    HasLiveChildren,
    NotFound,
    ParentGone,
    ParentNotFound,
    ParentTombstoned,
    RootExists,
    SiblingIndexOutOfRange,
    VersionConflict,
)
from lineage.models.node import Node
from lineage.models.operation_group import OperationGroup
from lineage.schemas.node_schema import EDITABLE_FIELDS, NodeFieldChanges, NodeFields
from lineage.schemas.report_schema import ItemOutcome, UpdateReport

logger = structlog.get_logger()


def _now() -> datetime:
    return datetime.utcnow()


# ============================================================
# HELPERS
# ============================================================

def _pydantic_errors(exc: pydantic.ValidationError) -> list[dict[str, Any]]:
    return exc.errors(include_url=False, include_context=False, include_input=False)


def _validate_fields(fields: TypingUnion[NodeFields, dict]) -> dict[str, Any]:
    if isinstance(fields, NodeFields):
        return fields.model_dump()
    try:
        return NodeFields.model_validate(fields or {}).model_dump()
    except pydantic.ValidationError as exc:
        raise FieldValidation("Invalid node fields", errors=_pydantic_errors(exc)) from exc


def _validate_changes(changes: TypingUnion[NodeFieldChanges, dict]) -> dict[str, Any]:
    if isinstance(changes, NodeFieldChanges):
        provided = changes.model_dump(exclude_unset=True)
    else:
        unknown = sorted(set(changes or {}) - set(EDITABLE_FIELDS))
        if unknown:
            raise FieldValidation("Fields are not editable", fields=unknown)
        try:
            provided = NodeFieldChanges.model_validate(changes or {}).model_dump(exclude_unset=True)
        except pydantic.ValidationError as exc:
            raise FieldValidation("Invalid field values", errors=_pydantic_errors(exc)) from exc

    if not provided:
        raise FieldValidation("No fields to update")
    if "display_name" in provided and provided["display_name"] is None:
        raise FieldValidation("display_name cannot be empty")
    return provided


def _get_live(db: Session, node_id: str, lock: bool = False) -> Node:
    if lock:
        node = lock_node(db, node_id)
    else:
        node = db.query(Node).filter(Node.id == node_id).first()
    if node is None or not node.is_live:
        raise NotFound("Node not found", node_id=node_id)
    return node


def _check_version(node: Node, expected_version: Optional[int]) -> None:
    if expected_version is not None and node.version != expected_version:
        raise VersionConflict(
            "Node was changed by another request; reload it and try again",
            node_id=node.id,
            expected_version=expected_version,
            current_version=node.version,
        )


def _children_of(parent_id: Optional[str]):
    """Rows whose parent is `parent_id`; None means the forest root."""
    if parent_id is None:
        return and_(Node.parent_id.is_(None), Node.path.isnot(None))
    return Node.parent_id == parent_id


def _live_children(db: Session, parent_id: Optional[str]):
    return db.query(Node).filter(_children_of(parent_id), Node.deleted_at.is_(None))


def _has_live_children(db: Session, node_id: str) -> bool:
    return _live_children(db, node_id).first() is not None


def _has_live_root(db: Session, exclude_id: Optional[str] = None) -> bool:
    q = _live_children(db, None)
    if exclude_id:
        q = q.filter(Node.id != exclude_id)
    return q.first() is not None


def _next_sibling_index(db: Session, parent_id: Optional[str]) -> int:
    current = (
        db.query(func.max(Node.sibling_index))
        .filter(_children_of(parent_id), Node.deleted_at.is_(None))
        .scalar()
    )
    return (current or 0) + 1


def _allocate_path(db: Session, parent: Optional[Node], preferred: int) -> str:
    """
    Path for a new child of `parent`.

    Uses `preferred` as the trailing segment when no child (live or
    tombstoned) holds it yet, otherwise one past the largest segment used.
    """
    parent_id = parent.id if parent else None
    parent_path = parent.path if parent else None

    used = {
        paths.last_segment(p)
        for (p,) in db.query(Node.path).filter(_children_of(parent_id), Node.path.isnot(None)).all()
    }

    segment = preferred
    if segment in used:
        segment = max(used) + 1

    candidate = paths.child_path(parent_path, segment)
    while db.query(Node.id).filter(Node.path == candidate).first() is not None:
        segment += 1
        candidate = paths.child_path(parent_path, segment)
    return candidate


def _bulk_update(db: Session, query, values: dict) -> int:
    """Single UPDATE statement; session state is refreshed afterwards."""
    db.flush()
    count = query.update(values, synchronize_session=False)
    db.expire_all()
    return count


def _bump_ancestors(db: Session, path: Optional[str], delta: int) -> None:
    ancestors = paths.ancestor_paths(path)
    if not ancestors or not delta:
        return
    _bulk_update(
        db,
        db.query(Node).filter(Node.path.in_(ancestors)),
        {Node.descendant_count: Node.descendant_count + delta},
    )


def _shift_siblings(
    db: Session,
    parent_id: Optional[str],
    start: int,
    delta: int,
    exclude_id: Optional[str] = None,
) -> None:
    """Move every live sibling at or after `start` by `delta` places."""
    q = db.query(Node).filter(
        _children_of(parent_id),
        Node.deleted_at.is_(None),
        Node.sibling_index >= start,
    )
    if exclude_id:
        q = q.filter(Node.id != exclude_id)
    _bulk_update(
        db,
        q,
        {
            Node.sibling_index: Node.sibling_index + delta,
            Node.version: Node.version + 1,
        },
    )


def _rewrite_subtree(db: Session, old_path: str, new_path: str, generation_delta: int) -> int:
    """
    One prefix-replace UPDATE for the node and its whole subtree
    (tombstoned rows included, so no stale prefix is left behind).
    """
    return _bulk_update(
        db,
        db.query(Node).filter(
            or_(Node.path == old_path, Node.path.startswith(paths.subtree_prefix(old_path)))
        ),
        {
            Node.path: literal(new_path) + func.substr(Node.path, len(old_path) + 1),
            Node.generation: Node.generation + generation_delta,
            Node.version: Node.version + 1,
            Node.updated_at: _now(),
        },
    )


def _touch(node: Node) -> None:
    node.version = (node.version or 0) + 1
    node.updated_at = _now()


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


# ============================================================
# INSERT
# ============================================================

def _do_insert(
    db: Session,
    actor_id: Optional[str],
    parent_id: Optional[str],
    fields: TypingUnion[NodeFields, dict],
    placed: bool = True,
    group: Optional[OperationGroup] = None,
) -> Node:
    data = _validate_fields(fields)

    parent = None
    if parent_id is not None:
        if not placed:
            raise FieldValidation("An unplaced node cannot have a parent")
        # held until commit; a concurrent insert under this parent gets ResourceBusy
        parent = lock_node(db, parent_id)
        if parent is None:
            raise ParentNotFound("Parent not found", parent_id=parent_id)
        if not parent.is_live:
            raise ParentTombstoned("Parent has been deleted", parent_id=parent_id)
        if not parent.is_placed:
            raise FieldValidation("Unplaced nodes cannot have children", parent_id=parent_id)

    if data.get("mother_id"):
        mother = db.query(Node).filter(Node.id == data["mother_id"]).first()
        if mother is None:
            raise ParentNotFound("Mother not found", mother_id=data["mother_id"])
        if not mother.is_live:
            raise ParentTombstoned("Mother has been deleted", mother_id=data["mother_id"])

    path = generation = sibling_index = None
    if placed:
        if parent is None and settings.SINGLE_ROOT and _has_live_root(db):
            raise RootExists("The tree already has a root")
        sibling_index = _next_sibling_index(db, parent_id)
        path = _allocate_path(db, parent, sibling_index)
        generation = parent.generation + 1 if parent else 1

    now = _now()
    node = Node(
        id=str(uuid.uuid4()),
        parent_id=parent_id,
        path=path,
        generation=generation,
        sibling_index=sibling_index,
        descendant_count=0,
        version=1,
        created_at=now,
        updated_at=now,
        **data,
    )
    db.add(node)
    with path_conflicts_as_busy(path=path, parent_id=parent_id):
        db.flush()

    _bump_ancestors(db, path, +1)

    audit.record(
        db,
        actor_id,
        node.id,
        "insert",
        before=None,
        after={
            "parent_id": parent_id,
            "path": path,
            "generation": generation,
            "sibling_index": sibling_index,
            "display_name": data["display_name"],
        },
        group=group,
    )

    logger.info("node_inserted", node_id=node.id, parent_id=parent_id, path=path)
    return node


def insert(
    db: Session,
    actor_id: Optional[str],
    parent_id: Optional[str],
    fields: TypingUnion[NodeFields, dict],
    placed: bool = True,
) -> Node:
    with transaction(db):
        node = _do_insert(db, actor_id, parent_id, fields, placed=placed)
    return node


# ============================================================
# FIELD EDITS
# ============================================================

def _do_update_fields(
    db: Session,
    actor_id: Optional[str],
    node_id: str,
    changes: TypingUnion[NodeFieldChanges, dict],
    group: Optional[OperationGroup] = None,
    undoable: bool = True,
    expected_version: Optional[int] = None,
) -> Node:
    provided = _validate_changes(changes)
    node = _get_live(db, node_id, lock=expected_version is not None)
    _check_version(node, expected_version)

    mother_id = provided.get("mother_id")
    if mother_id:
        if mother_id == node.id:
            raise FieldValidation("A node cannot be its own mother")
        mother = lock_node(db, mother_id)
        if mother is None:
            raise ParentNotFound("Mother not found", mother_id=mother_id)
        if not mother.is_live:
            raise ParentTombstoned("Mother has been deleted", mother_id=mother_id)

    changed = {k: v for k, v in provided.items() if getattr(node, k) != v}
    if not changed:
        return node

    before = {k: getattr(node, k) for k in changed}
    for key, value in changed.items():
        setattr(node, key, value)
    _touch(node)
    db.flush()

    entry = audit.record(db, actor_id, node.id, "update_fields", before, changed, group=group)
    if not undoable:
        entry.is_undoable = False

    if "display_name" in changed:
        schedule_invalidation(db, node.path)

    logger.info("node_fields_updated", node_id=node.id, fields=sorted(changed))
    return node


def update_fields(
    db: Session,
    actor_id: Optional[str],
    node_id: str,
    changes: TypingUnion[NodeFieldChanges, dict],
    expected_version: Optional[int] = None,
) -> Node:
    """
    Whitelisted field edit. With `expected_version` the write only goes
    through if nobody changed the node since the caller read it.
    """
    with transaction(db):
        node = _do_update_fields(db, actor_id, node_id, changes, expected_version=expected_version)
    return node


# ============================================================
# REPARENT
# ============================================================

def _do_reparent(
    db: Session,
    actor_id: Optional[str],
    node_id: str,
    new_parent_id: Optional[str],
    new_sibling_index: int,
    group: Optional[OperationGroup] = None,
    preferred_segment: Optional[int] = None,
    undoable: bool = True,
    expected_version: Optional[int] = None,
) -> Node:
    node = lock_node(db, node_id)
    if node is None or not node.is_live:
        raise NotFound("Node not found", node_id=node_id)
    _check_version(node, expected_version)
    if not node.is_placed:
        raise FieldValidation("Unplaced nodes have no position to move", node_id=node_id)

    old_parent_id = node.parent_id
    locked = lock_nodes(db, [old_parent_id, new_parent_id])

    new_parent = None
    if new_parent_id is not None:
        new_parent = locked.get(new_parent_id)
        if new_parent is None:
            raise ParentNotFound("New parent not found", parent_id=new_parent_id)
        if not new_parent.is_live:
            raise ParentTombstoned("New parent has been deleted", parent_id=new_parent_id)
        if not new_parent.is_placed:
            raise FieldValidation("Unplaced nodes cannot have children", parent_id=new_parent_id)
        if paths.is_descendant_of(new_parent.path, node.path):
            raise CycleDetected(
                "Cannot move a node under itself or its own descendant",
                node_id=node_id,
                new_parent_id=new_parent_id,
            )
    elif old_parent_id is not None and settings.SINGLE_ROOT and _has_live_root(db, exclude_id=node.id):
        raise RootExists("The tree already has a root")

    same_parent = old_parent_id == new_parent_id

    sibling_count = _live_children(db, new_parent_id).filter(Node.id != node.id).count()
    if new_sibling_index < 1 or new_sibling_index > sibling_count + 1:
        raise SiblingIndexOutOfRange(
            f"sibling index must be between 1 and {sibling_count + 1}",
            new_sibling_index=new_sibling_index,
        )

    before = audit.snapshot(node, audit.POSITION_FIELDS)
    old_index = node.sibling_index
    old_path = node.path
    old_generation = node.generation
    moved = (node.descendant_count or 0) + 1

    # close the gap left behind, then open the slot at the destination
    _shift_siblings(db, old_parent_id, old_index + 1, -1, exclude_id=node.id)
    _shift_siblings(db, new_parent_id, new_sibling_index, +1, exclude_id=node.id)

    if not same_parent:
        new_path = _allocate_path(db, new_parent, preferred_segment or new_sibling_index)
        new_generation = new_parent.generation + 1 if new_parent else 1

        _bump_ancestors(db, old_path, -moved)
        with path_conflicts_as_busy(node_id=node_id, path=new_path):
            _rewrite_subtree(db, old_path, new_path, new_generation - old_generation)
        _bump_ancestors(db, new_path, +moved)

        schedule_invalidation(db, old_path, new_path)

    node = db.query(Node).filter(Node.id == node_id).one()
    node.parent_id = new_parent_id
    node.sibling_index = new_sibling_index
    _touch(node)
    db.flush()

    entry = audit.record(
        db,
        actor_id,
        node.id,
        "reparent",
        before=before,
        after=audit.snapshot(node, audit.POSITION_FIELDS),
        group=group,
    )
    if not undoable:
        entry.is_undoable = False

    logger.info(
        "node_reparented",
        node_id=node.id,
        old_path=old_path,
        new_path=node.path,
        moved=moved,
    )
    return node


def reparent(
    db: Session,
    actor_id: Optional[str],
    node_id: str,
    new_parent_id: Optional[str],
    new_sibling_index: int,
    expected_version: Optional[int] = None,
) -> Node:
    with transaction(db):
        node = _do_reparent(
            db,
            actor_id,
            node_id,
            new_parent_id,
            new_sibling_index,
            expected_version=expected_version,
        )
    return node


# ============================================================
# REORDER
# ============================================================

def _do_reorder(
    db: Session,
    actor_id: Optional[str],
    parent_id: Optional[str],
    ordered_child_ids: Iterable[str],
    group: Optional[OperationGroup] = None,
    undoable: bool = True,
) -> UpdateReport:
    if parent_id is not None:
        parent = db.query(Node).filter(Node.id == parent_id).first()
        if parent is None or not parent.is_live:
            raise ParentNotFound("Parent not found", parent_id=parent_id)

    children = (
        _live_children(db, parent_id)
        .order_by(Node.sibling_index.asc(), Node.path.asc())
        .all()
    )
    by_id = {c.id: c for c in children}

    report = UpdateReport(parent_id=parent_id)
    listed: list[Node] = []
    seen: set[str] = set()

    for child_id in ordered_child_ids:
        if child_id in seen:
            report.items.append(ItemOutcome(id=child_id, ok=False, error="duplicate id"))
            continue
        child = by_id.get(child_id)
        if child is None:
            report.items.append(
                ItemOutcome(id=child_id, ok=False, error="not a live child of this parent")
            )
            continue
        seen.add(child_id)
        listed.append(child)

    final = listed + [c for c in children if c.id not in seen]
    before = {c.id: c.sibling_index for c in children}

    for index, child in enumerate(final, start=1):
        if child.sibling_index != index:
            child.sibling_index = index
            _touch(child)
    db.flush()

    after = {c.id: c.sibling_index for c in final}
    for child in listed:
        report.items.append(ItemOutcome(id=child.id, ok=True, sibling_index=child.sibling_index))

    report.succeeded = sum(1 for i in report.items if i.ok)
    report.failed = sum(1 for i in report.items if not i.ok)

    if before != after:
        entry = audit.record(
            db,
            actor_id,
            parent_id,
            "reorder",
            before={"sibling_indexes": before},
            after={"sibling_indexes": after},
            group=group,
        )
        if not undoable:
            entry.is_undoable = False

    logger.info(
        "children_reordered",
        parent_id=parent_id,
        succeeded=report.succeeded,
        failed=report.failed,
    )
    return report


def reorder(
    db: Session,
    actor_id: Optional[str],
    parent_id: Optional[str],
    ordered_child_ids: Iterable[str],
) -> UpdateReport:
    with transaction(db):
        report = _do_reorder(db, actor_id, parent_id, list(ordered_child_ids))
    return report


# ============================================================
# SOFT DELETE / RESTORE
# ============================================================

def _do_soft_delete(
    db: Session,
    actor_id: Optional[str],
    node_id: str,
    group: Optional[OperationGroup] = None,
    undoable: bool = True,
    expected_version: Optional[int] = None,
) -> Node:
    node = _get_live(db, node_id, lock=expected_version is not None)
    _check_version(node, expected_version)
    if _has_live_children(db, node.id):
        raise HasLiveChildren(
            "Node still has live children; delete them first or cascade",
            node_id=node_id,
        )

    index = node.sibling_index
    before = {"deleted_at": None, "sibling_index": index}

    # a tombstone has no rank among its siblings
    node.deleted_at = _now()
    node.sibling_index = None
    _touch(node)

    if index is not None:
        _shift_siblings(db, node.parent_id, index + 1, -1, exclude_id=node.id)
    _bump_ancestors(db, node.path, -1)

    node = db.query(Node).filter(Node.id == node_id).one()
    entry = audit.record(
        db,
        actor_id,
        node.id,
        "soft_delete",
        before=before,
        after={"deleted_at": _iso(node.deleted_at), "sibling_index": node.sibling_index},
        group=group,
    )
    if not undoable:
        entry.is_undoable = False

    schedule_invalidation(db, node.path)
    logger.info("node_soft_deleted", node_id=node.id, path=node.path)
    return node


def _lock_subtree(db: Session, node_id: str) -> tuple[Node, list[str]]:
    """
    Lock a live node and its live descendants NOWAIT, refusing subtrees
    larger than CASCADE_MAX_DESCENDANTS. Descendant ids come back deepest
    first, the order they are deleted in.
    """
    node = _get_live(db, node_id)
    descendant_ids = []
    if node.path:
        descendant_ids = [
            d
            for (d,) in db.query(Node.id)
            .filter(
                Node.path.startswith(paths.subtree_prefix(node.path)),
                Node.deleted_at.is_(None),
            )
            .order_by(Node.generation.desc(), Node.sibling_index.desc())
            .all()
        ]

    limit = settings.CASCADE_MAX_DESCENDANTS
    if len(descendant_ids) > limit:
        raise CascadeTooLarge(
            f"Cascade delete is limited to {limit} descendants; delete smaller branches first",
            node_id=node_id,
            descendants=len(descendant_ids),
            limit=limit,
        )

    locked = lock_nodes(db, [node_id, *descendant_ids])
    node = locked[node_id]
    if node is None or not node.is_live:
        raise NotFound("Node not found", node_id=node_id)
    return node, descendant_ids


def soft_delete(
    db: Session,
    actor_id: Optional[str],
    node_id: str,
    cascade: bool = False,
    expected_version: Optional[int] = None,
) -> Optional[OperationGroup]:
    """
    Tombstone a node. With cascade=True the whole live subtree goes, deepest
    first, under one operation group that can be undone as a unit.
    Returns that group, or None for a single-node delete.
    """
    with transaction(db):
        if not cascade:
            _do_soft_delete(db, actor_id, node_id, expected_version=expected_version)
            return None

        node, descendant_ids = _lock_subtree(db, node_id)
        _check_version(node, expected_version)

        with audit.operation_group(
            db,
            actor_id,
            "cascade_delete",
            f"Delete {node.display_name} and {len(descendant_ids)} descendants",
        ) as group:
            for descendant_id in descendant_ids:
                _do_soft_delete(db, actor_id, descendant_id, group=group)
            _do_soft_delete(db, actor_id, node_id, group=group)

    return group


def _do_restore(
    db: Session,
    actor_id: Optional[str],
    node_id: str,
    sibling_index: Optional[int] = None,
    group: Optional[OperationGroup] = None,
    undoable: bool = True,
) -> Node:
    node = db.query(Node).filter(Node.id == node_id).first()
    if node is None:
        raise NotFound("Node not found", node_id=node_id)
    if node.is_live:
        raise FieldValidation("Node is not deleted", node_id=node_id)

    if node.parent_id is not None:
        parent = lock_node(db, node.parent_id)
        if parent is None or not parent.is_live:
            raise ParentGone(
                "Parent is deleted; move this node to a live parent first",
                node_id=node_id,
                parent_id=node.parent_id,
            )
    elif node.path and settings.SINGLE_ROOT and _has_live_root(db):
        raise RootExists("The tree already has a root")

    before = {"deleted_at": _iso(node.deleted_at), "sibling_index": node.sibling_index}

    index = None
    if node.is_placed:
        last = _next_sibling_index(db, node.parent_id)
        index = last if sibling_index is None else max(1, min(sibling_index, last))
        _shift_siblings(db, node.parent_id, index, +1, exclude_id=node.id)
        _bump_ancestors(db, node.path, +1)

    node = db.query(Node).filter(Node.id == node_id).one()
    node.deleted_at = None
    node.sibling_index = index
    _touch(node)
    db.flush()

    entry = audit.record(
        db,
        actor_id,
        node.id,
        "restore",
        before=before,
        after={"deleted_at": None, "sibling_index": index},
        group=group,
    )
    if not undoable:
        entry.is_undoable = False

    schedule_invalidation(db, node.path)
    logger.info("node_restored", node_id=node.id, path=node.path, sibling_index=index)
    return node


def restore(
    db: Session,
    actor_id: Optional[str],
    node_id: str,
    sibling_index: Optional[int] = None,
) -> Node:
    with transaction(db):
        node = _do_restore(db, actor_id, node_id, sibling_index=sibling_index)
    return node
