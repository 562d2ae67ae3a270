"""
Undo for audited mutations.

An undo never trusts the stored snapshot: it checks that the node still
looks the way the entry left it, re-locks any parent or mother it is about
to point back at, and only then replays the inverse through the normal
mutation code (which writes its own, non-undoable, audit entry).
"""

from datetime import datetime, timedelta
from typing import Optional

import structlog
from sqlalchemy.orm import Session

from lineage.config import settings
from lineage.core import audit, mutations, paths
from lineage.core.locking import lock_node
from lineage.core.notifications import notify
from lineage.core.permissions import (
    ADMIN_LEVELS,
    EDIT_LEVELS,
    STRUCTURE_LEVELS,
    PermissionLevel,
    actor_level,
    evaluate_permission,
)
from lineage.database import transaction
from lineage.errors import (
    AlreadyUndone,
    GroupedEntry,
    NotFound,
    ParentGone,
    TreeError,
    UndoConflict,
    UndoNotAllowed,
    describe,
)
from lineage.models.audit_entry import AuditEntry
from lineage.models.node import Node
from lineage.models.operation_group import OperationGroup
from lineage.schemas.report_schema import ItemOutcome, UndoReport

logger = structlog.get_logger()


def _now() -> datetime:
    return datetime.utcnow()


# ============================================================
# PRECONDITIONS
# ============================================================

def check_undo_allowed(db: Session, actor_id: Optional[str], entry: AuditEntry) -> None:
    """
    The original actor may undo while they can still edit the node;
    anyone else needs moderator or admin rights. Only admins may undo
    entries older than UNDO_WINDOW_DAYS. actor_id=None is a trusted
    system caller.
    """
    if actor_id is None:
        return

    if entry.node_id:
        level = evaluate_permission(db, actor_id, entry.node_id)
    else:
        level = actor_level(db, actor_id)

    if level == PermissionLevel.BLOCKED:
        raise UndoNotAllowed("Actor is blocked", entry_id=entry.id)

    window = timedelta(days=settings.UNDO_WINDOW_DAYS)
    if level not in ADMIN_LEVELS and entry.created_at < _now() - window:
        raise UndoNotAllowed(
            f"Undo window of {settings.UNDO_WINDOW_DAYS} days has passed",
            entry_id=entry.id,
        )

    if entry.actor_id == actor_id:
        if level not in EDIT_LEVELS:
            raise UndoNotAllowed("You no longer have permission on this node", entry_id=entry.id)
    elif level not in STRUCTURE_LEVELS:
        raise UndoNotAllowed("Only moderators and admins can undo others' changes", entry_id=entry.id)


def _node(db: Session, node_id: Optional[str]) -> Node:
    node = db.query(Node).filter(Node.id == node_id).first()
    if node is None:
        raise NotFound("Node not found", node_id=node_id)
    return node


def _expect(node: Node, expected: dict, entry: AuditEntry) -> None:
    drift = {
        key: {"expected": value, "actual": getattr(node, key)}
        for key, value in expected.items()
        if getattr(node, key) != value
    }
    if drift:
        raise UndoConflict(
            "Node changed since this action; undo would overwrite newer edits",
            entry_id=entry.id,
            drift=drift,
        )


def _expect_live(node: Node, live: bool, entry: AuditEntry) -> None:
    if node.is_live != live:
        state = "live" if node.is_live else "deleted"
        raise UndoConflict(f"Node is {state} now", entry_id=entry.id, node_id=node.id)


# ============================================================
# INVERSES
# ============================================================

def _undo_insert(db, actor_id, entry):
    node = _node(db, entry.node_id)
    _expect_live(node, True, entry)
    _expect(node, {"parent_id": entry.after["parent_id"], "path": entry.after["path"]}, entry)
    mutations._do_soft_delete(db, actor_id, node.id, undoable=False)


def _undo_update_fields(db, actor_id, entry):
    node = _node(db, entry.node_id)
    _expect_live(node, True, entry)
    _expect(node, entry.after, entry)
    # _do_update_fields locks a restored mother_id row NOWAIT before writing
    mutations._do_update_fields(db, actor_id, node.id, dict(entry.before), undoable=False)


def _undo_reparent(db, actor_id, entry):
    before, after = entry.before, entry.after
    node = _node(db, entry.node_id)
    _expect_live(node, True, entry)
    _expect(node, {"parent_id": after["parent_id"], "path": after["path"]}, entry)

    old_parent_id = before["parent_id"]
    if old_parent_id is not None:
        parent = lock_node(db, old_parent_id)
        if parent is None or not parent.is_live:
            raise ParentGone(
                "Former parent is deleted; cannot move back",
                entry_id=entry.id,
                parent_id=old_parent_id,
            )

    siblings = (
        mutations._live_children(db, old_parent_id)
        .filter(Node.id != node.id)
        .count()
    )
    index = min(before["sibling_index"], siblings + 1)

    mutations._do_reparent(
        db,
        actor_id,
        node.id,
        old_parent_id,
        index,
        preferred_segment=paths.last_segment(before["path"]),
        undoable=False,
    )


def _undo_reorder(db, actor_id, entry):
    parent_id = entry.node_id
    current = {
        c.id: c.sibling_index for c in mutations._live_children(db, parent_id).all()
    }
    if current != entry.after["sibling_indexes"]:
        raise UndoConflict("Children changed since this reorder", entry_id=entry.id)

    previous = entry.before["sibling_indexes"]
    order = sorted(previous, key=lambda child_id: previous[child_id])
    report = mutations._do_reorder(db, actor_id, parent_id, order, undoable=False)
    if report.failed:
        raise UndoConflict("Could not restore previous order", entry_id=entry.id)


def _undo_soft_delete(db, actor_id, entry):
    node = _node(db, entry.node_id)
    _expect_live(node, False, entry)
    # _do_restore locks the parent row NOWAIT and raises ParentGone
    mutations._do_restore(
        db,
        actor_id,
        node.id,
        sibling_index=entry.before.get("sibling_index"),
        undoable=False,
    )


def _undo_restore(db, actor_id, entry):
    node = _node(db, entry.node_id)
    _expect_live(node, True, entry)
    mutations._do_soft_delete(db, actor_id, node.id, undoable=False)


INVERSES = {
    "insert": _undo_insert,
    "update_fields": _undo_update_fields,
    "reparent": _undo_reparent,
    "reorder": _undo_reorder,
    "soft_delete": _undo_soft_delete,
    "restore": _undo_restore,
}


def _undo_entry(db: Session, actor_id: Optional[str], entry: AuditEntry) -> None:
    if entry.undone_at is not None:
        raise AlreadyUndone("Already undone", entry_id=entry.id, undone_at=entry.undone_at.isoformat())
    if not entry.is_undoable:
        raise UndoNotAllowed("This action cannot be undone", entry_id=entry.id)

    inverse = INVERSES.get(entry.action)
    if inverse is None:
        raise UndoNotAllowed(f"No undo for action {entry.action!r}", entry_id=entry.id)

    check_undo_allowed(db, actor_id, entry)
    inverse(db, actor_id, entry)

    entry.undone_at = _now()
    entry.undone_by = actor_id
    db.flush()


# ============================================================
# PUBLIC
# ============================================================

def undo_single(db: Session, actor_id: Optional[str], entry_id: int) -> UndoReport:
    with transaction(db):
        entry = db.query(AuditEntry).filter(AuditEntry.id == entry_id).first()
        if entry is None:
            raise NotFound("Audit entry not found", entry_id=entry_id)
        if entry.operation_group_id is not None:
            raise GroupedEntry(
                "Entry belongs to an operation group; undo the group instead",
                entry_id=entry_id,
                group_id=entry.operation_group_id,
            )
        node_id = entry.node_id
        action = entry.action
        _undo_entry(db, actor_id, entry)

    logger.info("undo_entry", entry_id=entry_id, action=action, node_id=node_id)
    notify("undo.entry", entry_id=entry_id, action=action, node_id=node_id, actor_id=actor_id)

    return UndoReport(
        succeeded=1,
        items=[ItemOutcome(id=str(entry_id), ok=True)],
    )


def undo_group(db: Session, actor_id: Optional[str], group_id: str) -> UndoReport:
    """
    Undo every entry of a group, newest first. Each entry runs in its own
    savepoint so one failure doesn't stop the rest; the report lists them all.
    """
    with transaction(db):
        group = db.query(OperationGroup).filter(OperationGroup.id == group_id).first()
        if group is None:
            raise NotFound("Operation group not found", group_id=group_id)
        if group.undo_state == "undone":
            raise AlreadyUndone("Group already undone", group_id=group_id)

        report = UndoReport(group_id=group_id)

        for entry in audit.entries_for_group(db, group_id):
            entry_id = entry.id
            if entry.undone_at is not None:
                report.items.append(ItemOutcome(id=str(entry_id), ok=True))
                continue
            try:
                with db.begin_nested():
                    _undo_entry(db, actor_id, entry)
            except TreeError as exc:
                logger.warning(
                    "undo_entry_failed",
                    group_id=group_id,
                    entry_id=entry_id,
                    error=exc.code,
                )
                report.items.append(ItemOutcome(id=str(entry_id), ok=False, error=describe(exc)))
                continue
            report.items.append(ItemOutcome(id=str(entry_id), ok=True))

        report.succeeded = sum(1 for i in report.items if i.ok)
        report.failed = sum(1 for i in report.items if not i.ok)

        group = db.query(OperationGroup).filter(OperationGroup.id == group_id).one()
        group.undo_state = "undone" if report.failed == 0 else "failed"
        report.undo_state = group.undo_state

    logger.info(
        "undo_group",
        group_id=group_id,
        succeeded=report.succeeded,
        failed=report.failed,
    )
    notify(
        "undo.group",
        group_id=group_id,
        actor_id=actor_id,
        succeeded=report.succeeded,
        failed=report.failed,
    )
    return report
