"""
Row locks for the few operations that touch rows they don't own.

Always NOWAIT: a contended row surfaces as a retryable ResourceBusy
instead of blocking the request.
"""

from contextlib import contextmanager
from typing import Any, Iterable, Iterator, Optional

import structlog
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from lineage.errors import ResourceBusy
from lineage.models.node import Node

logger = structlog.get_logger()

# PostgreSQL lock_not_available
_LOCK_NOT_AVAILABLE = "55P03"

_BUSY_MARKERS = (
    "could not obtain lock",
    "lock not available",
    "database is locked",
)

# PostgreSQL unique_violation
_UNIQUE_VIOLATION = "23505"

_PATH_UNIQUE_MARKERS = (
    "nodes.path",
    "nodes_path_key",
)


def is_lock_failure(exc: OperationalError) -> bool:
    orig = getattr(exc, "orig", None)
    if getattr(orig, "pgcode", None) == _LOCK_NOT_AVAILABLE:
        return True
    if getattr(orig, "sqlstate", None) == _LOCK_NOT_AVAILABLE:
        return True
    text = str(orig or exc).lower()
    return any(marker in text for marker in _BUSY_MARKERS)


def lock_node(db: Session, node_id: str) -> Optional[Node]:
    """
    SELECT ... FOR UPDATE NOWAIT on one node. Returns None if the row
    does not exist; tombstoned rows are returned so callers can decide.
    """
    try:
        return (
            db.query(Node)
            .filter(Node.id == node_id)
            .with_for_update(nowait=True)
            .populate_existing()
            .first()
        )
    except OperationalError as exc:
        if is_lock_failure(exc):
            logger.warning("row_lock_busy", node_id=node_id)
            raise ResourceBusy(
                "Node is being modified by another request, retry shortly",
                node_id=node_id,
            ) from exc
        raise


def lock_nodes(db: Session, node_ids: Iterable[Optional[str]]) -> dict[str, Optional[Node]]:
    """Lock several nodes in id order so concurrent callers can't deadlock."""
    locked: dict[str, Optional[Node]] = {}
    for node_id in sorted({n for n in node_ids if n}):
        locked[node_id] = lock_node(db, node_id)
    return locked


def is_path_conflict(exc: IntegrityError) -> bool:
    orig = getattr(exc, "orig", None)
    text = str(orig or exc).lower()
    if not any(marker in text for marker in _PATH_UNIQUE_MARKERS):
        return False
    code = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    return code in (None, _UNIQUE_VIOLATION)


@contextmanager
def path_conflicts_as_busy(**details: Any) -> Iterator[None]:
    """
    Two writers that picked the same free path lose on the unique index;
    the loser retries and gets a fresh path.
    """
    try:
        yield
    except IntegrityError as exc:
        if is_path_conflict(exc):
            logger.warning("path_taken_concurrently", **details)
            raise ResourceBusy(
                "Another request took this position, retry shortly",
                **details,
            ) from exc
        raise
