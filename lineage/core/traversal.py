from typing import Optional

import structlog
from sqlalchemy import Integer, literal_column
from sqlalchemy.orm import Session, aliased

from lineage.config import settings
from lineage.errors import InvalidDepth, InvalidLimit, NotFound
from lineage.models.node import Node
from lineage.schemas.branch_schema import NodeView

logger = structlog.get_logger()


def _validate(max_depth: int, limit: int) -> None:
    if max_depth < 1 or max_depth > settings.BRANCH_MAX_DEPTH:
        raise InvalidDepth(
            f"max_depth must be between 1 and {settings.BRANCH_MAX_DEPTH}",
            max_depth=max_depth,
        )
    if limit < 1 or limit > settings.BRANCH_MAX_LIMIT:
        raise InvalidLimit(
            f"limit must be between 1 and {settings.BRANCH_MAX_LIMIT}",
            limit=limit,
        )


def _start_filter(db: Session, start_path: Optional[str]):
    if start_path is None:
        # Forest root (or every generation-1 node during a migration window)
        return (
            Node.parent_id.is_(None),
            Node.generation == 1,
            Node.path.isnot(None),
            Node.deleted_at.is_(None),
        )

    start = (
        db.query(Node.id)
        .filter(Node.path == start_path, Node.deleted_at.is_(None))
        .first()
    )
    if start is None:
        raise NotFound("No live node at this path", path=start_path)
    return (Node.id == start.id,)


def get_branch(
    db: Session,
    start_path: Optional[str] = None,
    max_depth: int = 3,
    limit: int = 200,
) -> list[NodeView]:
    """
    Bounded subtree read.

    Walks parent_id edges from the start node down to relative depth
    max_depth - 1, skipping tombstoned nodes. Frontier nodes that still have
    live children come back with has_more_descendants=True. Rows are ordered
    (generation, sibling_index, path) so repeated reads stay stable while
    siblings are appended.
    """
    _validate(max_depth, limit)

    branch = (
        db.query(Node.id.label("id"), literal_column("0", Integer).label("relative_depth"))
        .filter(*_start_filter(db, start_path))
        .cte("branch", recursive=True)
    )

    parent = aliased(branch, name="parent")
    child = aliased(Node, name="child")

    branch = branch.union_all(
        db.query(child.id, parent.c.relative_depth + 1)
        .join(parent, child.parent_id == parent.c.id)
        .filter(
            child.deleted_at.is_(None),
            child.path.isnot(None),
            parent.c.relative_depth < max_depth - 1,
        )
    )

    rows = (
        db.query(Node, branch.c.relative_depth)
        .join(branch, Node.id == branch.c.id)
        .order_by(Node.generation.asc(), Node.sibling_index.asc(), Node.path.asc())
        .limit(limit)
        .all()
    )

    frontier = [node.id for node, depth in rows if depth == max_depth - 1]
    with_children = set()
    if frontier:
        with_children = {
            parent_id
            for (parent_id,) in db.query(Node.parent_id)
            .filter(Node.parent_id.in_(frontier), Node.deleted_at.is_(None))
            .distinct()
            .all()
        }

    views = [
        NodeView(
            id=node.id,
            path=node.path,
            generation=node.generation,
            sibling_index=node.sibling_index,
            parent_id=node.parent_id,
            display_name=node.display_name,
            gender=node.gender,
            status=node.status,
            relative_depth=depth,
            descendant_count=node.descendant_count or 0,
            has_more_descendants=node.id in with_children,
        )
        for node, depth in rows
    ]

    logger.debug(
        "branch_read",
        start_path=start_path,
        max_depth=max_depth,
        limit=limit,
        returned=len(views),
    )
    return views
