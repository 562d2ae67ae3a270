"""
Invariant report for the whole tree.

Read-only: it lists what is wrong and leaves the repair to a person, since
an automatic fix could hide the bug that caused the drift.
"""

from collections import defaultdict
from typing import Optional

import structlog
from sqlalchemy.orm import Session

from lineage.config import settings
from lineage.core import paths
from lineage.models.node import Node
from lineage.schemas.report_schema import ViolationOut

logger = structlog.get_logger()

# Reported but not an invariant breach: sibling order is authoritative
INFORMATIONAL = {"segment_drift"}


def _violation(kind: str, node: Optional[Node], message: str, expected=None, actual=None) -> ViolationOut:
    return ViolationOut(
        kind=kind,
        node_id=node.id if node is not None else None,
        message=message,
        expected=expected,
        actual=actual,
    )


def find_violations(db: Session, include_informational: bool = True) -> list[ViolationOut]:
    nodes = db.query(Node).all()
    by_id = {n.id: n for n in nodes}
    live = [n for n in nodes if n.is_live]

    found: list[ViolationOut] = []

    # descendant counts from paths, O(nodes x depth)
    live_below: dict[str, int] = defaultdict(int)
    for node in live:
        for ancestor in paths.ancestor_paths(node.path):
            live_below[ancestor] += 1

    siblings: dict[Optional[str], list[Node]] = defaultdict(list)
    roots = []

    for node in live:
        if not node.is_placed:
            if node.generation is not None or node.sibling_index is not None or node.parent_id:
                found.append(_violation(
                    "unplaced_with_position", node,
                    "Unplaced node carries tree position fields",
                ))
            continue

        if not paths.is_valid(node.path):
            found.append(_violation("invalid_path", node, "Malformed path", actual=node.path))
            continue

        if paths.depth(node.path) != node.generation:
            found.append(_violation(
                "generation_mismatch", node,
                "Path length does not match generation",
                expected=paths.depth(node.path), actual=node.generation,
            ))

        parent = by_id.get(node.parent_id) if node.parent_id else None
        if node.parent_id is None:
            roots.append(node)
            if paths.depth(node.path) != 1:
                found.append(_violation(
                    "parent_path_mismatch", node,
                    "Parentless node has a multi-segment path",
                    actual=node.path,
                ))
        elif parent is None or not parent.is_live:
            found.append(_violation(
                "orphan", node,
                "Live node under a missing or deleted parent",
                expected=node.parent_id,
            ))
        else:
            if paths.parent_path(node.path) != parent.path:
                found.append(_violation(
                    "parent_path_mismatch", node,
                    "Path prefix differs from parent's path",
                    expected=parent.path, actual=paths.parent_path(node.path),
                ))
            if parent.generation is not None and node.generation is not None \
                    and node.generation <= parent.generation:
                found.append(_violation(
                    "generation_order", node,
                    "Generation not greater than parent's",
                    expected=parent.generation + 1, actual=node.generation,
                ))

        expected_count = live_below.get(node.path, 0)
        if (node.descendant_count or 0) != expected_count:
            found.append(_violation(
                "descendant_count_drift", node,
                "Cached descendant count is stale",
                expected=expected_count, actual=node.descendant_count,
            ))

        siblings[node.parent_id].append(node)

    for parent_id, children in siblings.items():
        indexes = sorted(c.sibling_index or 0 for c in children)
        if indexes != list(range(1, len(children) + 1)):
            found.append(ViolationOut(
                kind="sibling_gap",
                node_id=parent_id,
                message="Sibling indexes are not contiguous from 1",
                expected=list(range(1, len(children) + 1)),
                actual=indexes,
            ))
        if include_informational:
            for child in children:
                if paths.last_segment(child.path) != child.sibling_index:
                    found.append(_violation(
                        "segment_drift", child,
                        "Path trailing segment differs from display order",
                        expected=child.sibling_index, actual=paths.last_segment(child.path),
                    ))

    if settings.SINGLE_ROOT and len(roots) > 1:
        found.append(ViolationOut(
            kind="multiple_roots",
            message="More than one live root",
            actual=sorted(r.id for r in roots),
        ))

    breaches = sum(1 for v in found if v.kind not in INFORMATIONAL)
    if breaches:
        logger.warning("tree_invariant_violations", count=breaches)
    return found
