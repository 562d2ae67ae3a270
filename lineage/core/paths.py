"""
Materialized path codec.

A path is a dot-separated list of positive integers ("1.4.2"). The number of
segments is the node's generation; dropping the last segment gives the
parent's path. These helpers never raise: malformed input is rejected at the
mutation boundary with `is_valid`.
"""

import re
from typing import Optional

SEPARATOR = "."

_PATH_RE = re.compile(r"^[1-9][0-9]*(\.[1-9][0-9]*)*$")


def is_valid(path: Optional[str]) -> bool:
    return bool(path) and _PATH_RE.match(path) is not None


def depth(path: Optional[str]) -> int:
    if not path:
        return 0
    return path.count(SEPARATOR) + 1


def parent_path(path: Optional[str]) -> Optional[str]:
    if not path or SEPARATOR not in path:
        return None
    return path.rsplit(SEPARATOR, 1)[0]


def child_path(parent: Optional[str], sibling_index: int) -> str:
    if not parent:
        return str(sibling_index)
    return f"{parent}{SEPARATOR}{sibling_index}"


def last_segment(path: Optional[str]) -> Optional[int]:
    if not path:
        return None
    return int(path.rsplit(SEPARATOR, 1)[-1])


def is_descendant_of(candidate: Optional[str], ancestor: Optional[str]) -> bool:
    """True when `candidate` is `ancestor` itself or lies somewhere below it."""
    if not candidate or not ancestor:
        return False
    return candidate == ancestor or candidate.startswith(ancestor + SEPARATOR)


def ancestor_paths(path: Optional[str]) -> list[str]:
    """Strict ancestors of `path`, root first."""
    if not path:
        return []
    segments = path.split(SEPARATOR)
    return [SEPARATOR.join(segments[:i]) for i in range(1, len(segments))]


def subtree_prefix(path: str) -> str:
    """LIKE-style prefix matching every strict descendant of `path`."""
    return path + SEPARATOR
