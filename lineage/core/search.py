"""
Ancestry search: "find the person named A, son of B, son of C".

Every placed live node gets a name chain (itself, father, grandfather, ...)
built by walking parent_id. A query is a short sequence of names; matches are
ranked by how closely the query lines up with the chain:

    exact_prefix  the query is the start of the chain        (weight 10)
    subsequence   the query appears in order, gaps allowed    (weight 5)
    any_order     every query name appears somewhere          (weight 1)

A query name matches a chain name when equal to it or a prefix of it, after
both went through normalize_name.
"""

import threading
from dataclasses import dataclass
from typing import Iterable, Optional

import structlog
from sqlalchemy import event
from sqlalchemy.orm import Session

from lineage.config import settings
from lineage.core import paths
from lineage.core.normalize import normalize_name, normalize_tokens
from lineage.errors import FieldValidation, InvalidLimit
from lineage.models.node import Node
from lineage.schemas.search_schema import MatchResult

logger = structlog.get_logger()

CLASS_WEIGHTS = {
    "exact_prefix": 10.0,
    "subsequence": 5.0,
    "any_order": 1.0,
}

GENDERS = ("male", "female")


# ============================================================
# CHAIN CACHE
# ============================================================

@dataclass(frozen=True)
class NameChain:
    node_id: str
    path: str
    names: tuple[str, ...]      # normalized, nearest first
    display: tuple[str, ...]    # as stored, nearest first
    links: tuple[tuple[str, Optional[str]], ...] = ()   # (id, parent_id) per step


class NameChainCache:
    """
    In-process cache of name chains keyed by node id.

    Entries are dropped by path prefix: a move or rename of X invalidates X
    and everything below it, since their chains all pass through X. That only
    covers writes made through this process, so readers still check a cached
    chain against the rows they loaded (see `_is_current`).
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._chains: dict[str, NameChain] = {}

    def get(self, node_id: str) -> Optional[NameChain]:
        with self._lock:
            return self._chains.get(node_id)

    def put(self, chain: NameChain) -> None:
        with self._lock:
            self._chains[chain.node_id] = chain

    def invalidate_subtree(self, path: Optional[str]) -> int:
        if not path:
            return 0
        with self._lock:
            stale = [
                node_id
                for node_id, chain in self._chains.items()
                if paths.is_descendant_of(chain.path, path)
            ]
            for node_id in stale:
                del self._chains[node_id]
        return len(stale)

    def clear(self) -> None:
        with self._lock:
            self._chains.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._chains)


chain_cache = NameChainCache()

_PENDING_KEY = "lineage.pending_chain_invalidations"


def schedule_invalidation(db: Session, *subtree_paths: Optional[str]) -> None:
    """Drop cached chains under these paths once the session commits."""
    pending = db.info.setdefault(_PENDING_KEY, set())
    pending.update(p for p in subtree_paths if p)


@event.listens_for(Session, "after_commit")
def _apply_invalidations(session):
    for path in session.info.pop(_PENDING_KEY, ()):
        chain_cache.invalidate_subtree(path)


@event.listens_for(Session, "after_rollback")
def _discard_invalidations(session):
    session.info.pop(_PENDING_KEY, None)


# ============================================================
# CHAIN BUILDING
# ============================================================

@dataclass(frozen=True)
class _Row:
    id: str
    parent_id: Optional[str]
    display_name: str
    path: str
    generation: int
    gender: Optional[str] = None


def _load_rows(db: Session) -> dict[str, _Row]:
    rows = (
        db.query(
            Node.id,
            Node.parent_id,
            Node.display_name,
            Node.path,
            Node.generation,
            Node.gender,
        )
        .filter(Node.deleted_at.is_(None), Node.path.isnot(None))
        .all()
    )
    return {
        r.id: _Row(r.id, r.parent_id, r.display_name, r.path, r.generation, r.gender)
        for r in rows
    }


def build_chain(row: _Row, rows: dict[str, _Row], max_depth: int) -> NameChain:
    """
    Walk parent_id upward. The visited set stops a corrupted cycle, the
    depth cap stops anything the visited set would miss.
    """
    names = []
    display = []
    links = []
    visited = set()
    current: Optional[_Row] = row

    while current is not None and current.id not in visited and len(names) < max_depth:
        visited.add(current.id)
        names.append(normalize_name(current.display_name))
        display.append(current.display_name)
        links.append((current.id, current.parent_id))
        current = rows.get(current.parent_id) if current.parent_id else None

    if current is not None and current.id in visited:
        logger.warning("name_chain_cycle", node_id=row.id, at_node_id=current.id)

    return NameChain(row.id, row.path, tuple(names), tuple(display), tuple(links))


def _is_current(chain: NameChain, row: _Row, rows: dict[str, _Row], max_depth: int) -> bool:
    """
    True when walking `rows` again would give the same chain: same path, every
    step still live with the same name and parent, and the walk still stops
    where it stopped before.
    """
    if chain.path != row.path or not chain.links or chain.links[0][0] != row.id:
        return False
    for (node_id, parent_id), name in zip(chain.links, chain.display):
        current = rows.get(node_id)
        if current is None or current.parent_id != parent_id or current.display_name != name:
            return False

    last_parent = chain.links[-1][1]
    if len(chain.links) >= max_depth or last_parent is None or last_parent not in rows:
        return True
    # stopped on a cycle
    return any(node_id == last_parent for node_id, _ in chain.links)


def _chain_for(row: _Row, rows: dict[str, _Row]) -> NameChain:
    max_depth = settings.SEARCH_MAX_CHAIN_DEPTH
    cached = chain_cache.get(row.id)
    if cached is not None and _is_current(cached, row, rows, max_depth):
        return cached
    chain = build_chain(row, rows, max_depth)
    chain_cache.put(chain)
    return chain


# ============================================================
# MATCHING
# ============================================================

def _matches(token: str, name: str) -> bool:
    return name == token or name.startswith(token)


def _exact_prefix(tokens: list[str], names: tuple[str, ...]) -> bool:
    if len(tokens) > len(names):
        return False
    return all(_matches(t, names[i]) for i, t in enumerate(tokens))


def _subsequence(tokens: list[str], names: tuple[str, ...]) -> bool:
    position = 0
    for token in tokens:
        while position < len(names) and not _matches(token, names[position]):
            position += 1
        if position == len(names):
            return False
        position += 1
    return True


def _any_order(tokens: list[str], names: tuple[str, ...]) -> bool:
    return all(any(_matches(t, n) for n in names) for t in tokens)


def classify(tokens: list[str], names: tuple[str, ...]) -> Optional[str]:
    if not tokens or not names:
        return None
    if _exact_prefix(tokens, names):
        return "exact_prefix"
    if _subsequence(tokens, names):
        return "subsequence"
    if _any_order(tokens, names):
        return "any_order"
    return None


def _exact_token_count(tokens: list[str], names: tuple[str, ...]) -> int:
    name_set = set(names)
    return sum(1 for t in tokens if t in name_set)


# ============================================================
# PUBLIC
# ============================================================

def search_by_name_sequence(
    db: Session,
    tokens: Iterable[str],
    limit: int = 50,
    offset: int = 0,
    gender: Optional[str] = None,
) -> list[MatchResult]:
    """
    Rank placed live nodes by how well their name chain fits `tokens`.
    `gender` narrows the matched node only; ancestors are never filtered.
    """
    tokens = list(tokens or [])
    if not tokens:
        raise FieldValidation("At least one name is required")
    if limit < 1 or limit > settings.SEARCH_MAX_LIMIT:
        raise InvalidLimit(
            f"limit must be between 1 and {settings.SEARCH_MAX_LIMIT}",
            limit=limit,
        )
    if offset < 0:
        raise FieldValidation("offset cannot be negative", offset=offset)
    if gender is not None and gender not in GENDERS:
        raise FieldValidation("gender must be one of " + ", ".join(GENDERS), gender=gender)

    query = normalize_tokens(tokens)
    if not query:
        return []

    rows = _load_rows(db)
    display_len = settings.SEARCH_DISPLAY_CHAIN_LENGTH

    scored = []
    for row in rows.values():
        if gender is not None and row.gender != gender:
            continue
        chain = _chain_for(row, rows)
        match_class = classify(query, chain.names)
        if match_class is None:
            continue
        scored.append(
            MatchResult(
                id=row.id,
                name=row.display_name,
                path=row.path,
                generation=row.generation,
                name_chain=" ".join(chain.display[:display_len]),
                father_name=chain.display[1] if len(chain.display) > 1 else None,
                grandfather_name=chain.display[2] if len(chain.display) > 2 else None,
                match_class=match_class,
                match_score=CLASS_WEIGHTS[match_class],
                matched_tokens=_exact_token_count(query, chain.names),
                match_depth=len(chain.names),
            )
        )

    scored.sort(
        key=lambda m: (
            -m.match_score,
            -m.matched_tokens,
            -m.generation,
            m.name,
            m.id,
        )
    )

    logger.debug("name_sequence_search", tokens=query, matches=len(scored))
    return scored[offset:offset + limit]
