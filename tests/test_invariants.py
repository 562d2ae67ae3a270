"""Tree invariants hold after any sequence of accepted or rejected mutations."""

import random

import pytest

from lineage.core import mutations, paths
from lineage.core.reconcile import find_violations
from lineage.core.traversal import get_branch
from lineage.errors import TreeError
from lineage.models.node import Node


def _breaches(db):
    return [v for v in find_violations(db) if v.kind != "segment_drift"]


def _live(db):
    return db.query(Node).filter(Node.deleted_at.is_(None), Node.path.isnot(None)).all()


def _random_step(db, rng, counter):
    live = _live(db)
    movable = [n for n in live if n.parent_id is not None]
    op = rng.choice(["insert", "insert", "reparent", "reorder", "delete", "restore"])

    if op == "insert":
        parent = rng.choice(live)
        mutations.insert(db, None, parent.id, {"display_name": f"N{counter}"})

    elif op == "reparent":
        if not movable:
            return
        node = rng.choice(movable)
        parent = rng.choice(live)
        siblings = (
            db.query(Node)
            .filter(Node.parent_id == parent.id, Node.deleted_at.is_(None), Node.id != node.id)
            .count()
        )
        # occasionally out of range or cyclic on purpose
        index = rng.randint(0, siblings + 2)
        mutations.reparent(db, None, node.id, parent.id, index)

    elif op == "reorder":
        parent = rng.choice(live)
        children = [
            c.id
            for c in db.query(Node).filter(Node.parent_id == parent.id, Node.deleted_at.is_(None))
        ]
        rng.shuffle(children)
        mutations.reorder(db, None, parent.id, children[: rng.randint(0, len(children))] + ["bogus"])

    elif op == "delete":
        if not movable:
            return
        node = rng.choice(movable)
        mutations.soft_delete(db, None, node.id, cascade=rng.random() < 0.5)

    else:
        deleted = db.query(Node).filter(Node.deleted_at.isnot(None)).all()
        if deleted:
            mutations.restore(db, None, rng.choice(deleted).id)


@pytest.mark.parametrize("seed", [1, 7, 42])
def test_random_sequences_keep_invariants(db, add, seed):
    rng = random.Random(seed)
    root = add("Root")
    for i in range(4):
        add(f"Seed{i}", root)

    for counter in range(60):
        try:
            _random_step(db, rng, counter)
        except TreeError:
            pass
        db.expire_all()
        assert _breaches(db) == [], f"step {counter}"


def test_descendant_count_matches_branch(db, family, add):
    add("Extra", family["G1"])
    mutations.reparent(db, None, family["C1"], family["C2"], 1)

    for node in _live(db):
        below = (
            db.query(Node)
            .filter(
                Node.path.startswith(paths.subtree_prefix(node.path)),
                Node.deleted_at.is_(None),
            )
            .count()
        )
        assert node.descendant_count == below


def test_generation_matches_path_depth(db, family):
    mutations.reparent(db, None, family["C3"], family["G1"], 1)
    for view in get_branch(db, "1", max_depth=10, limit=500):
        assert paths.depth(view.path) == view.generation
