"""Row-lock failures surface as retryable ResourceBusy."""

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from lineage.core import locking, mutations, undo
from lineage.errors import ResourceBusy
from lineage.models.audit_entry import AuditEntry
from lineage.models.node import Node


class PgLockError(Exception):
    pgcode = "55P03"


class _FailingQuery:
    def __init__(self, exc):
        self.exc = exc

    def filter(self, *args):
        return self

    def with_for_update(self, **kwargs):
        return self

    def populate_existing(self):
        return self

    def first(self):
        raise self.exc


class _FailingSession:
    def __init__(self, exc):
        self.exc = exc

    def query(self, *args):
        return _FailingQuery(self.exc)


def _operational(orig):
    return OperationalError("SELECT ... FOR UPDATE NOWAIT", {}, orig)


class TestLockFailureMapping:

    @pytest.mark.parametrize(
        "orig",
        [
            PgLockError("lock not available"),
            Exception('could not obtain lock on row in relation "nodes"'),
            Exception("database is locked"),
        ],
    )
    def test_lock_failures_become_resource_busy(self, orig):
        with pytest.raises(ResourceBusy) as info:
            locking.lock_node(_FailingSession(_operational(orig)), "n1")
        assert info.value.retryable is True
        assert info.value.details["node_id"] == "n1"

    def test_other_errors_propagate(self):
        with pytest.raises(OperationalError):
            locking.lock_node(_FailingSession(_operational(Exception("disk I/O error"))), "n1")

    def test_lock_nodes_skips_none_and_sorts(self, db, family):
        locked = locking.lock_nodes(db, [family["C2"], None, family["C1"], family["C2"]])
        assert list(locked) == sorted({family["C1"], family["C2"]})
        assert locked[family["C1"]].display_name == "Child One"

    def test_missing_row(self, db, family):
        assert locking.lock_node(db, "ghost") is None


def _busy(db, node_id):
    raise ResourceBusy("busy", node_id=node_id)


class TestBusyRollsBack:

    def test_reparent_busy(self, db, family, monkeypatch):
        monkeypatch.setattr(mutations, "lock_node", _busy)
        with pytest.raises(ResourceBusy):
            mutations.reparent(db, None, family["C2"], family["C1"], 1)
        db.expire_all()
        assert db.query(Node).filter(Node.id == family["C2"]).one().path == "1.2"

    def test_undo_busy_leaves_entry_open(self, db, family, monkeypatch):
        mutations.reparent(db, None, family["G1"], family["C2"], 1)
        entry_id = db.query(AuditEntry).order_by(AuditEntry.id.desc()).first().id

        monkeypatch.setattr(undo, "lock_node", _busy)
        with pytest.raises(ResourceBusy):
            undo.undo_single(db, None, entry_id)

        entry = db.query(AuditEntry).filter(AuditEntry.id == entry_id).one()
        assert entry.undone_at is None
        monkeypatch.undo()

        undo.undo_single(db, None, entry_id)
        assert db.query(Node).filter(Node.id == family["G1"]).one().parent_id == family["C1"]


class PgUniqueError(Exception):
    pgcode = "23505"


def _integrity(orig):
    return IntegrityError("INSERT INTO nodes ...", {}, orig)


class TestInsertRaces:

    def test_insert_locks_parent(self, db, family, monkeypatch):
        monkeypatch.setattr(mutations, "lock_node", _busy)
        with pytest.raises(ResourceBusy):
            mutations.insert(db, None, family["C1"], {"display_name": "Twin"})
        monkeypatch.undo()

        assert db.query(Node).filter(Node.parent_id == family["C1"]).count() == 1

    def test_taken_path_is_retryable(self, db, family, monkeypatch):
        # what a concurrent insert that won the same slot leaves behind
        monkeypatch.setattr(mutations, "_allocate_path", lambda db, parent, preferred: "1.1")

        with pytest.raises(ResourceBusy) as info:
            mutations.insert(db, None, family["R"], {"display_name": "Late"})
        assert info.value.retryable is True

        db.expire_all()
        assert db.query(Node).count() == 5
        assert db.query(Node).filter(Node.id == family["R"]).one().descendant_count == 4

    @pytest.mark.parametrize(
        "orig, expected",
        [
            (Exception("UNIQUE constraint failed: nodes.path"), True),
            (PgUniqueError('duplicate key value violates unique constraint "nodes_path_key"'), True),
            (Exception("FOREIGN KEY constraint failed"), False),
            (PgUniqueError('duplicate key value violates unique constraint "audit_entries_pkey"'), False),
        ],
    )
    def test_path_conflict_detection(self, orig, expected):
        assert locking.is_path_conflict(_integrity(orig)) is expected

    def test_other_integrity_errors_propagate(self):
        with pytest.raises(IntegrityError):
            with locking.path_conflicts_as_busy(path="1.1"):
                raise _integrity(Exception("NOT NULL constraint failed: nodes.display_name"))


class TestCascadeLocks:

    def test_busy_descendant_blocks_cascade(self, db, family, monkeypatch):
        real_lock = locking.lock_node
        seen = []

        def lock_or_busy(db, node_id):
            seen.append(node_id)
            if node_id == family["G1"]:
                raise ResourceBusy("busy", node_id=node_id)
            return real_lock(db, node_id)

        monkeypatch.setattr(locking, "lock_node", lock_or_busy)
        with pytest.raises(ResourceBusy):
            mutations.soft_delete(db, None, family["C1"], cascade=True)
        monkeypatch.undo()

        assert family["G1"] in seen
        db.expire_all()
        assert db.query(Node).filter(Node.id == family["C1"]).one().deleted_at is None
        assert db.query(Node).filter(Node.id == family["G1"]).one().deleted_at is None

    def test_cascade_locks_whole_subtree(self, db, family, monkeypatch):
        real_lock = locking.lock_node
        seen = []

        def recording_lock(db, node_id):
            seen.append(node_id)
            return real_lock(db, node_id)

        monkeypatch.setattr(locking, "lock_node", recording_lock)
        mutations.soft_delete(db, None, family["C1"], cascade=True)

        assert set(seen) >= {family["C1"], family["G1"]}
