"""Tests for the HTTP surface."""

import pytest

from lineage.models.actor_role import ActorRole
from lineage.models.block import Block


@pytest.fixture
def seeded(db, family):
    """family tree plus an admin; the test session is released afterwards."""
    db.add(ActorRole(actor_id=family["R"], role="admin"))
    db.commit()
    ids = dict(family)
    db.close()
    return ids


class TestAuth:

    def test_health(self, client):
        assert client.get("/").status_code == 200

    def test_missing_token(self, client, seeded):
        assert client.get("/tree/branch").status_code == 401

    def test_bad_token(self, client, seeded):
        response = client.get("/tree/branch", headers={"Authorization": "Bearer nope"})
        assert response.status_code == 401

    def test_unknown_actor(self, client, seeded, auth_header):
        assert client.get("/tree/branch", headers=auth_header("ghost")).status_code == 401


class TestTreeRoutes:

    def test_branch(self, client, seeded, auth_header):
        response = client.get(
            "/tree/branch",
            params={"start_path": "1", "max_depth": 2},
            headers=auth_header(seeded["C2"]),
        )
        assert response.status_code == 200
        body = response.json()
        assert [n["id"] for n in body] == [seeded["R"], seeded["C1"], seeded["C2"], seeded["C3"]]
        assert body[1]["has_more_descendants"] is True

    def test_branch_bad_depth(self, client, seeded, auth_header):
        response = client.get(
            "/tree/branch",
            params={"max_depth": 99},
            headers=auth_header(seeded["C2"]),
        )
        assert response.status_code == 422
        assert response.json()["code"] == "invalid_depth"

    def test_insert_child(self, client, seeded, auth_header):
        response = client.post(
            "/tree/nodes",
            json={"display_name": "Baby", "parent_id": seeded["C2"]},
            headers=auth_header(seeded["C2"]),
        )
        assert response.status_code == 201
        assert response.json()["path"] == "1.2.1"
        assert response.json()["generation"] == 3

    def test_insert_needs_permission(self, client, seeded, auth_header):
        response = client.post(
            "/tree/nodes",
            json={"display_name": "Baby", "parent_id": seeded["C3"]},
            headers=auth_header(seeded["G1"]),
        )
        assert response.status_code == 403
        assert response.json()["code"] == "permission_denied"

    def test_second_root_conflict(self, client, seeded, auth_header):
        response = client.post(
            "/tree/nodes",
            json={"display_name": "Other root"},
            headers=auth_header(seeded["R"]),
        )
        assert response.status_code == 409
        assert response.json()["code"] == "root_exists"

    def test_edit_whitelist(self, client, seeded, auth_header):
        ok = client.patch(
            f"/tree/nodes/{seeded['C1']}",
            json={"bio": "Farmer"},
            headers=auth_header(seeded["C1"]),
        )
        assert ok.status_code == 200
        assert ok.json()["bio"] == "Farmer"

        rejected = client.patch(
            f"/tree/nodes/{seeded['C1']}",
            json={"path": "9"},
            headers=auth_header(seeded["C1"]),
        )
        assert rejected.status_code == 422

    def test_stale_version_conflict(self, client, seeded, auth_header):
        headers = auth_header(seeded["C1"])
        version = client.get(f"/tree/nodes/{seeded['C1']}", headers=headers).json()["version"]

        ok = client.patch(
            f"/tree/nodes/{seeded['C1']}",
            params={"expected_version": version},
            json={"bio": "v1"},
            headers=headers,
        )
        assert ok.status_code == 200

        stale = client.patch(
            f"/tree/nodes/{seeded['C1']}",
            params={"expected_version": version},
            json={"bio": "v2"},
            headers=headers,
        )
        assert stale.status_code == 409
        assert stale.json()["code"] == "version_conflict"

        delete = client.delete(
            f"/tree/nodes/{seeded['C2']}",
            params={"expected_version": 99},
            headers=auth_header(seeded["R"]),
        )
        assert delete.status_code == 409

    def test_move_requires_moderator(self, client, seeded, auth_header):
        payload = {"new_parent_id": seeded["C1"], "new_sibling_index": 1}

        denied = client.post(
            f"/tree/nodes/{seeded['C2']}/move", json=payload, headers=auth_header(seeded["C2"])
        )
        assert denied.status_code == 403

        moved = client.post(
            f"/tree/nodes/{seeded['C2']}/move", json=payload, headers=auth_header(seeded["R"])
        )
        assert moved.status_code == 200
        assert moved.json()["path"] == "1.1.1"

    def test_move_cycle(self, client, seeded, auth_header):
        response = client.post(
            f"/tree/nodes/{seeded['C1']}/move",
            json={"new_parent_id": seeded["G1"], "new_sibling_index": 1},
            headers=auth_header(seeded["R"]),
        )
        assert response.status_code == 409
        assert response.json()["code"] == "cycle_detected"

    def test_reorder(self, client, seeded, auth_header):
        response = client.put(
            f"/tree/nodes/{seeded['R']}/children/order",
            json={"ordered_child_ids": [seeded["C3"], "bogus"]},
            headers=auth_header(seeded["R"]),
        )
        assert response.status_code == 200
        body = response.json()
        assert body["succeeded"] == 1
        assert body["failed"] == 1

    def test_delete_and_restore(self, client, seeded, auth_header):
        blocked = client.delete(f"/tree/nodes/{seeded['C1']}", headers=auth_header(seeded["R"]))
        assert blocked.status_code == 409
        assert blocked.json()["code"] == "has_live_children"

        deleted = client.delete(
            f"/tree/nodes/{seeded['C1']}",
            params={"cascade": True},
            headers=auth_header(seeded["R"]),
        )
        assert deleted.status_code == 200
        assert deleted.json()["operation_group_id"]

        orphan = client.post(f"/tree/nodes/{seeded['G1']}/restore", headers=auth_header(seeded["R"]))
        assert orphan.status_code == 409
        assert orphan.json()["code"] == "parent_gone"

        restored = client.post(f"/tree/nodes/{seeded['C1']}/restore", headers=auth_header(seeded["R"]))
        assert restored.status_code == 200
        assert restored.json()["deleted_at"] is None

    def test_not_found(self, client, seeded, auth_header):
        response = client.patch(
            "/tree/nodes/ghost",
            json={"bio": "x"},
            headers=auth_header(seeded["R"]),
        )
        assert response.status_code == 404

    def test_permissions(self, client, seeded, auth_header):
        response = client.get(
            f"/tree/permissions/{seeded['G1']}",
            headers=auth_header(seeded["C1"]),
        )
        assert response.status_code == 200
        assert response.json()["level"] == "inner"
        assert response.json()["can_edit"] is True

    def test_blocked_actor(self, client, db, seeded, auth_header):
        db.add(Block(blocked_actor_id=seeded["C2"]))
        db.commit()
        db.close()
        response = client.patch(
            f"/tree/nodes/{seeded['C2']}",
            json={"bio": "x"},
            headers=auth_header(seeded["C2"]),
        )
        assert response.status_code == 403


class TestSearchRoute:

    def test_search(self, client, seeded, auth_header):
        response = client.get(
            "/tree/search",
            params=[("names", "Grandchild"), ("names", "Child One")],
            headers=auth_header(seeded["C2"]),
        )
        assert response.status_code == 200
        body = response.json()
        assert body[0]["id"] == seeded["G1"]
        assert body[0]["match_class"] == "exact_prefix"

    def test_search_gender(self, client, seeded, auth_header):
        headers = auth_header(seeded["C2"])
        none = client.get("/tree/search", params={"names": "Child", "gender": "male"}, headers=headers)
        assert none.status_code == 200
        assert none.json() == []

        bad = client.get("/tree/search", params={"names": "Child", "gender": "x"}, headers=headers)
        assert bad.status_code == 422
        assert bad.json()["code"] == "field_validation"

    def test_search_requires_names(self, client, seeded, auth_header):
        response = client.get("/tree/search", headers=auth_header(seeded["C2"]))
        assert response.status_code == 422


class TestAuditRoutes:

    def test_history_and_undo(self, client, seeded, auth_header):
        headers = auth_header(seeded["C1"])
        client.patch(f"/tree/nodes/{seeded['C1']}", json={"bio": "v1"}, headers=headers)

        history = client.get("/audit/entries", params={"node_id": seeded["C1"]}, headers=headers)
        assert history.status_code == 200
        entry = history.json()[0]
        assert entry["action"] == "update_fields"

        undone = client.post(f"/audit/entries/{entry['id']}/undo", headers=headers)
        assert undone.status_code == 200
        assert undone.json()["succeeded"] == 1

        again = client.post(f"/audit/entries/{entry['id']}/undo", headers=headers)
        assert again.status_code == 409
        assert again.json()["code"] == "already_undone"

    def test_group_undo(self, client, seeded, auth_header):
        headers = auth_header(seeded["R"])
        deleted = client.delete(
            f"/tree/nodes/{seeded['C1']}", params={"cascade": True}, headers=headers
        )
        group_id = deleted.json()["operation_group_id"]

        report = client.post(f"/audit/groups/{group_id}/undo", headers=headers)
        assert report.status_code == 200
        assert report.json()["undo_state"] == "undone"

        node = client.get(f"/tree/nodes/{seeded['G1']}", headers=headers)
        assert node.json()["deleted_at"] is None

    def test_full_ledger_is_admin_only(self, client, seeded, auth_header):
        assert client.get("/audit/entries", headers=auth_header(seeded["C1"])).status_code == 403
        assert client.get("/audit/entries", headers=auth_header(seeded["R"])).status_code == 200


class TestAdminRoutes:

    def test_reconcile(self, client, seeded, auth_header):
        assert client.get("/admin/reconcile", headers=auth_header(seeded["C1"])).status_code == 403

        response = client.get("/admin/reconcile", headers=auth_header(seeded["R"]))
        assert response.status_code == 200
        assert response.json() == []


class TestErrorMapping:

    def test_busy_is_423_with_retry_after(self, client, seeded, auth_header, monkeypatch):
        from lineage.core import mutations
        from lineage.errors import ResourceBusy

        def busy(db, node_id):
            raise ResourceBusy("busy", node_id=node_id)

        monkeypatch.setattr(mutations, "lock_node", busy)
        response = client.post(
            f"/tree/nodes/{seeded['C2']}/move",
            json={"new_parent_id": seeded["C1"], "new_sibling_index": 1},
            headers=auth_header(seeded["R"]),
        )
        assert response.status_code == 423
        assert response.headers["retry-after"] == "1"
        assert response.json()["code"] == "resource_busy"
