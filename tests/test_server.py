"""Tests for the sync HTTP endpoints."""

import pytest

pytest.importorskip("fastapi")

from fastapi.testclient import TestClient

from gradesync.config import Config, NodeConfig
from gradesync.server import create_app
from gradesync.sync import SyncService


@pytest.fixture
def config():
    return Config(node=NodeConfig(name="test-sync-node"))


@pytest.fixture
def service():
    """Create a service backed by an in-memory database."""
    svc = SyncService(":memory:")
    svc.connect()
    yield svc
    svc.close()


@pytest.fixture
def client(config, service):
    return TestClient(create_app(config, service))


@pytest.fixture
def secured_client(config):
    svc = SyncService(":memory:", token="s3cret")
    svc.connect()
    yield TestClient(create_app(config, svc))
    svc.close()


def _change(record_id, ts, **extra):
    change = {
        "id": record_id,
        "type": "upsert",
        "doc": {"name": record_id},
        "version": 1,
        "clientId": "c1",
        "timestamp": ts,
    }
    change.update(extra)
    return change


class TestCheckpoint:
    def test_empty_log(self, client):
        """Test checkpoint is null before anything is pushed."""
        response = client.get("/sync/checkpoint")

        assert response.status_code == 200
        assert response.json() == {"checkpoint": None}

    def test_after_push(self, client):
        client.post("/sync/push", json={"changes": [_change("A", 300), _change("B", 100)]})

        assert client.get("/sync/checkpoint").json() == {"checkpoint": 300}


class TestPushScenarios:
    """End-to-end push and pull scenarios."""

    def test_push_then_pull(self, client):
        """Test a pushed record is visible to a first-time pull."""
        response = client.post(
            "/sync/push",
            json={
                "changes": [
                    {
                        "id": "S1",
                        "type": "upsert",
                        "doc": {"name": "Alice"},
                        "version": 1,
                        "clientId": "c1",
                        "timestamp": 1000,
                    }
                ]
            },
        )

        assert response.status_code == 200
        assert response.json()["ok"] is True

        items = client.get("/sync/pull?since=0").json()["items"]
        s1 = [item for item in items if item["id"] == "S1"]
        assert len(s1) == 1
        assert s1[0]["type"] == "upsert"
        assert s1[0]["ts"] >= 1000

    def test_same_id_twice_in_batch(self, client):
        """Test two versions of one id collapse to the newest."""
        client.post(
            "/sync/push",
            json={"changes": [_change("S2", 100), _change("S2", 200)]},
        )

        items = client.get("/sync/pull?since=50").json()["items"]

        assert [item for item in items if item["id"] == "S2"] == [
            {"ts": 200, "id": "S2", "type": "upsert"}
        ]

    def test_limit_one_returns_most_recent(self, client):
        """Test limit=1 returns the single newest item."""
        client.post(
            "/sync/push",
            json={"changes": [_change(f"S{i}", i * 100) for i in range(1, 6)]},
        )

        items = client.get("/sync/pull?since=1&limit=1").json()["items"]

        assert items == [{"ts": 500, "id": "S5", "type": "upsert"}]

    def test_limit_one_first_sync(self, client):
        client.post(
            "/sync/push",
            json={"changes": [_change(f"S{i}", i * 100) for i in range(1, 6)]},
        )

        items = client.get("/sync/pull?since=0&limit=1").json()["items"]

        assert len(items) == 1
        assert items[0]["ts"] >= 500

    def test_wrong_token_forbidden(self, secured_client):
        """Test a bad token is rejected and nothing is stored."""
        response = secured_client.post(
            "/sync/push",
            json={"changes": [_change("S1", 1000)]},
            headers={"x-blob-token": "wrong"},
        )

        assert response.status_code == 403
        assert response.json() == {"error": "Forbidden"}
        assert secured_client.get("/sync/pull?since=0").json() == {"items": []}
        assert secured_client.get("/sync/checkpoint").json() == {"checkpoint": None}

    def test_missing_token_forbidden(self, secured_client):
        response = secured_client.post("/sync/push", json={"changes": []})
        assert response.status_code == 403

    def test_correct_token_accepted(self, secured_client):
        response = secured_client.post(
            "/sync/push",
            json={"changes": [_change("S1", 1000)]},
            headers={"x-blob-token": "s3cret"},
        )

        assert response.status_code == 200
        assert response.json()["ok"] is True

    def test_changes_not_array(self, client):
        """Test a non-array changes payload is rejected."""
        response = client.post("/sync/push", json={"changes": "not-an-array"})

        assert response.status_code == 400
        assert response.json() == {"error": "Invalid changes payload"}

    @pytest.mark.parametrize("body", [{}, [], "text"])
    def test_changes_missing(self, client, body):
        response = client.post("/sync/push", json=body)

        assert response.status_code == 400

    def test_invalid_json(self, client):
        response = client.post(
            "/sync/push", content=b"{not json", headers={"content-type": "application/json"}
        )

        assert response.status_code == 400


class TestPushResults:
    """Tests for per-item push results."""

    def test_mixed_batch(self, client):
        """Test item failures are reported without failing the request."""
        response = client.post(
            "/sync/push",
            json={"changes": [_change("S1", 1), {"id": "", "doc": {}}, _change("S3", 3)]},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["ok"] is False
        assert data["applied"] == 2
        assert data["failed"][0]["index"] == 1
        assert data["accepted_ids"] == ["S1", "S3"]

    def test_repeat_push_is_idempotent(self, client, service):
        """Test pushing the same batch twice does not grow the log."""
        batch = {"changes": [_change("S1", 1000)]}

        client.post("/sync/push", json=batch)
        second = client.post("/sync/push", json=batch).json()

        assert second["duplicates"] == 1
        assert service.get_stats()["total_entries"] == 1

    def test_buffer_holds_last_push_only(self, client, service):
        client.post("/sync/push", json={"changes": [_change("A", 1)]})
        client.post("/sync/push", json={"changes": [_change("B", 2)]})

        assert [i.id for i in service.pushed.items()] == ["B"]

    @pytest.mark.parametrize(
        "oversized",
        [{"timestamp": 10**20}, {"timestamp": 1e30}, {"version": 10**20}],
    )
    def test_oversized_number_fails_one_item(self, client, service, oversized):
        """Test an out-of-range number is an item failure, not a 500."""
        response = client.post(
            "/sync/push",
            json={
                "changes": [
                    _change("A", 1000),
                    _change("B", 2000, **oversized),
                    _change("C", 3000),
                ]
            },
        )

        assert response.status_code == 200
        data = response.json()
        assert data["ok"] is False
        assert data["failed"][0]["index"] == 1
        assert data["accepted_ids"] == ["A", "C"]
        assert service.records.get("C") is not None
        assert service.records.get("B") is None



class TestPullClamping:
    """Tests for since/limit handling on /sync/pull."""

    @pytest.fixture
    def populated(self, client):
        client.post(
            "/sync/push",
            json={"changes": [_change(f"S{i}", i * 10) for i in range(1, 4)]},
        )
        return client

    def _ids(self, client, query):
        response = client.get(f"/sync/pull?{query}")
        assert response.status_code == 200
        return [(i["id"], i["type"]) for i in response.json()["items"]]

    def test_negative_since(self, populated):
        assert self._ids(populated, "since=-5") == self._ids(populated, "since=0")

    def test_non_numeric_params(self, populated):
        assert self._ids(populated, "since=abc&limit=xyz") == self._ids(populated, "")

    def test_huge_limit(self, populated):
        assert self._ids(populated, "since=5&limit=999999") == self._ids(
            populated, "since=5&limit=10000"
        )

    def test_zero_limit(self, populated):
        assert len(self._ids(populated, "since=5&limit=0")) == 1

    def test_since_beyond_int64(self, client):
        """Test a since too large for SQLite yields an empty page."""
        response = client.get("/sync/pull?since=100000000000000000000")

        assert response.status_code == 200
        assert response.json() == {"items": []}

    def test_offset_pages_through_results(self, populated):
        """Test offset walks the same ordering a large page would return."""
        full = self._ids(populated, "since=0&limit=10")
        first = self._ids(populated, "since=0&limit=2")
        second = self._ids(populated, "since=0&limit=2&offset=2")

        assert len(full) == 3
        assert first + second == full

    def test_bad_offset_means_first_page(self, populated):
        assert self._ids(populated, "since=5&offset=-4") == self._ids(populated, "since=5")
        assert self._ids(populated, "since=5&offset=abc") == self._ids(populated, "since=5")
        assert self._ids(populated, "since=5&offset=100000000000000000000") == []



class TestStoreFailures:
    """Tests for systemic store errors."""

    def test_pull_store_error(self, client, service):
        """Test a broken store returns a generic 500."""
        with service.db.read() as conn:
            conn.execute("DROP TABLE change_log")

        response = client.get("/sync/pull?since=5")

        assert response.status_code == 500
        assert response.json() == {"error": "Pull failed"}

    def test_push_store_error(self, client, service):
        """Test a failed log append fails the request and leaves no record."""
        with service.db.read() as conn:
            conn.execute("DROP TABLE change_log")

        response = client.post("/sync/push", json={"changes": [_change("S1", 1)]})

        assert response.status_code == 500
        assert response.json() == {"error": "Push failed"}
        assert service.records.get("S1") is None


class TestAPI:
    def test_health(self, client):
        response = client.get("/api/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["node_name"] == "test-sync-node"
        assert data["components"]["store"] is True

    def test_stats(self, client):
        client.post("/sync/push", json={"changes": [_change("S1", 1)]})

        data = client.get("/api/stats").json()

        assert data["record_count"] == 1
        assert data["total_entries"] == 1
        assert data["checkpoint"] == 1
        assert data["pushed_buffer_size"] == 1
