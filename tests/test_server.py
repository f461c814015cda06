"""
Tests for the mirror API and its database layer.
"""

import json
import pytest
from datetime import datetime, timedelta, timezone

from finsync.models.records import utcnow
from finsync.models.sync import SyncTable
from finsync.server import MirrorError


class TestHealth:
    """Tests for the health route."""

    async def test_health(self, http_client):
        """Test the health payload."""
        response = await http_client.get("/api/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok", "message": "Finance API is running"}


class TestCrud:
    """Tests for the generic table routes."""

    async def test_create_and_fetch(self, http_client):
        """Test POST then GET of one account."""
        response = await http_client.post("/api/accounts", json={
            "name": "Checking",
            "type": "checking",
            "balance": 125.5,
        })
        assert response.status_code == 201
        created = response.json()
        assert created["id"] == 1
        assert created["balance"] == 125.5
        assert created["color"] == "#0ea5e9"
        assert created["isActive"] is True
        assert created["updatedAt"].endswith("+00:00")

        fetched = await http_client.get(f"/api/accounts/{created['id']}")
        assert fetched.json() == created

    async def test_list(self, http_client):
        """Test listing rows in id order."""
        for name in ("A", "B"):
            await http_client.post("/api/categories", json={"name": name, "type": "expense"})
        response = await http_client.get("/api/categories")
        assert [row["name"] for row in response.json()] == ["A", "B"]

    async def test_missing_row(self, http_client):
        """Test 404s on every single-row route."""
        assert (await http_client.get("/api/accounts/99")).status_code == 404
        assert (await http_client.put("/api/accounts/99", json={"name": "X"})).status_code == 404
        response = await http_client.delete("/api/accounts/99")
        assert response.status_code == 404
        assert response.json() == {"detail": "Record not found"}

    async def test_update_refreshes_updated_at(self, http_client):
        """Test a partial update."""
        created = (await http_client.post("/api/accounts", json={"name": "Old", "type": "cash"})).json()
        response = await http_client.put(f"/api/accounts/{created['id']}", json={"name": "New"})
        assert response.status_code == 200
        updated = response.json()
        assert updated["name"] == "New"
        assert updated["type"] == "cash"
        assert datetime.fromisoformat(updated["updatedAt"]) >= datetime.fromisoformat(created["updatedAt"])

    async def test_delete(self, http_client):
        """Test hard delete."""
        created = (await http_client.post("/api/accounts", json={"name": "Tmp", "type": "cash"})).json()
        response = await http_client.delete(f"/api/accounts/{created['id']}")
        assert response.json() == {"message": "Record deleted successfully"}
        assert (await http_client.get(f"/api/accounts/{created['id']}")).status_code == 404

    async def test_missing_required_column(self, http_client):
        """Test that a NOT NULL violation is a 400 with an error body."""
        response = await http_client.post("/api/transactions", json={"accountId": 1})
        assert response.status_code == 400
        assert "error" in response.json()

    async def test_unknown_table(self, http_client):
        """Test that only the CRUD tables are routed."""
        response = await http_client.get("/api/networth_snapshots")
        assert response.status_code == 422


class TestSyncRoutes:
    """Tests for /api/sync and /api/sync/push."""

    async def test_pull_everything(self, http_client, mirror_db):
        """Test a pull without since."""
        mirror_db.insert_row(SyncTable.ACCOUNTS, {"name": "Cash", "type": "cash"})
        body = (await http_client.get("/api/sync")).json()

        assert set(body) == {t.value for t in SyncTable} | {"timestamp"}
        assert [row["name"] for row in body["accounts"]] == ["Cash"]
        assert body["netWorthSnapshots"] == []

    async def test_pull_since_filters(self, http_client, mirror_db):
        """Test that only rows written after since are returned."""
        mirror_db.insert_row(SyncTable.ACCOUNTS, {"name": "Old", "type": "cash"})
        first = (await http_client.get("/api/sync")).json()
        mirror_db.insert_row(SyncTable.ACCOUNTS, {"name": "New", "type": "cash"})

        body = (await http_client.get("/api/sync", params={"since": first["timestamp"]})).json()

        assert [row["name"] for row in body["accounts"]] == ["New"]

    async def test_pull_since_in_future(self, http_client, mirror_db):
        """Test that a future watermark returns nothing."""
        mirror_db.insert_row(SyncTable.ACCOUNTS, {"name": "Cash", "type": "cash"})
        since = (utcnow() + timedelta(days=1)).isoformat()
        body = (await http_client.get("/api/sync", params={"since": since})).json()
        assert body["accounts"] == []

    async def test_timestamp_taken_before_read(self, http_client):
        """Test that the response timestamp is not later than the response."""
        before = utcnow()
        body = (await http_client.get("/api/sync")).json()
        stamp = datetime.fromisoformat(body["timestamp"])
        assert before <= stamp <= utcnow()

    async def test_bad_since(self, http_client):
        """Test that an unparseable since is a 400."""
        response = await http_client.get("/api/sync", params={"since": "yesterday"})
        assert response.status_code == 400

    async def test_push_upserts(self, http_client, mirror_db):
        """Test insert-with-id, update, and mint-an-id in one push."""
        existing = mirror_db.insert_row(SyncTable.ACCOUNTS, {"name": "Old", "type": "cash"})

        response = await http_client.post("/api/sync/push", json={
            "accounts": [
                {"id": existing, "name": "Renamed", "type": "cash"},
                {"id": 7, "name": "Client row", "type": "savings"},
                {"name": "No id", "type": "cash"},
            ],
        })
        body = response.json()

        assert body["success"] is True
        assert body["inserted"] == 2
        assert body["updated"] == 1
        assert body["created"][0] == {"table": "accounts", "clientId": 7, "id": 7}
        assert body["created"][1]["clientId"] is None
        assert body["created"][1]["id"] == 8
        assert mirror_db.get_row(SyncTable.ACCOUNTS, existing)["name"] == "Renamed"

    async def test_push_row_errors_are_isolated(self, http_client, mirror_db):
        """Test that one bad row does not stop its siblings."""
        response = await http_client.post("/api/sync/push", json={
            "transactions": [
                {"id": 3, "accountId": 1},
                {
                    "id": 4,
                    "accountId": 1,
                    "date": "2024-03-01",
                    "amount": 10,
                    "description": "Fine",
                    "categoryId": 2,
                    "type": "expense",
                },
            ],
            "budgets": [{"id": 1, "categoryId": 2, "month": "2024-03", "amount": "oops"}],
        })
        body = response.json()

        assert body["inserted"] == 1
        assert len(body["errors"]) == 2
        assert {e["table"] for e in body["errors"]} == {"transactions", "budgets"}
        assert mirror_db.row_exists(SyncTable.TRANSACTIONS, 4)
        assert not mirror_db.row_exists(SyncTable.TRANSACTIONS, 3)

    async def test_tags_stored_as_json_string(self, http_client, mirror_db):
        """Test that tags are kept in their string form."""
        await http_client.post("/api/sync/push", json={
            "transactions": [{
                "id": 1,
                "accountId": 1,
                "date": "2024-03-01T00:00:00.000Z",
                "amount": 10,
                "description": "Tagged",
                "categoryId": 2,
                "type": "expense",
                "tags": ["rent", "home"],
            }],
        })
        row = mirror_db.get_row(SyncTable.TRANSACTIONS, 1)
        assert json.loads(row["tags"]) == ["rent", "home"]
        assert row["date"] == "2024-03-01"


class TestMirrorDatabase:
    """Tests for value coercion in MirrorDatabase."""

    def test_zero_reference_is_null(self, mirror_db):
        """Test that 0 ids are stored as NULL."""
        new_id = mirror_db.insert_row(SyncTable.CATEGORIES, {
            "name": "Top", "type": "expense", "parentCategoryId": 0,
        })
        assert mirror_db.get_row(SyncTable.CATEGORIES, new_id)["parentCategoryId"] is None

    def test_boolean_strings(self, mirror_db):
        """Test flag coercion."""
        new_id = mirror_db.insert_row(SyncTable.ACCOUNTS, {"name": "A", "type": "cash", "isActive": "0"})
        assert mirror_db.get_row(SyncTable.ACCOUNTS, new_id)["isActive"] is False
        with pytest.raises(MirrorError):
            mirror_db.insert_row(SyncTable.ACCOUNTS, {"name": "B", "type": "cash", "isActive": "maybe"})

    def test_client_updated_at_ignored(self, mirror_db):
        """Test that the mirror stamps updatedAt itself."""
        before = utcnow()
        new_id = mirror_db.insert_row(SyncTable.ACCOUNTS, {
            "name": "A", "type": "cash", "updatedAt": "2000-01-01T00:00:00Z",
        })
        stamp = datetime.fromisoformat(mirror_db.get_row(SyncTable.ACCOUNTS, new_id)["updatedAt"])
        assert stamp >= before.replace(microsecond=0)
        assert stamp.tzinfo == timezone.utc

    def test_changes_since(self, mirror_db):
        """Test the per-table change feed."""
        mirror_db.insert_row(SyncTable.BUDGETS, {"categoryId": 1, "month": "2024-03", "amount": 50})
        changes = mirror_db.changes_since(None)
        assert len(changes["budgets"]) == 1
        assert changes["budgets"][0]["amount"] == 50.0
        assert mirror_db.changes_since(utcnow() + timedelta(seconds=5))["budgets"] == []
