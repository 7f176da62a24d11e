"""Tests for the ClickHouse audit log and the Redis loyalty profile cache."""

import json
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from brandgraph.repositories.audit_repository import ResolutionAuditRepository, ResolutionStep
from brandgraph.repositories.profile_cache_repository import ProfileCacheRepository


class TestResolutionAuditRepository:

    @pytest.fixture
    def client(self):
        return MagicMock()

    def test_log_creates_table_once(self, client):
        repo = ResolutionAuditRepository(client=client)
        steps = [ResolutionStep("link_created", "web-1", "a@example.com"), ResolutionStep("stitched:b-1")]

        repo.log_resolution_steps("res_1", "stitch_internal_to_existing", steps)
        repo.log_resolution_steps("res_2", "identify", steps[:1])

        create_calls = [c for c in client.execute.call_args_list if "CREATE TABLE" in c.args[0]]
        insert_calls = [c for c in client.execute.call_args_list if "INSERT INTO identity_audit_log" in c.args[0]]
        assert len(create_calls) == 1
        assert len(insert_calls) == 2

        rows = insert_calls[0].args[1]
        assert [r["step"] for r in rows] == ["link_created", "stitched:b-1"]
        assert rows[0]["internal_session_id"] == "web-1"
        assert rows[1]["customer_email"] == ""
        assert all(r["resolution_id"] == "res_1" for r in rows)

    def test_empty_resolution_is_not_written(self, client):
        ResolutionAuditRepository(client=client).log_resolution_steps("res_1", "identify", [])

        client.execute.assert_not_called()

    def test_get_resolution_steps(self, client):
        created = datetime(2026, 1, 1, tzinfo=timezone.utc)
        client.execute.return_value = [("identify", "session_upserted", "web-1", "", created)]

        steps = ResolutionAuditRepository(client=client).get_resolution_steps("res_1")

        assert steps == [{
            "operation": "identify",
            "step": "session_upserted",
            "internal_session_id": "web-1",
            "customer_email": None,
            "created_at": created,
        }]
        assert client.execute.call_args.args[1] == {"resolution_id": "res_1"}


class TestProfileCacheRepository:

    @pytest.fixture
    def client(self):
        return MagicMock()

    def test_store_profile(self, client):
        ProfileCacheRepository(ttl=120, client=client).store_profile("a@example.com", {"customer": {"id": "1"}})

        client.setex.assert_called_once_with("loyalty:v1:a@example.com", 120, json.dumps({"customer": {"id": "1"}}))

    def test_get_profile(self, client):
        client.get.return_value = json.dumps({"customer": {"id": "1"}})
        cache = ProfileCacheRepository(ttl=120, client=client)

        assert cache.get_profile("a@example.com") == {"customer": {"id": "1"}}
        client.get.assert_called_once_with("loyalty:v1:a@example.com")

    def test_get_missing_profile(self, client):
        client.get.return_value = None

        assert ProfileCacheRepository(ttl=120, client=client).get_profile("a@example.com") is None

    def test_invalidate(self, client):
        ProfileCacheRepository(ttl=120, client=client).invalidate("a@example.com")

        client.delete.assert_called_once_with("loyalty:v1:a@example.com")

    def test_default_ttl(self, client, monkeypatch):
        monkeypatch.delenv("LOYALTY_CACHE_TTL", raising=False)

        assert ProfileCacheRepository(client=client).ttl == 300
