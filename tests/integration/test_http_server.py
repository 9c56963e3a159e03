"""
Integration tests for the HTTP API.

Tests cover:
- Capture, preview, restore, providers, export and list endpoints
- Header validation and tenant scoping
- Error body and status mapping
- CORS headers
"""

import os
import tempfile

import pytest
from aiohttp.test_utils import TestClient, TestServer

from backend.safeback_server._version import __version__
from backend.safeback_server.api import create_http_app
from backend.safeback_server.config import EngineConfig, HttpConfig
from backend.safeback_server.engine import SnapshotOrchestrator
from backend.safeback_server.providers.registry import ProviderRegistry
from backend.safeback_server.storage.payload_store import LocalPayloadStore
from backend.safeback_server.storage.snapshot_store import SnapshotStore
from tests.fixtures import MemoryProvider

HEADERS = {"X-Tenant-ID": "ws_1", "X-Actor": "user:alice"}


@pytest.fixture
def data_dir():
    with tempfile.TemporaryDirectory() as tmpdir:
        yield tmpdir


@pytest.fixture
def providers():
    return [
        MemoryProvider("workboard", critical=True),
        MemoryProvider("team_chat"),
    ]


@pytest.fixture
def engine(data_dir, providers):
    registry = ProviderRegistry()
    for provider in providers:
        registry.register(provider)
    registry.freeze()
    return SnapshotOrchestrator(
        registry=registry,
        snapshot_store=SnapshotStore(data_dir, wal_mode=False),
        payload_store=LocalPayloadStore(os.path.join(data_dir, "payloads")),
        config=EngineConfig(pre_restore_snapshot=False),
    )


def client_for(engine, config=None):
    return TestClient(TestServer(create_http_app(engine, config)))


class TestHttpApi:
    """Tests for the /v1 endpoints."""

    @pytest.mark.asyncio
    async def test_health(self, engine):
        async with client_for(engine) as client:
            resp = await client.get("/v1/health")
            assert resp.status == 200
            body = await resp.json()

        assert body == {
            "status": "ok",
            "version": __version__,
            "providers": ["workboard", "team_chat"],
        }

    @pytest.mark.asyncio
    async def test_capture_preview_restore(self, engine, providers):
        providers[0].state["ws_1"] = ["task_1", "task_2"]

        async with client_for(engine) as client:
            resp = await client.post("/v1/capture", json={"reason": "nightly"}, headers=HEADERS)
            assert resp.status == 201
            captured = await resp.json()
            snapshot_id = captured["snapshot_id"]
            assert captured["snapshot"]["reason"] == "nightly"
            assert captured["snapshot"]["workspace_id"] == "ws_1"

            providers[0].state["ws_1"] = []

            resp = await client.post(
                "/v1/preview", json={"snapshot_id": snapshot_id}, headers=HEADERS
            )
            assert resp.status == 200
            preview = await resp.json()
            assert preview["preview"]["can_execute"] is True
            assert preview["preview"]["will_restore"] == {"workboard": 2, "team_chat": 0}
            diffs = {d["provider_id"]: d for d in preview["preview"]["diffs"]}
            assert diffs["workboard"]["creates"] == 2

            resp = await client.post(
                "/v1/restore",
                json={
                    "snapshot_id": snapshot_id,
                    "confirmation_token": preview["confirmation_token"],
                },
                headers=HEADERS,
            )
            assert resp.status == 200
            result = await resp.json()

        assert result["outcome"] == "done"
        assert result["restored_counts"] == {"workboard": 2, "team_chat": 0}
        assert providers[0].state["ws_1"] == ["task_1", "task_2"]

    @pytest.mark.asyncio
    async def test_missing_headers(self, engine):
        async with client_for(engine) as client:
            resp = await client.post("/v1/capture", json={})
            assert resp.status == 400
            body = await resp.json()

        assert body["error_code"] == "VALIDATION_FAILED"
        assert body["details"]["field"] == "X-Tenant-ID"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("tenant_id", ["/..", "ws/../x", "acme.io"])
    async def test_malformed_tenant_id(self, engine, data_dir, tenant_id):
        headers = {**HEADERS, "X-Tenant-ID": tenant_id}
        async with client_for(engine) as client:
            resp = await client.post("/v1/capture", json={}, headers=headers)
            assert resp.status == 400
            body = await resp.json()

        assert body["error_code"] == "VALIDATION_FAILED"
        assert body["details"]["field"] == "X-Tenant-ID"
        assert not os.path.exists(os.path.join(data_dir, "payloads"))

    @pytest.mark.asyncio
    async def test_invalid_body(self, engine):
        async with client_for(engine) as client:
            resp = await client.post("/v1/preview", json={}, headers=HEADERS)
            assert resp.status == 400
            body = await resp.json()

        assert body["error_code"] == "VALIDATION_FAILED"
        assert body["details"]["field"] == "snapshot_id"

    @pytest.mark.asyncio
    async def test_malformed_json(self, engine):
        async with client_for(engine) as client:
            resp = await client.post(
                "/v1/capture",
                data="{not json",
                headers={**HEADERS, "Content-Type": "application/json"},
            )
            assert resp.status == 400

    @pytest.mark.asyncio
    async def test_unknown_snapshot(self, engine):
        async with client_for(engine) as client:
            resp = await client.post("/v1/preview", json={"snapshot_id": "nope"}, headers=HEADERS)
            assert resp.status == 404
            body = await resp.json()

        assert body["error_code"] == "SNAPSHOT_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_bad_token_denied(self, engine):
        async with client_for(engine) as client:
            resp = await client.post("/v1/capture", json={}, headers=HEADERS)
            snapshot_id = (await resp.json())["snapshot_id"]

            resp = await client.post(
                "/v1/restore",
                json={"snapshot_id": snapshot_id, "confirmation_token": "forged"},
                headers=HEADERS,
            )
            assert resp.status == 403
            body = await resp.json()

        assert body["error_code"] == "EXECUTION_DENIED"
        assert body["details"]["reason"] == "invalid confirmation token"

    @pytest.mark.asyncio
    async def test_other_tenant_cannot_preview(self, engine):
        async with client_for(engine) as client:
            resp = await client.post("/v1/capture", json={}, headers=HEADERS)
            snapshot_id = (await resp.json())["snapshot_id"]

            resp = await client.post(
                "/v1/preview",
                json={"snapshot_id": snapshot_id},
                headers={"X-Tenant-ID": "ws_2", "X-Actor": "user:eve"},
            )
            assert resp.status == 403

    @pytest.mark.asyncio
    async def test_capture_for_other_workspace_denied(self, engine):
        async with client_for(engine) as client:
            resp = await client.post(
                "/v1/capture", json={"workspace_id": "ws_2"}, headers=HEADERS
            )
            assert resp.status == 403

    @pytest.mark.asyncio
    async def test_partial_restore_returns_result(self, engine, providers):
        providers[1].fail_restore = RuntimeError("disk full")

        async with client_for(engine) as client:
            resp = await client.post("/v1/capture", json={}, headers=HEADERS)
            snapshot_id = (await resp.json())["snapshot_id"]
            resp = await client.post(
                "/v1/preview", json={"snapshot_id": snapshot_id}, headers=HEADERS
            )
            token = (await resp.json())["confirmation_token"]

            resp = await client.post(
                "/v1/restore",
                json={"snapshot_id": snapshot_id, "confirmation_token": token},
                headers=HEADERS,
            )
            assert resp.status == 500
            body = await resp.json()

        assert body["error_code"] == "RESTORE_FAILED"
        assert body["details"]["outcome"] == "partial"
        assert body["details"]["restored_counts"] == {"workboard": 0}
        assert body["details"]["failures"] == {"team_chat": "RuntimeError: disk full"}

    @pytest.mark.asyncio
    async def test_providers(self, engine):
        async with client_for(engine) as client:
            resp = await client.post("/v1/providers", json={}, headers=HEADERS)
            assert resp.status == 200
            body = await resp.json()

        by_id = {p["provider_id"]: p for p in body["providers"]}
        assert by_id["workboard"]["critical"] is True
        assert by_id["team_chat"]["effective_policy"] == "full"
        assert by_id["team_chat"]["is_enabled"] is True

    @pytest.mark.asyncio
    async def test_list_and_export(self, engine):
        async with client_for(engine) as client:
            for _ in range(3):
                await client.post("/v1/capture", json={}, headers=HEADERS)

            resp = await client.get("/v1/snapshots", params={"limit": "2"}, headers=HEADERS)
            assert resp.status == 200
            listed = (await resp.json())["snapshots"]
            assert len(listed) == 2

            resp = await client.get(
                "/v1/export", params={"snapshot_id": listed[0]["id"]}, headers=HEADERS
            )
            assert resp.status == 200
            exported = await resp.json()

        assert exported["snapshot"]["id"] == listed[0]["id"]
        assert exported["payload"]["engine_version"] == 1

    @pytest.mark.asyncio
    async def test_list_rejects_bad_limit(self, engine):
        async with client_for(engine) as client:
            resp = await client.get("/v1/snapshots", params={"limit": "many"}, headers=HEADERS)
            assert resp.status == 400

    @pytest.mark.asyncio
    async def test_cors_headers(self, engine):
        config = HttpConfig(cors_origins=("https://app.example.com",))
        async with client_for(engine, config) as client:
            resp = await client.options(
                "/v1/capture", headers={"Origin": "https://app.example.com"}
            )
            assert resp.headers["Access-Control-Allow-Origin"] == "https://app.example.com"
            assert "X-Tenant-ID" in resp.headers["Access-Control-Allow-Headers"]

            resp = await client.get("/v1/health", headers={"Origin": "https://evil.example.com"})
            assert "Access-Control-Allow-Origin" not in resp.headers
