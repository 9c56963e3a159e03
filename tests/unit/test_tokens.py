"""
Unit tests for confirmation tokens.

Tests cover:
- Minting stores only the hash
- Validation failures (unknown, wrong snapshot/actor, expired, consumed)
- Single use
"""

import tempfile

import pytest

from backend.safeback_server.engine.tokens import TokenManager, hash_token
from backend.safeback_server.errors import ExecutionDenied
from backend.safeback_server.storage.snapshot_store import SnapshotStore
from tests.fixtures import FakeClock


class TestTokenManager:
    """Tests for TokenManager."""

    @pytest.fixture
    def store(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            yield SnapshotStore(tmpdir, wal_mode=False)

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def tokens(self, store, clock):
        return TokenManager(store, ttl_seconds=300, clock=clock)

    @pytest.mark.asyncio
    async def test_mint_stores_hash_only(self, tokens, store, clock):
        minted = await tokens.mint("snap_1", "ws_1", "user:alice")

        assert minted.token_hash == hash_token(minted.token)
        assert minted.expires_at == int(clock.now * 1000) + 300_000
        assert await store.get_token(minted.token) is None
        record = await store.get_token(minted.token_hash)
        assert record.snapshot_id == "snap_1"
        assert record.actor == "user:alice"

    @pytest.mark.asyncio
    async def test_validate_and_consume(self, tokens):
        minted = await tokens.mint("snap_1", "ws_1", "user:alice")

        record = await tokens.validate(minted.token, "snap_1", "user:alice")
        await tokens.consume(record)

        with pytest.raises(ExecutionDenied, match="already been used"):
            await tokens.validate(minted.token, "snap_1", "user:alice")

    @pytest.mark.asyncio
    async def test_consume_twice_fails(self, tokens):
        minted = await tokens.mint("snap_1", "ws_1", "user:alice")
        record = await tokens.validate(minted.token, "snap_1", "user:alice")
        await tokens.consume(record)

        with pytest.raises(ExecutionDenied):
            await tokens.consume(record)

    @pytest.mark.asyncio
    async def test_missing_token(self, tokens):
        with pytest.raises(ExecutionDenied, match="required"):
            await tokens.validate("", "snap_1", "user:alice")

    @pytest.mark.asyncio
    async def test_unknown_token(self, tokens):
        with pytest.raises(ExecutionDenied, match="invalid"):
            await tokens.validate("not-a-token", "snap_1", "user:alice")

    @pytest.mark.asyncio
    async def test_wrong_snapshot(self, tokens):
        minted = await tokens.mint("snap_1", "ws_1", "user:alice")

        with pytest.raises(ExecutionDenied, match="different snapshot"):
            await tokens.validate(minted.token, "snap_2", "user:alice")

    @pytest.mark.asyncio
    async def test_wrong_actor(self, tokens):
        minted = await tokens.mint("snap_1", "ws_1", "user:alice")

        with pytest.raises(ExecutionDenied, match="different actor"):
            await tokens.validate(minted.token, "snap_1", "user:mallory")

    @pytest.mark.asyncio
    async def test_expiry(self, tokens, clock):
        minted = await tokens.mint("snap_1", "ws_1", "user:alice")

        clock.advance(299)
        await tokens.validate(minted.token, "snap_1", "user:alice")

        clock.advance(1)
        with pytest.raises(ExecutionDenied, match="expired"):
            await tokens.validate(minted.token, "snap_1", "user:alice")

    @pytest.mark.asyncio
    async def test_purge_expired(self, tokens, store, clock):
        minted = await tokens.mint("snap_1", "ws_1", "user:alice")
        clock.advance(600)

        purged = await store.purge_expired_tokens(tokens.now_ms())

        assert purged == 1
        assert await store.get_token(minted.token_hash) is None
