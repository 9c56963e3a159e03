"""
Restore confirmation tokens.

A token is minted by preview and must accompany the matching restore. It is
bound to one snapshot and one actor, expires after a short TTL and is
consumed on first use.

Invariants:
    - Only the SHA-256 hash of a token is persisted
    - Validation fails closed: any mismatch raises ExecutionDenied
    - Consumption is atomic; a second consume of the same token fails
"""

from __future__ import annotations

import hashlib
import logging
import secrets
import time
from collections.abc import Callable
from dataclasses import dataclass

from ..errors import ExecutionDenied
from ..storage.snapshot_store import SnapshotStore, TokenRecord

logger = logging.getLogger(__name__)


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class MintedToken:
    token: str
    token_hash: str
    expires_at: int


class TokenManager:
    """Mints, validates and consumes confirmation tokens.

    Args:
        store: SnapshotStore holding token hashes
        ttl_seconds: Token lifetime
        clock: Returns the current time in seconds (time.time by default)
    """

    def __init__(
        self,
        store: SnapshotStore,
        ttl_seconds: int = 600,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.ttl_seconds = ttl_seconds
        self.clock = clock

    def now_ms(self) -> int:
        return int(self.clock() * 1000)

    async def mint(self, snapshot_id: str, workspace_id: str, actor: str) -> MintedToken:
        token = secrets.token_urlsafe(32)
        token_hash = hash_token(token)
        now = self.now_ms()
        expires_at = now + self.ttl_seconds * 1000
        await self.store.store_token(token_hash, snapshot_id, workspace_id, actor, now, expires_at)
        logger.debug(
            "Minted confirmation token",
            extra={"snapshot_id": snapshot_id, "token_hash": token_hash[:12]},
        )
        return MintedToken(token=token, token_hash=token_hash, expires_at=expires_at)

    async def validate(self, token: str, snapshot_id: str, actor: str) -> TokenRecord:
        """Check a token without consuming it.

        Raises:
            ExecutionDenied: Unknown, mismatched, expired or consumed token
        """
        if not token:
            raise ExecutionDenied("confirmation token is required")

        record = await self.store.get_token(hash_token(token))
        if record is None:
            raise ExecutionDenied("invalid confirmation token")
        if record.snapshot_id != snapshot_id:
            raise ExecutionDenied("confirmation token was issued for a different snapshot")
        if record.actor != actor:
            raise ExecutionDenied("confirmation token was issued to a different actor")
        if record.consumed_at is not None:
            raise ExecutionDenied("confirmation token has already been used")
        if self.now_ms() >= record.expires_at:
            raise ExecutionDenied("confirmation token expired")
        return record

    async def consume(self, record: TokenRecord) -> None:
        """Invalidate a validated token.

        Raises:
            ExecutionDenied: Token was consumed concurrently
        """
        if not await self.store.consume_token(record.token_hash, self.now_ms()):
            raise ExecutionDenied("confirmation token has already been used")
