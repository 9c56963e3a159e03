"""
Snapshot CLI tool for SafeBack.

Runs engine operations offline against a data directory, without the HTTP
server:
- capture: Take a snapshot of a workspace
- list: List a workspace's snapshots
- preview: Show what restoring a snapshot would change and print a token
- restore: Restore a snapshot with a confirmation token
- providers: Show the effective providers of a workspace
- export: Write a snapshot's payload (or its download URL) as JSON

Usage:
    safeback --data-dir /var/lib/safeback capture --workspace-id ws_1 --actor ops
    safeback preview --snapshot-id <id> --actor ops
    safeback restore --snapshot-id <id> --actor ops --token <token>

Invariants:
    - Restore always needs a token minted by preview for the same actor
    - Output is JSON on stdout; logs go to stderr
    - Exit code 0 on success, 1 on engine errors, 2 on partial restore

How to change safely:
    - Add new commands, don't modify existing ones
    - Keep output format stable for scripts
"""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import json
import logging
import sys
from typing import Any

from ..config import ServerConfig
from ..engine import SnapshotOrchestrator
from ..errors import RestoreFailure, SafebackError
from ..main import build_engine

logger = logging.getLogger(__name__)


class SnapshotCLI:
    """Command implementations over a SnapshotOrchestrator.

    Example:
        >>> cli = SnapshotCLI(engine)
        >>> await cli.capture("ws_1", "ops", reason="before migration")
        {'snapshot_id': '...', ...}
    """

    def __init__(self, engine: SnapshotOrchestrator) -> None:
        self.engine = engine

    async def capture(self, workspace_id: str, actor: str, reason: str | None = None) -> dict:
        snapshot = await self.engine.capture(workspace_id, actor, reason=reason)
        return {"snapshot_id": snapshot.id, "snapshot": snapshot.to_dict()}

    async def list(self, workspace_id: str, limit: int = 50) -> dict:
        snapshots = await self.engine.list_snapshots(workspace_id, limit=limit)
        return {"snapshots": [s.to_dict() for s in snapshots]}

    async def preview(self, snapshot_id: str, actor: str) -> dict:
        return (await self.engine.preview(snapshot_id, actor)).to_dict()

    async def restore(self, snapshot_id: str, actor: str, token: str) -> dict:
        result = await self.engine.restore(snapshot_id, token, actor)
        return result.to_dict()

    async def providers(self, workspace_id: str) -> dict:
        providers = await self.engine.effective_providers(workspace_id)
        return {"providers": [p.to_dict() for p in providers]}

    async def export(self, snapshot_id: str) -> dict:
        return await self.engine.export(snapshot_id)


async def run_command(args: argparse.Namespace, config: ServerConfig) -> Any:
    engine, payload_store = build_engine(config)
    cli = SnapshotCLI(engine)
    try:
        if args.command == "capture":
            return await cli.capture(args.workspace_id, args.actor, args.reason)
        if args.command == "list":
            return await cli.list(args.workspace_id, args.limit)
        if args.command == "preview":
            return await cli.preview(args.snapshot_id, args.actor)
        if args.command == "restore":
            return await cli.restore(args.snapshot_id, args.actor, args.token)
        if args.command == "providers":
            return await cli.providers(args.workspace_id)
        if args.command == "export":
            return await cli.export(args.snapshot_id)
        raise ValueError(f"Unknown command: {args.command}")
    finally:
        await payload_store.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="safeback", description="SafeBack snapshot and restore tool"
    )
    parser.add_argument("--data-dir", help="Data directory (defaults to DATA_DIR)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")
    subparsers = parser.add_subparsers(dest="command", required=True)

    capture_parser = subparsers.add_parser("capture", help="Capture a snapshot")
    capture_parser.add_argument("--workspace-id", required=True)
    capture_parser.add_argument("--actor", required=True)
    capture_parser.add_argument("--reason")

    list_parser = subparsers.add_parser("list", help="List snapshots, newest first")
    list_parser.add_argument("--workspace-id", required=True)
    list_parser.add_argument("--limit", type=int, default=50)

    preview_parser = subparsers.add_parser("preview", help="Preview a restore")
    preview_parser.add_argument("--snapshot-id", required=True)
    preview_parser.add_argument("--actor", required=True)

    restore_parser = subparsers.add_parser("restore", help="Restore a snapshot")
    restore_parser.add_argument("--snapshot-id", required=True)
    restore_parser.add_argument("--actor", required=True)
    restore_parser.add_argument("--token", required=True, help="Token printed by preview")

    providers_parser = subparsers.add_parser("providers", help="Show effective providers")
    providers_parser.add_argument("--workspace-id", required=True)

    export_parser = subparsers.add_parser("export", help="Export a snapshot")
    export_parser.add_argument("--snapshot-id", required=True)
    export_parser.add_argument("--output", help="Write to file instead of stdout")

    return parser


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the snapshot CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )

    try:
        config = ServerConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)
    if args.data_dir:
        config.storage = dataclasses.replace(config.storage, data_dir=args.data_dir)

    try:
        output = asyncio.run(run_command(args, config))
    except RestoreFailure as e:
        print(json.dumps(e.to_dict(), indent=2), file=sys.stderr)
        sys.exit(2)
    except SafebackError as e:
        print(json.dumps(e.to_dict(), indent=2), file=sys.stderr)
        sys.exit(1)

    text = json.dumps(output, indent=2, sort_keys=True)
    if getattr(args, "output", None):
        with open(args.output, "w") as f:
            f.write(text + "\n")
        print(f"Wrote {args.output}", file=sys.stderr)
    else:
        print(text)


if __name__ == "__main__":
    main()
