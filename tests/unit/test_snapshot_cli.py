"""
Unit tests for the snapshot CLI.

Tests cover:
- Argument parsing
- capture, preview and restore through main()
- Exit codes for engine errors
"""

import asyncio
import json
import os
import tempfile

import pytest

from backend.safeback_server.storage.tenant_store import TenantStore
from backend.safeback_server.tools.snapshot_cli import build_parser, main
from tests.fixtures import task_row


class TestSnapshotCLI:
    """Tests for the safeback command."""

    @pytest.fixture
    def data_dir(self, monkeypatch):
        monkeypatch.setenv("SQLITE_WAL_MODE", "false")
        monkeypatch.setenv("PAYLOAD_BACKEND", "local")
        with tempfile.TemporaryDirectory() as tmpdir:
            yield tmpdir

    def run(self, capsys, data_dir, *argv):
        main(["--data-dir", data_dir, *argv])
        return json.loads(capsys.readouterr().out)

    def test_parser_requires_command(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])

    def test_parser_restore_args(self):
        args = build_parser().parse_args(
            ["restore", "--snapshot-id", "snap_1", "--actor", "ops", "--token", "tok"]
        )

        assert args.command == "restore"
        assert args.snapshot_id == "snap_1"
        assert args.token == "tok"

    def test_capture_preview_restore(self, capsys, data_dir):
        tenants = TenantStore(os.path.join(data_dir, "tenants"), wal_mode=False)
        asyncio.run(tenants.insert("ws_1", "tasks", task_row("t1")))
        asyncio.run(tenants.insert("ws_1", "tasks", task_row("t2")))

        captured = self.run(
            capsys, data_dir, "capture", "--workspace-id", "ws_1", "--actor", "ops",
            "--reason", "before cleanup",
        )
        snapshot_id = captured["snapshot_id"]
        assert captured["snapshot"]["reason"] == "before cleanup"

        asyncio.run(tenants.delete("ws_1", "tasks", "t2"))

        preview = self.run(capsys, data_dir, "preview", "--snapshot-id", snapshot_id,
                           "--actor", "ops")
        assert preview["preview"]["can_execute"] is True
        token = preview["confirmation_token"]

        result = self.run(
            capsys, data_dir, "restore", "--snapshot-id", snapshot_id, "--actor", "ops",
            "--token", token,
        )

        assert result["outcome"] == "done"
        assert result["restored_counts"]["workboard"] == 2
        assert asyncio.run(tenants.count("ws_1", "tasks")) == 2

    def test_list_and_providers(self, capsys, data_dir):
        self.run(capsys, data_dir, "capture", "--workspace-id", "ws_1", "--actor", "ops")

        listed = self.run(capsys, data_dir, "list", "--workspace-id", "ws_1")
        providers = self.run(capsys, data_dir, "providers", "--workspace-id", "ws_1")

        assert len(listed["snapshots"]) == 1
        assert [p["provider_id"] for p in providers["providers"]] == [
            "workboard", "billing", "team_chat", "booking",
        ]

    def test_export_to_file(self, capsys, data_dir):
        captured = self.run(
            capsys, data_dir, "capture", "--workspace-id", "ws_1", "--actor", "ops"
        )
        output = os.path.join(data_dir, "export.json")

        main(["--data-dir", data_dir, "export", "--snapshot-id", captured["snapshot_id"],
              "--output", output])

        with open(output) as f:
            exported = json.load(f)
        assert exported["snapshot"]["id"] == captured["snapshot_id"]
        assert "payload" in exported

    def test_bad_token_exits_1(self, capsys, data_dir):
        captured = self.run(
            capsys, data_dir, "capture", "--workspace-id", "ws_1", "--actor", "ops"
        )

        with pytest.raises(SystemExit) as exc_info:
            main(["--data-dir", data_dir, "restore", "--snapshot-id", captured["snapshot_id"],
                  "--actor", "ops", "--token", "forged"])

        assert exc_info.value.code == 1
        error = json.loads(capsys.readouterr().err)
        assert error["error_code"] == "EXECUTION_DENIED"

    def test_unknown_snapshot_exits_1(self, capsys, data_dir):
        with pytest.raises(SystemExit) as exc_info:
            main(["--data-dir", data_dir, "preview", "--snapshot-id", "nope", "--actor", "ops"])

        assert exc_info.value.code == 1
