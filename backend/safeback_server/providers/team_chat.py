"""
Team chat snapshot provider.

Tables, parent-first: chat_threads -> chat_thread_members, chat_messages ->
chat_attachments.

Invariants:
    - Messages are capped at max_messages, newest first
    - Only attachments of captured messages are captured
    - Attachments carry file references (file_url, storage_path), never bytes
    - On restore, threads form a whitelist: members and messages of other
      threads are skipped, and attachments of skipped messages with them
"""

from __future__ import annotations

from dataclasses import dataclass

from ..storage.tenant_store import TenantStore
from .table_provider import ParentRef, Record, TableProvider, TableSpec


@dataclass(frozen=True)
class Thread(Record):
    id: str
    created_by: str
    created_at: int
    title: str | None = None
    type: str = "group"


@dataclass(frozen=True)
class ThreadMember(Record):
    id: str
    thread_id: str
    user_id: str
    created_at: int
    role: str = "member"
    last_read_at: int | None = None


@dataclass(frozen=True)
class Message(Record):
    id: str
    thread_id: str
    sender_user_id: str
    meaning_object_id: str
    created_at: int
    source_lang: str = "en"


@dataclass(frozen=True)
class Attachment(Record):
    id: str
    message_id: str
    file_name: str
    file_size: int
    file_type: str
    file_url: str
    storage_path: str
    uploaded_by: str
    created_at: int


class TeamChatProvider(TableProvider):
    """Threads, members, messages and attachment references."""

    id = "team_chat"
    version = 1
    name = "Team chat"
    description = "Chat threads, members, messages and attachment references"
    critical = False

    tables = (
        TableSpec("threads", "chat_threads", Thread),
        TableSpec(
            "members",
            "chat_thread_members",
            ThreadMember,
            parents=(ParentRef("thread_id", "threads"),),
        ),
        TableSpec(
            "messages",
            "chat_messages",
            Message,
            cap_limit="max_messages",
            parents=(ParentRef("thread_id", "threads"),),
        ),
        TableSpec(
            "attachments",
            "chat_attachments",
            Attachment,
            parents=(ParentRef("message_id", "messages"),),
        ),
    )

    def __init__(self, store: TenantStore, max_messages: int = 5000) -> None:
        super().__init__(store, {"max_messages": max_messages})

    def extra_warnings(self, current, target):
        existing = {a.id for a in current["attachments"]}
        missing = [a for a in target["attachments"] if a.id not in existing]
        if not missing:
            return []
        return [
            f"{len(missing)} chat attachments reference files that may have been deleted"
        ]
