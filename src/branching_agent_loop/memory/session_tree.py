from __future__ import annotations

import json
from contextlib import contextmanager
from typing import Any, Iterator
from uuid import uuid4

from loguru import logger

from branching_agent_loop.errors import SessionBusyError, UnknownEntryError
from branching_agent_loop.memory.migrations import CURRENT_FORMAT_VERSION, migrate_records
from branching_agent_loop.memory.models import (
    BRANCH_MARKER,
    COMPACTION,
    CUSTOM,
    LABEL,
    MESSAGE,
    CompactionRecord,
    SessionEntry,
)
from branching_agent_loop.memory.store import MemoryStore
from branching_agent_loop.messages import branch_summary_message, summary_message, utc_now

_LEAF = object()


class SessionTree:
    """Append-only tree of session entries with a movable leaf pointer.

    Entries are never modified or removed; branching only moves the leaf.
    When a ``MemoryStore`` is attached every append is committed before the
    call returns.
    """

    def __init__(self, session_id: str | None = None, store: MemoryStore | None = None):
        self._session_id = session_id or str(uuid4())
        self._store = store
        self._entries: list[SessionEntry] = []
        self._by_id: dict[str, SessionEntry] = {}
        self._children: dict[str, list[str]] = {}
        self._leaf_id: str | None = None
        self._run_active = False
        self._last_seq = 0
        if store is not None:
            self._ensure_session_row()

    @classmethod
    def load(cls, store: MemoryStore, session_id: str) -> "SessionTree":
        session_row = store.execute(
            "SELECT leaf_id, format_version FROM sessions WHERE id = ? LIMIT 1",
            (session_id,),
        ).fetchone()
        if session_row is None:
            raise ValueError(f"Session does not exist: {session_id}")

        rows = store.execute(
            """
            SELECT seq, id, parent_id, type, timestamp, payload_json
            FROM entries
            WHERE session_id = ?
            ORDER BY seq ASC
            """,
            (session_id,),
        ).fetchall()

        records: list[dict[str, Any]] = []
        for row in rows:
            try:
                payload = json.loads(row["payload_json"])
            except json.JSONDecodeError:
                logger.warning(f"Skipping unreadable record {row['id']} in session {session_id}")
                continue
            records.append(
                {
                    "seq": int(row["seq"]),
                    "id": row["id"],
                    "parent_id": row["parent_id"],
                    "type": row["type"],
                    "timestamp": row["timestamp"],
                    "payload": payload if isinstance(payload, dict) else {},
                }
            )

        version = int(session_row["format_version"])
        if version != CURRENT_FORMAT_VERSION:
            migrate_records(records, version)
            with store.transaction():
                store.executemany(
                    "UPDATE entries SET parent_id = ?, payload_json = ? WHERE session_id = ? AND id = ?",
                    [
                        (r["parent_id"], json.dumps(r["payload"], ensure_ascii=True), session_id, r["id"])
                        for r in records
                    ],
                )
                store.execute(
                    "UPDATE sessions SET format_version = ? WHERE id = ?",
                    (CURRENT_FORMAT_VERSION, session_id),
                )

        tree = cls(session_id, store)
        tree._last_seq = max((int(row["seq"]) for row in rows), default=0)
        for record in records:
            tree._index(SessionEntry.from_record(record))

        leaf_id = session_row["leaf_id"]
        if leaf_id in tree._by_id:
            tree._leaf_id = leaf_id
        elif tree._entries:
            tree._leaf_id = tree._entries[-1].id
        return tree

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def leaf_id(self) -> str | None:
        return self._leaf_id

    @property
    def run_active(self) -> bool:
        return self._run_active

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, entry_id: str) -> SessionEntry:
        entry = self._by_id.get(entry_id)
        if entry is None:
            raise UnknownEntryError(f"Unknown entry: {entry_id}")
        return entry

    def children(self, entry_id: str) -> list[SessionEntry]:
        return [self._by_id[c] for c in self._children.get(entry_id, [])]

    def entries(self) -> list[SessionEntry]:
        return list(self._entries)

    def snapshot(self) -> tuple[SessionEntry, ...]:
        return tuple(self._entries)

    def labels(self) -> dict[str, str]:
        labels: dict[str, str] = {}
        for entry in self._entries:
            if entry.type != LABEL:
                continue
            target = entry.payload.get("target_id")
            label = entry.payload.get("label")
            if not isinstance(target, str):
                continue
            if label:
                labels[target] = str(label)
            else:
                labels.pop(target, None)
        return labels

    # -- writes -------------------------------------------------------------

    def append(self, entry_type: str, payload: dict[str, Any], parent_id: Any = _LEAF) -> str:
        parent = self._leaf_id if parent_id is _LEAF else parent_id
        if parent is None and self._entries:
            raise UnknownEntryError("Session already has a root entry; a parent id is required")
        if parent is not None and parent not in self._by_id:
            raise UnknownEntryError(f"Parent entry does not exist: {parent}")

        entry = SessionEntry(
            id=self._new_id(),
            parent_id=parent,
            timestamp=utc_now(),
            type=entry_type,
            payload=payload,
        )
        self._index(entry)
        self._leaf_id = entry.id
        self._persist(entry)
        return entry.id

    def append_message(self, message: dict) -> str:
        return self.append(MESSAGE, {"message": message})

    def append_compaction(self, record: CompactionRecord) -> str:
        return self.append(COMPACTION, record.to_payload())

    def append_branch_marker(self, from_id: str | None, summary: str | None = None) -> str:
        self._check_idle("append a branch marker")
        return self.append(BRANCH_MARKER, {"from_id": from_id, "summary": summary})

    def append_label(self, target_id: str, label: str | None) -> str:
        self._check_idle("label an entry")
        self.get(target_id)
        return self.append(LABEL, {"target_id": target_id, "label": label})

    def append_custom(self, custom_type: str, data: Any = None) -> str:
        self._check_idle("append a custom entry")
        return self.append(CUSTOM, {"custom_type": custom_type, "data": data})

    def set_leaf(self, entry_id: str) -> None:
        self._check_idle("move the leaf")
        self.get(entry_id)
        self._leaf_id = entry_id
        self._persist_leaf()

    def branch(self, entry_id: str, summary: str | None = None) -> str:
        """Continue from ``entry_id``; with a summary, record the abandoned branch."""
        abandoned = self._leaf_id
        self.set_leaf(entry_id)
        if summary:
            return self.append_branch_marker(abandoned, summary)
        return entry_id

    @contextmanager
    def run_guard(self) -> Iterator[None]:
        if self._run_active:
            raise SessionBusyError(f"Session {self._session_id} already has an active run")
        self._run_active = True
        try:
            yield
        finally:
            self._run_active = False

    # -- reads --------------------------------------------------------------

    def path_to_leaf(self, leaf_id: str | None = None) -> list[SessionEntry]:
        target = leaf_id if leaf_id is not None else self._leaf_id
        if target is None:
            return []
        path: list[SessionEntry] = []
        seen: set[str] = set()
        current = self.get(target)
        while current is not None:
            if current.id in seen:
                raise UnknownEntryError(f"Cycle detected at entry {current.id}")
            seen.add(current.id)
            path.append(current)
            current = self._by_id.get(current.parent_id) if current.parent_id else None
        path.reverse()
        return path

    def build_messages(self, leaf_id: str | None = None) -> list[dict]:
        path = self.path_to_leaf(leaf_id)
        compaction_index = latest_compaction_index(path)
        if compaction_index is None:
            return [m for entry in path for m in materialize_entry(entry)]

        compaction = path[compaction_index]
        record = CompactionRecord.from_entry(compaction)
        messages = [summary_message(record.summary, compaction.timestamp)]

        keeping = False
        for entry in path[:compaction_index]:
            if entry.id == record.first_kept_entry_id:
                keeping = True
            if keeping:
                messages.extend(materialize_entry(entry))
        for entry in path[compaction_index + 1:]:
            messages.extend(materialize_entry(entry))
        return messages

    # -- internals ----------------------------------------------------------

    def _check_idle(self, action: str) -> None:
        if self._run_active:
            raise SessionBusyError(f"Cannot {action} while a run is active on session {self._session_id}")

    def _new_id(self) -> str:
        while True:
            candidate = uuid4().hex[:12]
            if candidate not in self._by_id:
                return candidate

    def _index(self, entry: SessionEntry) -> None:
        if entry.id in self._by_id:
            raise UnknownEntryError(f"Duplicate entry id: {entry.id}")
        self._entries.append(entry)
        self._by_id[entry.id] = entry
        if entry.parent_id is not None:
            self._children.setdefault(entry.parent_id, []).append(entry.id)

    def _ensure_session_row(self) -> None:
        assert self._store is not None
        now = utc_now()
        self._store.execute(
            """
            INSERT OR IGNORE INTO sessions (id, created_at, updated_at, format_version)
            VALUES (?, ?, ?, ?)
            """,
            (self._session_id, now, now, CURRENT_FORMAT_VERSION),
        )
        self._store.commit()

    def _persist(self, entry: SessionEntry) -> None:
        if self._store is None:
            return
        self._last_seq += 1
        with self._store.transaction():
            self._store.execute(
                """
                INSERT INTO entries (session_id, seq, id, parent_id, type, timestamp, payload_json)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    self._session_id,
                    self._last_seq,
                    entry.id,
                    entry.parent_id,
                    entry.type,
                    entry.timestamp,
                    json.dumps(entry.payload, ensure_ascii=True, default=str),
                ),
            )
            self._store.execute(
                "UPDATE sessions SET leaf_id = ?, updated_at = ? WHERE id = ?",
                (self._leaf_id, entry.timestamp, self._session_id),
            )

    def _persist_leaf(self) -> None:
        if self._store is None:
            return
        self._store.execute(
            "UPDATE sessions SET leaf_id = ?, updated_at = ? WHERE id = ?",
            (self._leaf_id, utc_now(), self._session_id),
        )
        self._store.commit()


def latest_compaction_index(path: list[SessionEntry]) -> int | None:
    for index in range(len(path) - 1, -1, -1):
        if path[index].type == COMPACTION:
            return index
    return None


def materialize_entry(entry: SessionEntry) -> list[dict]:
    if entry.type == MESSAGE:
        message = entry.payload.get("message")
        return [message] if isinstance(message, dict) else []
    if entry.type == BRANCH_MARKER:
        summary = entry.payload.get("summary")
        return [branch_summary_message(str(summary), entry.timestamp)] if summary else []
    return []
