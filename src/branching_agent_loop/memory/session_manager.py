from __future__ import annotations

import json
from uuid import uuid4

from loguru import logger

from branching_agent_loop.memory.migrations import CURRENT_FORMAT_VERSION
from branching_agent_loop.memory.models import COMPACTION, MESSAGE
from branching_agent_loop.memory.session_tree import SessionTree
from branching_agent_loop.memory.store import MemoryStore
from branching_agent_loop.messages import text_of, tool_calls_of, utc_now


class SessionManager:
    def __init__(self, store: MemoryStore, model: str = ""):
        self._store = store
        self._model = model

    def get_session(self, session_id: str) -> dict | None:
        row = self._store.execute(
            "SELECT * FROM sessions WHERE id = ? LIMIT 1",
            (session_id,),
        ).fetchone()
        if row is None:
            return None
        session = dict(row)
        session["title"] = self._extract_title(session.get("metadata_json", "{}"), session["created_at"])
        return session

    def list_sessions(self, *, limit: int = 50) -> list[dict]:
        rows = self._store.execute(
            """
            SELECT id, parent_session_id, created_at, updated_at, model, leaf_id, metadata_json
            FROM sessions
            ORDER BY updated_at DESC, created_at DESC
            LIMIT ?
            """,
            (max(1, limit),),
        ).fetchall()
        results: list[dict] = []
        for row in rows:
            session = dict(row)
            session["title"] = self._extract_title(session.get("metadata_json", "{}"), session["created_at"])
            results.append(session)
        return results

    def create_session(
        self,
        session_id: str | None = None,
        *,
        parent_session_id: str | None = None,
        title: str | None = None,
        metadata: dict | None = None,
    ) -> str:
        sid = session_id or str(uuid4())
        now = utc_now()
        full_metadata = dict(metadata or {})
        if title:
            full_metadata["title"] = title.strip()
        full_metadata.setdefault("title", self._default_title(now))
        self._store.execute(
            """
            INSERT INTO sessions (id, parent_session_id, created_at, updated_at, model, leaf_id, format_version, metadata_json)
            VALUES (?, ?, ?, ?, ?, NULL, ?, ?)
            """,
            (
                sid,
                parent_session_id,
                now,
                now,
                self._model,
                CURRENT_FORMAT_VERSION,
                json.dumps(full_metadata, ensure_ascii=True),
            ),
        )
        self._store.commit()
        logger.info(f"Session created: {sid} (parent={parent_session_id or '-'})")
        return sid

    def set_session_title(self, session_id: str, title: str) -> None:
        row = self._store.execute(
            "SELECT metadata_json FROM sessions WHERE id = ? LIMIT 1",
            (session_id,),
        ).fetchone()
        if row is None:
            raise ValueError(f"Session does not exist: {session_id}")

        metadata = self._parse_metadata(row["metadata_json"])
        metadata["title"] = title.strip()
        self._store.execute(
            "UPDATE sessions SET metadata_json = ?, updated_at = ? WHERE id = ?",
            (json.dumps(metadata, ensure_ascii=True), utc_now(), session_id),
        )
        self._store.commit()

    def load_or_create(self, session_id: str) -> str:
        if self.get_session(session_id) is not None:
            return session_id
        return self.create_session(session_id)

    def resolve_session_identifier(self, identifier: str) -> dict | None:
        target = identifier.strip()
        if not target:
            return None
        by_id = self.get_session(target)
        if by_id is not None:
            return by_id

        rows = self._store.execute("SELECT id FROM sessions").fetchall()
        matches: list[dict] = []
        for row in rows:
            session = self.get_session(str(row["id"]))
            if session is not None and session["title"].lower() == target.lower():
                matches.append(session)
        if len(matches) > 1:
            ids = ", ".join(m["id"] for m in matches)
            raise ValueError(f"Session name is ambiguous: {identifier!r} matches {ids}")
        return matches[0] if matches else None

    def open_tree(self, session_id: str) -> SessionTree:
        return SessionTree.load(self._store, session_id)

    def fork_session(
        self,
        source_session_id: str,
        new_session_id: str | None = None,
        *,
        from_entry_id: str | None = None,
    ) -> str:
        """Copy the root-to-entry path of a session into a new session.

        Without ``from_entry_id`` the source's current leaf is used. Entry ids
        are preserved so compaction boundaries keep pointing at the right
        entries.
        """
        source = self.get_session(source_session_id)
        if source is None:
            raise ValueError(f"Session does not exist: {source_session_id}")

        source_tree = self.open_tree(source_session_id)
        path = source_tree.path_to_leaf(from_entry_id)

        source_title = source.get("title") or source_session_id
        now = utc_now()
        fork_id = self.create_session(
            new_session_id,
            parent_session_id=source_session_id,
            metadata={
                "forked_from": source_session_id,
                "forked_at_entry": path[-1].id if path else None,
                "title": f"Fork of {source_title} ({now[:16].replace('T', ' ')})",
            },
        )

        if path:
            with self._store.transaction():
                self._store.executemany(
                    """
                    INSERT INTO entries (session_id, seq, id, parent_id, type, timestamp, payload_json)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    [
                        (
                            fork_id,
                            seq,
                            entry.id,
                            entry.parent_id,
                            entry.type,
                            entry.timestamp,
                            json.dumps(entry.payload, ensure_ascii=True, default=str),
                        )
                        for seq, entry in enumerate(path, start=1)
                    ],
                )
                self._store.execute(
                    "UPDATE sessions SET leaf_id = ? WHERE id = ?",
                    (path[-1].id, fork_id),
                )
        return fork_id

    def build_session_summary(self, session_id: str) -> dict:
        session = self.get_session(session_id)
        if session is None:
            raise ValueError(f"Session does not exist: {session_id}")

        tree = self.open_tree(session_id)
        path = tree.path_to_leaf()

        user_count = 0
        assistant_count = 0
        tool_call_count = 0
        compaction_count = 0
        last_user_preview = ""
        last_assistant_preview = ""

        for entry in path:
            if entry.type == COMPACTION:
                compaction_count += 1
                continue
            if entry.type != MESSAGE or entry.message is None:
                continue
            message = entry.message
            role = message.get("role")
            if role == "user":
                user_count += 1
                last_user_preview = self._preview(text_of(message))
            elif role == "assistant":
                assistant_count += 1
                tool_call_count += len(tool_calls_of(message))
                last_assistant_preview = self._preview(text_of(message))

        return {
            "session_id": session_id,
            "title": session.get("title", session_id),
            "created_at": session["created_at"],
            "updated_at": session["updated_at"],
            "entry_count": len(tree),
            "path_length": len(path),
            "user_message_count": user_count,
            "assistant_message_count": assistant_count,
            "tool_call_count": tool_call_count,
            "compaction_count": compaction_count,
            "last_user_preview": last_user_preview,
            "last_assistant_preview": last_assistant_preview,
        }

    def _default_title(self, iso_timestamp: str) -> str:
        return f"Session {iso_timestamp[:16].replace('T', ' ')}"

    def _extract_title(self, metadata_json: str, created_at: str) -> str:
        metadata = self._parse_metadata(metadata_json)
        title = metadata.get("title")
        if isinstance(title, str) and title.strip():
            return title.strip()
        return self._default_title(created_at)

    def _parse_metadata(self, metadata_json: str) -> dict:
        try:
            parsed = json.loads(metadata_json)
        except (TypeError, json.JSONDecodeError):
            return {}
        return parsed if isinstance(parsed, dict) else {}

    def _preview(self, text: str, max_chars: int = 140) -> str:
        text = " ".join(text.split())
        if len(text) <= max_chars:
            return text
        return text[: max_chars - 3] + "..."
