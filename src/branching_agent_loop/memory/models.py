from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

MESSAGE = "message"
COMPACTION = "compaction"
BRANCH_MARKER = "branch_marker"
LABEL = "label"
CUSTOM = "custom"

ENTRY_TYPES = (MESSAGE, COMPACTION, BRANCH_MARKER, LABEL, CUSTOM)


@dataclass(frozen=True)
class SessionEntry:
    id: str
    parent_id: str | None
    timestamp: str
    type: str
    payload: dict[str, Any] = field(default_factory=dict)

    @property
    def message(self) -> dict | None:
        if self.type != MESSAGE:
            return None
        return self.payload.get("message")

    def to_record(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "id": self.id,
            "parent_id": self.parent_id,
            "timestamp": self.timestamp,
            "payload": self.payload,
        }

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "SessionEntry":
        return cls(
            id=str(record["id"]),
            parent_id=record.get("parent_id"),
            timestamp=str(record.get("timestamp", "")),
            type=str(record.get("type", "")),
            payload=dict(record.get("payload") or {}),
        )


@dataclass(frozen=True)
class CompactionRecord:
    summary: str
    first_kept_entry_id: str
    tokens_before: int
    tokens_after: int
    details: dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        return {
            "summary": self.summary,
            "first_kept_entry_id": self.first_kept_entry_id,
            "tokens_before": self.tokens_before,
            "tokens_after": self.tokens_after,
            "details": self.details,
        }

    @classmethod
    def from_entry(cls, entry: SessionEntry) -> "CompactionRecord":
        payload = entry.payload
        return cls(
            summary=str(payload.get("summary", "")),
            first_kept_entry_id=str(payload.get("first_kept_entry_id", "")),
            tokens_before=int(payload.get("tokens_before") or 0),
            tokens_after=int(payload.get("tokens_after") or 0),
            details=dict(payload.get("details") or {}),
        )
