"""Forward migrations for persisted session records.

Records are dicts shaped like ``SessionEntry.to_record()``. Version 1 logs
were a linear message log: no ``parent_id`` links, and compaction records
pointed at the first kept entry by sequence number (``first_kept_seq``).
"""

from __future__ import annotations

from typing import Any, Callable

from loguru import logger

CURRENT_FORMAT_VERSION = 2


def _migrate_v1_to_v2(records: list[dict[str, Any]]) -> None:
    seq_to_id: dict[int, str] = {}
    for index, record in enumerate(records):
        seq_to_id[int(record.get("seq", index + 1))] = record["id"]

    previous_id: str | None = None
    for record in records:
        record["parent_id"] = previous_id
        previous_id = record["id"]

        if record.get("type") == "compaction":
            payload = record.setdefault("payload", {})
            seq = payload.pop("first_kept_seq", None)
            if isinstance(seq, int) and seq in seq_to_id:
                payload["first_kept_entry_id"] = seq_to_id[seq]


_MIGRATIONS: dict[int, Callable[[list[dict[str, Any]]], None]] = {
    1: _migrate_v1_to_v2,
}


def migrate_records(records: list[dict[str, Any]], version: int) -> int:
    """Upgrade ``records`` in place and return the resulting format version."""
    if version > CURRENT_FORMAT_VERSION:
        raise ValueError(
            f"Session format version {version} is newer than supported version {CURRENT_FORMAT_VERSION}"
        )
    while version < CURRENT_FORMAT_VERSION:
        step = _MIGRATIONS[version]
        step(records)
        logger.info(f"Migrated {len(records)} session records from format v{version} to v{version + 1}")
        version += 1
    return version
