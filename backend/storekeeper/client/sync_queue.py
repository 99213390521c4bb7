# Overview: Client-side queue of offline mutations, persisted as a JSON file.

"""
Client-tracked sync items.

State machine (mirrors the server queue):
    PENDING -> PROCESSING -> removed on success
                          -> FAILED with attempts + 1
    FAILED -> PENDING      (retry_failed, only while attempts < max_attempts)

Items that reach max_attempts stay FAILED until cleared by hand.
"""

from __future__ import annotations

import json
import os
import tempfile
import uuid
from dataclasses import asdict, dataclass, field
from pathlib import Path

from ..time_utils import to_utc_z, utcnow

PENDING = "PENDING"
PROCESSING = "PROCESSING"
FAILED = "FAILED"
ACTIONS = ("CREATE", "UPDATE", "DELETE")


@dataclass
class SyncItem:
    action: str
    table_name: str
    record_id: str
    data: dict = field(default_factory=dict)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    timestamp: str = field(default_factory=lambda: to_utc_z(utcnow(), precise=True))
    status: str = PENDING
    attempts: int = 0
    max_attempts: int = 3
    error: str | None = None

    def to_push_payload(self) -> dict:
        return {
            "id": self.id,
            "action": self.action,
            "table_name": self.table_name,
            "record_id": self.record_id,
            "data": self.data,
            "timestamp": self.timestamp,
        }

    @property
    def is_stuck(self) -> bool:
        return self.status == FAILED and self.attempts >= self.max_attempts


class SyncQueue:
    """
    Ordered list of SyncItems plus the last pull cursor.

    With a path, every change is written through to disk atomically
    (temp file + os.replace). Without one the queue lives in memory.
    """

    def __init__(self, path: str | os.PathLike | None = None, *, max_attempts: int = 3):
        self.path = Path(path) if path else None
        self.max_attempts = max_attempts
        self.items: list[SyncItem] = []
        self.last_sync_timestamp: str | None = None
        if self.path and self.path.exists():
            self._load()

    def _load(self) -> None:
        with self.path.open("r", encoding="utf-8") as fh:
            raw = json.load(fh)
        self.items = [SyncItem(**item) for item in raw.get("items", [])]
        self.last_sync_timestamp = raw.get("last_sync_timestamp")
        # A crash mid-push leaves PROCESSING items behind; they were never acknowledged
        for item in self.items:
            if item.status == PROCESSING:
                item.status = PENDING

    def save(self) -> None:
        if not self.path:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = {
            "items": [asdict(item) for item in self.items],
            "last_sync_timestamp": self.last_sync_timestamp,
        }
        fd, tmp = tempfile.mkstemp(dir=str(self.path.parent), prefix=".sync-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(payload, fh, indent=2)
            os.replace(tmp, self.path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    def enqueue(self, action: str, table_name: str, record_id: str, data: dict | None = None) -> SyncItem:
        if action not in ACTIONS:
            raise ValueError(f"action must be one of {', '.join(ACTIONS)}")
        item = SyncItem(
            action=action,
            table_name=table_name,
            record_id=str(record_id),
            data=dict(data or {}),
            max_attempts=self.max_attempts,
        )
        self.items.append(item)
        self.save()
        return item

    def pending(self) -> list[SyncItem]:
        return [i for i in self.items if i.status == PENDING]

    def failed(self) -> list[SyncItem]:
        return [i for i in self.items if i.status == FAILED]

    def mark_processing(self, items: list[SyncItem]) -> None:
        for item in items:
            item.status = PROCESSING
        self.save()

    def mark_completed(self, item: SyncItem) -> None:
        self.items = [i for i in self.items if i.id != item.id]

    def mark_failed(self, item: SyncItem, error: str) -> None:
        item.status = FAILED
        item.attempts += 1
        item.error = error

    def reopen_failed(self) -> list[SyncItem]:
        """Move FAILED items below max_attempts back to PENDING."""
        reopened = []
        for item in self.items:
            if item.status == FAILED and item.attempts < item.max_attempts:
                item.status = PENDING
                item.error = None
                reopened.append(item)
        self.save()
        return reopened

    def clear(self) -> None:
        self.items = []
        self.save()

    def status(self) -> dict:
        return {
            "pending_count": len(self.pending()),
            "failed_count": len(self.failed()),
            "stuck_count": sum(1 for i in self.items if i.is_stuck),
            "last_sync_timestamp": self.last_sync_timestamp,
        }
