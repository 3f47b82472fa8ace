# Overview: Last-write-wins conflict resolution between pending local edits and server snapshots, plus the conflict queue.

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from ..time_utils import coerce_datetime, to_utc_z, utcnow
from ..validation import parse_number

LOCAL_WINS = "local-wins"
SERVER_WINS = "server-wins"
SERVER_WINS_ERROR = "server-wins-error"

# Fields that differ between a local edit and its server echo without being a disagreement
BOOKKEEPING_FIELDS = frozenset({"updated_at", "created_at", "_metadata", "_optimistic"})


@dataclass(frozen=True)
class Resolution:
    resolved: Any
    conflict: bool
    resolution: str
    message: str

    def to_dict(self) -> dict:
        return {
            "resolved": self.resolved,
            "conflict": self.conflict,
            "resolution": self.resolution,
            "message": self.message,
        }


class ConflictResolver:
    """
    Decides between a locally pending version and a server-confirmed version.

    Rule: the strictly newer updated_at wins; a tie goes to the server. If the
    server already reflects every local field, the snapshot is a confirmation
    and no conflict is reported. Any failure while comparing falls back to the
    server copy.
    """

    def resolve(self, local: dict, server: dict) -> Resolution:
        try:
            if self._agrees(local, server):
                return Resolution(server, False, SERVER_WINS, "Server confirmed local changes.")

            local_ts = coerce_datetime(local.get("updated_at"))
            server_ts = coerce_datetime(server.get("updated_at"))
            if local_ts > server_ts:
                return Resolution(local, True, LOCAL_WINS, "Your local changes were kept as they are more recent.")
            return Resolution(server, True, SERVER_WINS, "Server changes were applied as they are more recent.")
        except Exception:
            return Resolution(
                server,
                True,
                SERVER_WINS_ERROR,
                "Server changes were applied due to conflict resolution error.",
            )

    @classmethod
    def _agrees(cls, local: dict, server: dict) -> bool:
        for key, value in local.items():
            if key in BOOKKEEPING_FIELDS:
                continue
            if not cls._same(value, server.get(key)):
                return False
        return True

    @staticmethod
    def _same(local_value, server_value) -> bool:
        """
        Compare a raw local value with its stored form.

        The services strip strings, store ISO dates as datetimes and numbers
        as floats, so an exact echo can differ in representation only.
        """
        if local_value == server_value:
            return True
        if isinstance(local_value, str) and isinstance(server_value, str):
            return local_value.strip() == server_value.strip()
        if isinstance(server_value, datetime):
            try:
                return coerce_datetime(local_value) == server_value
            except (TypeError, ValueError, OverflowError, OSError):
                return False
        if isinstance(server_value, (int, float)) and not isinstance(server_value, bool):
            parsed = parse_number(local_value)
            return parsed is not None and parsed == server_value
        return False


@dataclass
class ConflictRecord:
    timestamp: datetime
    resolution: Resolution
    kind: str | None = None
    entity_id: str | None = None
    acknowledged: bool = False

    def to_dict(self) -> dict:
        return {
            "timestamp": to_utc_z(self.timestamp),
            "kind": self.kind,
            "entity_id": self.entity_id,
            "resolution": self.resolution.to_dict(),
            "acknowledged": self.acknowledged,
        }


@dataclass
class ConflictQueue:
    """Append-only until clear_acknowledged() compacts it."""
    _records: list = field(default_factory=list)
    _lock: threading.RLock = field(default_factory=threading.RLock)

    def append(self, resolution: Resolution, kind: str | None = None, entity_id: str | None = None) -> ConflictRecord:
        record = ConflictRecord(utcnow(), resolution, kind, entity_id)
        with self._lock:
            self._records.append(record)
        return record

    def all(self) -> list[ConflictRecord]:
        with self._lock:
            return list(self._records)

    def pending(self) -> list[ConflictRecord]:
        with self._lock:
            return [r for r in self._records if not r.acknowledged]

    def acknowledge(self, index: int) -> bool:
        """Flag the record at `index` of the full queue; out-of-range is a no-op."""
        with self._lock:
            if 0 <= index < len(self._records):
                self._records[index].acknowledged = True
                return True
            return False

    def clear_acknowledged(self) -> int:
        with self._lock:
            before = len(self._records)
            self._records = [r for r in self._records if not r.acknowledged]
            return before - len(self._records)

    def clear(self) -> None:
        with self._lock:
            self._records.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)
