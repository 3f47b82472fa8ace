# Overview: JSON provider that renders datetimes as UTC 'Z' strings and sync objects as plain dicts.

from datetime import date, datetime
from enum import Enum

from flask.json.provider import DefaultJSONProvider

from .services.conflicts import ConflictRecord, Resolution
from .services.store import Snapshot
from .time_utils import to_utc_z


def snapshot_to_dict(snapshot: Snapshot) -> dict:
    return {
        "items": snapshot.items,
        "changes": snapshot.changes,
        "origin": snapshot.origin.value,
        "metadata": snapshot.metadata,
    }


class BillsyncJSONProvider(DefaultJSONProvider):
    sort_keys = False

    @staticmethod
    def default(o):
        if isinstance(o, datetime):
            return to_utc_z(o)
        if isinstance(o, date):
            return o.isoformat()
        if isinstance(o, (ConflictRecord, Resolution)):
            return o.to_dict()
        if isinstance(o, Snapshot):
            return snapshot_to_dict(o)
        if isinstance(o, Enum):
            return o.value
        return DefaultJSONProvider.default(o)
