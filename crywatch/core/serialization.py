"""
CryWatch - History Serialization

JSON codec for the persisted history log. Date values are wrapped in a typed
envelope so they survive a round trip distinct from plain strings:

    {"__type": "Date", "value": "2024-11-30T08:15:42.123Z"}

Millisecond precision is preserved exactly; anything finer is dropped on
encode, matching the precision of the stored records.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any

from crywatch.core.types import parse_timestamp, truncate_to_millis

DATE_TYPE_TAG = "Date"


def format_date(value: datetime) -> str:
    """ISO-8601 UTC string with milliseconds and a trailing Z."""
    value = truncate_to_millis(value).astimezone(timezone.utc)
    return value.isoformat(timespec="milliseconds").replace("+00:00", "Z")


class DateEnvelopeEncoder(json.JSONEncoder):
    """JSON encoder that wraps datetimes in the Date envelope."""

    def default(self, o: Any) -> Any:
        if isinstance(o, datetime):
            return {"__type": DATE_TYPE_TAG, "value": format_date(o)}
        return super().default(o)


def _revive_dates(obj: dict) -> Any:
    if obj.get("__type") == DATE_TYPE_TAG and "value" in obj:
        return parse_timestamp(obj["value"])
    return obj


def dumps(value: Any) -> str:
    """Serialize to JSON text, enveloping datetimes."""
    return json.dumps(value, cls=DateEnvelopeEncoder, separators=(",", ":"))


def loads(text: str | bytes) -> Any:
    """Parse JSON text, reviving Date envelopes into aware datetimes."""
    return json.loads(text, object_hook=_revive_dates)
