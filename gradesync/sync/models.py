"""Data types exchanged between sync clients and the server."""

import math
import time
from dataclasses import dataclass, field
from typing import Any

from .errors import ValidationError

UPSERT = "upsert"
DELETE = "delete"
CHANGE_TYPES = (UPSERT, DELETE)

# SQLite INTEGER range
INT64_MIN = -(2**63)
INT64_MAX = 2**63 - 1


def now_ms() -> int:
    """Current wall-clock time in milliseconds."""
    return int(time.time() * 1000)


def _coerce_int(value: Any, name: str, default: int, minimum: int = INT64_MIN) -> int:
    """Coerce a JSON number (or numeric string) to int.

    Missing, null, zero and empty values fall back to ``default``. The
    result must lie in ``[minimum, INT64_MAX]``.
    """
    if value is None or value == "" or value == 0:
        return default
    if isinstance(value, bool):
        raise ValidationError(f"{name} must be a number")
    if isinstance(value, str):
        try:
            value = float(value.strip())
        except ValueError:
            raise ValidationError(f"{name} must be a number") from None
    if not isinstance(value, (int, float)) or not math.isfinite(value):
        raise ValidationError(f"{name} must be a finite number")
    number = int(value)
    if not minimum <= number <= INT64_MAX:
        raise ValidationError(f"{name} out of range: {value!r}")
    return number


@dataclass
class ChangeRecord:
    """A single client-originated mutation submitted for synchronization."""

    id: str
    type: str = UPSERT
    doc: dict[str, Any] | None = None
    version: int = 1
    client_id: str = "client"
    timestamp: int = field(default_factory=now_ms)

    def validate(self) -> None:
        """Raise ValidationError if the change cannot be applied."""
        if not isinstance(self.id, str) or not self.id.strip():
            raise ValidationError("Change id must be a non-empty string")
        if self.type not in CHANGE_TYPES:
            raise ValidationError(f"Unknown change type: {self.type!r}")
        if self.type == UPSERT and not isinstance(self.doc, dict):
            raise ValidationError("Upsert change requires a doc object")
        if not 0 <= self.timestamp <= INT64_MAX:
            raise ValidationError(f"timestamp out of range: {self.timestamp!r}")
        if not INT64_MIN <= self.version <= INT64_MAX:
            raise ValidationError(f"version out of range: {self.version!r}")

    @property
    def url(self) -> str | None:
        if self.doc and isinstance(self.doc.get("url"), str):
            return self.doc["url"]
        return None

    def to_dict(self) -> dict[str, Any]:
        """Convert to the wire format used by /sync/push."""
        data: dict[str, Any] = {
            "id": self.id,
            "type": self.type,
            "version": self.version,
            "clientId": self.client_id,
            "timestamp": self.timestamp,
        }
        if self.doc is not None:
            data["doc"] = self.doc
        return data

    @classmethod
    def from_dict(cls, data: Any) -> "ChangeRecord":
        """Build a change from a loosely-typed JSON object.

        Coercion rules: ``id`` is stringified, ``type`` defaults to upsert,
        ``version`` defaults to 1, ``clientId`` defaults to "client" and
        ``timestamp`` defaults to the current time. Anything else that does
        not fit raises ValidationError.
        """
        if not isinstance(data, dict):
            raise ValidationError("Change must be an object")

        raw_id = data.get("id")
        change_id = "" if raw_id is None else str(raw_id)

        doc = data.get("doc")
        if doc is not None and not isinstance(doc, dict):
            raise ValidationError("doc must be an object")

        change = cls(
            id=change_id,
            type=str(data.get("type") or UPSERT),
            doc=doc,
            version=_coerce_int(data.get("version"), "version", 1),
            client_id=str(data.get("clientId") or "client"),
            timestamp=_coerce_int(
                data.get("timestamp"), "timestamp", now_ms(), minimum=0
            ),
        )
        change.validate()
        return change


@dataclass
class ChangeLogEntry:
    """A durable record of an applied change."""

    ts: int
    id: str
    type: str
    url: str | None = None
    client_id: str | None = None
    version: int | None = None
    seq: int | None = None  # assigned by the store on append

    def to_item(self) -> "MergedSyncItem":
        return MergedSyncItem(ts=self.ts, id=self.id, type=self.type, url=self.url)


@dataclass
class MergedSyncItem:
    """The unit returned to a client by /sync/pull."""

    ts: int
    id: str
    type: str
    url: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"ts": self.ts, "id": self.id, "type": self.type}
        if self.url is not None:
            data["url"] = self.url
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MergedSyncItem":
        return cls(
            ts=int(data["ts"]),
            id=str(data["id"]),
            type=data.get("type", UPSERT),
            url=data.get("url"),
        )
