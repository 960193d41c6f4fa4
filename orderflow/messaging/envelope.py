from __future__ import annotations

import json
import os
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional, Sequence

ENVELOPE_SCHEMA_VERSION = 1
ORDER_PROGRESS_EVENT = "order.progress"


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _default_git_sha() -> str:
    return os.getenv("GIT_SHA") or os.getenv("GITHUB_SHA") or os.getenv("COMMIT_SHA") or "unknown"


def _require_str(data: Mapping[str, Any], keys: Sequence[str], *, field_name: str) -> str:
    for k in keys:
        if k in data and data.get(k) is not None:
            s = str(data.get(k)).strip()
            if s:
                return s
    raise ValueError(f"Missing required field: {field_name}")


@dataclass(frozen=True, slots=True)
class EventEnvelope:
    """
    JSON wire envelope for bus messages.

      - schemaVersion: envelope contract version (1)
      - event_type: e.g. "order.progress"
      - producer: logical name of the publishing service
      - ts: ISO-8601 UTC production time (receivers use it to drop backlog)
      - payload: JSON object (for order.progress: the progress event dict)
      - trace_id: correlation id
    """

    schemaVersion: int
    event_type: str
    producer: str
    git_sha: str
    ts: str
    payload: Dict[str, Any] = field(default_factory=dict)
    trace_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @staticmethod
    def new(
        *,
        event_type: str,
        producer: str,
        payload: Optional[Mapping[str, Any]] = None,
        trace_id: Optional[str] = None,
        ts: Optional[str] = None,
    ) -> "EventEnvelope":
        return EventEnvelope(
            schemaVersion=ENVELOPE_SCHEMA_VERSION,
            event_type=str(event_type),
            producer=str(producer),
            git_sha=_default_git_sha(),
            ts=str(ts or _utc_now_iso()),
            payload=dict(payload or {}),
            trace_id=str(trace_id or uuid.uuid4().hex),
        )

    @property
    def produced_at(self) -> datetime:
        s = self.ts[:-1] + "+00:00" if self.ts.endswith("Z") else self.ts
        dt = datetime.fromisoformat(s)
        return dt if dt.tzinfo is not None else dt.replace(tzinfo=timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "schemaVersion": int(self.schemaVersion),
            "event_type": self.event_type,
            "producer": self.producer,
            "git_sha": self.git_sha,
            "ts": self.ts,
            "payload": self.payload,
            "trace_id": self.trace_id,
        }

    def to_bytes(self) -> bytes:
        return json.dumps(self.to_dict(), separators=(",", ":"), ensure_ascii=False).encode("utf-8")

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> "EventEnvelope":
        raw_version = data.get("schemaVersion", data.get("schema_version"))
        if raw_version is None:
            raise ValueError("Missing required field: schemaVersion")
        try:
            version = int(raw_version)
        except (TypeError, ValueError) as e:
            raise ValueError("Invalid integer for field: schemaVersion") from e
        if version != ENVELOPE_SCHEMA_VERSION:
            raise ValueError(f"Unsupported schemaVersion for EventEnvelope: {version}")
        payload = data.get("payload") or {}
        if not isinstance(payload, dict):
            raise ValueError("EventEnvelope payload must be an object")
        return EventEnvelope(
            schemaVersion=version,
            event_type=_require_str(data, ("event_type", "eventType"), field_name="event_type"),
            producer=_require_str(data, ("producer", "agent_name"), field_name="producer"),
            git_sha=str(data.get("git_sha") or "unknown"),
            ts=_require_str(data, ("ts", "producedAt"), field_name="ts"),
            payload=dict(payload),
            trace_id=_require_str(data, ("trace_id", "traceId"), field_name="trace_id"),
        )

    @staticmethod
    def from_bytes(data: bytes) -> "EventEnvelope":
        decoded = json.loads(data.decode("utf-8"))
        if not isinstance(decoded, dict):
            raise ValueError("EventEnvelope JSON must decode to an object")
        return EventEnvelope.from_dict(decoded)
