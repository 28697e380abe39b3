"""Wire-level data types shared by the registry and the dispatcher."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class StreamingPolicy(str, Enum):
    PASSTHROUGH = "passthrough"
    BUFFERED = "buffered"

    @classmethod
    def from_mode(cls, mode: str) -> "StreamingPolicy":
        return cls.BUFFERED if mode == "fake" else cls.PASSTHROUGH

    @property
    def wire_mode(self) -> str:
        return "fake" if self is StreamingPolicy.BUFFERED else "real"


class EventKind(str, Enum):
    HEADER = "response_headers"
    CHUNK = "chunk"
    ERROR = "error"
    STREAM_END = "stream_close"


@dataclass(frozen=True)
class RequestDescriptor:
    id: str
    method: str
    path: str
    headers: Dict[str, str] = field(default_factory=dict)
    query: Dict[str, str] = field(default_factory=dict)
    body: Optional[str] = None
    policy: StreamingPolicy = StreamingPolicy.PASSTHROUGH

    def to_frame(self) -> str:
        frame: Dict[str, Any] = {
            "path": self.path,
            "method": self.method,
            "headers": dict(self.headers),
            "query_params": dict(self.query),
            "request_id": self.id,
            "streaming_mode": self.policy.wire_mode,
        }
        if self.body is not None:
            frame["body"] = self.body
        return json.dumps(frame, ensure_ascii=False)


@dataclass
class WorkerEvent:
    kind: EventKind
    request_id: str
    status: Optional[int] = None
    headers: Dict[str, str] = field(default_factory=dict)
    data: Optional[str] = None
    message: str = ""

    @classmethod
    def from_frame(cls, payload: dict) -> "WorkerEvent":
        """Build an event from a decoded worker frame.

        Raises ``ValueError`` for unknown event types.
        """
        kind = EventKind(payload.get("event_type"))
        status = payload.get("status")
        try:
            status = int(status) if status is not None else None
        except (TypeError, ValueError):
            status = None
        headers = payload.get("headers") or {}
        if not isinstance(headers, dict):
            headers = {}
        data = payload.get("data")
        if data is not None and not isinstance(data, str):
            data = json.dumps(data, ensure_ascii=False)
        return cls(
            kind=kind,
            request_id=str(payload.get("request_id")),
            status=status,
            headers={str(k): str(v) for k, v in headers.items()},
            data=data,
            message=str(payload.get("message") or ""),
        )

    @property
    def is_retryable_error(self) -> bool:
        return (
            self.kind is EventKind.ERROR
            and self.status is not None
            and 400 <= self.status <= 599
        )
