from __future__ import annotations

import json
import re
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Any, Deque, Dict, Optional

_MODEL_IN_PATH = re.compile(r"/models/([^/:]+)")


def extract_model_name(path: str, body: Any) -> str:
    """Best-effort model name from a JSON body or a ``/models/<name>`` path."""

    if isinstance(body, (bytes, bytearray)):
        body = body.decode("utf-8", errors="replace")
    if isinstance(body, str):
        try:
            body = json.loads(body) if body else {}
        except json.JSONDecodeError:
            body = {}
    if isinstance(body, dict):
        if body.get("model"):
            return str(body["model"])
        generation = body.get("generation_config")
        if isinstance(generation, dict) and generation.get("model"):
            return str(generation["model"])
    match = _MODEL_IN_PATH.search(path or "")
    if match:
        return match.group(1)
    return "unknown_model"


@dataclass
class RequestSample:
    ts: float
    account: Optional[int]
    model: str
    policy: str
    status: int
    attempts: int
    duration_ms: float


class UsageStats:
    def __init__(self, capacity: int = 500):
        self.capacity = capacity
        self.samples: Deque[RequestSample] = deque(maxlen=capacity)
        self.start_ts = time.time()
        self.total_calls = 0
        self.account_calls: Dict[str, Dict[str, Any]] = defaultdict(
            lambda: {"total": 0, "models": defaultdict(int)}
        )

    def ensure_account(self, index: int) -> None:
        self.account_calls[str(index)]

    def record_call(self, account: Optional[int], model: str) -> None:
        self.total_calls += 1
        counters = self.account_calls[str(account)]
        counters["total"] += 1
        counters["models"][model] += 1

    def add(self, sample: RequestSample) -> None:
        self.samples.append(sample)

    def uptime(self) -> float:
        return time.time() - self.start_ts

    def summary(self) -> dict:
        accounts = {
            key: {"total": value["total"], "models": dict(value["models"])}
            for key, value in self.account_calls.items()
        }
        rolling: Dict[str, Any] = {"count": len(self.samples)}
        if self.samples:
            durations = sorted(s.duration_ms for s in self.samples)
            failures = sum(1 for s in self.samples if s.status >= 400)
            rolling.update(
                {
                    "avg_duration_ms": sum(durations) / len(durations),
                    "p95_duration_ms": durations[int(0.95 * (len(durations) - 1))],
                    "error_rate": failures / len(self.samples),
                    "retried_requests": sum(1 for s in self.samples if s.attempts > 1),
                }
            )
        return {
            "uptime_seconds": self.uptime(),
            "totalCalls": self.total_calls,
            "accountCalls": accounts,
            "rolling": rolling,
        }
