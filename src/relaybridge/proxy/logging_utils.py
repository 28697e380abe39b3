from __future__ import annotations

import json
import logging
import os
import time
from pathlib import Path
from typing import Any, Dict

logger = logging.getLogger(__name__)


class JsonlLogger:
    """One JSON object per completed request, rotated by size.

    Rotated files are renamed ``<path>.<YYYYmmdd-HHMMSS>``; only the newest
    ``keep_rotated`` of them are kept.
    """

    def __init__(self, path: str, max_bytes: int = 25_000_000, keep_rotated: int = 5):
        self.path = Path(path).expanduser()
        self.max_bytes = max_bytes
        self.keep_rotated = keep_rotated
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            logger.warning("[request-log] Cannot create %s: %s", self.path.parent, exc)

    def rotated_files(self) -> list[Path]:
        return sorted(self.path.parent.glob(f"{self.path.name}.*"))

    def _rotate_if_needed(self) -> None:
        try:
            if not self.path.exists() or self.path.stat().st_size <= self.max_bytes:
                return
            target = self.path.with_name(
                f"{self.path.name}.{time.strftime('%Y%m%d-%H%M%S')}"
            )
            os.replace(self.path, target)
            for stale in self.rotated_files()[: -self.keep_rotated or None]:
                stale.unlink()
        except OSError as exc:
            logger.warning("[request-log] Rotation failed: %s", exc)

    def log(self, record: Dict[str, Any]) -> None:
        self._rotate_if_needed()
        try:
            with self.path.open("a", encoding="utf-8") as fh:
                fh.write(json.dumps(record, ensure_ascii=False) + "\n")
        except OSError as exc:
            logger.warning("[request-log] Write failed: %s", exc)
