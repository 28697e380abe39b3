"""Credential source: permanent accounts from env/files plus runtime extras."""

from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from .errors import CredentialError, CredentialNotFound

logger = logging.getLogger(__name__)

ENV_PATTERN = re.compile(r"^AUTH_JSON_(\d+)$")
FILE_PATTERN = re.compile(r"^auth-(\d+)\.json$")


class CredentialOrigin(str, Enum):
    PERMANENT = "permanent"
    TRANSIENT = "transient"


@dataclass
class CredentialRecord:
    index: int
    origin: CredentialOrigin
    payload: Dict[str, Any]


class CredentialSource:
    """Ordered set of account indices with round-robin selection.

    Permanent indices are discovered once at construction from ``AUTH_JSON_<n>``
    environment variables (when ``AUTH_JSON_1`` is set) or from
    ``auth-<n>.json`` files in ``credential_dir``. Payloads are read lazily so
    that an edited file is picked up by the next rotation. Transient entries
    live in memory only.
    """

    def __init__(
        self,
        credential_dir: str | Path = "auth",
        *,
        environ: Optional[Mapping[str, str]] = None,
        permanent: Optional[Mapping[int, Dict[str, Any]]] = None,
        require_any: bool = True,
    ):
        self._environ = os.environ if environ is None else environ
        self._dir = Path(credential_dir).expanduser()
        self._static: Dict[int, Dict[str, Any]] = {}
        self._transient: Dict[int, Dict[str, Any]] = {}

        if permanent is not None:
            self.mode = "memory"
            self._static = {int(k): dict(v) for k, v in permanent.items()}
            self._permanent = sorted(self._static)
        elif self._environ.get("AUTH_JSON_1"):
            self.mode = "env"
            logger.info("[credentials] AUTH_JSON_1 detected, using environment mode")
            self._permanent = self._discover_env()
        else:
            self.mode = "file"
            logger.info("[credentials] Using credential files under %s", self._dir)
            self._permanent = self._discover_files()

        logger.info(
            "[credentials] %d permanent credential(s) in %s mode: %s",
            len(self._permanent),
            self.mode,
            self._permanent,
        )
        if require_any and not self._permanent:
            raise CredentialError(f"No credentials found in '{self.mode}' mode")

    def _discover_env(self) -> List[int]:
        indices = set()
        for key in self._environ:
            match = ENV_PATTERN.match(key)
            if match:
                indices.add(int(match.group(1)))
        return sorted(indices)

    def _discover_files(self) -> List[int]:
        if not self._dir.is_dir():
            logger.warning("[credentials] Credential directory %s missing", self._dir)
            return []
        indices = set()
        try:
            for path in self._dir.iterdir():
                match = FILE_PATTERN.match(path.name)
                if match:
                    indices.add(int(match.group(1)))
        except OSError as exc:
            logger.error("[credentials] Failed to scan %s: %s", self._dir, exc)
            return []
        return sorted(indices)

    # -- selection ----------------------------------------------------------

    @property
    def permanent_indices(self) -> List[int]:
        return list(self._permanent)

    def available_indices(self) -> List[int]:
        return sorted(set(self._permanent) | set(self._transient))

    def first_available(self) -> Optional[int]:
        indices = self.available_indices()
        return indices[0] if indices else None

    def next_after(self, current: Optional[int]) -> Optional[int]:
        available = self.available_indices()
        if not available:
            return None
        if current not in available:
            if current is not None:
                logger.warning(
                    "[credentials] Current index %s not available, using first (%s)",
                    current,
                    available[0],
                )
            return available[0]
        position = available.index(current)
        return available[(position + 1) % len(available)]

    def account_details(self) -> List[dict]:
        return [
            {
                "index": index,
                "source": "temporary" if index in self._transient else self.mode,
            }
            for index in self.available_indices()
        ]

    # -- mutation -----------------------------------------------------------

    def add_transient(self, index: Any, payload: Any) -> CredentialRecord:
        if isinstance(index, bool) or not isinstance(index, int) or index <= 0:
            raise CredentialError("Index must be a positive integer")
        if index in self._permanent:
            raise CredentialError(f"Index {index} already exists as a permanent account")
        if not isinstance(payload, dict):
            raise CredentialError("Credential payload must be a JSON object")
        self._transient[index] = payload
        logger.info("[credentials] Added temporary account %d", index)
        return CredentialRecord(index, CredentialOrigin.TRANSIENT, payload)

    def remove_transient(self, index: int) -> None:
        if index not in self._transient:
            raise CredentialNotFound(
                f"Index {index} is not a temporary account and cannot be removed"
            )
        del self._transient[index]
        logger.info("[credentials] Removed temporary account %d", index)

    # -- payloads -----------------------------------------------------------

    def get_payload(self, index: int) -> Dict[str, Any]:
        if index in self._transient:
            logger.info("[credentials] Using temporary credential %d", index)
            return self._transient[index]
        if index not in self._permanent:
            logger.error("[credentials] Requested unknown credential index %s", index)
            raise CredentialNotFound(f"Credential {index} not found")

        if self.mode == "memory":
            return self._static[index]
        if self.mode == "env":
            source = f"environment variable AUTH_JSON_{index}"
            raw = self._environ.get(f"AUTH_JSON_{index}")
            if raw is None:
                raise CredentialNotFound(f"{source} disappeared")
        else:
            path = self._dir / f"auth-{index}.json"
            source = f"file {path}"
            try:
                raw = path.read_text(encoding="utf-8")
            except OSError as exc:
                logger.error("[credentials] Failed to read %s: %s", source, exc)
                raise CredentialNotFound(f"Cannot read {source}") from exc

        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as exc:
            logger.error("[credentials] Invalid JSON in %s: %s", source, exc)
            raise CredentialNotFound(f"Malformed credential in {source}") from exc
        if not isinstance(payload, dict):
            raise CredentialNotFound(f"Credential in {source} is not a JSON object")
        return payload

    def get_record(self, index: int) -> CredentialRecord:
        origin = (
            CredentialOrigin.TRANSIENT
            if index in self._transient
            else CredentialOrigin.PERMANENT
        )
        return CredentialRecord(index, origin, self.get_payload(index))
