"""Worker lifecycle bound to one credential: launch, close and switch."""

from __future__ import annotations

import asyncio
import copy
import json
import logging
import os
import time
from pathlib import Path
from typing import Any, Dict, Optional

from .config import ProxyConfig
from .credentials import CredentialSource
from .errors import CredentialNotFound, WorkerLaunchError
from .registry import WorkerRegistry
from .worker_process import LocalProcessController

logger = logging.getLogger(__name__)

VALID_SAME_SITE = ("Lax", "Strict", "None")


def normalize_storage_state(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Return a copy of a session payload with invalid cookie sameSite fixed."""

    cookies = payload.get("cookies")
    if not isinstance(cookies, list):
        return payload
    fixed = 0
    result = copy.deepcopy(payload)
    for cookie in result["cookies"]:
        if isinstance(cookie, dict) and cookie.get("sameSite") not in VALID_SAME_SITE:
            cookie["sameSite"] = "None"
            fixed += 1
    if fixed:
        logger.info("[worker] Corrected sameSite on %d cookie(s)", fixed)
    return result


class WorkerManager:
    """Owns the active credential index and the worker bound to it.

    With ``worker_command`` configured the worker is a child process that
    receives its credential through ``RELAY_CREDENTIAL_FILE``; otherwise the
    worker is external and launching only binds the index.
    """

    def __init__(
        self,
        cfg: ProxyConfig,
        credentials: CredentialSource,
        registry: WorkerRegistry,
        controller: Optional[LocalProcessController] = None,
    ):
        self.cfg = cfg
        self.credentials = credentials
        self.registry = registry
        self.controller = controller or LocalProcessController()
        self.current_index: Optional[int] = None
        self.started_at: Optional[float] = None
        self._pid: Optional[int] = None
        self._state_dir = Path(cfg.worker_state_dir).expanduser()
        self._process_lock = asyncio.Lock()

    @property
    def external(self) -> bool:
        return not self.cfg.worker_command

    @property
    def pid(self) -> Optional[int]:
        return self._pid

    def worker_url(self) -> str:
        host = self.cfg.host
        if host in ("0.0.0.0", "::", ""):
            host = "127.0.0.1"
        return f"ws://{host}:{self.cfg.port}{self.cfg.worker_ws_path}"

    async def launch(self, index: int) -> None:
        async with self._process_lock:
            await self._launch_locked(index)

    async def close(self) -> None:
        async with self._process_lock:
            await self._close_locked()

    async def switch(self, index: int) -> None:
        logger.info("[worker] Switching account %s -> %s", self.current_index, index)
        async with self._process_lock:
            await self._close_locked()
            await self._launch_locked(index)
        logger.info("[worker] Switch complete, active account %s", self.current_index)

    async def _launch_locked(self, index: int) -> None:
        if self._pid is not None and self.controller.is_alive(self._pid):
            logger.warning("[worker] Worker already running (pid=%s)", self._pid)
            return

        try:
            payload = self.credentials.get_payload(index)
        except CredentialNotFound as exc:
            raise WorkerLaunchError(
                f"Cannot load credential {index}: {exc}"
            ) from exc

        if self.external:
            logger.info(
                "[worker] External worker mode; bound to account %d (%s)",
                index,
                self.worker_url(),
            )
        else:
            await self._spawn(index, payload)

        if self.cfg.worker_attach_timeout_s > 0:
            attached = await self.registry.wait_for_worker(
                self.cfg.worker_attach_timeout_s
            )
            if not attached:
                await self._close_locked()
                raise WorkerLaunchError(
                    f"Worker did not attach within {self.cfg.worker_attach_timeout_s}s"
                )

        self.current_index = index
        self.started_at = time.time()
        logger.info("[worker] Account %d initialised", index)

    async def _spawn(self, index: int, payload: Dict[str, Any]) -> None:
        credential_file = await asyncio.to_thread(
            self._write_credential, index, normalize_storage_state(payload)
        )
        env = {
            "RELAY_CREDENTIAL_INDEX": str(index),
            "RELAY_CREDENTIAL_FILE": str(credential_file),
            "RELAY_WORKER_URL": self.worker_url(),
        }
        logger.info(
            "[worker] Launching %s for account %d", self.cfg.worker_command[0], index
        )
        try:
            pid = await asyncio.to_thread(
                self.controller.spawn,
                self.cfg.worker_command,
                env=env,
                log_file=self._state_dir / "worker.log",
            )
        except OSError as exc:
            raise WorkerLaunchError(f"Failed to start worker: {exc}") from exc
        self._pid = pid

        if self.cfg.worker_start_grace_s > 0:
            await asyncio.sleep(self.cfg.worker_start_grace_s)
        if not self.controller.is_alive(pid):
            code = self.controller.returncode(pid)
            self._pid = None
            raise WorkerLaunchError(
                f"Worker for account {index} exited during startup (code={code})"
            )

    def _write_credential(self, index: int, payload: Dict[str, Any]) -> Path:
        self._state_dir.mkdir(parents=True, exist_ok=True)
        path = self._state_dir / f"credential-{index}.json"
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(payload, fh)
        return path

    async def _close_locked(self) -> None:
        pid = self._pid
        if pid is None:
            return
        logger.info("[worker] Stopping worker (pid=%s)", pid)
        await asyncio.to_thread(
            self.controller.terminate, pid, timeout=self.cfg.worker_stop_timeout_s
        )
        self._pid = None

    def status(self) -> dict:
        running = (
            self.registry.has_active_worker()
            if self.external
            else self._pid is not None and self.controller.is_alive(self._pid)
        )
        return {
            "current_index": self.current_index,
            "pid": self._pid,
            "running": running,
            "external": self.external,
            "started_at": self.started_at,
        }
