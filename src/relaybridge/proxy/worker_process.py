"""Child-process control for locally launched workers."""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Dict, Iterable, Optional

logger = logging.getLogger(__name__)


@dataclass
class _Child:
    proc: subprocess.Popen
    log_fh: Optional[IO[str]] = None


class LocalProcessController:
    """Spawn worker commands in their own session and tear them down as a group.

    A worker usually drives a browser, so signals go to the whole process
    group to avoid orphaned children. Blocking calls are meant to run through
    ``asyncio.to_thread``.
    """

    def __init__(self) -> None:
        self._children: Dict[int, _Child] = {}
        self._exit_codes: Dict[int, Optional[int]] = {}
        self._lock = threading.Lock()

    def spawn(
        self,
        command: Iterable[str],
        *,
        env: Optional[dict[str, str]] = None,
        cwd: Optional[str] = None,
        log_file: Optional[Path] = None,
    ) -> int:
        log_fh = None
        if log_file:
            Path(log_file).parent.mkdir(parents=True, exist_ok=True)
            log_fh = open(log_file, "a", buffering=1, encoding="utf-8")  # noqa: PTH123

        proc_env = dict(os.environ)
        proc_env.update({k: str(v) for k, v in (env or {}).items() if v is not None})
        try:
            proc = subprocess.Popen(  # noqa: S603
                list(command),
                stdout=log_fh or subprocess.DEVNULL,
                stderr=subprocess.STDOUT,
                env=proc_env,
                cwd=cwd,
                start_new_session=os.name == "posix",
            )
        except OSError:
            if log_fh:
                log_fh.close()
            raise
        with self._lock:
            self._children[proc.pid] = _Child(proc, log_fh)
        logger.info("[process] Started pid %d: %s", proc.pid, " ".join(proc.args))
        return proc.pid

    def is_alive(self, pid: int) -> bool:
        child = self._children.get(pid)
        if child is None:
            return False
        if child.proc.poll() is None:
            return True
        self._reap(pid)
        return False

    def returncode(self, pid: int) -> Optional[int]:
        child = self._children.get(pid)
        if child is not None:
            return child.proc.poll()
        return self._exit_codes.get(pid)

    def _signal(self, child: _Child, sig: int) -> None:
        if os.name == "posix":
            os.killpg(child.proc.pid, sig)
        elif sig == signal.SIGTERM:
            child.proc.terminate()
        else:
            child.proc.kill()

    def terminate(self, pid: int, *, force: bool = False, timeout: float = 10.0) -> None:
        """Stop a worker, escalating to SIGKILL after ``timeout`` seconds."""

        child = self._children.get(pid)
        if child is None:
            return
        kill = getattr(signal, "SIGKILL", signal.SIGTERM)
        try:
            self._signal(child, kill if force else signal.SIGTERM)
            child.proc.wait(timeout=max(timeout, 0.1))
        except subprocess.TimeoutExpired:
            logger.warning("[process] pid %d ignored SIGTERM, killing", pid)
            try:
                self._signal(child, kill)
                child.proc.wait(timeout=5)
            except (ProcessLookupError, subprocess.TimeoutExpired) as exc:
                logger.error("[process] Could not kill pid %d: %s", pid, exc)
        except ProcessLookupError:
            pass
        self._reap(pid)

    def _reap(self, pid: int) -> None:
        with self._lock:
            child = self._children.pop(pid, None)
        if child is None:
            return
        self._exit_codes[pid] = child.proc.poll()
        if child.log_fh:
            child.log_fh.close()
        logger.info("[process] pid %d exited (code=%s)", pid, self._exit_codes[pid])

    def close(self) -> None:
        for pid in list(self._children):
            self.terminate(pid, force=True, timeout=1)
