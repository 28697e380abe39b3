"""Credential rotation policy and single-flight rotation."""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Awaitable, Callable, Optional

from .config import ProxyConfig
from .credentials import CredentialSource
from .errors import RotationFailed, RotationInProgress, WorkerLaunchError
from .worker_manager import WorkerManager

logger = logging.getLogger(__name__)

# "HTTP 429", "status code 503" or a JSON body fragment like '"code": 429'
_EMBEDDED_STATUS = re.compile(r'(?:HTTP|status code)\s*(\d{3})|"code"\s*:\s*(\d{3})')

Notify = Callable[[str], Awaitable[None]]


def reconcile_status(status: Optional[int], message: str | None) -> Optional[int]:
    """Prefer an error status embedded in the message over the explicit one.

    Best-effort: upstream sometimes reports a generic code alongside a more
    specific one inside the message text.
    """

    if not message or not isinstance(message, str):
        return status
    match = _EMBEDDED_STATUS.search(message)
    if not match:
        return status
    parsed = int(match.group(1) or match.group(2))
    if 400 <= parsed <= 599 and parsed != status:
        logger.warning(
            "[failover] Corrected error status %s -> %s from message", status, parsed
        )
        return parsed
    return status


class FailoverController:
    def __init__(
        self,
        cfg: ProxyConfig,
        credentials: CredentialSource,
        worker: WorkerManager,
    ):
        self.cfg = cfg
        self.credentials = credentials
        self.worker = worker
        self.failure_count = 0
        self._rotation_lock = asyncio.Lock()

    @property
    def current_index(self) -> Optional[int]:
        return self.worker.current_index

    @property
    def is_rotating(self) -> bool:
        return self._rotation_lock.locked()

    def record_success(self) -> None:
        if self.failure_count > 0:
            logger.info(
                "[failover] Request succeeded, failure count %d reset to 0",
                self.failure_count,
            )
        self.failure_count = 0

    async def rotate(self) -> int:
        """Switch the worker to the next credential and return its index.

        Raises :class:`RotationInProgress` when another rotation is running
        and :class:`RotationFailed` when no credential is available or the
        worker could not be rebuilt; the active index is then unchanged.
        """

        if self._rotation_lock.locked():
            logger.info("[failover] Rotation already in progress, skipping")
            raise RotationInProgress("Account switch already in progress")

        async with self._rotation_lock:
            previous = self.current_index
            target = self.credentials.next_after(previous)
            if target is None:
                logger.error("[failover] No credentials available to switch to")
                raise RotationFailed("No credentials available to switch to")

            logger.info(
                "[failover] Rotating account %s -> %s (failures=%d/%s, accounts=%d)",
                previous,
                target,
                self.failure_count,
                self.cfg.failure_threshold or "n/a",
                len(self.credentials.available_indices()),
            )
            try:
                await self.worker.switch(target)
            except WorkerLaunchError as exc:
                logger.error("[failover] Account switch failed: %s", exc)
                raise RotationFailed(str(exc)) from exc

            self.failure_count = 0
            logger.info(
                "[failover] Now on account %s, failure count reset", self.current_index
            )
            return target

    async def handle_failure(
        self, status: Optional[int], notify: Optional[Notify] = None
    ) -> bool:
        """Apply the immediate-switch and threshold policies to one failure.

        ``status`` must already be reconciled. Returns True when a rotation
        completed. Rotation errors are logged and reported through
        ``notify`` but never raised.
        """

        if status in self.cfg.immediate_switch_status_codes:
            logger.warning(
                "[failover] Status %s triggers an immediate account switch", status
            )
            return await self._try_rotate(
                notify, f"Received status {status}, switching account..."
            )

        if self.cfg.failure_threshold <= 0:
            logger.warning(
                "[failover] Request failed (status %s); counting-based switch disabled",
                status,
            )
            return False

        self.failure_count += 1
        logger.warning(
            "[failover] Request failed - count %d/%d (account %s, status %s)",
            self.failure_count,
            self.cfg.failure_threshold,
            self.current_index,
            status,
        )
        if self.failure_count < self.cfg.failure_threshold:
            return False
        logger.warning("[failover] Failure threshold reached, switching account")
        return await self._try_rotate(
            notify, f"{self.failure_count} consecutive failures, switching account..."
        )

    async def _try_rotate(self, notify: Optional[Notify], announcement: str) -> bool:
        if notify:
            await notify(announcement)
        try:
            await self.rotate()
        except RotationInProgress:
            return False
        except RotationFailed as exc:
            if notify:
                await notify(f"Account switch failed: {exc}")
            return False
        if notify:
            await notify(f"Switched to account {self.current_index}, retrying")
        return True
