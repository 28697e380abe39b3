"""Worker channels and routing of worker frames to per-request mailboxes."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional, Protocol

from .errors import ServiceUnavailable
from .mailbox import DEFAULT_TIMEOUT_S, Mailbox
from .models import RequestDescriptor, WorkerEvent

logger = logging.getLogger(__name__)


class WorkerChannel(Protocol):
    async def send_text(self, data: str) -> None:  # pragma: no cover - protocol
        ...


class WorkerRegistry:
    """Holds the worker channel(s) and routes inbound frames to mailboxes."""

    def __init__(self, mailbox_timeout: float = DEFAULT_TIMEOUT_S):
        self.mailbox_timeout = mailbox_timeout
        self._channels: List[Any] = []
        self._mailboxes: Dict[str, Mailbox] = {}
        self._attached = asyncio.Event()

    # -- channels -----------------------------------------------------------

    def add_channel(self, channel: WorkerChannel, address: str | None = None) -> None:
        self._channels.append(channel)
        self._attached.set()
        logger.info(
            "[registry] Worker channel attached (from: %s, total=%d)",
            address or "unknown",
            len(self._channels),
        )

    def remove_channel(self, channel: WorkerChannel) -> None:
        try:
            self._channels.remove(channel)
        except ValueError:
            return
        if not self._channels:
            self._attached.clear()
        logger.warning(
            "[registry] Worker channel lost; failing %d in-flight request(s)",
            len(self._mailboxes),
        )
        self.close_all()

    def has_active_worker(self) -> bool:
        return bool(self._channels)

    def get_worker_channel(self) -> Optional[WorkerChannel]:
        return self._channels[0] if self._channels else None

    @property
    def channel_count(self) -> int:
        return len(self._channels)

    async def wait_for_worker(self, timeout: float) -> bool:
        if self._channels:
            return True
        try:
            await asyncio.wait_for(self._attached.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return bool(self._channels)

    async def send(self, descriptor: RequestDescriptor) -> None:
        channel = self.get_worker_channel()
        if channel is None:
            raise ServiceUnavailable("Cannot forward request: no worker connection")
        await channel.send_text(descriptor.to_frame())

    # -- mailboxes ----------------------------------------------------------

    def create_mailbox(self, request_id: str) -> Mailbox:
        mailbox = Mailbox(request_id, default_timeout=self.mailbox_timeout)
        self._mailboxes[request_id] = mailbox
        return mailbox

    def remove_mailbox(self, request_id: str) -> None:
        mailbox = self._mailboxes.pop(request_id, None)
        if mailbox is not None:
            mailbox.close()

    def get_mailbox(self, request_id: str) -> Optional[Mailbox]:
        return self._mailboxes.get(request_id)

    @property
    def open_mailboxes(self) -> int:
        return len(self._mailboxes)

    def close_all(self) -> None:
        mailboxes = list(self._mailboxes.values())
        self._mailboxes.clear()
        for mailbox in mailboxes:
            mailbox.close()

    # -- frames -------------------------------------------------------------

    def handle_frame(self, raw: str | bytes) -> None:
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8", errors="replace")
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError:
            logger.error("[registry] Failed to parse worker frame: %.200s", raw)
            return
        if not isinstance(payload, dict):
            logger.warning("[registry] Ignoring non-object worker frame")
            return

        request_id = payload.get("request_id")
        if not request_id:
            logger.warning("[registry] Dropping worker frame without request_id")
            return

        mailbox = self._mailboxes.get(str(request_id))
        if mailbox is None:
            logger.warning(
                "[registry] Dropping %s frame for unknown request %s",
                payload.get("event_type"),
                request_id,
            )
            return

        try:
            event = WorkerEvent.from_frame(payload)
        except ValueError:
            logger.warning(
                "[registry] Unknown worker event type: %s", payload.get("event_type")
            )
            return
        mailbox.enqueue(event)
