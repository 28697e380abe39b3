from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Optional

from .config import ProxyConfig
from .credentials import CredentialSource
from .dispatcher import RequestDispatcher
from .errors import CredentialError
from .failover import FailoverController
from .logging_utils import JsonlLogger
from .metrics import UsageStats
from .registry import WorkerRegistry
from .worker_manager import WorkerManager
from .worker_process import LocalProcessController

logger = logging.getLogger(__name__)


@dataclass
class ProxyContext:
    """Everything one proxy instance owns, wired together."""

    cfg: ProxyConfig
    credentials: CredentialSource
    registry: WorkerRegistry
    worker: WorkerManager
    failover: FailoverController
    stats: UsageStats
    request_log: Optional[JsonlLogger]
    dispatcher: RequestDispatcher
    started_at: float = field(default_factory=time.time)

    @classmethod
    def create(
        cls,
        cfg: Optional[ProxyConfig] = None,
        credentials: Optional[CredentialSource] = None,
        controller: Optional[LocalProcessController] = None,
    ) -> "ProxyContext":
        cfg = cfg or ProxyConfig.load()
        credentials = credentials or CredentialSource(cfg.credential_dir)
        registry = WorkerRegistry(mailbox_timeout=cfg.header_timeout_s)
        worker = WorkerManager(cfg, credentials, registry, controller)
        failover = FailoverController(cfg, credentials, worker)
        stats = UsageStats()
        for index in credentials.available_indices():
            stats.ensure_account(index)
        request_log = (
            JsonlLogger(cfg.log_path, cfg.max_log_bytes) if cfg.enable_stats else None
        )
        dispatcher = RequestDispatcher(cfg, registry, failover, stats, request_log)
        return cls(
            cfg=cfg,
            credentials=credentials,
            registry=registry,
            worker=worker,
            failover=failover,
            stats=stats,
            request_log=request_log,
            dispatcher=dispatcher,
        )

    def startup_index(self) -> int:
        available = self.credentials.available_indices()
        preferred = self.cfg.initial_auth_index
        if preferred is not None:
            if preferred in available:
                logger.info("[context] Using configured start account %d", preferred)
                return preferred
            logger.warning(
                "[context] Configured start account %s is not available (%s), "
                "falling back to the first one",
                preferred,
                available,
            )
        first = self.credentials.first_available()
        if first is None:
            raise CredentialError("No credentials available to start the worker")
        return first

    async def startup(self) -> None:
        try:
            index = self.startup_index()
            await self.worker.launch(index)
        except Exception:
            logger.exception("[context] Proxy startup failed")
            raise
        logger.info(
            "[context] Proxy ready on %s:%s (account %s, streaming=%s)",
            self.cfg.host,
            self.cfg.port,
            self.worker.current_index,
            self.cfg.streaming_mode,
        )

    async def shutdown(self) -> None:
        logger.info("[context] Shutting down")
        try:
            await self.worker.close()
        finally:
            self.registry.close_all()
            self.worker.controller.close()

    def auth_summary(self) -> dict:
        return {
            "currentAuthIndex": self.worker.current_index,
            "availableIndices": self.credentials.available_indices(),
            "accounts": self.credentials.account_details(),
            "authMode": self.credentials.mode,
            "failureCount": self.failover.failure_count,
            "isAuthSwitching": self.failover.is_rotating,
        }

    def health(self) -> dict:
        return {
            "status": "healthy",
            "uptime": time.time() - self.started_at,
            "config": self.cfg.summary(),
            "auth": self.auth_summary(),
            "stats": self.stats.summary(),
            "worker": self.worker.status(),
            "worker_channels": self.registry.channel_count,
        }
