from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, List

STREAMING_MODES = ("real", "fake")


@dataclass
class ProxyConfig:
    host: str = "0.0.0.0"
    port: int = 8889
    worker_ws_path: str = "/ws"
    log_path: str = "logs/relaybridge.jsonl"
    max_log_bytes: int = 25_000_000
    debug_mode: bool = False
    enable_stats: bool = True
    # "real" relays worker chunks as they arrive, "fake" buffers one payload
    streaming_mode: str = "real"
    max_retries: int = 3
    retry_delay_ms: int = 2_000
    failure_threshold: int = 0  # 0 = counting-based rotation disabled
    immediate_switch_status_codes: List[int] = field(default_factory=list)
    header_timeout_s: float = 1_200.0
    chunk_timeout_s: float = 30.0
    keepalive_interval_s: float = 2.0
    api_keys: List[str] = field(default_factory=list)
    credential_dir: str = "auth"
    initial_auth_index: Optional[int] = None
    worker_command: List[str] = field(default_factory=list)
    worker_start_grace_s: float = 2.0
    worker_attach_timeout_s: float = 0.0
    worker_stop_timeout_s: float = 10.0
    worker_state_dir: str = "_staging/worker"
    config_file_path: Optional[str] = None

    @classmethod
    def load(cls) -> "ProxyConfig":
        from .config_loader import load_proxy_config

        return load_proxy_config()

    @property
    def api_key_auth_enabled(self) -> bool:
        return bool(self.api_keys)

    def summary(self) -> dict:
        """Subset of settings surfaced by the health and dashboard routes."""
        return {
            "streamingMode": self.streaming_mode,
            "debugMode": self.debug_mode,
            "failureThreshold": self.failure_threshold,
            "immediateSwitchStatusCodes": list(self.immediate_switch_status_codes),
            "maxRetries": self.max_retries,
            "retryDelay": self.retry_delay_ms,
            "apiKeyAuth": "enabled" if self.api_key_auth_enabled else "disabled",
        }
