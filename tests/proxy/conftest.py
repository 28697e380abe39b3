import asyncio
import json
import os

import pytest

from relaybridge.proxy import config_loader
from relaybridge.proxy.config import ProxyConfig
from relaybridge.proxy.context import ProxyContext
from relaybridge.proxy.credentials import CredentialSource


class FakeWorker:
    """Scripted worker side of the channel.

    ``script(frame, attempt)`` returns the events (without request_id) that
    the worker sends back for one descriptor.
    """

    def __init__(self, registry, script=None, delay=0.01):
        self.registry = registry
        self.script = script or (lambda frame, attempt: [])
        self.delay = delay
        self.sent = []
        self._tasks = set()

    async def send_text(self, data):
        frame = json.loads(data)
        self.sent.append(frame)
        events = self.script(frame, len(self.sent))
        task = asyncio.create_task(self._play(frame["request_id"], events))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _play(self, request_id, events):
        for event in events:
            await asyncio.sleep(self.delay)
            self.registry.handle_frame(json.dumps({"request_id": request_id, **event}))


@pytest.fixture(autouse=True)
def clear_relay_env(monkeypatch):
    for key in list(os.environ.keys()):
        if key.startswith("RELAY_") or key.startswith("AUTH_JSON_"):
            monkeypatch.delenv(key, raising=False)
    yield


@pytest.fixture
def make_context(tmp_path):
    def _make(accounts=(1, 2, 3), **overrides):
        settings = dict(
            log_path=str(tmp_path / "logs" / "requests.jsonl"),
            worker_state_dir=str(tmp_path / "worker"),
            retry_delay_ms=0,
            header_timeout_s=5.0,
            chunk_timeout_s=0.3,
            keepalive_interval_s=0.05,
            worker_start_grace_s=0.0,
        )
        settings.update(overrides)
        cfg = ProxyConfig(**settings)
        credentials = CredentialSource(
            permanent={index: {"cookies": [], "account": index} for index in accounts}
        )
        ctx = ProxyContext.create(cfg, credentials=credentials)
        ctx.worker.current_index = accounts[0]
        return ctx

    return _make


@pytest.fixture
def attach_worker():
    def _attach(ctx, script=None, delay=0.01):
        worker = FakeWorker(ctx.registry, script, delay)
        ctx.registry.add_channel(worker, "test")
        return worker

    return _attach


@pytest.fixture
def config_file(tmp_path, monkeypatch):
    path = tmp_path / "relaybridge.toml"
    monkeypatch.setenv(config_loader.CONFIG_FILE_ENV, str(path))
    return path
