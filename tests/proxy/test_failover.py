import asyncio

import pytest

from relaybridge.proxy.config import ProxyConfig
from relaybridge.proxy.credentials import CredentialSource
from relaybridge.proxy.errors import RotationFailed, RotationInProgress, WorkerLaunchError
from relaybridge.proxy.failover import FailoverController, reconcile_status


class StubWorker:
    def __init__(self, current=1, fail=False, delay=0.0):
        self.current_index = current
        self.fail = fail
        self.delay = delay
        self.switches = []

    async def switch(self, index):
        self.switches.append(index)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise WorkerLaunchError("worker would not start")
        self.current_index = index


def _controller(worker=None, indices=(1, 2, 3), **overrides):
    cfg = ProxyConfig(**overrides)
    credentials = CredentialSource(
        permanent={i: {"account": i} for i in indices}, require_any=False
    )
    return FailoverController(cfg, credentials, worker or StubWorker())


@pytest.mark.parametrize(
    "status,message,expected",
    [
        (500, "upstream said HTTP 429 Too Many Requests", 429),
        (500, "got status code 503 from backend", 503),
        (500, '{"error": {"code": 429, "message": "quota"}}', 429),
        (500, "HTTP 200 is not an error", 500),
        (502, "nothing embedded here", 502),
        (None, "", None),
    ],
)
def test_reconcile_status(status, message, expected):
    assert reconcile_status(status, message) == expected


def test_threshold_counting_rotates_and_resets():
    controller = _controller(failure_threshold=3)

    async def scenario():
        results = [await controller.handle_failure(500) for _ in range(3)]
        return results

    assert asyncio.run(scenario()) == [False, False, True]
    assert controller.current_index == 2
    assert controller.failure_count == 0


def test_zero_threshold_disables_counting():
    controller = _controller(failure_threshold=0)

    rotated = asyncio.run(controller.handle_failure(500))

    assert rotated is False
    assert controller.failure_count == 0
    assert controller.worker.switches == []


def test_immediate_switch_bypasses_counting():
    controller = _controller(failure_threshold=5, immediate_switch_status_codes=[429])
    notes = []

    async def notify(message):
        notes.append(message)

    rotated = asyncio.run(controller.handle_failure(429, notify))

    assert rotated is True
    assert controller.current_index == 2
    assert controller.failure_count == 0
    assert any("429" in note for note in notes)


def test_success_resets_counter():
    controller = _controller(failure_threshold=3)

    asyncio.run(controller.handle_failure(500))
    controller.record_success()

    assert controller.failure_count == 0


def test_rotation_is_single_flight():
    worker = StubWorker(delay=0.05)
    controller = _controller(worker)

    async def scenario():
        first = asyncio.create_task(controller.rotate())
        await asyncio.sleep(0)
        assert controller.is_rotating
        with pytest.raises(RotationInProgress):
            await controller.rotate()
        # The failure path treats an in-flight rotation as a no-op
        assert await controller.handle_failure(429) is False
        return await first

    controller.cfg.immediate_switch_status_codes = [429]
    assert asyncio.run(scenario()) == 2
    assert worker.switches == [2]


def test_failed_rotation_leaves_index_unchanged():
    worker = StubWorker(fail=True)
    controller = _controller(worker, failure_threshold=1)
    notes = []

    async def notify(message):
        notes.append(message)

    with pytest.raises(RotationFailed):
        asyncio.run(controller.rotate())
    rotated = asyncio.run(controller.handle_failure(500, notify))

    assert rotated is False
    assert controller.current_index == 1
    assert any("failed" in note for note in notes)


def test_rotation_without_credentials_fails():
    controller = _controller(indices=())

    with pytest.raises(RotationFailed):
        asyncio.run(controller.rotate())
