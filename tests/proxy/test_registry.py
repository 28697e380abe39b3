import asyncio
import json

import pytest

from relaybridge.proxy.errors import QueueClosedError, ServiceUnavailable
from relaybridge.proxy.models import EventKind, RequestDescriptor, StreamingPolicy
from relaybridge.proxy.registry import WorkerRegistry


class RecordingChannel:
    def __init__(self):
        self.frames = []

    async def send_text(self, data):
        self.frames.append(json.loads(data))


def _frame(request_id, **payload):
    return json.dumps({"request_id": request_id, **payload})


def test_frames_route_to_their_own_mailbox():
    async def scenario():
        registry = WorkerRegistry()
        first = registry.create_mailbox("a")
        second = registry.create_mailbox("b")
        registry.handle_frame(_frame("b", event_type="chunk", data="for-b"))
        registry.handle_frame(_frame("a", event_type="chunk", data="for-a"))
        registry.handle_frame(_frame("a", event_type="stream_close"))
        return (
            [(await first.dequeue(1)).kind for _ in range(2)],
            (await second.dequeue(1)).data,
            len(second),
        )

    kinds, second_data, leftover = asyncio.run(scenario())
    assert kinds == [EventKind.CHUNK, EventKind.STREAM_END]
    assert second_data == "for-b"
    assert leftover == 0


def test_bad_frames_are_dropped():
    registry = WorkerRegistry()
    mailbox = registry.create_mailbox("a")

    registry.handle_frame("{not json")
    registry.handle_frame(json.dumps([1, 2]))
    registry.handle_frame(json.dumps({"event_type": "chunk", "data": "x"}))
    registry.handle_frame(_frame("unknown", event_type="chunk", data="x"))
    registry.handle_frame(_frame("a", event_type="mystery"))
    registry.handle_frame(_frame("a", event_type="chunk", data="ok").encode())

    assert len(mailbox) == 1


def test_non_string_chunk_data_is_serialised():
    async def scenario():
        registry = WorkerRegistry()
        mailbox = registry.create_mailbox("a")
        registry.handle_frame(_frame("a", event_type="chunk", data={"x": 1}))
        return (await mailbox.dequeue(1)).data

    assert json.loads(asyncio.run(scenario())) == {"x": 1}


def test_send_requires_a_channel():
    registry = WorkerRegistry()
    descriptor = RequestDescriptor(id="r1", method="GET", path="/v1/models")

    with pytest.raises(ServiceUnavailable):
        asyncio.run(registry.send(descriptor))


def test_send_writes_descriptor_frame():
    registry = WorkerRegistry()
    channel = RecordingChannel()
    registry.add_channel(channel, "127.0.0.1:5555")
    descriptor = RequestDescriptor(
        id="r1",
        method="POST",
        path="/v1/chat/completions",
        headers={"content-type": "application/json"},
        query={"alt": "sse"},
        body='{"model": "m"}',
        policy=StreamingPolicy.BUFFERED,
    )

    asyncio.run(registry.send(descriptor))

    assert channel.frames == [
        {
            "path": "/v1/chat/completions",
            "method": "POST",
            "headers": {"content-type": "application/json"},
            "query_params": {"alt": "sse"},
            "request_id": "r1",
            "streaming_mode": "fake",
            "body": '{"model": "m"}',
        }
    ]


def test_disconnect_closes_every_open_mailbox():
    async def scenario():
        registry = WorkerRegistry()
        channel = RecordingChannel()
        registry.add_channel(channel)
        waits = [
            asyncio.create_task(registry.create_mailbox(rid).dequeue(5))
            for rid in ("a", "b")
        ]
        await asyncio.sleep(0)
        registry.remove_channel(channel)
        results = await asyncio.gather(*waits, return_exceptions=True)
        return results, registry

    results, registry = asyncio.run(scenario())
    assert all(isinstance(result, QueueClosedError) for result in results)
    assert registry.open_mailboxes == 0
    assert not registry.has_active_worker()


def test_remove_mailbox_is_idempotent():
    registry = WorkerRegistry()
    mailbox = registry.create_mailbox("a")

    registry.remove_mailbox("a")
    registry.remove_mailbox("a")

    assert mailbox.closed
    assert registry.get_mailbox("a") is None


def test_wait_for_worker():
    async def scenario():
        registry = WorkerRegistry()
        missing = await registry.wait_for_worker(0.05)
        asyncio.get_running_loop().call_later(
            0.02, registry.add_channel, RecordingChannel()
        )
        attached = await registry.wait_for_worker(1)
        return missing, attached

    assert asyncio.run(scenario()) == (False, True)
