import asyncio

import pytest

from relaybridge.proxy.errors import WorkerLaunchError


def test_startup_uses_configured_index(make_context):
    ctx = make_context(initial_auth_index=3)
    ctx.worker.current_index = None

    asyncio.run(ctx.startup())

    assert ctx.worker.current_index == 3


def test_startup_falls_back_to_first_available(make_context):
    ctx = make_context(accounts=(2, 4), initial_auth_index=7)
    ctx.worker.current_index = None

    asyncio.run(ctx.startup())

    assert ctx.worker.current_index == 2


def test_startup_failure_propagates(make_context):
    ctx = make_context(worker_attach_timeout_s=0.05)
    ctx.worker.current_index = None

    with pytest.raises(WorkerLaunchError):
        asyncio.run(ctx.startup())
    assert ctx.worker.current_index is None


def test_shutdown_closes_pending_mailboxes(make_context):
    ctx = make_context()
    mailbox = ctx.registry.create_mailbox("pending")

    asyncio.run(ctx.shutdown())

    assert mailbox.closed
    assert ctx.registry.open_mailboxes == 0
