"""Request dispatch: descriptor build, retries, passthrough and buffered relay."""

from __future__ import annotations

import asyncio
import json
import logging
import random
import string
import time
from dataclasses import dataclass, field
from typing import AsyncGenerator, Dict, Optional

from fastapi.responses import JSONResponse, Response, StreamingResponse
from starlette.background import BackgroundTask

from .config import ProxyConfig
from .errors import (
    ProxyError,
    QueueClosedError,
    QueueTimeoutError,
    ServiceUnavailable,
    UpstreamError,
    err_gateway_timeout,
    err_internal,
    err_no_worker,
    err_upstream,
    err_worker_disconnected,
)
from .failover import FailoverController, reconcile_status
from .logging_utils import JsonlLogger
from .mailbox import Mailbox
from .metrics import RequestSample, UsageStats, extract_model_name
from .models import EventKind, RequestDescriptor, StreamingPolicy, WorkerEvent
from .registry import WorkerRegistry

logger = logging.getLogger(__name__)

DONE_FRAME = b"data: [DONE]\n\n"
# Hop-by-hop or length headers that must not be replayed on a re-framed body
_DROPPED_HEADERS = {"content-length", "transfer-encoding", "connection"}
_BASE36 = string.digits + string.ascii_lowercase


def generate_request_id() -> str:
    suffix = "".join(random.choices(_BASE36, k=9))
    return f"{int(time.time() * 1000)}_{suffix}"


def is_stream_request(path: str, body: bytes | str | None) -> bool:
    """Whether the client asked for an event stream."""

    if ":stream" in path:
        return True
    if "chat/completions" in path and body:
        try:
            payload = json.loads(body)
        except (json.JSONDecodeError, UnicodeDecodeError):
            return False
        return isinstance(payload, dict) and payload.get("stream") is True
    return False


def keepalive_frame(path: str) -> bytes:
    if "chat/completions" in path:
        payload = {
            "id": f"chatcmpl-{generate_request_id()}",
            "object": "chat.completion.chunk",
            "created": int(time.time()),
            "model": "gpt-4",
            "choices": [{"index": 0, "delta": {}, "finish_reason": None}],
        }
    elif "generateContent" in path or "streamGenerateContent" in path:
        payload = {
            "candidates": [
                {
                    "content": {"parts": [{"text": ""}], "role": "model"},
                    "finishReason": None,
                    "index": 0,
                    "safetyRatings": [],
                }
            ]
        }
    else:
        return b"data: {}\n\n"
    return f"data: {json.dumps(payload)}\n\n".encode()


def error_frame(message: str) -> bytes:
    payload = {
        "error": {
            "message": f"[proxy] {message}",
            "type": "proxy_error",
            "code": "proxy_error",
        }
    }
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n".encode()


@dataclass
class InboundRequest:
    method: str
    path: str
    headers: Dict[str, str] = field(default_factory=dict)
    query: Dict[str, str] = field(default_factory=dict)
    body: bytes = b""


class StreamSink:
    """Outbound byte stream for one client response.

    Writers push frames; the HTTP layer iterates the sink until it is closed.
    Writes after close are dropped.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[Optional[bytes]] = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def write(self, data: bytes | str) -> None:
        if self._closed:
            return
        if isinstance(data, str):
            data = data.encode()
        self._queue.put_nowait(data)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(None)

    async def __aiter__(self) -> AsyncGenerator[bytes, None]:
        while True:
            item = await self._queue.get()
            if item is None:
                return
            yield item


@dataclass
class _Exchange:
    descriptor: RequestDescriptor
    mailbox: Mailbox
    account: Optional[int]
    model: str
    started_at: float = field(default_factory=time.time)
    attempts: int = 0
    status: int = 0
    error: Optional[str] = None
    finished: bool = False
    task: Optional[asyncio.Task] = None


class RequestDispatcher:
    """Turns one inbound HTTP call into a correlated worker exchange."""

    def __init__(
        self,
        cfg: ProxyConfig,
        registry: WorkerRegistry,
        failover: FailoverController,
        stats: UsageStats,
        request_log: Optional[JsonlLogger] = None,
    ):
        self.cfg = cfg
        self.registry = registry
        self.failover = failover
        self.stats = stats
        self.request_log = request_log

    @property
    def policy(self) -> StreamingPolicy:
        return StreamingPolicy.from_mode(self.cfg.streaming_mode)

    def build_descriptor(self, inbound: InboundRequest) -> RequestDescriptor:
        body = None
        if inbound.method.upper() not in ("GET", "HEAD"):
            body = inbound.body.decode("utf-8", errors="replace") if inbound.body else ""
        return RequestDescriptor(
            id=generate_request_id(),
            method=inbound.method.upper(),
            path=inbound.path,
            headers=dict(inbound.headers),
            query=dict(inbound.query),
            body=body,
            policy=self.policy,
        )

    async def process_request(self, inbound: InboundRequest) -> Response:
        model = extract_model_name(inbound.path, inbound.body)
        account = self.failover.current_index
        logger.info(
            "[request] %s %s | account: %s | model: %s",
            inbound.method,
            inbound.path,
            account,
            model,
        )
        self.stats.record_call(account, model)

        if not self.registry.has_active_worker():
            return self._error_response(err_no_worker())

        descriptor = self.build_descriptor(inbound)
        mailbox = self.registry.create_mailbox(descriptor.id)
        ex = _Exchange(descriptor, mailbox, account, model)
        try:
            if descriptor.policy is StreamingPolicy.PASSTHROUGH:
                return await self._handle_passthrough(ex)
            return await self._handle_buffered(ex, inbound)
        except Exception as exc:  # noqa: BLE001
            response = self._response_for(ex, exc)
            self._finish(ex)
            return response

    # -- shared retry loop --------------------------------------------------

    async def _await_headers(self, ex: _Exchange, sink: Optional[StreamSink] = None):
        """Send the descriptor until a header event arrives or retries run out."""

        notify = None
        if sink is not None:

            async def notify(message: str) -> None:
                sink.write(error_frame(message))

        attempts = max(1, self.cfg.max_retries)
        for attempt in range(1, attempts + 1):
            ex.attempts = attempt
            logger.info("[request] Attempt #%d/%d for %s", attempt, attempts, ex.descriptor.id)
            await self.registry.send(ex.descriptor)
            event = await ex.mailbox.dequeue(self.cfg.header_timeout_s)

            if event.kind is EventKind.HEADER:
                self.failover.record_success()
                return event
            if event.kind is not EventKind.ERROR:
                raise UpstreamError(502, f"Unexpected {event.kind.value} before headers")

            status = reconcile_status(event.status, event.message)
            if self.cfg.debug_mode:
                logger.debug(
                    "[request] Worker error for %s: status=%s message=%s",
                    ex.descriptor.id,
                    event.status,
                    event.message,
                )
            if not event.is_retryable_error:
                raise UpstreamError(status, event.message)

            await self.failover.handle_failure(status, notify)
            if attempt < attempts:
                text = (
                    f"Received {status} error, retrying in "
                    f"{self.cfg.retry_delay_ms / 1000:g}s..."
                )
                logger.warning("[request] %s", text)
                if notify:
                    await notify(text)
                await asyncio.sleep(self.cfg.retry_delay_ms / 1000)
                continue
            logger.warning(
                "[request] Received %s error, maximum retries reached", status
            )
            raise UpstreamError(status, event.message)
        raise AssertionError("unreachable")  # pragma: no cover

    # -- passthrough --------------------------------------------------------

    async def _handle_passthrough(self, ex: _Exchange) -> Response:
        header = await self._await_headers(ex)
        ex.status = header.status or 200
        headers = {
            name: value
            for name, value in header.headers.items()
            if name.lower() not in _DROPPED_HEADERS
        }
        logger.info("[request] Headers relayed for %s, streaming", ex.descriptor.id)
        return StreamingResponse(
            self._relay_chunks(ex),
            status_code=ex.status,
            headers=headers,
            background=BackgroundTask(self._finish, ex),
        )

    async def _relay_chunks(self, ex: _Exchange) -> AsyncGenerator[bytes, None]:
        try:
            while True:
                try:
                    event = await ex.mailbox.dequeue(self.cfg.chunk_timeout_s)
                except QueueTimeoutError:
                    logger.warning(
                        "[request] No data for %ss on %s, treating stream as finished",
                        self.cfg.chunk_timeout_s,
                        ex.descriptor.id,
                    )
                    break
                if event.kind is EventKind.STREAM_END:
                    logger.info("[request] Stream end received for %s", ex.descriptor.id)
                    break
                if event.kind is EventKind.CHUNK:
                    if event.data:
                        yield event.data.encode()
                elif event.kind is EventKind.ERROR:
                    status = reconcile_status(event.status, event.message)
                    ex.error = f"{status}: {event.message}"
                    yield error_frame(f"Stream failed (status {status}): {event.message}")
                    break
        except QueueClosedError:
            ex.error = "worker disconnected"
            logger.error("[request] Worker disconnected during %s", ex.descriptor.id)
            yield error_frame("Worker disconnected during streaming")
        finally:
            self._finish(ex)

    # -- buffered -----------------------------------------------------------

    async def _handle_buffered(self, ex: _Exchange, inbound: InboundRequest) -> Response:
        streaming = is_stream_request(inbound.path, inbound.body)
        logger.info(
            "[request] Buffered response for %s (%s)",
            inbound.path,
            "stream" if streaming else "non-stream",
        )
        if not streaming:
            await self._await_headers(ex)
            data = await self._drain_payload(ex)
            if not data:
                raise ProxyError(500, "internal_error", "Backend returned no data")
            try:
                body = json.loads(data)
            except json.JSONDecodeError as exc:
                logger.error("[request] Cannot parse worker payload as JSON: %s", exc)
                raise ProxyError(
                    500, "internal_error", "Cannot parse the backend response"
                ) from exc
            ex.status = 200
            response = JSONResponse(content=body, status_code=200)
            self._finish(ex)
            return response

        sink = StreamSink()
        ex.status = 200
        ex.task = asyncio.create_task(
            self._run_buffered_stream(ex, sink, keepalive_frame(inbound.path))
        )

        async def body() -> AsyncGenerator[bytes, None]:
            try:
                async for frame in sink:
                    yield frame
            finally:
                if ex.task is not None and not ex.task.done():
                    ex.task.cancel()
                self._finish(ex)

        return StreamingResponse(
            body(),
            status_code=200,
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
            background=BackgroundTask(self._finish, ex),
        )

    async def _keep_alive(self, sink: StreamSink, frame: bytes) -> None:
        while not sink.closed:
            await asyncio.sleep(self.cfg.keepalive_interval_s)
            sink.write(frame)

    async def _run_buffered_stream(
        self, ex: _Exchange, sink: StreamSink, keepalive: bytes
    ) -> None:
        keeper = asyncio.create_task(self._keep_alive(sink, keepalive))
        try:
            await self._await_headers(ex, sink)
            data = await self._drain_payload(ex)
            keeper.cancel()
            if data:
                sink.write(f"data: {data}\n\n")
            sink.write(DONE_FRAME)
            logger.info("[request] Buffered payload delivered for %s", ex.descriptor.id)
        except UpstreamError as exc:
            ex.status = exc.status
            ex.error = exc.message
            sink.write(
                error_frame(f"Request failed (status {exc.status}): {exc.message}")
            )
        except QueueTimeoutError as exc:
            ex.status = 504
            ex.error = str(exc)
            sink.write(error_frame(f"Timed out waiting for the worker: {exc}"))
        except (QueueClosedError, ServiceUnavailable) as exc:
            ex.status = 502
            ex.error = str(exc)
            sink.write(error_frame(f"Worker unavailable: {exc}"))
        except Exception as exc:  # noqa: BLE001
            logger.exception("[request] Buffered stream failed for %s", ex.descriptor.id)
            ex.status = 500
            ex.error = str(exc)
            sink.write(error_frame(f"Processing failed: {exc}"))
        finally:
            keeper.cancel()
            sink.close()

    async def _drain_payload(self, ex: _Exchange) -> Optional[str]:
        event = await ex.mailbox.dequeue(self.cfg.header_timeout_s)
        if event.kind is EventKind.STREAM_END:
            logger.warning("[request] Stream ended without data for %s", ex.descriptor.id)
            return None
        if event.kind is EventKind.ERROR:
            raise UpstreamError(reconcile_status(event.status, event.message), event.message)
        try:
            end = await ex.mailbox.dequeue(self.cfg.chunk_timeout_s)
        except QueueTimeoutError:
            end = None
        if end is None or end.kind is not EventKind.STREAM_END:
            logger.warning("[request] Expected stream end marker for %s", ex.descriptor.id)
        return event.data

    # -- completion ---------------------------------------------------------

    def _response_for(self, ex: _Exchange, exc: Exception) -> Response:
        if isinstance(exc, ProxyError):
            error = exc
        elif isinstance(exc, UpstreamError):
            error = err_upstream(exc.status, f"Request failed: {exc.message}")
        elif isinstance(exc, QueueTimeoutError):
            error = err_gateway_timeout(str(exc))
        elif isinstance(exc, QueueClosedError):
            error = err_worker_disconnected()
        elif isinstance(exc, ServiceUnavailable):
            error = err_no_worker()
        else:
            logger.exception("[request] Unexpected error for %s", ex.descriptor.id)
            error = err_internal(str(exc))
        ex.status = error.status_code
        ex.error = str(exc)
        logger.error(
            "[request] %s failed with %d: %s", ex.descriptor.id, ex.status, exc
        )
        return self._error_response(error)

    @staticmethod
    def _error_response(error: ProxyError) -> JSONResponse:
        return JSONResponse(status_code=error.status_code, content=error.detail)

    def _finish(self, ex: _Exchange) -> None:
        if ex.finished:
            return
        ex.finished = True
        self.registry.remove_mailbox(ex.descriptor.id)
        duration_ms = (time.time() - ex.started_at) * 1000
        self.stats.add(
            RequestSample(
                ts=time.time(),
                account=ex.account,
                model=ex.model,
                policy=ex.descriptor.policy.value,
                status=ex.status,
                attempts=ex.attempts,
                duration_ms=duration_ms,
            )
        )
        if self.request_log is not None:
            self.request_log.log(
                {
                    "ts": time.strftime("%Y-%m-%dT%H:%M:%S", time.gmtime()),
                    "request_id": ex.descriptor.id,
                    "method": ex.descriptor.method,
                    "path": ex.descriptor.path,
                    "account": ex.account,
                    "model": ex.model,
                    "policy": ex.descriptor.policy.value,
                    "status": ex.status,
                    "attempts": ex.attempts,
                    "duration_ms": round(duration_ms, 1),
                    "error": ex.error,
                }
            )
