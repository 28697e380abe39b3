from __future__ import annotations

from fastapi import HTTPException


class ServiceUnavailable(RuntimeError):
    """Raised when no worker channel is attached."""


class UpstreamError(RuntimeError):
    """Terminal error reported by the worker for one request."""

    def __init__(self, status: int | None, message: str):
        super().__init__(message)
        self.status = status or 500
        self.message = message


class QueueTimeoutError(TimeoutError):
    """Raised when a mailbox receive times out."""


class QueueClosedError(RuntimeError):
    """Raised when a mailbox is closed while (or before) waiting on it."""


class RotationInProgress(RuntimeError):
    """Raised when a credential rotation is already running."""


class RotationFailed(RuntimeError):
    """Raised when a credential rotation could not be completed."""


class CredentialError(ValueError):
    """Raised when a credential cannot be stored."""


class CredentialNotFound(KeyError):
    """Raised when a credential index is unknown or its payload is unreadable."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "credential not found"


class WorkerLaunchError(RuntimeError):
    """Raised when the worker context cannot be (re)built for a credential."""


class ProxyError(HTTPException):
    def __init__(
        self, status_code: int, err_type: str, message: str, hint: str | None = None
    ):
        payload = {"error": {"type": err_type, "code": status_code, "message": message}}
        if hint:
            payload["error"]["hint"] = hint
        super().__init__(status_code=status_code, detail=payload)


def err_no_worker() -> ProxyError:
    return ProxyError(
        503,
        "service_unavailable",
        "No worker connection available",
        "Check that the worker has attached to the WebSocket endpoint",
    )


def err_upstream(status: int | None, message: str) -> ProxyError:
    return ProxyError(status or 500, "upstream_error", message)


def err_gateway_timeout(message: str) -> ProxyError:
    return ProxyError(504, "gateway_timeout", f"Proxy error: {message}")


def err_worker_disconnected() -> ProxyError:
    return ProxyError(
        502, "worker_disconnected", "Worker disconnected before responding"
    )


def err_internal(message: str) -> ProxyError:
    return ProxyError(500, "internal_error", f"Proxy error: {message}")


def err_unauthorized(message: str) -> ProxyError:
    return ProxyError(401, "unauthorized", message)
