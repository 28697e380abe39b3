from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Any, List, Optional, Union

from fastapi import Body, FastAPI, HTTPException, Request, WebSocket
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from pydantic import BaseModel, ConfigDict, Field

from .auth import check_api_key, check_dashboard_auth, strip_key_param
from .config import STREAMING_MODES
from .config_loader import (
    list_env_overrides,
    load_file_config,
    parse_status_codes,
    update_config_file,
)
from .context import ProxyContext
from .dispatcher import InboundRequest
from .errors import (
    CredentialError,
    CredentialNotFound,
    ProxyError,
    RotationFailed,
    RotationInProgress,
)

logger = logging.getLogger(__name__)

PROXY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS", "HEAD"]
_LOCAL_ROUTES = {
    ("GET", "/"),
    ("GET", "/favicon.ico"),
    ("GET", "/health"),
    ("POST", "/switch"),
}


class VerifyKeyRequest(BaseModel):
    key: Optional[str] = None


class AccountRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    index: int
    auth_data: Union[dict, str] = Field(..., alias="authData")


class ConfigUpdate(BaseModel):
    """Runtime-only settings change; nothing is written to disk."""

    model_config = ConfigDict(populate_by_name=True)

    streaming_mode: Optional[str] = Field(None, alias="streamingMode")
    debug_mode: Optional[bool] = Field(None, alias="debugMode")
    failure_threshold: Optional[int] = Field(None, alias="failureThreshold")
    max_retries: Optional[int] = Field(None, alias="maxRetries")
    retry_delay_ms: Optional[int] = Field(None, alias="retryDelay")
    immediate_switch_status_codes: Optional[Union[List[Any], str]] = Field(
        None, alias="immediateSwitchStatusCodes"
    )


def _redacted(settings: dict) -> dict:
    if settings.get("api_keys"):
        settings["api_keys"] = ["***"] * len(settings["api_keys"])
    return settings


def _handled_locally(method: str, path: str) -> bool:
    if (method.upper(), path) in _LOCAL_ROUTES:
        return True
    return path == "/dashboard" or path.startswith("/dashboard/")


def create_app(context: ProxyContext | None = None) -> FastAPI:
    ctx = context or ProxyContext.create()
    cfg = ctx.cfg

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        await ctx.startup()
        try:
            yield
        finally:
            await ctx.shutdown()

    app = FastAPI(title="RelayBridge Proxy", version="0.1", lifespan=lifespan)
    app.state.context = ctx

    @app.exception_handler(ProxyError)
    async def _proxy_error(_request: Request, exc: ProxyError):
        return JSONResponse(status_code=exc.status_code, content=exc.detail)

    @app.middleware("http")
    async def _debug_request_log(request: Request, call_next):
        if cfg.debug_mode:
            body = await request.body()
            logger.debug(
                "[app] %s %s headers=%s body=%s",
                request.method,
                request.url,
                dict(request.headers),
                body.decode("utf-8", errors="replace"),
            )
        return await call_next(request)

    @app.middleware("http")
    async def _api_key_guard(request: Request, call_next):
        if not _handled_locally(request.method, request.url.path):
            try:
                check_api_key(cfg, request)
            except ProxyError as exc:
                return JSONResponse(status_code=exc.status_code, content=exc.detail)
        return await call_next(request)

    @app.websocket(cfg.worker_ws_path)
    async def worker_socket(websocket: WebSocket):
        await websocket.accept()
        client = websocket.client
        address = f"{client.host}:{client.port}" if client else None
        ctx.registry.add_channel(websocket, address)
        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
                frame = message.get("text")
                if frame is None:
                    frame = message.get("bytes")
                if frame is not None:
                    ctx.registry.handle_frame(frame)
        finally:
            ctx.registry.remove_channel(websocket)
            logger.info("[app] Worker channel closed (%s)", address or "unknown")

    @app.get("/health")
    async def health():
        return JSONResponse(content=ctx.health())

    @app.get("/")
    @app.get("/favicon.ico")
    async def no_content():
        return Response(status_code=204)

    @app.post("/dashboard/verify-key")
    async def verify_key(payload: Optional[VerifyKeyRequest] = None):
        if not cfg.api_key_auth_enabled:
            logger.info("[admin] No API keys configured, dashboard access granted")
            return {"success": True}
        if payload is not None and payload.key and payload.key in cfg.api_keys:
            logger.info("[admin] Dashboard key verified")
            return {"success": True}
        logger.warning("[admin] Dashboard key verification failed")
        return JSONResponse(
            status_code=401, content={"success": False, "message": "Invalid API key"}
        )

    @app.get("/dashboard/data")
    async def dashboard_data(request: Request):
        check_dashboard_auth(cfg, request)
        snapshot = ctx.health()
        snapshot["config"] = {
            **cfg.summary(),
            "authMode": ctx.credentials.mode,
            "workerChannels": ctx.registry.channel_count,
        }
        return JSONResponse(content=snapshot)

    @app.post("/dashboard/config")
    async def update_runtime_config(request: Request, payload: ConfigUpdate):
        check_dashboard_auth(cfg, request)
        if payload.streaming_mode is not None:
            if payload.streaming_mode not in STREAMING_MODES:
                raise HTTPException(
                    status_code=400,
                    detail=f"streamingMode must be one of {', '.join(STREAMING_MODES)}",
                )
            cfg.streaming_mode = payload.streaming_mode
        if payload.debug_mode is not None:
            cfg.debug_mode = payload.debug_mode
        if payload.failure_threshold is not None:
            cfg.failure_threshold = max(0, payload.failure_threshold)
        if payload.max_retries is not None:
            cfg.max_retries = payload.max_retries if payload.max_retries >= 0 else 3
        if payload.retry_delay_ms is not None:
            cfg.retry_delay_ms = payload.retry_delay_ms if payload.retry_delay_ms > 0 else 2000
        if payload.immediate_switch_status_codes is not None:
            cfg.immediate_switch_status_codes = parse_status_codes(
                payload.immediate_switch_status_codes
            )
        logger.info("[admin] Runtime configuration updated: %s", cfg.summary())
        return {"success": True, "config": cfg.summary()}

    @app.get("/dashboard/config/file")
    async def read_config_file(request: Request):
        check_dashboard_auth(cfg, request)
        runtime = _redacted(asdict(cfg))
        config_path = runtime.pop("config_file_path", None)
        return JSONResponse(
            content={
                "runtime": runtime,
                "file": _redacted(load_file_config()),
                "config_file_path": config_path,
                "env_overrides": list_env_overrides(),
            }
        )

    @app.put("/dashboard/config/file")
    async def write_config_file(request: Request, payload: dict[str, Any] = Body(...)):
        check_dashboard_auth(cfg, request)
        if not payload:
            raise HTTPException(
                status_code=400, detail="Request body must be a non-empty object."
            )
        try:
            updated = update_config_file(payload)
        except KeyError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except (OSError, ValueError) as exc:
            logger.exception("[admin] Failed to update config file")
            raise HTTPException(
                status_code=500, detail="Failed to update configuration."
            ) from exc
        return JSONResponse(
            content={
                "status": "written",
                "config_file_path": updated.config_file_path,
                "file": _redacted(load_file_config()),
                "requires_restart": True,
            }
        )

    @app.post("/dashboard/accounts")
    async def add_account(request: Request, payload: AccountRequest):
        check_dashboard_auth(cfg, request)
        auth_data = payload.auth_data
        if isinstance(auth_data, str):
            try:
                auth_data = json.loads(auth_data)
            except json.JSONDecodeError:
                return JSONResponse(
                    status_code=400,
                    content={"success": False, "message": "authData is not valid JSON"},
                )
        try:
            ctx.credentials.add_transient(payload.index, auth_data)
        except CredentialError as exc:
            return JSONResponse(
                status_code=400, content={"success": False, "message": str(exc)}
            )
        ctx.stats.ensure_account(payload.index)
        return {"success": True, "message": f"Account {payload.index} added"}

    @app.delete("/dashboard/accounts/{index}")
    async def remove_account(request: Request, index: int):
        check_dashboard_auth(cfg, request)
        try:
            ctx.credentials.remove_transient(index)
        except CredentialNotFound as exc:
            return JSONResponse(
                status_code=400, content={"success": False, "message": str(exc)}
            )
        return {"success": True, "message": f"Account {index} removed"}

    @app.api_route("/dashboard/{rest:path}", methods=PROXY_METHODS)
    async def dashboard_fallback(rest: str):
        return Response(status_code=204)

    @app.api_route("/dashboard", methods=PROXY_METHODS)
    async def dashboard_root():
        return Response(status_code=204)

    @app.post("/switch")
    async def switch_account(request: Request):
        check_dashboard_auth(cfg, request)
        logger.info("[admin] Manual account switch requested")
        previous = ctx.failover.current_index
        try:
            current = await ctx.failover.rotate()
        except RotationInProgress as exc:
            logger.warning("[admin] Switch rejected: %s", exc)
            return PlainTextResponse(str(exc), status_code=429)
        except RotationFailed as exc:
            logger.error("[admin] Manual switch failed: %s", exc)
            return PlainTextResponse(f"Account switch failed: {exc}", status_code=500)
        return PlainTextResponse(f"Switched account from {previous} to {current}")

    @app.api_route("/{full_path:path}", methods=PROXY_METHODS)
    async def proxy(request: Request, full_path: str):
        inbound = InboundRequest(
            method=request.method,
            path=request.url.path,
            headers=dict(request.headers),
            query=strip_key_param(request.query_params),
            body=await request.body(),
        )
        return await ctx.dispatcher.process_request(inbound)

    return app


def main():  # pragma: no cover
    import uvicorn

    from ..logging_utils import configure_logging

    configure_logging("relaybridge")
    app = create_app()
    uvicorn.run(app, host=app.state.context.cfg.host, port=app.state.context.cfg.port)


if __name__ == "__main__":  # pragma: no cover
    main()
