from __future__ import annotations

import logging
from typing import Mapping, Optional

from fastapi import Request

from .config import ProxyConfig
from .errors import ProxyError, err_unauthorized

logger = logging.getLogger(__name__)

KEY_QUERY_PARAM = "key"
DASHBOARD_AUTH_HEADER = "x-dashboard-auth"


def extract_api_key(headers: Mapping[str, str], query: Mapping[str, str]) -> Optional[str]:
    """Find a client key in the supported headers or the ``key`` query param."""

    key = headers.get("x-goog-api-key")
    if key:
        return key
    authorization = headers.get("authorization", "")
    if authorization.lower().startswith("bearer "):
        token = authorization[7:].strip()
        if token:
            return token
    key = headers.get("x-api-key")
    if key:
        return key
    return query.get(KEY_QUERY_PARAM) or None


def strip_key_param(query: Mapping[str, str]) -> dict[str, str]:
    return {name: value for name, value in query.items() if name != KEY_QUERY_PARAM}


def is_valid_key(cfg: ProxyConfig, key: Optional[str]) -> bool:
    if not cfg.api_key_auth_enabled:
        return True
    return bool(key) and key in cfg.api_keys


def check_api_key(cfg: ProxyConfig, request: Request) -> None:
    """Raise a 401 ProxyError unless the request carries a configured key."""

    if not cfg.api_key_auth_enabled:
        return
    key = extract_api_key(request.headers, request.query_params)
    if not key:
        logger.warning(
            "[auth] Request without API key from %s to %s",
            request.client.host if request.client else "unknown",
            request.url.path,
        )
        raise err_unauthorized("Access denied: missing API key")
    if key not in cfg.api_keys:
        logger.warning(
            "[auth] Rejected invalid API key from %s",
            request.client.host if request.client else "unknown",
        )
        raise err_unauthorized("Access denied: invalid API key")


def check_dashboard_auth(cfg: ProxyConfig, request: Request) -> None:
    if not cfg.api_key_auth_enabled:
        return
    key = request.headers.get(DASHBOARD_AUTH_HEADER)
    if key and key in cfg.api_keys:
        return
    logger.warning(
        "[auth] Unauthorized dashboard request from %s to %s",
        request.client.host if request.client else "unknown",
        request.url.path,
    )
    raise ProxyError(401, "unauthorized", "Unauthorized dashboard access")
