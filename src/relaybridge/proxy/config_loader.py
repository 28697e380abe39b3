from __future__ import annotations

import logging
import os
import shlex
import tempfile
from dataclasses import asdict, fields
from functools import lru_cache
from pathlib import Path
from typing import Any, Union, get_args, get_origin, get_type_hints

try:
    import tomllib  # Python 3.11+
except ModuleNotFoundError:  # pragma: no cover
    import tomli as tomllib  # type: ignore[no-redef]

from .config import STREAMING_MODES, ProxyConfig

logger = logging.getLogger(__name__)

CONFIG_FILE_ENV = "RELAY_CONFIG_FILE"
ENV_PREFIX = "RELAY_"
DEFAULT_CONFIG_PATH = Path("configs/relaybridge.toml")

# TOML table -> ProxyConfig fields stored under it, in file order.
_SECTIONS: tuple[tuple[str, tuple[str, ...]], ...] = (
    (
        "server",
        (
            "host",
            "port",
            "worker_ws_path",
            "log_path",
            "max_log_bytes",
            "debug_mode",
            "enable_stats",
        ),
    ),
    ("streaming", ("streaming_mode",)),
    (
        "retry",
        (
            "max_retries",
            "retry_delay_ms",
            "failure_threshold",
            "immediate_switch_status_codes",
        ),
    ),
    ("timeouts", ("header_timeout_s", "chunk_timeout_s", "keepalive_interval_s")),
    ("auth", ("api_keys",)),
    ("credentials", ("credential_dir", "initial_auth_index")),
    (
        "worker",
        (
            "worker_command",
            "worker_start_grace_s",
            "worker_attach_timeout_s",
            "worker_stop_timeout_s",
            "worker_state_dir",
        ),
    ),
)

_TRUTHY = {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def _hints() -> dict[str, Any]:
    return get_type_hints(ProxyConfig)


def _stored_fields() -> list[str]:
    return [f.name for f in fields(ProxyConfig) if f.name != "config_file_path"]


def _defaults() -> dict[str, Any]:
    values = asdict(ProxyConfig())
    values.pop("config_file_path", None)
    return values


def _cast_scalar(kind: Any, value: Any) -> Any:
    if kind is bool:
        if isinstance(value, str):
            return value.strip().lower() in _TRUTHY
        return bool(value)
    if kind is int and isinstance(value, float):
        return int(value)
    if kind is str:
        return "" if value is None else str(value)
    if kind in (int, float):
        return kind(value if not isinstance(value, str) else value.strip())
    return value


def _cast(name: str, value: Any) -> Any:
    """Convert ``value`` to the declared type of ProxyConfig field ``name``.

    Strings are accepted for every field so the same path serves TOML and
    environment input. Lists may be given comma separated, except
    ``worker_command`` which is split like a shell command line.
    """

    if name == "worker_command" and isinstance(value, str):
        return shlex.split(value)
    hint = _hints().get(name)
    origin = get_origin(hint)
    if origin is list:
        if isinstance(value, str):
            value = [part.strip() for part in value.split(",")]
        (item_kind,) = get_args(hint) or (None,)
        items = [item for item in (value or []) if item != ""]
        return [_cast_scalar(item_kind, item) for item in items]
    if origin is Union:
        inner = [arg for arg in get_args(hint) if arg is not type(None)]
        if value in ("", None, 0):
            return None
        return _cast_scalar(inner[0], value) if len(inner) == 1 else value
    return _cast_scalar(hint, value)


def parse_status_codes(raw: Any) -> list[int]:
    """Parse a comma separated string or list into HTTP error codes (400-599)."""

    if raw is None:
        return []
    if isinstance(raw, str):
        raw = raw.split(",")
    codes: list[int] = []
    for item in raw:
        try:
            code = int(str(item).strip())
        except ValueError:
            continue
        if 400 <= code <= 599 and code not in codes:
            codes.append(code)
    return codes


def env_name(field_name: str) -> str:
    return f"{ENV_PREFIX}{field_name.upper()}"


def _config_path() -> Path:
    return Path(os.environ.get(CONFIG_FILE_ENV, DEFAULT_CONFIG_PATH)).expanduser()


def _read_file(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    with path.open("rb") as fh:
        document = tomllib.load(fh)
    values: dict[str, Any] = {}
    for section, names in _SECTIONS:
        table = document.get(section)
        if isinstance(table, dict):
            values.update({name: table[name] for name in names if name in table})
    return values


def _env_values() -> dict[str, Any]:
    """``RELAY_<FIELD>`` variables converted to field values.

    Status code lists drop entries that are not error codes. Other values
    that fail to convert are logged and skipped.
    """

    values: dict[str, Any] = {}
    for name in _stored_fields():
        raw = os.environ.get(env_name(name), "")
        if not raw.strip():
            continue
        if name == "immediate_switch_status_codes":
            values[name] = parse_status_codes(raw)
            continue
        try:
            values[name] = _cast(name, raw)
        except ValueError:
            logger.warning("[config] Ignoring invalid %s=%r", env_name(name), raw)
    return values


def _clean(values: dict[str, Any]) -> dict[str, Any]:
    defaults = _defaults()
    cleaned: dict[str, Any] = {}
    for name, default in defaults.items():
        raw = values.get(name, default)
        try:
            cleaned[name] = _cast(name, raw)
        except (TypeError, ValueError):
            logger.warning("[config] Invalid value for %s: %r", name, raw)
            cleaned[name] = default

    cleaned["immediate_switch_status_codes"] = parse_status_codes(
        cleaned["immediate_switch_status_codes"]
    )
    if cleaned["streaming_mode"] not in STREAMING_MODES:
        logger.warning(
            "[config] Unknown streaming_mode %r, falling back to 'real'",
            cleaned["streaming_mode"],
        )
        cleaned["streaming_mode"] = "real"
    if cleaned["max_retries"] < 0:
        cleaned["max_retries"] = 3
    cleaned["failure_threshold"] = max(0, cleaned["failure_threshold"])
    start = cleaned["initial_auth_index"]
    if start is not None and start <= 0:
        cleaned["initial_auth_index"] = None
    return cleaned


def _file_values(path: Path) -> dict[str, Any]:
    if not path.exists():
        write_config(ProxyConfig(), path)
    return {**_defaults(), **_read_file(path)}


def load_file_config() -> dict[str, Any]:
    """Settings as stored on disk, without environment overrides."""
    return _clean(_file_values(_config_path()))


def load_proxy_config() -> ProxyConfig:
    path = _config_path()
    values = _file_values(path)
    values.update(_env_values())
    cfg = ProxyConfig(**_clean(values))
    cfg.config_file_path = str(path)
    return cfg


def _toml_literal(value: Any) -> str:
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, (int, float)):
        return repr(value)
    if isinstance(value, (list, tuple)):
        return "[" + ", ".join(_toml_literal(item) for item in value) + "]"
    text = "" if value is None else str(value)
    return '"' + text.replace("\\", "\\\\").replace('"', '\\"') + '"'


def _render(config: ProxyConfig) -> str:
    values = asdict(config)
    out = [
        "# relaybridge configuration.",
        "# Generated automatically. Edit values as needed.",
    ]
    for section, names in _SECTIONS:
        out.extend(["", f"[{section}]"])
        # TOML has no null; a missing key reads back as the default
        out.extend(
            f"{name} = {_toml_literal(values[name])}"
            for name in names
            if values[name] is not None
        )
    return "\n".join(out) + "\n"


def write_config(config: ProxyConfig, path: Path | None = None) -> None:
    """Atomically replace the config file with ``config`` rendered as TOML."""

    path = Path(path or _config_path()).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile(
        "w",
        encoding="utf-8",
        dir=path.parent,
        prefix=".relaybridge_",
        suffix=".toml",
        delete=False,
    ) as handle:
        handle.write(_render(config))
        staged = Path(handle.name)
    try:
        os.replace(staged, path)
    except OSError:
        staged.unlink(missing_ok=True)
        raise


def update_config_file(updates: dict[str, Any]) -> ProxyConfig:
    """Merge ``updates`` into the file and return the effective config."""

    path = _config_path()
    values = _file_values(path)
    unknown = sorted(set(updates) - set(values))
    if unknown:
        raise KeyError(f"Unknown configuration field(s): {', '.join(unknown)}")
    values.update(updates)
    write_config(ProxyConfig(**_clean(values)), path)
    return load_proxy_config()


def list_env_overrides() -> dict[str, str]:
    """``RELAY_*`` variables currently set, with API keys redacted."""
    return {
        key: "***" if key == env_name("api_keys") else value
        for key, value in os.environ.items()
        if key.startswith(ENV_PREFIX)
    }
