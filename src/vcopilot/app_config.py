from __future__ import annotations

import json
import os
import shlex
from dataclasses import dataclass
from pathlib import Path

from vcopilot.interactive.browser import DEFAULT_CHAT_URL, DEFAULT_RELAY_COMMAND, DEFAULT_RELAY_HOST, DEFAULT_RELAY_PORT

VALID_MODES = ("remote", "interactive", "local")


@dataclass
class RuntimeEnv:
    github_token: str | None
    copilot_token: str | None
    local_api_key: str | None
    debug: bool


@dataclass
class AppConfig:
    config_dir: str
    mode: str
    model: str
    remote_api_endpoint: str | None
    local_endpoint_url: str | None
    local_endpoint_api_key: str | None
    chat_url: str
    relay_host: str
    relay_port: int
    relay_command: list[str]
    request_timeout: float
    sync: bool
    force_external_session: bool
    job_max_age_hours: float
    serve_port: int
    log_level: str
    log_consumers: list | None


def load_json_config() -> dict:
    config_path = Path.cwd() / "config.json"
    if config_path.exists():
        with open(config_path) as f:
            return json.load(f)
    return {}


def _to_bool(value: object, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    return bool(value)


def _command(value: object) -> list[str]:
    if isinstance(value, list) and value:
        return [str(part) for part in value]
    if isinstance(value, str) and value.strip():
        return shlex.split(value)
    return list(DEFAULT_RELAY_COMMAND)


def _default_config_dir() -> str:
    return os.environ.get("VCOPILOT_CONFIG_DIR") or str(Path.home() / ".vcopilot")


def parse_app_config(config: dict) -> AppConfig:
    mode = str(config.get("Mode", "remote")).strip().lower()
    if mode not in VALID_MODES:
        raise ValueError(f"Unknown Mode: {mode!r}. Supported: {', '.join(VALID_MODES)}")

    return AppConfig(
        config_dir=str(Path(config.get("ConfigDir") or _default_config_dir()).expanduser()),
        mode=mode,
        model=config.get("Model", "gpt-4o"),
        remote_api_endpoint=str(config.get("RemoteApiEndpoint", "")).strip() or None,
        local_endpoint_url=str(config.get("LocalEndpointUrl", "")).strip() or None,
        local_endpoint_api_key=str(config.get("LocalEndpointApiKey", "")).strip() or None,
        chat_url=str(config.get("ChatUrl", DEFAULT_CHAT_URL)).rstrip("/"),
        relay_host=config.get("RelayHost", DEFAULT_RELAY_HOST),
        relay_port=int(config.get("RelayPort", DEFAULT_RELAY_PORT)),
        relay_command=_command(config.get("RelayCommand")),
        request_timeout=float(config.get("RequestTimeout", 120)),
        sync=_to_bool(config.get("Sync", False), default=False),
        force_external_session=_to_bool(config.get("ForceExternalSession", False), default=False),
        job_max_age_hours=float(config.get("JobMaxAgeHours", 24)),
        serve_port=int(config.get("ServePort", 3000)),
        log_level=config.get("LogLevel", "INFO"),
        log_consumers=config.get("LogConsumers"),
    )


def resolve_runtime_env() -> RuntimeEnv:
    return RuntimeEnv(
        github_token=os.environ.get("GITHUB_TOKEN") or None,
        copilot_token=os.environ.get("COPILOT_TOKEN") or None,
        local_api_key=os.environ.get("VCOPILOT_LOCAL_API_KEY") or None,
        debug=_to_bool(os.environ.get("VCOPILOT_DEBUG"), default=False),
    )
