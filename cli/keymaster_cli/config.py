from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass
from typing import Any

import tomli_w
from platformdirs import user_config_dir

from keymaster_core.config_types import EngineConfig

from . import console

APP_NAME = "keymaster"
CONFIG_FILENAME = "config.toml"
ENV_STATE_PATH = "KEYMASTER_STATE_PATH"
ENV_MAX_WORKERS = "KEYMASTER_MAX_WORKERS"


@dataclass
class AppConfig:
    state_path: str = ""
    connect_timeout_s: float = 10.0
    sftp_timeout_s: float = 60.0
    host_key_timeout_s: float = 5.0
    max_workers: int = 16
    bootstrap_timeout_s: float = 1800.0
    committing_grace_s: float = 300.0
    reaper_interval_s: float = 300.0


def config_path() -> str:
    return f"{user_config_dir(APP_NAME)}/{CONFIG_FILENAME}"


def default_config() -> AppConfig:
    return AppConfig()


def ensure_parent_dir(path: str) -> None:
    os.makedirs(os.path.dirname(path), exist_ok=True)


def _float(value: Any, default: float) -> float:
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return default
    return parsed if parsed > 0 else default


def _int(value: Any, default: int) -> int:
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return default
    return parsed if parsed > 0 else default


def to_toml(cfg: AppConfig) -> dict[str, Any]:
    data: dict[str, Any] = {
        "timeouts": {
            "connect": cfg.connect_timeout_s,
            "sftp": cfg.sftp_timeout_s,
            "host_key": cfg.host_key_timeout_s,
        },
        "fleet": {"max_workers": cfg.max_workers},
        "bootstrap": {
            "timeout": cfg.bootstrap_timeout_s,
            "committing_grace": cfg.committing_grace_s,
            "reaper_interval": cfg.reaper_interval_s,
        },
    }
    if cfg.state_path:
        data["state_path"] = cfg.state_path
    return data


def from_toml(data: dict[str, Any]) -> AppConfig:
    cfg = default_config()
    cfg.state_path = str(data.get("state_path") or "").strip()

    timeouts = data.get("timeouts") or {}
    if isinstance(timeouts, dict):
        cfg.connect_timeout_s = _float(timeouts.get("connect"), cfg.connect_timeout_s)
        cfg.sftp_timeout_s = _float(timeouts.get("sftp"), cfg.sftp_timeout_s)
        cfg.host_key_timeout_s = _float(timeouts.get("host_key"), cfg.host_key_timeout_s)

    fleet = data.get("fleet") or {}
    if isinstance(fleet, dict):
        cfg.max_workers = _int(fleet.get("max_workers"), cfg.max_workers)

    bootstrap = data.get("bootstrap") or {}
    if isinstance(bootstrap, dict):
        cfg.bootstrap_timeout_s = _float(bootstrap.get("timeout"), cfg.bootstrap_timeout_s)
        cfg.committing_grace_s = _float(bootstrap.get("committing_grace"), cfg.committing_grace_s)
        cfg.reaper_interval_s = _float(bootstrap.get("reaper_interval"), cfg.reaper_interval_s)
    return cfg


def apply_env(cfg: AppConfig) -> AppConfig:
    state_path = os.getenv(ENV_STATE_PATH, "").strip()
    if state_path:
        cfg.state_path = state_path
    workers = os.getenv(ENV_MAX_WORKERS, "").strip()
    if workers:
        parsed = _int(workers, 0)
        if parsed:
            cfg.max_workers = parsed
        else:
            console.warn(f"ignoring invalid {ENV_MAX_WORKERS}={workers!r}")
    return cfg


def load_config(*, with_env: bool = True) -> AppConfig:
    path = config_path()
    try:
        with open(path, "rb") as f:
            data = tomllib.load(f)
        cfg = from_toml(data)
    except FileNotFoundError:
        cfg = default_config()
    return apply_env(cfg) if with_env else cfg


def save_config(cfg: AppConfig) -> str:
    path = config_path()
    ensure_parent_dir(path)
    with open(path, "wb") as f:
        f.write(tomli_w.dumps(to_toml(cfg)).encode("utf-8"))
    os.chmod(path, 0o600)
    return path


def engine_config(cfg: AppConfig) -> EngineConfig:
    return EngineConfig(
        connect_timeout_s=cfg.connect_timeout_s,
        sftp_timeout_s=cfg.sftp_timeout_s,
        host_key_timeout_s=cfg.host_key_timeout_s,
        max_workers=cfg.max_workers,
        bootstrap_timeout_s=cfg.bootstrap_timeout_s,
        committing_grace_s=cfg.committing_grace_s,
        reaper_interval_s=cfg.reaper_interval_s,
    )
