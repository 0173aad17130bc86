from __future__ import annotations

import os
import stat

from keymaster_cli import config


def _use_tmp_config_dir(monkeypatch, tmp_path) -> None:
    monkeypatch.setattr(config, "user_config_dir", lambda _: str(tmp_path))


def test_load_config_defaults_when_missing(tmp_path, monkeypatch) -> None:
    _use_tmp_config_dir(monkeypatch, tmp_path)
    monkeypatch.delenv(config.ENV_STATE_PATH, raising=False)
    monkeypatch.delenv(config.ENV_MAX_WORKERS, raising=False)

    cfg = config.load_config()

    assert cfg == config.default_config()


def test_save_and_load_roundtrip(tmp_path, monkeypatch) -> None:
    _use_tmp_config_dir(monkeypatch, tmp_path)
    monkeypatch.delenv(config.ENV_MAX_WORKERS, raising=False)
    cfg = config.AppConfig(state_path="/srv/keymaster/state.toml", connect_timeout_s=3.5, max_workers=4)

    path = config.save_config(cfg)

    assert path.endswith("config.toml")
    assert stat.S_IMODE(os.stat(path).st_mode) == 0o600
    contents = tmp_path.joinpath("config.toml").read_text(encoding="utf-8")
    assert "[timeouts]" in contents
    loaded = config.load_config(with_env=False)
    assert loaded.state_path == "/srv/keymaster/state.toml"
    assert loaded.connect_timeout_s == 3.5
    assert loaded.max_workers == 4


def test_state_path_omitted_when_unset(tmp_path, monkeypatch) -> None:
    _use_tmp_config_dir(monkeypatch, tmp_path)
    config.save_config(config.default_config())
    assert "state_path" not in tmp_path.joinpath("config.toml").read_text(encoding="utf-8")


def test_invalid_values_fall_back_to_defaults() -> None:
    cfg = config.from_toml({"timeouts": {"connect": "soon", "sftp": -1}, "fleet": {"max_workers": 0}})
    defaults = config.default_config()
    assert cfg.connect_timeout_s == defaults.connect_timeout_s
    assert cfg.sftp_timeout_s == defaults.sftp_timeout_s
    assert cfg.max_workers == defaults.max_workers


def test_env_overrides(monkeypatch) -> None:
    monkeypatch.setenv(config.ENV_STATE_PATH, "/tmp/other.toml")
    monkeypatch.setenv(config.ENV_MAX_WORKERS, "3")
    cfg = config.apply_env(config.default_config())
    assert cfg.state_path == "/tmp/other.toml"
    assert cfg.max_workers == 3


def test_invalid_env_worker_count_is_ignored(monkeypatch) -> None:
    monkeypatch.setenv(config.ENV_MAX_WORKERS, "lots")
    assert config.apply_env(config.default_config()).max_workers == 16


def test_engine_config_carries_timeouts() -> None:
    cfg = config.AppConfig(connect_timeout_s=2.0, bootstrap_timeout_s=90.0, max_workers=2)
    engine_cfg = config.engine_config(cfg)
    assert engine_cfg.connect_timeout_s == 2.0
    assert engine_cfg.bootstrap_timeout_s == 90.0
    assert engine_cfg.max_workers == 2
