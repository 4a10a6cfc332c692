"""Tests covering config file loading and environment variable overrides."""

from __future__ import annotations

from pathlib import Path

from scopecam import config as config_module


def _reset_config_state(monkeypatch) -> None:
    monkeypatch.setattr(config_module, "_cfg_cache", None, raising=False)
    monkeypatch.setattr(config_module, "_search_paths", [], raising=False)
    monkeypatch.setattr(config_module, "_active_config_path", None, raising=False)


def _clear_env(monkeypatch) -> None:
    for key in (
        "DEV",
        "LOG_LEVEL",
        "CAPTURES_DIR",
        "FFMPEG_PATH",
        "MIN_DISK_SPACE_MB",
        "MEDIAMTX_BIN",
        "MEDIAMTX_CONFIG",
        "MEDIAMTX_API",
        "STREAM_PATH",
        "RTSP_URL",
        "SUPERVISOR_MAX_RESTARTS",
    ):
        monkeypatch.delenv(key, raising=False)


def test_file_values_merge_over_defaults(monkeypatch, tmp_path: Path) -> None:
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        "supervisor:\n  max_restarts: 4\ncapture:\n  captures_dir: /srv/captures\n",
        encoding="utf-8",
    )
    _clear_env(monkeypatch)
    monkeypatch.setenv("SCOPECAM_CONFIG", str(config_path))
    _reset_config_state(monkeypatch)

    cfg = config_module.get_cfg()

    assert cfg["supervisor"]["max_restarts"] == 4
    assert cfg["supervisor"]["initial_delay_sec"] == 2.0
    assert cfg["capture"]["captures_dir"] == "/srv/captures"
    assert cfg["capture"]["min_disk_space_mb"] == 500
    assert config_module.active_config_path() == config_path.resolve()


def test_env_overrides_win_over_file(monkeypatch, tmp_path: Path) -> None:
    config_path = tmp_path / "config.yaml"
    config_path.write_text("media_server:\n  stream_path: telescope\n", encoding="utf-8")
    _clear_env(monkeypatch)
    monkeypatch.setenv("SCOPECAM_CONFIG", str(config_path))
    monkeypatch.setenv("STREAM_PATH", "guidecam")
    monkeypatch.setenv("MIN_DISK_SPACE_MB", "1024")
    monkeypatch.setenv("CAPTURES_DIR", str(tmp_path / "captures"))
    _reset_config_state(monkeypatch)

    cfg = config_module.get_cfg()

    assert cfg["media_server"]["stream_path"] == "guidecam"
    assert cfg["capture"]["min_disk_space_mb"] == 1024
    photos, videos = config_module.captures_paths(cfg)
    assert photos == tmp_path / "captures" / "photos"
    assert videos == tmp_path / "captures" / "videos"


def test_invalid_numeric_override_is_ignored(monkeypatch, tmp_path: Path) -> None:
    config_path = tmp_path / "config.yaml"
    config_path.write_text("{}\n", encoding="utf-8")
    _clear_env(monkeypatch)
    monkeypatch.setenv("SCOPECAM_CONFIG", str(config_path))
    monkeypatch.setenv("SUPERVISOR_MAX_RESTARTS", "lots")
    _reset_config_state(monkeypatch)

    cfg = config_module.get_cfg()

    assert cfg["supervisor"]["max_restarts"] == 10


def test_dev_mode_enables_debug_logging(monkeypatch, tmp_path: Path) -> None:
    config_path = tmp_path / "config.yaml"
    config_path.write_text("logging:\n  level: WARNING\n", encoding="utf-8")
    _clear_env(monkeypatch)
    monkeypatch.setenv("SCOPECAM_CONFIG", str(config_path))
    monkeypatch.setenv("DEV", "1")
    _reset_config_state(monkeypatch)

    cfg = config_module.get_cfg()

    assert cfg["logging"]["dev_mode"] is True
    assert cfg["logging"]["level"] == "DEBUG"


def test_malformed_yaml_falls_back_to_defaults(monkeypatch, tmp_path: Path, caplog) -> None:
    config_path = tmp_path / "config.yaml"
    config_path.write_text("supervisor: [unterminated\n", encoding="utf-8")
    _clear_env(monkeypatch)
    monkeypatch.setenv("SCOPECAM_CONFIG", str(config_path))
    _reset_config_state(monkeypatch)

    cfg = config_module.get_cfg()

    assert cfg["supervisor"]["max_restarts"] == 10
    assert any("Ignoring unreadable config" in record.message for record in caplog.records)
