#!/usr/bin/env python3
"""
Unified configuration loader for scopecam.

Load order (first found wins):
  1) SCOPECAM_CONFIG (env, absolute or relative to CWD)
  2) /etc/scopecam/config.yaml
  3) /apps/scopecam/config.yaml
  4) <project_root>/config.yaml (derived from this file's location)
  5) <script_dir>/config.yaml (directory of the running script)
  6) ./config.yaml (current working directory)

Environment variables override file values when present.
"""
from __future__ import annotations
import copy
import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict, Mapping

import yaml

_LOG = logging.getLogger("config")

_DEFAULTS: Dict[str, Any] = {
    "media_server": {
        "binary": "mediamtx",
        "config_path": "/apps/scopecam/mediamtx.yml",
        "api_url": "http://127.0.0.1:9997",
        "stream_path": "telescope",
        "rtsp_url": "rtsp://localhost:8554/telescope",
    },
    "supervisor": {
        "initial_delay_sec": 2.0,
        "max_delay_sec": 60.0,
        "max_restarts": 10,
        "reset_after_sec": 300.0,
        "stop_timeout_sec": 5.0,
    },
    "capture": {
        "captures_dir": "/apps/scopecam/captures",
        "ffmpeg_path": "ffmpeg",
        "min_disk_space_mb": 500,
        "rtsp_timeout_us": 6_000_000,
        "photo_timeout_sec": 10.0,
        "health_retries": 3,
        "health_retry_delay_sec": 1.0,
        "health_timeout_sec": 3.0,
        "graceful_stop_timeout_sec": 5.0,
        "termination_grace_sec": 5.0,
        "sync_delay_sec": 0.5,
        "verify_attempts": 3,
        "verify_delay_sec": 0.3,
        "error_tail_chars": 200,
    },
    "logging": {
        "level": "INFO",
        "dev_mode": False,  # if True or ENV DEV=1, enable verbose debug
    },
}

_cfg_cache: Dict[str, Any] | None = None
_search_paths: list[Path] = []
_active_config_path: Path | None = None


def _load_yaml_if_exists(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as exc:
        # Ignore parse errors and continue with other locations/defaults
        _LOG.warning("Ignoring unreadable config file %s: %s", path, exc)
        return {}
    if isinstance(data, dict):
        return data
    _LOG.warning("Ignoring config file %s: top level is not a mapping", path)
    return {}


def _candidate_search_paths(project_root: Path, script_dir: Path) -> list[Path]:
    search: list[Path] = []
    env_cfg = os.getenv("SCOPECAM_CONFIG")
    if env_cfg:
        search.append(Path(env_cfg).expanduser())
    search.extend(
        [
            Path("/etc/scopecam/config.yaml"),
            Path("/apps/scopecam/config.yaml"),
            project_root / "config.yaml",
            script_dir / "config.yaml",
            Path.cwd() / "config.yaml",
        ]
    )
    seen: set[Path] = set()
    ordered: list[Path] = []
    for candidate in search:
        try:
            resolved = candidate.resolve()
        except OSError:
            resolved = candidate
        if resolved in seen:
            continue
        seen.add(resolved)
        ordered.append(resolved)
    return ordered


def _deep_merge(base: Dict[str, Any], extra: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(base)
    for k, v in extra.items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = v
    return out


def _apply_env_overrides(cfg: Dict[str, Any]) -> None:
    # DEV mode
    if os.getenv("DEV") == "1":
        logging_section = cfg.setdefault("logging", {})
        logging_section["dev_mode"] = True
        logging_section["level"] = "DEBUG"
    if "LOG_LEVEL" in os.environ:
        value = os.environ["LOG_LEVEL"].strip()
        if value:
            cfg.setdefault("logging", {})["level"] = value.upper()

    env_map = {
        "CAPTURES_DIR": ("capture", "captures_dir", str),
        "FFMPEG_PATH": ("capture", "ffmpeg_path", str),
        "MIN_DISK_SPACE_MB": ("capture", "min_disk_space_mb", int),
        "MEDIAMTX_BIN": ("media_server", "binary", str),
        "MEDIAMTX_CONFIG": ("media_server", "config_path", str),
        "MEDIAMTX_API": ("media_server", "api_url", str),
        "STREAM_PATH": ("media_server", "stream_path", str),
        "RTSP_URL": ("media_server", "rtsp_url", str),
        "SUPERVISOR_MAX_RESTARTS": ("supervisor", "max_restarts", int),
    }
    for env_key, (section, key, cast) in env_map.items():
        if env_key not in os.environ:
            continue
        raw = os.environ[env_key].strip()
        if not raw:
            continue
        try:
            cfg.setdefault(section, {})[key] = cast(raw)
        except ValueError:
            _LOG.warning("Ignoring invalid %s=%r", env_key, raw)


def get_cfg() -> Dict[str, Any]:
    global _cfg_cache, _search_paths, _active_config_path
    if _cfg_cache is not None:
        return _cfg_cache

    cfg = copy.deepcopy(_DEFAULTS)

    # scopecam/ -> project root
    project_root = Path(__file__).resolve().parent.parent

    # Derive script directory (useful for tools run as ./tool.py)
    try:
        script_dir = Path(sys.argv[0]).resolve().parent
    except (IndexError, OSError):
        script_dir = Path.cwd()

    search = _candidate_search_paths(project_root, script_dir)
    _search_paths = list(search)

    active: Path | None = None
    for candidate in search:
        try:
            if candidate.exists():
                active = candidate
                break
        except OSError:
            pass

    for candidate in reversed(search):
        cfg = _deep_merge(cfg, _load_yaml_if_exists(candidate))

    _active_config_path = active

    _apply_env_overrides(cfg)
    _cfg_cache = cfg
    return cfg


def reload_cfg() -> Dict[str, Any]:
    global _cfg_cache
    _cfg_cache = None
    return get_cfg()


def active_config_path() -> Path | None:
    if _active_config_path is None:
        get_cfg()
    return _active_config_path


def search_paths() -> list[Path]:
    if not _search_paths:
        get_cfg()
    return list(_search_paths)


def captures_paths(cfg: Mapping[str, Any]) -> tuple[Path, Path]:
    """Return ``(photos_dir, videos_dir)`` under the configured captures root."""
    capture_cfg = cfg.get("capture", {}) if isinstance(cfg, Mapping) else {}
    root = Path(str(capture_cfg.get("captures_dir") or _DEFAULTS["capture"]["captures_dir"]))
    return root / "photos", root / "videos"
