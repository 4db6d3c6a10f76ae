#!/usr/bin/env python3
"""
Unified configuration loader for SchoolWatch.

Load order (first found wins):
  1) SCHOOLWATCH_CONFIG (env, absolute or relative to CWD)
  2) /etc/schoolwatch/config.yaml
  3) <project_root>/config.yaml (derived from this file's location)
  4) <script_dir>/config.yaml (directory of the running script)
  5) ./config.yaml (current working directory)

Environment variables override file values when present.
"""
from __future__ import annotations

import copy
import os
import sys
from pathlib import Path
from typing import Any, Dict

import yaml

_DEFAULTS: Dict[str, Any] = {
    "streams": {
        # Origin the portal page is served from; relative proxy paths resolve against it.
        "page_origin": "https://localhost:8080",
        "refresh_interval_sec": 30.0,
        "unknown_origin_policy": "passthrough",
        "proxy_routes": [
            {"origin": "http://78.46.228.35:8001", "prefix": "/camera-proxy-8001"},
            {"origin": "http://78.46.228.35:8002", "prefix": "/camera-proxy-8002"},
        ],
        "loader": {
            "request_timeout_sec": 10.0,
            "retry_delay_sec": 1.0,
            "max_network_retries": 3,
            "max_decode_recoveries": 3,
            "max_buffered_segments": 8,
        },
    },
    "capture": {
        "chunk_interval_sec": 1.0,
        "mime_preferences": [
            "video/mp4",
            "video/webm;codecs=vp9,opus",
            "video/webm;codecs=vp8,opus",
            "video/webm",
        ],
        "ffmpeg_path": "ffmpeg",
        "video_device": "/dev/video0",
        "audio_device": "default",
        "video_size": "1280x720",
        "framerate": 30,
    },
    "backend": {
        "url": "",
        "api_key": "",
        "timeout_sec": 30.0,
    },
    "assets": {
        "backend": "rest",
        "bucket": "busca-segura",
        "photo_prefix": "fotos",
        "video_prefix": "videos",
        "local": {
            "root_dir": "/var/lib/schoolwatch/assets",
            "public_base_url": "/assets",
        },
    },
    "records": {
        "camera_collection": "cameras",
        "pickup_collection": "busca_segura",
    },
    # Static camera list used when no backend URL is configured.
    "cameras": [],
    "web_server": {
        "listen_host": "0.0.0.0",
        "listen_port": 8080,
    },
    "logging": {
        "dev_mode": False  # if True or ENV DEV=1, enable verbose debug
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
        print(f"[config] WARNING: ignoring unreadable config {path}: {exc}", flush=True)
        return {}
    if isinstance(data, dict):
        return data
    return {}


def _candidate_search_paths(project_root: Path, script_dir: Path) -> list[Path]:
    search: list[Path] = []
    env_cfg = os.getenv("SCHOOLWATCH_CONFIG")
    if env_cfg:
        search.append(Path(env_cfg).expanduser().resolve())
    search.extend(
        [
            Path("/etc/schoolwatch/config.yaml"),
            project_root / "config.yaml",
            script_dir / "config.yaml",
            Path.cwd() / "config.yaml",
        ]
    )
    seen: set[Path] = set()
    ordered: list[Path] = []
    for candidate in search:
        resolved = candidate.resolve()
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
        cfg.setdefault("logging", {})["dev_mode"] = True

    env_map = {
        "PORTAL_BACKEND_URL": ("backend", "url", lambda s: s.strip().rstrip("/")),
        "PORTAL_API_KEY": ("backend", "api_key", str.strip),
        "PAGE_ORIGIN": ("streams", "page_origin", lambda s: s.strip().rstrip("/")),
        "STREAM_REFRESH_SEC": ("streams", "refresh_interval_sec", float),
        "STREAM_UNKNOWN_ORIGIN_POLICY": (
            "streams",
            "unknown_origin_policy",
            lambda s: s.strip().lower(),
        ),
        "CAPTURE_VIDEO_DEVICE": ("capture", "video_device", str.strip),
        "CAPTURE_AUDIO_DEVICE": ("capture", "audio_device", str.strip),
        "ASSET_BACKEND": ("assets", "backend", lambda s: s.strip().lower()),
        "PORT": ("web_server", "listen_port", int),
    }
    for env_key, (section, key, cast) in env_map.items():
        if env_key in os.environ:
            try:
                cfg.setdefault(section, {})[key] = cast(os.environ[env_key])
            except ValueError:
                print(f"[config] WARNING: ignoring invalid {env_key}", flush=True)

    refresh = cfg.get("streams", {}).get("refresh_interval_sec")
    if isinstance(refresh, (int, float)) and refresh <= 0:
        cfg["streams"]["refresh_interval_sec"] = _DEFAULTS["streams"]["refresh_interval_sec"]


def get_cfg() -> Dict[str, Any]:
    global _cfg_cache, _search_paths, _active_config_path
    if _cfg_cache is not None:
        return _cfg_cache

    cfg = copy.deepcopy(_DEFAULTS)

    # Derive project root relative to this file (schoolwatch/ -> project root)
    this_dir = Path(__file__).resolve().parent
    project_root = this_dir.parent

    # Derive script directory (useful for tools run as ./tool.py)
    try:
        script_dir = Path(sys.argv[0]).resolve().parent
    except (IndexError, OSError):
        script_dir = Path.cwd()

    search = _candidate_search_paths(project_root, script_dir)
    _search_paths = list(search)

    active: Path | None = None
    for candidate in search:
        if active is None and candidate.exists():
            active = candidate

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
    global _active_config_path
    if _active_config_path is None:
        get_cfg()
    return _active_config_path


def search_paths() -> list[Path]:
    global _search_paths
    if not _search_paths:
        get_cfg()
    return list(_search_paths)
