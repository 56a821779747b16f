# notportable/config_loader.py
from __future__ import annotations
"""
Unified configuration loader for NotPortable.

Single source of truth:
    config/config.yaml      (or $NOTPORTABLE_CONFIG)

Design notes
------------
- If the file is present but broken, we raise a friendly RuntimeError that
  prints absolute paths for quick fixes.
- If the default file is absent (e.g. an installed wheel without the repo
  tree) CONFIG is {} and every accessor falls back to its defaults.
- Unknown keys are fine; we pass the full dict through untouched.
- Helpers return {} or sensible defaults when sections are absent.
- Paths are absolute: "~" is expanded, relative paths resolve against the
  repo root.

Public API
----------
- CONFIG: dict                              # eager-loaded contents of config/config.yaml
- load_config(path: str|Path|None = None)   # explicit reload (mainly for tests/tools)
- get_sensor_cfg() -> dict
- get_games_cfg() -> dict
- get_watcher_cfg() -> dict
- get_collector_cfg() -> dict
- get_log_level(default: str = "INFO") -> str
- resolve_path(p) -> pathlib.Path
"""

import os
from pathlib import Path
from typing import Any, Dict

import yaml

# ---------- Files & roots ----------
PROJECT_ROOT = Path(__file__).resolve().parents[1]
CONFIG_DIR   = PROJECT_ROOT / "config"
DEFAULT_CFG  = CONFIG_DIR / "config.yaml"
ENV_CFG      = "NOTPORTABLE_CONFIG"


# ---------- I/O helpers ----------
def _load_yaml(path: Path) -> Dict[str, Any]:
    """Load a YAML mapping from `path`. Human-friendly errors, strict root type."""
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        raise RuntimeError(
            f"Missing configuration file: {path}\n"
            f"Expected a single-file config with 'sensor:', 'games:' and 'collector:' sections.\n"
            f"Repo root: {PROJECT_ROOT}"
        )
    except Exception as ex:
        raise RuntimeError(f"Failed to read {path}: {type(ex).__name__}: {ex}")

    try:
        data = yaml.safe_load(text) or {}
    except Exception as ex:
        raise RuntimeError(f"Failed to parse YAML {path}: {type(ex).__name__}: {ex}")

    if not isinstance(data, dict):
        raise RuntimeError(f"Root of {path} must be a mapping/object, not {type(data).__name__}")
    return data


def resolve_path(p: str | os.PathLike[str]) -> Path:
    """Return absolute path; expand '~', resolve relative to repo root."""
    pth = Path(p).expanduser()
    return pth if pth.is_absolute() else (PROJECT_ROOT / pth).resolve()


# ---------- Loader ----------
def load_config(path: str | os.PathLike[str] | None = None) -> Dict[str, Any]:
    """
    Load a single YAML file (default: $NOTPORTABLE_CONFIG or config/config.yaml)
    and return the raw dict (unmodified).
    """
    if path:
        cfg_path = resolve_path(path)
    elif os.environ.get(ENV_CFG):
        cfg_path = resolve_path(os.environ[ENV_CFG])
    else:
        cfg_path = DEFAULT_CFG
    return _load_yaml(cfg_path)


def _load_default() -> Dict[str, Any]:
    if os.environ.get(ENV_CFG) or DEFAULT_CFG.exists():
        return load_config()
    return {}


# Eagerly load once for the app
CONFIG: Dict[str, Any] = _load_default()


# ---------- Accessors ----------
def get_sensor_cfg() -> Dict[str, Any]:
    """Return sensor configuration block (rangefinder/accelerometer) or {}."""
    return CONFIG.get("sensor", {}) or {}


def get_games_cfg() -> Dict[str, Any]:
    """Return per-game log configuration keyed by game name, or {}."""
    return CONFIG.get("games", {}) or {}


def get_watcher_cfg() -> Dict[str, Any]:
    """Return watcher cadence block or {}."""
    return CONFIG.get("watcher", {}) or {}


def get_collector_cfg() -> Dict[str, Any]:
    """Return collector endpoint block or {}."""
    return CONFIG.get("collector", {}) or {}


def get_log_level(default: str = "INFO") -> str:
    """Return log level as 'INFO'/'DEBUG', etc."""
    lvl = (CONFIG.get("log", {}) or {}).get("level", default)
    # normalize common variants
    return str(lvl).upper()
# ---------- End of config_loader.py ----------
