"""Local configuration manager for output paths and download settings.

User-editable values live in a local `config.json` file, which is the single
source of truth at runtime. Command-line flags override individual values for
one run without touching the file.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any

from .logger import get_logger

logger = get_logger(__name__)


DEFAULT_CONFIG_JSON: dict[str, Any] = {
    "paths": {
        "output_dir": ".",
        "logs_dir": "data/local/logs",
    },
    "settings": {
        "system": {
            "download_workers": 4,
            "request_timeout": 30,
        },
        "images": {
            "iiif_quality": "default",
            "jpeg_quality": 90,
            "scale_factor": 1,
            "explicit_tile_height": False,
            "tile_stitch_max_ram_gb": 2,
        },
        "ui": {
            "show_progress": True,
        },
        "logging": {
            "level": "INFO",
        },
    },
}


def _deep_merge(dst: dict[str, Any], src: dict[str, Any]) -> dict[str, Any]:
    for k, v in (src or {}).items():
        if isinstance(v, dict) and isinstance(dst.get(k), dict):
            _deep_merge(dst[k], v)
        else:
            dst[k] = v
    return dst


def default_config_path() -> Path:
    """Pick a sensible config.json location.

    Priority:
    1) `./config.json` if present
    2) `~/.iiif-stitch/config.json`
    """
    cwd_candidate = Path.cwd() / "config.json"
    if cwd_candidate.exists():
        return cwd_candidate

    return Path.home() / ".iiif-stitch" / "config.json"


@dataclass
class ConfigManager:
    """Read-only view over the local config.json file."""

    path: Path
    _data: dict[str, Any]

    @classmethod
    def load(cls, path: Path | None = None) -> ConfigManager:
        """Load the configuration from disk, falling back to defaults.

        The file is only ever read; edit it by hand to change defaults.
        """
        cfg_path = path or default_config_path()
        data: dict[str, Any] = json.loads(json.dumps(DEFAULT_CONFIG_JSON))

        if cfg_path.exists():
            try:
                loaded = json.loads(cfg_path.read_text(encoding="utf-8") or "{}")
                if isinstance(loaded, dict):
                    _deep_merge(data, loaded)
            except (OSError, json.JSONDecodeError) as exc:
                logger.warning("Failed to read config.json at %s: %s", cfg_path, exc)

        return cls(path=cfg_path, _data=data)

    @property
    def data(self) -> dict[str, Any]:
        """Get the full config data dictionary."""
        return self._data

    def resolve_path(self, key: str, default_rel: str) -> Path:
        """Resolve a path from config, making it absolute."""
        raw = (self._data.get("paths", {}) or {}).get(key) or default_rel
        p = Path(str(raw)).expanduser()
        if p.is_absolute():
            return p
        # Relative paths are resolved relative to the execution directory
        return (Path.cwd() / p).resolve()

    def get_setting(self, dotted_path: str, default: Any = None) -> Any:
        """Read a nested value from `settings` using a dotted path.

        Example: `get_setting("logging.level", "INFO")`.
        """
        node: Any = self._data.get("settings", {}) or {}
        for part in (dotted_path or "").split("."):
            if not part:
                continue
            if not isinstance(node, dict):
                return default
            node = node.get(part)
        return default if node is None else node

    def _ensure_dir(self, path: Path) -> Path:
        path.mkdir(parents=True, exist_ok=True)
        return path

    def get_output_dir(self) -> Path:
        """Get the default output root (not created until a download starts)."""
        return self.resolve_path("output_dir", ".")

    def get_logs_dir(self) -> Path:
        """Get the logs directory path."""
        return self._ensure_dir(self.resolve_path("logs_dir", "data/local/logs"))


@lru_cache(maxsize=1)
def get_config_manager() -> ConfigManager:
    """Get the singleton config manager."""
    return ConfigManager.load()
