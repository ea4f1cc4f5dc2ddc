"""Local configuration manager for paths and pipeline defaults.

Values live in a user-editable `config.json` file, which is the single source
of truth at runtime. The pipeline itself never reads this module: callers
turn the settings into an immutable `PipelineOptions` once per job.
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
        "scratch_dir": "data/local/scratch",
        "logs_dir": "data/local/logs",
    },
    "settings": {
        "system": {
            "workers": 4,
            "operation_timeout_s": 0,
            "request_timeout": 30,
        },
        "images": {
            "jpeg_quality": 90,
            "webp_quality": 85,
            "allow_upscale": True,
            "max_pixels": 0,
        },
        "static": {
            "jpeg": True,
            "webp": True,
            "make_pyramid": True,
            "tile_size": 512,
            "layout": "v2",
            "max": "!1600,1600",
            "sizes": ["!100,100", "!200,200", "!400,400", "500,", "!1000,1000"],
            "service_url": "https://example.org/iiif-img",
        },
        "storage": {
            "azure": {
                "account_url": "",
                "connection_string": "",
            },
        },
        "housekeeping": {
            "scratch_cleanup_days": 7,
        },
        "logging": {
            "level": "INFO",
            "retention_days": 30,
            "file_name": "static_iiif.log",
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


def _try_make_parent_writable(path: Path) -> bool:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        test = path.parent / ".write_test"
        test.write_text("ok", encoding="utf-8")
        test.unlink(missing_ok=True)
        return True
    except OSError:
        return False


def default_config_path() -> Path:
    """Pick a sensible config.json location.

    Priority:
    1) `./config.json` if writable
    2) `~/.static-iiif/config.json`
    """
    cwd_candidate = Path.cwd() / "config.json"
    if _try_make_parent_writable(cwd_candidate):
        return cwd_candidate

    return Path.home() / ".static-iiif" / "config.json"


@dataclass
class ConfigManager:
    """Manages reading and writing the local config.json file."""

    path: Path
    _data: dict[str, Any]

    @classmethod
    def load(cls, path: Path | None = None) -> ConfigManager:
        """Load the configuration from disk, creating defaults if necessary."""
        cfg_path = path or default_config_path()
        data: dict[str, Any] = json.loads(json.dumps(DEFAULT_CONFIG_JSON))

        cm = cls(path=cfg_path, _data=data)
        if cfg_path.exists():
            try:
                loaded = json.loads(cfg_path.read_text(encoding="utf-8") or "{}")
                if isinstance(loaded, dict):
                    _deep_merge(data, loaded)
            except (OSError, json.JSONDecodeError) as exc:
                logger.warning("Failed to read config.json at %s: %s", cfg_path, exc)
        else:
            try:
                cm.save()
            except OSError as exc:
                logger.warning("Unable to create default config.json at %s: %s", cfg_path, exc)

        # Older configs spelled the service id `base_url`; rewrite them once.
        static_cfg = data.get("settings", {}).get("static")
        if isinstance(static_cfg, dict) and static_cfg.get("base_url"):
            cm.set_setting("static.service_url", static_cfg.pop("base_url"))
            try:
                cm.save()
            except OSError as exc:
                logger.warning("Unable to persist migrated config.json at %s: %s", cfg_path, exc)

        return cm

    @property
    def data(self) -> dict[str, Any]:
        """Get the full config data dictionary."""
        return self._data

    def save(self) -> None:
        """Persist the current config data to disk."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(self._data, indent=2, ensure_ascii=False), encoding="utf-8")

    def set_scratch_dir(self, value: str) -> None:
        """Set the per-job scratch directory path."""
        self._data.setdefault("paths", {})["scratch_dir"] = (value or "data/local/scratch").strip()

    def set_logs_dir(self, value: str) -> None:
        """Set the logs directory path."""
        self._data.setdefault("paths", {})["logs_dir"] = (value or "data/local/logs").strip()

    def resolve_path(self, key: str, default_rel: str) -> Path:
        """Resolve a path from config, making it absolute."""
        raw = (self._data.get("paths", {}) or {}).get(key) or default_rel
        p = Path(str(raw)).expanduser()
        if p.is_absolute():
            return p
        return (Path.cwd() / p).resolve()

    def get_setting(self, dotted_path: str, default: Any = None) -> Any:
        """Read a nested value from `settings` using a dotted path.

        Example: `get_setting("system.workers", 4)`.
        """
        node: Any = self._data.get("settings", {}) or {}
        for part in (dotted_path or "").split("."):
            if not part:
                continue
            if not isinstance(node, dict):
                return default
            node = node.get(part)
        return default if node is None else node

    def set_setting(self, dotted_path: str, value: Any) -> None:
        """Set a nested value in `settings` using a dotted path."""
        if not dotted_path:
            return

        root = self._data.setdefault("settings", {})
        if not isinstance(root, dict):
            self._data["settings"] = {}
            root = self._data["settings"]

        parts = [p for p in dotted_path.split(".") if p]
        node: dict[str, Any] = root
        for part in parts[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                child = {}
                node[part] = child
            node = child
        node[parts[-1]] = value

    def _ensure_dir(self, path: Path) -> Path:
        path.mkdir(parents=True, exist_ok=True)
        return path

    def get_scratch_dir(self) -> Path:
        """Get the scratch directory used for per-job working space."""
        return self._ensure_dir(self.resolve_path("scratch_dir", "data/local/scratch"))

    def get_logs_dir(self) -> Path:
        """Get the logs directory path."""
        return self._ensure_dir(self.resolve_path("logs_dir", "data/local/logs"))


@lru_cache(maxsize=1)
def get_config_manager() -> ConfigManager:
    """Get the singleton config manager."""
    return ConfigManager.load()
