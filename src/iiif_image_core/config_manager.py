"""Local configuration manager for the image server.

Values live in a local `config.json` file that is deep-merged over
`DEFAULT_CONFIG_JSON`. `config.json` is the single source of truth at
runtime: there is no environment variable fallback.
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
        "files_dir": "data/local/files",
        "temp_dir": "data/local/temp_images",
        "logs_dir": "data/local/logs",
    },
    "settings": {
        "image_server": {
            # "auto" uses the backend capabilities, "basic" forbids arbitrary rotation.
            "image_creator": "auto",
            "max_dynamic_size": 10_000_000,
            "transform_timeout_s": 60,
            "derivative_types": ["square", "medium", "large"],
            "legacy_best_fit_collapse": True,
            "base_url": "/files",
            "jpeg_quality": 90,
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
    2) `~/.iiif-image-server/config.json`
    """
    cwd_candidate = Path.cwd() / "config.json"
    if _try_make_parent_writable(cwd_candidate):
        return cwd_candidate

    return Path.home() / ".iiif-image-server" / "config.json"


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

        if cfg_path.exists():
            try:
                loaded = json.loads(cfg_path.read_text(encoding="utf-8") or "{}")
                if isinstance(loaded, dict):
                    _deep_merge(data, loaded)
            except (OSError, json.JSONDecodeError) as exc:
                logger.warning("Failed to read config.json at %s: %s", cfg_path, exc)
        else:
            try:
                cfg_path.parent.mkdir(parents=True, exist_ok=True)
                cfg_path.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")
            except OSError as exc:
                logger.warning("Unable to create default config.json at %s: %s", cfg_path, exc)

        return cls(path=cfg_path, _data=data)

    @property
    def data(self) -> dict[str, Any]:
        """Get the full config data dictionary."""
        return self._data

    def save(self) -> None:
        """Persist the current config data to disk."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(self._data, indent=2, ensure_ascii=False), encoding="utf-8")

    def set_files_dir(self, value: str) -> None:
        """Set the root directory of originals, derivatives and zoom tiles."""
        self._data.setdefault("paths", {})["files_dir"] = (value or "data/local/files").strip()

    def set_temp_dir(self, value: str) -> None:
        """Set the directory used for transient render output."""
        self._data.setdefault("paths", {})["temp_dir"] = (value or "data/local/temp_images").strip()

    def set_logs_dir(self, value: str) -> None:
        """Set the logs directory path."""
        self._data.setdefault("paths", {})["logs_dir"] = (value or "data/local/logs").strip()

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

        Example: `get_setting("image_server.max_dynamic_size", 0)`.
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

    def get_files_dir(self) -> Path:
        """Get the files directory path."""
        return self._ensure_dir(self.resolve_path("files_dir", "data/local/files"))

    def get_temp_dir(self) -> Path:
        """Get the temporary images directory path."""
        return self._ensure_dir(self.resolve_path("temp_dir", "data/local/temp_images"))

    def get_logs_dir(self) -> Path:
        """Get the logs directory path."""
        return self._ensure_dir(self.resolve_path("logs_dir", "data/local/logs"))

    def get_max_dynamic_size(self) -> int:
        """Byte size above which an untiled source is not transformed on demand."""
        try:
            return max(0, int(self.get_setting("image_server.max_dynamic_size", 0) or 0))
        except (TypeError, ValueError):
            return 0

    def get_transform_timeout(self) -> float | None:
        """Seconds granted to one render, or None for no limit."""
        try:
            value = float(self.get_setting("image_server.transform_timeout_s", 0) or 0)
        except (TypeError, ValueError):
            return None
        return value if value > 0 else None

    def get_derivative_types(self) -> list[str]:
        """Derivative names in the order they are tried."""
        raw = self.get_setting("image_server.derivative_types", [])
        if not isinstance(raw, list):
            return []
        return [str(item).strip() for item in raw if str(item).strip()]


@lru_cache(maxsize=1)
def get_config_manager() -> ConfigManager:
    """Get the singleton config manager."""
    return ConfigManager.load()
