"""Test bootstrap.

Ensures `src` is importable and points the config singleton at a fresh
temporary tree for every test.
"""

from __future__ import annotations

import contextlib
import copy
import sys
import tempfile
from pathlib import Path

import pytest
from PIL import Image as PILImage

# Add SRC to path
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if SRC.exists() and str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))


def _config_manager():
    from iiif_image_core.config_manager import get_config_manager

    return get_config_manager()


def _drop_log_handlers():
    from iiif_image_core.logger import app_logger

    for handler in list(app_logger.handlers):
        app_logger.removeHandler(handler)
        with contextlib.suppress(Exception):
            handler.close()


def pytest_configure():
    """Redirect session logging to a temporary folder before test collection."""
    cm = _config_manager()
    session_logs_dir = Path(tempfile.mkdtemp(prefix="iiif-pytest-logs-")) / "logs"
    cm.set_logs_dir(str(session_logs_dir))
    _drop_log_handlers()


def _redirect_test_logging(cm):
    from iiif_image_core.logger import setup_logging

    _drop_log_handlers()
    setup_logging(cm)


def _snapshot_config(cm):
    return {
        "files": cm.resolve_path("files_dir", "data/local/files"),
        "temp": cm.resolve_path("temp_dir", "data/local/temp_images"),
        "logs": cm.resolve_path("logs_dir", "data/local/logs"),
        "settings": copy.deepcopy(cm.data.get("settings", {})),
    }


def _set_tmp_config_paths(cm, tmp_path):
    cm.set_files_dir(str(tmp_path / "files"))
    cm.set_temp_dir(str(tmp_path / "temp_images"))
    cm.set_logs_dir(str(tmp_path / "logs"))


def _restore_config(cm, snapshot):
    cm.set_files_dir(str(snapshot["files"]))
    cm.set_temp_dir(str(snapshot["temp"]))
    cm.set_logs_dir(str(snapshot["logs"]))
    cm.data["settings"] = snapshot["settings"]


@pytest.fixture(autouse=True)
def _isolated_config(tmp_path):
    """Every test gets its own files, temp and logs directories."""
    cm = _config_manager()
    snapshot = _snapshot_config(cm)
    _set_tmp_config_paths(cm, tmp_path)
    _redirect_test_logging(cm)

    yield cm

    _restore_config(cm, snapshot)


@pytest.fixture
def files_dir(_isolated_config) -> Path:
    return _isolated_config.get_files_dir()


@pytest.fixture
def store_image(files_dir):
    """Write a solid image under `files_dir/{folder}/{identifier}.{ext}`."""

    def _store(folder: str, identifier: str, size: tuple[int, int], ext: str = "jpg", color=(200, 30, 30)) -> Path:
        target = files_dir / folder / f"{identifier}.{ext}"
        target.parent.mkdir(parents=True, exist_ok=True)
        PILImage.new("RGB", size, color=color).save(target)
        return target

    return _store


@pytest.fixture
def store_pyramid(files_dir):
    """Write the `ImageProperties.xml` of a Zoomify pyramid."""

    def _store(identifier: str, width: int, height: int, tile_size: int = 256) -> Path:
        folder = files_dir / "zoom_tiles" / f"{identifier}_zdata"
        folder.mkdir(parents=True, exist_ok=True)
        (folder / "ImageProperties.xml").write_text(
            f'<IMAGE_PROPERTIES WIDTH="{width}" HEIGHT="{height}" NUMTILES="1" '
            f'NUMIMAGES="1" VERSION="1.8" TILESIZE="{tile_size}" />',
            encoding="utf-8",
        )
        return folder

    return _store
