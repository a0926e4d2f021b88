"""Filesystem storage of originals, derivatives and Zoomify pyramids.

Layout under `files_dir`:

    original/{identifier}.{ext}
    {derivative}/{identifier}.jpg                   (square, medium, large...)
    zoom_tiles/{identifier}_zdata/ImageProperties.xml
    zoom_tiles/{identifier}_zdata/TileGroup{g}/{level}-{x}-{y}.jpg

Public URLs mirror the same tree under `base_url`.
"""

from __future__ import annotations

import glob
from collections.abc import Sequence
from pathlib import Path
from typing import Final

from PIL import Image, UnidentifiedImageError

from .errors import SourceNotFoundError
from .logger import get_logger
from .models import DerivativeDescriptor, SourceDescriptor, TilePyramidDescriptor
from .pyramid import PROPERTIES_FILENAME, parse_image_properties

logger = get_logger(__name__)

CONTENT_TYPES: Final = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".tif": "image/tiff",
    ".tiff": "image/tiff",
    ".gif": "image/gif",
    ".jp2": "image/jp2",
    ".webp": "image/webp",
    ".pdf": "application/pdf",
}

ORIGINAL_DIR: Final = "original"
ZOOM_TILES_DIR: Final = "zoom_tiles"


def image_dimensions(path: Path) -> tuple[int, int] | None:
    """Return `(width, height)` of an image file, or None if unreadable."""
    try:
        with Image.open(str(path)) as img:
            width, height = img.size
    except (UnidentifiedImageError, OSError, ValueError):
        return None
    return int(width), int(height)


class FileImageStore:
    """Answer the engine's lookups from a local directory tree."""

    def __init__(self, files_dir: Path, *, base_url: str = "/files", derivative_types: Sequence[str] = ()):
        self.files_dir = Path(files_dir)
        self.base_url = base_url.rstrip("/")
        self.derivative_types = tuple(derivative_types)

    def _safe_child(self, *parts: str) -> Path | None:
        root = self.files_dir.resolve()
        candidate = root.joinpath(*parts).resolve()
        try:
            candidate.relative_to(root)
        except ValueError:
            logger.warning("Path traversal attempt blocked: %s", "/".join(parts))
            return None
        return candidate

    def _url_for(self, path: Path) -> str:
        relative = path.resolve().relative_to(self.files_dir.resolve()).as_posix()
        return f"{self.base_url}/{relative}"

    def _find_original(self, identifier: str) -> Path | None:
        folder = self._safe_child(ORIGINAL_DIR)
        if folder is None or not folder.is_dir() or not identifier or "/" in identifier:
            return None
        if self._safe_child(ORIGINAL_DIR, identifier) is None:
            return None
        for candidate in sorted(folder.glob(f"{glob.escape(identifier)}.*")):
            if candidate.is_file() and candidate.stem == identifier:
                return candidate
        return None

    def lookup_source(self, identifier: str) -> SourceDescriptor:
        """Describe the original file; raise `SourceNotFoundError` if absent.

        Non-image files are described with zero dimensions; the caller
        rejects them by mime type.
        """
        path = self._find_original(identifier)
        if path is None:
            raise SourceNotFoundError(identifier)

        mime_type = CONTENT_TYPES.get(path.suffix.lower(), "application/octet-stream")
        width, height = 0, 0
        if mime_type.startswith("image/"):
            dims = image_dimensions(path)
            if dims is None:
                logger.warning("Failed to get image resolution: %s", path)
                raise SourceNotFoundError(identifier)
            width, height = dims

        return SourceDescriptor(
            path=str(path),
            mime_type=mime_type,
            width=width,
            height=height,
            url=self._url_for(path),
            file_size=path.stat().st_size,
        )

    def list_derivatives(self, identifier: str) -> list[DerivativeDescriptor]:
        """Stored renditions in priority order; missing ones are skipped."""
        derivatives: list[DerivativeDescriptor] = []
        for name in self.derivative_types:
            path = self._safe_child(name, f"{identifier}.jpg")
            if path is None or not path.is_file():
                continue
            dims = image_dimensions(path)
            if dims is None:
                logger.warning("Unreadable derivative '%s' for %s", name, identifier)
                continue
            derivatives.append(
                DerivativeDescriptor(
                    name=name,
                    path=str(path),
                    mime_type="image/jpeg",
                    width=dims[0],
                    height=dims[1],
                    url=self._url_for(path),
                )
            )
        return derivatives

    def pyramid_metadata(self, identifier: str) -> TilePyramidDescriptor | None:
        """Zoomify metadata of the identifier, or None when not tiled."""
        folder = self._safe_child(ZOOM_TILES_DIR, f"{identifier}_zdata")
        if folder is None:
            return None
        properties = folder / PROPERTIES_FILENAME
        if not properties.is_file():
            return None
        try:
            xml_bytes = properties.read_bytes()
        except OSError as exc:
            logger.warning("Unable to read %s: %s", properties, exc)
            return None

        pyramid = parse_image_properties(xml_bytes, path=str(folder), url=self._url_for(folder))
        if pyramid is None:
            logger.warning("Unparsable pyramid metadata: %s", properties)
        return pyramid
