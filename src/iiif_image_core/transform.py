"""Transformation backend: execute a `TransformPlan` and return encoded bytes.

The engine only depends on the `TransformGateway` protocol. The Pillow
implementation renders in a worker thread so the caller can give up after
a timeout; transient files (downloaded remote sources, encoded output) are
scoped and removed on every exit path.
"""

from __future__ import annotations

import os
import tempfile
import threading
from collections.abc import Iterator
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from contextlib import contextmanager, suppress
from pathlib import Path
from typing import Final, Protocol, assert_never

import requests
from PIL import Image, UnidentifiedImageError
from requests import RequestException

from .errors import ErrorKind, GatewayError
from .logger import get_logger
from .models import ArbitraryRotation, FullRegion, NoRotation, Right90Rotation, TransformPlan

logger = get_logger(__name__)

PIL_FORMATS: Final = {
    "image/jpeg": "JPEG",
    "image/png": "PNG",
    "image/tiff": "TIFF",
    "image/gif": "GIF",
    "application/pdf": "PDF",
    "image/jp2": "JPEG2000",
    "image/webp": "WEBP",
}

# PIL rotates counter-clockwise, IIIF clockwise.
_TRANSPOSE: Final = {
    90: Image.Transpose.ROTATE_270,
    180: Image.Transpose.ROTATE_180,
    270: Image.Transpose.ROTATE_90,
}

_ENCODER_MODES: Final = {
    "JPEG": ("1", "L", "RGB", "CMYK"),
    "PDF": ("1", "L", "RGB", "CMYK"),
    "JPEG2000": ("L", "RGB", "RGBA"),
}


class TransformGateway(Protocol):
    """Backend able to execute a plan against its source file."""

    supports_arbitrary_rotation: bool

    def render(self, plan: TransformPlan, timeout: float | None = None) -> bytes:
        """Return the encoded image, or raise `GatewayError`."""
        ...


class RenderCancelledError(RuntimeError):
    """Raised inside a worker whose caller stopped waiting."""


@contextmanager
def transient_file(directory: Path, suffix: str = "") -> Iterator[Path]:
    """Yield a fresh temp file path, deleted on exit whatever happens."""
    directory.mkdir(parents=True, exist_ok=True)
    fd, name = tempfile.mkstemp(prefix="iiif-", suffix=suffix, dir=str(directory))
    os.close(fd)
    path = Path(name)
    try:
        yield path
    finally:
        with suppress(OSError):
            path.unlink(missing_ok=True)


def apply_plan(img: Image.Image, plan: TransformPlan) -> Image.Image:
    """Crop, resize, rotate and apply the quality of a plan (no encoding)."""
    if not isinstance(plan.region, FullRegion):
        box = plan.region.box
        img = img.crop((box.x, box.y, box.x + box.width, box.y + box.height))

    target = plan.target_size
    if img.size != target:
        img = img.resize(target, Image.Resampling.LANCZOS)

    match plan.rotation:
        case NoRotation():
            pass
        case Right90Rotation(degrees=degrees):
            img = img.transpose(_TRANSPOSE[degrees])
        case ArbitraryRotation(degrees=degrees):
            img = img.rotate(-degrees, resample=Image.Resampling.BICUBIC, expand=True)
        case _:
            assert_never(plan.rotation)

    if plan.quality == "gray":
        img = img.convert("L")
    elif plan.quality == "bitonal":
        img = img.convert("1")
    return img


def _encodable(img: Image.Image, pil_format: str) -> Image.Image:
    allowed = _ENCODER_MODES.get(pil_format)
    if allowed and img.mode not in allowed:
        return img.convert("RGB")
    if img.mode in ("I;16", "I", "F"):
        return img.convert("L")
    return img


class PillowTransformGateway:
    """Render plans with Pillow."""

    supports_arbitrary_rotation = True

    def __init__(
        self,
        temp_dir: Path,
        *,
        jpeg_quality: int = 90,
        session: requests.Session | None = None,
        download_timeout_s: int = 30,
    ):
        self.temp_dir = Path(temp_dir)
        self.jpeg_quality = int(jpeg_quality)
        self.download_timeout_s = download_timeout_s
        self._session = session
        # Only a session this gateway opened is closed by it.
        self._owns_session = False

    @property
    def session(self) -> requests.Session:
        """HTTP session for remote sources, opened on first download."""
        if self._session is None:
            self._session = requests.Session()
            self._owns_session = True
        return self._session

    def close(self) -> None:
        if self._owns_session and self._session is not None:
            self._session.close()
        self._session = None
        self._owns_session = False

    def __enter__(self) -> PillowTransformGateway:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def render(self, plan: TransformPlan, timeout: float | None = None) -> bytes:
        cancel = threading.Event()
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="iiif-render")
        future = executor.submit(self._render, plan, cancel)
        try:
            return future.result(timeout=timeout)
        except FutureTimeoutError as exc:
            cancel.set()
            raise GatewayError(
                ErrorKind.BACKEND_FAILURE, plan.source.path, f"render timed out after {timeout}s"
            ) from exc
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

    def _render(self, plan: TransformPlan, cancel: threading.Event) -> bytes:
        pil_format = PIL_FORMATS.get(plan.format.mime_type)
        if pil_format is None:
            raise GatewayError(ErrorKind.BACKEND_FAILURE, plan.format.mime_type, "no encoder for this format")

        with self._local_source(plan) as source_path:
            _check_cancelled(cancel)
            try:
                with Image.open(source_path) as img:
                    img.load()
                    result = apply_plan(img, plan)
            except (UnidentifiedImageError, OSError, ValueError) as exc:
                raise GatewayError(ErrorKind.BACKEND_FAILURE, plan.source.path, str(exc)) from exc

        _check_cancelled(cancel)
        with transient_file(self.temp_dir, f".{plan.format.extension}") as out_path:
            try:
                self._save(result, out_path, pil_format)
            except (KeyError, OSError, ValueError) as exc:
                raise GatewayError(ErrorKind.BACKEND_FAILURE, plan.format.mime_type, str(exc)) from exc
            _check_cancelled(cancel)
            return out_path.read_bytes()

    def _save(self, img: Image.Image, out_path: Path, pil_format: str) -> None:
        img = _encodable(img, pil_format)
        params = {}
        if pil_format in ("JPEG", "WEBP"):
            params["quality"] = self.jpeg_quality
        img.save(str(out_path), format=pil_format, **params)

    @contextmanager
    def _local_source(self, plan: TransformPlan) -> Iterator[Path]:
        source = plan.source
        if not source.is_remote:
            yield Path(source.path)
            return

        suffix = Path(source.path.split("?", 1)[0]).suffix
        with transient_file(self.temp_dir, suffix) as local:
            try:
                response = self.session.get(source.path, timeout=self.download_timeout_s, stream=True)
                response.raise_for_status()
                with local.open("wb") as fh:
                    for chunk in response.iter_content(chunk_size=8192):
                        if chunk:
                            fh.write(chunk)
            except (RequestException, OSError) as exc:
                raise GatewayError(ErrorKind.BACKEND_FAILURE, source.path, str(exc)) from exc
            logger.debug("Fetched remote source %s", source.path)
            yield local


def _check_cancelled(cancel: threading.Event) -> None:
    if cancel.is_set():
        raise RenderCancelledError("render cancelled by caller")
