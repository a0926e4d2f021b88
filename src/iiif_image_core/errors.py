"""Error taxonomy of the image request engine.

Every error carries a `kind`, the offending `value` and a ready-to-render
English message so the serving layer never has to re-derive them.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """Machine-readable failure categories."""

    BAD_REGION = "bad_region"
    BAD_SIZE = "bad_size"
    BAD_ROTATION = "bad_rotation"
    BAD_QUALITY = "bad_quality"
    UNSUPPORTED_ROTATION = "unsupported_rotation"
    UNSUPPORTED_FORMAT = "unsupported_format"
    TOO_LARGE_FOR_DYNAMIC_PROCESSING = "too_large_for_dynamic_processing"
    NOT_AN_IMAGE = "not_an_image"
    NOT_FOUND = "not_found"
    TRANSFORM_FAILED = "transform_failed"
    BACKEND_FAILURE = "backend_failure"


_MESSAGES: dict[ErrorKind, str] = {
    ErrorKind.BAD_REGION: 'The IIIF server cannot fulfill the request: the region "{value}" is incorrect.',
    ErrorKind.BAD_SIZE: 'The IIIF server cannot fulfill the request: the size "{value}" is incorrect.',
    ErrorKind.BAD_ROTATION: 'The IIIF server cannot fulfill the request: the rotation "{value}" is incorrect.',
    ErrorKind.BAD_QUALITY: 'The IIIF server cannot fulfill the request: the quality "{value}" is incorrect.',
    ErrorKind.UNSUPPORTED_ROTATION: (
        'The IIIF server cannot fulfill the request: the rotation "{value}" is not supported.'
    ),
    ErrorKind.UNSUPPORTED_FORMAT: 'The IIIF server cannot fulfill the request: the format "{value}" is not supported.',
    ErrorKind.TOO_LARGE_FOR_DYNAMIC_PROCESSING: (
        "The IIIF server encountered an unexpected error that prevented it from fulfilling the request: "
        "the file is not tiled for dynamic processing."
    ),
    ErrorKind.NOT_AN_IMAGE: "The source file is not an image.",
    ErrorKind.NOT_FOUND: 'The image "{value}" does not exist.',
    ErrorKind.TRANSFORM_FAILED: (
        "The IIIF server encountered an unexpected error that prevented it from fulfilling the request: "
        "the resulting file is not found or empty."
    ),
    ErrorKind.BACKEND_FAILURE: (
        "The IIIF server encountered an unexpected error that prevented it from fulfilling the request: "
        "the image could not be transformed."
    ),
}


class ImageRequestError(Exception):
    """Base class for every failure surfaced by the engine."""

    status_code = 500

    def __init__(self, kind: ErrorKind, value: str = "", detail: str = ""):
        self.kind = kind
        self.value = value
        self.detail = detail
        super().__init__(self.message)

    @property
    def message(self) -> str:
        return _MESSAGES[self.kind].format(value=self.value)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.kind.value!r}, {self.value!r})"


class ParseError(ImageRequestError, ValueError):
    """A request parameter is malformed or asks for an unsupported feature."""

    status_code = 400


class ResolutionError(ImageRequestError, RuntimeError):
    """The request is valid but cannot be served from the available data."""

    def __init__(self, kind: ErrorKind, value: str = "", detail: str = ""):
        super().__init__(kind, value, detail)
        if kind is ErrorKind.NOT_AN_IMAGE:
            self.status_code = 501


class GatewayError(ImageRequestError, RuntimeError):
    """The transformation backend failed or produced nothing."""


class SourceNotFoundError(ImageRequestError, LookupError):
    """No original file is stored for the identifier."""

    status_code = 404

    def __init__(self, identifier: str):
        super().__init__(ErrorKind.NOT_FOUND, identifier)
