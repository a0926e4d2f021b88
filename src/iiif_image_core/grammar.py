"""IIIF Image API parameter grammar.

Parsing happens in two passes. The literal pass turns each raw string into
the variant it spells out. The normalization pass then recognizes requests
that are equivalent to "no change" (`pct:0,0,100,100`, `pct:100`, a pixel
box covering the whole image, a `w,h` matching a stored derivative...) and
collapses them to `full` so later stages can skip work.

Like the rest of the engine, this module performs no I/O and no logging.
"""

from __future__ import annotations

import math
from collections.abc import Sequence
from dataclasses import replace
from typing import assert_never

from .derivatives import is_full_rendition
from .errors import ErrorKind, ParseError
from .models import (
    MIME_TYPES,
    ArbitraryRotation,
    BestFitSize,
    Box,
    DerivativeDescriptor,
    ForcedSize,
    FormatSpec,
    FullRegion,
    FullSize,
    HeightSize,
    NoRotation,
    PercentRegion,
    PercentSize,
    PixelRegion,
    RegionSpec,
    Right90Rotation,
    RotationSpec,
    SizeSpec,
    SourceDescriptor,
    TransformPlan,
    WidthSize,
)

RIGHT_ANGLES = (90, 180, 270)


def _four_values(raw: str, body: str, cast) -> list:
    parts = body.split(",")
    if len(parts) != 4:
        raise ParseError(ErrorKind.BAD_REGION, raw)
    try:
        values = [cast(p.strip()) for p in parts]
    except ValueError as exc:
        raise ParseError(ErrorKind.BAD_REGION, raw) from exc
    if any(not math.isfinite(v) or v < 0 for v in values):
        raise ParseError(ErrorKind.BAD_REGION, raw)
    return values


def _clamp_box(raw: str, x: int, y: int, w: int, h: int, source: SourceDescriptor) -> Box:
    """Crop a requested box to the image; an empty result is an error."""
    if w <= 0 or h <= 0 or x >= source.width or y >= source.height:
        raise ParseError(ErrorKind.BAD_REGION, raw)
    return Box(x, y, min(w, source.width - x), min(h, source.height - y))


def parse_region(raw: str, source: SourceDescriptor) -> RegionSpec:
    """Literal pass for the region parameter."""
    raw = (raw or "").strip()
    if raw == "full":
        return FullRegion(Box.of(source))

    if raw.startswith("pct:"):
        px, py, pw, ph = _four_values(raw, raw[4:], float)
        box = _clamp_box(
            raw,
            int(source.width * px / 100),
            int(source.height * py / 100),
            round(source.width * pw / 100),
            round(source.height * ph / 100),
            source,
        )
        return PercentRegion(px, py, pw, ph, box)

    x, y, w, h = _four_values(raw, raw, int)
    return PixelRegion(x, y, w, h, _clamp_box(raw, x, y, w, h, source))


def normalize_region(region: RegionSpec, source: SourceDescriptor) -> RegionSpec:
    """Collapse regions that cover exactly the whole image to `full`."""
    match region:
        case FullRegion():
            return region
        case PercentRegion(x=x, y=y, w=w, h=h):
            if (x, y, w, h) == (0, 0, 100, 100):
                return FullRegion(Box.of(source))
            return region
        case PixelRegion(x=x, y=y, w=w, h=h):
            if (x, y, w, h) == (0, 0, source.width, source.height):
                return FullRegion(Box.of(source))
            return region
        case _:
            assert_never(region)


def _positive_int(raw: str, token: str) -> int:
    try:
        value = int(token.strip())
    except ValueError as exc:
        raise ParseError(ErrorKind.BAD_SIZE, raw) from exc
    if value <= 0:
        raise ParseError(ErrorKind.BAD_SIZE, raw)
    return value


def _checked_target(raw: str, width: float, height: float) -> tuple[int, int]:
    target = (round(width), round(height))
    if target[0] <= 0 or target[1] <= 0:
        raise ParseError(ErrorKind.BAD_SIZE, raw)
    return target


def parse_size(raw: str, box: Box) -> SizeSpec:
    """Literal pass for the size parameter, resolved against the region box."""
    raw = (raw or "").strip()
    rw, rh = box.width, box.height

    if raw == "full":
        return FullSize(rw, rh)

    if raw.startswith("pct:"):
        try:
            pct = float(raw[4:])
        except ValueError as exc:
            raise ParseError(ErrorKind.BAD_SIZE, raw) from exc
        if not math.isfinite(pct) or pct <= 0 or pct > 100:
            raise ParseError(ErrorKind.BAD_SIZE, raw)
        return PercentSize(pct, *_checked_target(raw, rw * pct / 100, rh * pct / 100))

    if raw.startswith("!"):
        parts = raw[1:].split(",")
        if len(parts) != 2:
            raise ParseError(ErrorKind.BAD_SIZE, raw)
        w, h = (_positive_int(raw, p) for p in parts)
        scale = min(w / rw, h / rh)
        return BestFitSize(w, h, *_checked_target(raw, rw * scale, rh * scale))

    parts = raw.split(",")
    if len(parts) != 2:
        raise ParseError(ErrorKind.BAD_SIZE, raw)
    w_raw, h_raw = (p.strip() for p in parts)

    if w_raw and h_raw:
        w, h = _positive_int(raw, w_raw), _positive_int(raw, h_raw)
        return ForcedSize(w, h, w, h)
    if w_raw:
        w = _positive_int(raw, w_raw)
        return WidthSize(w, *_checked_target(raw, w, rh * w / rw))
    if h_raw:
        h = _positive_int(raw, h_raw)
        return HeightSize(h, *_checked_target(raw, rw * h / rh, h))

    raise ParseError(ErrorKind.BAD_SIZE, raw)


def match_listed_size(
    w: int, h: int, source: SourceDescriptor, derivatives: Sequence[DerivativeDescriptor]
) -> SourceDescriptor | None:
    """Return the stored file whose dimensions are exactly `w` x `h`.

    Derivatives are checked in priority order, the original last. Cropped
    renditions (square thumbnails) are not listed sizes of the image.
    """
    for derivative in derivatives:
        if (derivative.width, derivative.height) == (w, h) and is_full_rendition(derivative, source):
            return derivative.as_source()
    if (source.width, source.height) == (w, h):
        return source
    return None


def parse_rotation(raw: str, *, arbitrary_rotation: bool) -> RotationSpec:
    raw = (raw or "").strip()
    try:
        degrees = float(raw)
    except ValueError as exc:
        raise ParseError(ErrorKind.BAD_ROTATION, raw) from exc
    if not math.isfinite(degrees) or degrees < 0:
        raise ParseError(ErrorKind.BAD_ROTATION, raw)

    # "90.0" is the same angle as "90".
    if degrees == 0:
        return NoRotation()
    if degrees in RIGHT_ANGLES:
        return Right90Rotation(int(degrees))
    if not arbitrary_rotation:
        raise ParseError(ErrorKind.UNSUPPORTED_ROTATION, raw)
    return ArbitraryRotation(degrees)


def parse_format(raw: str) -> FormatSpec:
    extension = (raw or "").strip().lower()
    mime_type = MIME_TYPES.get(extension)
    if mime_type is None:
        raise ParseError(ErrorKind.UNSUPPORTED_FORMAT, raw or "")
    return FormatSpec(extension, mime_type)


def parse_quality(raw: str) -> str:
    quality = (raw or "").strip()
    if not quality:
        raise ParseError(ErrorKind.BAD_QUALITY, raw or "")
    return quality


class RequestGrammar:
    """Turn the five raw IIIF parameters into a canonical `TransformPlan`.

    `derivatives` are only used to recognize a `w,h` request that a stored
    rendition already satisfies. `legacy_best_fit_collapse` keeps the
    historical `!w,h` check, which compares the requested height with the
    region *width*; disable it to compare with the region height.
    """

    def __init__(
        self,
        derivatives: Sequence[DerivativeDescriptor] = (),
        *,
        arbitrary_rotation: bool = False,
        legacy_best_fit_collapse: bool = True,
    ):
        self.derivatives = tuple(derivatives)
        self.arbitrary_rotation = arbitrary_rotation
        self.legacy_best_fit_collapse = legacy_best_fit_collapse

    def parse(
        self,
        region: str,
        size: str,
        rotation: str,
        quality: str,
        fmt: str,
        source: SourceDescriptor,
    ) -> TransformPlan:
        """Parse and normalize a request; raise `ParseError` on bad input."""
        format_spec = parse_format(fmt)
        region_spec = normalize_region(parse_region(region, source), source)
        size_spec = parse_size(size, region_spec.box)
        rotation_spec = parse_rotation(rotation, arbitrary_rotation=self.arbitrary_rotation)
        quality_token = parse_quality(quality)

        plan = TransformPlan(
            source=source,
            region=region_spec,
            size=size_spec,
            rotation=rotation_spec,
            quality=quality_token,
            format=format_spec,
        )
        return self.normalize_size(plan)

    def normalize_size(self, plan: TransformPlan) -> TransformPlan:
        """Collapse sizes that leave the region unchanged to `full`."""
        box = plan.region.box
        full = FullSize(box.width, box.height)

        match plan.size:
            case FullSize() | WidthSize() | HeightSize():
                return plan
            case PercentSize(pct=pct):
                return replace(plan, size=full) if pct == 100 else plan
            case BestFitSize(w=w, h=h):
                h_limit = box.width if self.legacy_best_fit_collapse else box.height
                if w == box.width and h == h_limit:
                    return replace(plan, size=full)
                return plan
            case ForcedSize(w=w, h=h):
                if not isinstance(plan.region, FullRegion):
                    return plan
                stored = match_listed_size(w, h, plan.source, self.derivatives)
                if stored is None:
                    return plan
                return replace(
                    plan,
                    source=stored,
                    region=FullRegion(Box.of(stored)),
                    size=FullSize(stored.width, stored.height),
                )
            case _:
                assert_never(plan.size)
