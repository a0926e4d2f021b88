"""Data model of the request-resolution engine.

Region, size and rotation are tagged variants: one frozen dataclass per
feature, dispatched with `match` and closed with `assert_never`. Each
region/size variant keeps the requested values (for optimization
decisions) next to the resolved absolute pixel values (for execution).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Final

from .errors import ErrorKind

MIME_TYPES: Final = {
    "jpg": "image/jpeg",
    "png": "image/png",
    "tif": "image/tiff",
    "gif": "image/gif",
    "pdf": "application/pdf",
    "jp2": "image/jp2",
    "webp": "image/webp",
}

QUALITIES: Final = ("default", "color", "gray", "bitonal")

DEFAULT_QUALITY: Final = "default"


@dataclass(frozen=True)
class SourceDescriptor:
    """The file a plan is executed against."""

    path: str
    mime_type: str
    width: int
    height: int
    url: str = ""
    file_size: int | None = None

    @property
    def public_url(self) -> str:
        return self.url or self.path

    @property
    def is_remote(self) -> bool:
        return self.path.startswith(("http://", "https://"))


@dataclass(frozen=True)
class DerivativeDescriptor:
    """A precomputed rendition of the full image (square, medium, large...)."""

    name: str
    path: str
    mime_type: str
    width: int
    height: int
    url: str = ""

    def as_source(self) -> SourceDescriptor:
        return SourceDescriptor(
            path=self.path,
            mime_type=self.mime_type,
            width=self.width,
            height=self.height,
            url=self.url,
        )


@dataclass(frozen=True)
class Box:
    x: int
    y: int
    width: int
    height: int

    @classmethod
    def of(cls, source: SourceDescriptor) -> Box:
        return cls(0, 0, source.width, source.height)


# --- Region variants ---


@dataclass(frozen=True)
class FullRegion:
    box: Box


@dataclass(frozen=True)
class PercentRegion:
    x: float
    y: float
    w: float
    h: float
    box: Box


@dataclass(frozen=True)
class PixelRegion:
    x: int
    y: int
    w: int
    h: int
    box: Box


RegionSpec = FullRegion | PercentRegion | PixelRegion


# --- Size variants ---


@dataclass(frozen=True)
class FullSize:
    width: int
    height: int


@dataclass(frozen=True)
class PercentSize:
    pct: float
    width: int
    height: int


@dataclass(frozen=True)
class BestFitSize:
    """`!w,h`: scale to fit inside the box, keeping the aspect ratio."""

    w: int
    h: int
    width: int
    height: int


@dataclass(frozen=True)
class ForcedSize:
    """`w,h`: exact target, aspect ratio not kept."""

    w: int
    h: int
    width: int
    height: int


@dataclass(frozen=True)
class WidthSize:
    w: int
    width: int
    height: int


@dataclass(frozen=True)
class HeightSize:
    h: int
    width: int
    height: int


SizeSpec = FullSize | PercentSize | BestFitSize | ForcedSize | WidthSize | HeightSize


# --- Rotation variants ---


@dataclass(frozen=True)
class NoRotation:
    degrees: float = 0


@dataclass(frozen=True)
class Right90Rotation:
    degrees: int


@dataclass(frozen=True)
class ArbitraryRotation:
    degrees: float


RotationSpec = NoRotation | Right90Rotation | ArbitraryRotation


@dataclass(frozen=True)
class FormatSpec:
    extension: str
    mime_type: str


@dataclass(frozen=True)
class TransformPlan:
    """Canonical, immutable description of one image request."""

    source: SourceDescriptor
    region: RegionSpec
    size: SizeSpec
    rotation: RotationSpec
    quality: str
    format: FormatSpec

    @property
    def target_size(self) -> tuple[int, int]:
        return self.size.width, self.size.height

    def needs_post_processing(self, mime_type: str) -> bool:
        """True when rotation, quality or format differ from a stored asset."""
        return (
            not isinstance(self.rotation, NoRotation)
            or self.quality != DEFAULT_QUALITY
            or self.format.mime_type != mime_type
        )


@dataclass(frozen=True)
class TilePyramidDescriptor:
    """A Zoomify pyramid: fixed-size square tiles, each tier halving resolution."""

    tile_size: int
    width: int
    height: int
    path: str = ""
    url: str = ""
    tier_sizes: tuple[tuple[int, int], ...] = field(init=False, repr=False)
    tile_count_up_to_tier: tuple[int, ...] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        tiers: list[tuple[int, int]] = []
        tile_size = self.tile_size
        if tile_size > 0:
            while self.width > tile_size or self.height > tile_size:
                tiers.append((-(-self.width // tile_size), -(-self.height // tile_size)))
                tile_size += tile_size
        tiers.append((1, 1))
        tiers.reverse()

        counts = [0]
        for i in range(1, len(tiers)):
            counts.append(tiers[i - 1][0] * tiers[i - 1][1] + counts[i - 1])

        object.__setattr__(self, "tier_sizes", tuple(tiers))
        object.__setattr__(self, "tile_count_up_to_tier", tuple(counts))

    @property
    def level_count(self) -> int:
        return len(self.tier_sizes)

    @property
    def resolutions(self) -> tuple[int, ...]:
        return tuple(1 << i for i in range(self.level_count))


@dataclass(frozen=True)
class TileRef:
    level: int
    x: int
    y: int
    tile_size: int
    tile_group: int
    width: int
    height: int
    path: str = ""
    url: str = ""
    mime_type: str = "image/jpeg"

    @property
    def relative_path(self) -> str:
        return f"TileGroup{self.tile_group}/{self.level}-{self.x}-{self.y}.jpg"

    def as_source(self) -> SourceDescriptor:
        return SourceDescriptor(
            path=self.path,
            mime_type=self.mime_type,
            width=self.width,
            height=self.height,
            url=self.url,
        )


# --- Outcomes ---


@dataclass(frozen=True)
class Redirect:
    url: str
    content_type: str


@dataclass(frozen=True)
class Rendered:
    content_type: str
    data: bytes = field(repr=False)


@dataclass(frozen=True)
class Failure:
    kind: ErrorKind
    message: str
    status_code: int
    value: str = ""


Outcome = Redirect | Rendered | Failure
