"""Locate a single pre-rendered Zoomify tile for a request.

Zoomify pyramids (as produced for OpenLayers/OpenSeadragon viewers) store
square tiles of a fixed size. Level 0 is the coarsest tier (one tile);
every next level doubles the resolution. Tiles are bucketed into
`TileGroupN` directories of `tile_size` tiles each, numbered with the same
formula as the OpenLayers Zoomify source, so the numbering below must not
be simplified: it has to match pyramids already on disk.

Viewers ask for cell-aligned regions, so the region itself gives the cell
dimension. Anything that does not map onto exactly one stored tile is
rejected and the caller falls back to a dynamic transformation.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Final, assert_never

from defusedxml import ElementTree as DefusedET

from .models import (
    BestFitSize,
    Box,
    ForcedSize,
    FullRegion,
    FullSize,
    HeightSize,
    PercentRegion,
    PercentSize,
    PixelRegion,
    SizeSpec,
    TilePyramidDescriptor,
    TileRef,
    TransformPlan,
    WidthSize,
)

# Hardcoded by the viewers that consume these pyramids.
EXPECTED_TILE_SIZE: Final = 256

PROPERTIES_FILENAME: Final = "ImageProperties.xml"


def parse_image_properties(xml_bytes: bytes, *, path: str = "", url: str = "") -> TilePyramidDescriptor | None:
    """Build a pyramid descriptor from `ImageProperties.xml` content.

    Returns None when the document is unreadable or lacks the dimensions.
    """
    try:
        root = DefusedET.fromstring(xml_bytes)
    except (DefusedET.ParseError, ValueError):
        return None

    attrs = {key.upper(): value for key, value in root.attrib.items()}
    try:
        width = int(attrs["WIDTH"])
        height = int(attrs["HEIGHT"])
        tile_size = int(attrs["TILESIZE"])
    except (KeyError, ValueError):
        return None

    if width <= 0 or height <= 0 or tile_size <= 0:
        return None
    return TilePyramidDescriptor(tile_size=tile_size, width=width, height=height, path=path, url=url)


def scale_factors(width: int, height: int, tile_size: int) -> list[int]:
    """Downsample factors `1, 2, 4...`, one per level, finest first."""
    total = math.ceil(max(width, height) / tile_size)
    factors = []
    factor = 1
    while factor / 2 < total:
        factors.append(factor)
        factor *= 2
    return factors


def tile_index(pyramid: TilePyramidDescriptor, level: int, x: int, y: int) -> int:
    """Rank of a tile counting every tile of the coarser tiers first."""
    return x + y * pyramid.tier_sizes[level][0] + pyramid.tile_count_up_to_tier[level]


def tile_group(pyramid: TilePyramidDescriptor, level: int, x: int, y: int) -> int:
    """Index of the `TileGroup` directory holding tile `level-x-y`."""
    return (tile_index(pyramid, level, x, y) // pyramid.tile_size) or 0


def level_scale(pyramid: TilePyramidDescriptor, level: int) -> int:
    return 1 << (pyramid.level_count - 1 - level)


def tile_box(pyramid: TilePyramidDescriptor, level: int, x: int, y: int) -> Box:
    """Region of the full-resolution image covered by one tile."""
    cell = pyramid.tile_size * level_scale(pyramid, level)
    left, top = x * cell, y * cell
    return Box(left, top, min(cell, pyramid.width - left), min(cell, pyramid.height - top))


def tile_dimensions(pyramid: TilePyramidDescriptor, level: int, box: Box) -> tuple[int, int]:
    """Pixel size of the stored tile covering `box` (edge tiles are cropped)."""
    scale = level_scale(pyramid, level)
    return math.ceil(box.width / scale), math.ceil(box.height / scale)


@dataclass(frozen=True)
class _CellGuess:
    count: int
    x: int
    y: int


def _cell_guess(size: SizeSpec, box: Box, max_side: int, last_column: bool, last_row: bool) -> _CellGuess | None:
    """Cell count and position implied by the region, by the axis of the size.

    In the last column (row) the region width (height) is truncated, so the
    other side is used: tiles are square.
    """
    by_width = _CellGuess(math.ceil(max_side / box.width), box.x // box.width, box.y // box.width)
    by_height = _CellGuess(math.ceil(max_side / box.height), box.x // box.height, box.y // box.height)

    match size:
        case WidthSize():
            return by_height if last_column else by_width
        case HeightSize():
            return by_width if last_row else by_height
        case BestFitSize() | ForcedSize():
            count = by_height.count if last_column else by_width.count
            return _CellGuess(count, box.x // box.width, box.y // box.height)
        case FullSize():
            return _CellGuess(by_width.count, box.x // box.width, box.y // box.height)
        case PercentSize():
            return None
        case _:
            assert_never(size)


class PyramidLocator:
    """Find the one stored tile that answers a plan exactly, if any."""

    def __init__(self, pyramid: TilePyramidDescriptor, expected_tile_size: int = EXPECTED_TILE_SIZE):
        self.pyramid = pyramid
        self.expected_tile_size = expected_tile_size

    def locate(self, plan: TransformPlan) -> TileRef | None:
        pyramid = self.pyramid
        match plan.region:
            case FullRegion() | PixelRegion():
                pass
            case PercentRegion():
                return None
            case _:
                assert_never(plan.region)
        if isinstance(plan.size, PercentSize):
            return None
        if (plan.source.width, plan.source.height) != (pyramid.width, pyramid.height):
            return None
        if pyramid.tile_size != self.expected_tile_size:
            return None

        position = self.level_and_position(plan.region.box, plan.size, plan.target_size)
        if position is None:
            return None
        level, x, y = position

        if not 0 <= level < pyramid.level_count:
            return None
        tier_width, tier_height = pyramid.tier_sizes[level]
        if not (0 <= x < tier_width and 0 <= y < tier_height):
            return None
        box = tile_box(pyramid, level, x, y)
        if box != plan.region.box:
            return None

        width, height = tile_dimensions(pyramid, level, box)
        group = tile_group(pyramid, level, x, y)
        relative = f"TileGroup{group}/{level}-{x}-{y}.jpg"
        return TileRef(
            level=level,
            x=x,
            y=y,
            tile_size=pyramid.tile_size,
            tile_group=group,
            width=width,
            height=height,
            path=f"{pyramid.path.rstrip('/')}/{relative}" if pyramid.path else relative,
            url=f"{pyramid.url.rstrip('/')}/{relative}" if pyramid.url else "",
        )

    def level_and_position(
        self, box: Box, size: SizeSpec, target: tuple[int, int]
    ) -> tuple[int, int, int] | None:
        pyramid = self.pyramid
        width, height = pyramid.width, pyramid.height

        first_cell = box.x == 0 and box.y == 0
        last_column = width == box.x + box.width
        last_row = height == box.y + box.height
        last_cell = last_column and last_row

        if first_cell and last_cell:
            return 0, 0, 0

        factors = scale_factors(width, height, pyramid.tile_size)
        if last_cell:
            return self._last_cell_position(box, factors, target)

        guess = _cell_guess(size, box, max(width, height), last_column, last_row)
        if guess is None:
            return None
        level = sum(1 for factor in factors if factor < guess.count)
        return level, guess.x, guess.y

    def _last_cell_position(
        self, box: Box, factors: list[int], target: tuple[int, int]
    ) -> tuple[int, int, int] | None:
        """The bottom-right cell may be cropped: compare with each level's geometry.

        Distinct levels can share the same last-cell geometry; the level whose
        stored tile has the requested size wins, else the finest one.
        """
        pyramid = self.pyramid
        candidates = []
        coarsest_first = list(reversed(factors))
        for level in reversed(range(len(coarsest_first))):
            tile_factor = coarsest_first[level] * pyramid.tile_size
            count_x = math.ceil(pyramid.width / tile_factor)
            count_y = math.ceil(pyramid.height / tile_factor)
            last_width = pyramid.width - (count_x - 1) * tile_factor
            last_height = pyramid.height - (count_y - 1) * tile_factor
            last_box = Box(pyramid.width - last_width, pyramid.height - last_height, last_width, last_height)
            if last_box == box:
                candidates.append((level, count_x - 1, count_y - 1))

        for level, x, y in candidates:
            if tile_dimensions(pyramid, level, box) == target:
                return level, x, y
        return candidates[0] if candidates else None
