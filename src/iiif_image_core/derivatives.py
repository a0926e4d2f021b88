"""Serve full-image requests from precomputed renditions.

Only renditions of the whole image qualify: a stored file whose aspect
ratio differs from the original's (a square thumbnail, a crop) never
stands in for `full`.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, replace
from typing import assert_never

from .models import (
    BestFitSize,
    Box,
    DerivativeDescriptor,
    ForcedSize,
    FullRegion,
    FullSize,
    HeightSize,
    PercentSize,
    SizeSpec,
    SourceDescriptor,
    TransformPlan,
    WidthSize,
)


@dataclass(frozen=True)
class DerivativeMatch:
    derivative: DerivativeDescriptor
    plan: TransformPlan


def is_full_rendition(derivative: DerivativeDescriptor, source: SourceDescriptor) -> bool:
    """True when `derivative` is the whole image scaled down, within one pixel of rounding."""
    if min(source.width, source.height, derivative.width, derivative.height) <= 0:
        return False
    expected_height = derivative.width * source.height / source.width
    expected_width = derivative.height * source.width / source.height
    return abs(expected_height - derivative.height) <= 1 or abs(expected_width - derivative.width) <= 1


def derivative_satisfies(size: SizeSpec, source: SourceDescriptor, derivative: DerivativeDescriptor) -> bool | None:
    """Apply the rule of the size feature; None when the feature is not eligible."""
    match size:
        case WidthSize(w=w):
            return w <= derivative.width
        case HeightSize(h=h):
            return h <= derivative.height
        case BestFitSize(w=w, h=h) | ForcedSize(w=w, h=h):
            return w <= derivative.width and h <= derivative.height
        case PercentSize(pct=pct):
            if source.width <= 0:
                return False
            return pct <= derivative.width * 100 / source.width
        case FullSize():
            return None
        case _:
            assert_never(size)


class DerivativeCatalog:
    """Pick a precomputed rendition able to serve a full-region request.

    A derivative at least as large as the requested size is treated as
    already correctly sized: the returned plan reclassifies the size to
    `full` and no resize is done on top of it.
    """

    def __init__(self, derivatives: Sequence[DerivativeDescriptor] = ()):
        self.derivatives = tuple(derivatives)

    def find_full_size_match(self, plan: TransformPlan) -> DerivativeMatch | None:
        if not isinstance(plan.region, FullRegion):
            return None

        for derivative in self.derivatives:
            satisfied = derivative_satisfies(plan.size, plan.source, derivative)
            if satisfied is None:
                return None
            if satisfied and is_full_rendition(derivative, plan.source):
                source = derivative.as_source()
                retargeted = replace(
                    plan,
                    source=source,
                    region=FullRegion(Box.of(source)),
                    size=FullSize(source.width, source.height),
                )
                return DerivativeMatch(derivative, retargeted)
        return None
