"""Choose the cheapest data source able to answer a plan.

Order: the original itself, a stored derivative, a single pyramid tile,
then a dynamic transformation of the original (guarded by a size limit).
Located assets are served by redirect when nothing is left to do, or
passed to the transformation backend for light post-processing.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import replace

from .derivatives import DerivativeCatalog
from .errors import ErrorKind, GatewayError, ImageRequestError, ResolutionError
from .logger import get_logger
from .models import (
    DEFAULT_QUALITY,
    Box,
    DerivativeDescriptor,
    Failure,
    ForcedSize,
    FullRegion,
    FullSize,
    NoRotation,
    Outcome,
    Redirect,
    Rendered,
    TilePyramidDescriptor,
    TransformPlan,
)
from .pyramid import PyramidLocator
from .transform import TransformGateway

logger = get_logger(__name__)


def failure_from(exc: ImageRequestError) -> Failure:
    return Failure(kind=exc.kind, message=exc.message, status_code=exc.status_code, value=exc.value)


def is_identity(plan: TransformPlan) -> bool:
    return (
        isinstance(plan.region, FullRegion)
        and isinstance(plan.size, FullSize)
        and isinstance(plan.rotation, NoRotation)
        and plan.quality == DEFAULT_QUALITY
        and plan.format.mime_type == plan.source.mime_type
    )


class PlanResolver:
    """Resolve one request plan to a redirect, rendered bytes or a failure.

    `max_dynamic_size` is the byte size above which the original is not
    transformed on demand (0 disables the guard).
    """

    def __init__(
        self,
        gateway: TransformGateway,
        *,
        derivatives: Sequence[DerivativeDescriptor] = (),
        pyramid: TilePyramidDescriptor | None = None,
        max_dynamic_size: int = 0,
        timeout: float | None = None,
    ):
        self.gateway = gateway
        self.catalog = DerivativeCatalog(derivatives)
        self.pyramid = pyramid
        self.max_dynamic_size = max_dynamic_size
        self.timeout = timeout

    def resolve(self, plan: TransformPlan) -> Outcome:
        content_type = plan.format.mime_type

        if is_identity(plan):
            logger.debug("Identity request, redirecting to %s", plan.source.public_url)
            return Redirect(plan.source.public_url, content_type)

        derivative_match = self.catalog.find_full_size_match(plan)
        if derivative_match is not None:
            derivative = derivative_match.derivative
            if not derivative_match.plan.needs_post_processing(derivative.mime_type):
                logger.debug("Derivative '%s' answers the request as is", derivative.name)
                return Redirect(derivative.url or derivative.path, content_type)
            logger.debug("Derivative '%s' used as source for light processing", derivative.name)
            return self._render(derivative_match.plan)

        if self.pyramid is not None:
            outcome = self._try_pyramid(plan)
            if outcome is not None:
                return outcome

        file_size = plan.source.file_size
        if self.max_dynamic_size and file_size is not None and file_size > self.max_dynamic_size:
            logger.warning(
                "Refusing dynamic processing of %s (%d bytes > %d)",
                plan.source.path,
                file_size,
                self.max_dynamic_size,
            )
            error = ResolutionError(ErrorKind.TOO_LARGE_FOR_DYNAMIC_PROCESSING, plan.source.path)
            return failure_from(error)

        return self._render(plan)

    def _try_pyramid(self, plan: TransformPlan) -> Outcome | None:
        tile = PyramidLocator(self.pyramid).locate(plan)
        if tile is None:
            return None

        target_w, target_h = plan.target_size
        if tile.width < target_w or tile.height < target_h:
            # Would need upscaling of a reduced tile.
            logger.debug("Tile %s smaller than requested %dx%d, ignored", tile.relative_path, target_w, target_h)
            return None

        same_size = (tile.width, tile.height) == (target_w, target_h)
        if same_size and not plan.needs_post_processing(tile.mime_type):
            logger.debug("Tile %s answers the request as is", tile.relative_path)
            return Redirect(tile.url or tile.path, plan.format.mime_type)

        source = tile.as_source()
        size = FullSize(tile.width, tile.height) if same_size else ForcedSize(target_w, target_h, target_w, target_h)
        retargeted = replace(plan, source=source, region=FullRegion(Box.of(source)), size=size)
        logger.debug("Tile %s used as source for light processing", tile.relative_path)
        return self._render(retargeted)

    def _render(self, plan: TransformPlan) -> Outcome:
        try:
            data = self.gateway.render(plan, timeout=self.timeout)
        except GatewayError as exc:
            logger.warning("Transformation of %s failed: %s", plan.source.path, exc.detail or exc.message)
            return failure_from(exc)
        except Exception as exc:  # pragma: no cover - backend-level safety
            logger.exception("Unexpected backend error on %s", plan.source.path)
            return failure_from(GatewayError(ErrorKind.BACKEND_FAILURE, plan.source.path, str(exc)))

        if not data:
            return failure_from(GatewayError(ErrorKind.TRANSFORM_FAILED, plan.source.path))
        return Rendered(plan.format.mime_type, data)
