"""Entry point used by the serving layers (web routes, CLI).

Wires storage lookups, the grammar, the resolver and the transformation
backend together for one request, and builds the IIIF `info.json`.
"""

from __future__ import annotations

from typing import Any, Final

from .config_manager import ConfigManager, get_config_manager
from .derivatives import is_full_rendition
from .errors import ErrorKind, ImageRequestError, ParseError, ResolutionError
from .grammar import RequestGrammar
from .logger import get_logger, get_request_logger, summarize_for_debug
from .models import MIME_TYPES, QUALITIES, Outcome, SourceDescriptor
from .resolver import PlanResolver, failure_from
from .storage import FileImageStore
from .transform import PillowTransformGateway, TransformGateway

logger = get_logger(__name__)

IIIF_CONTEXT: Final = "http://iiif.io/api/image/2/context.json"
IIIF_PROTOCOL: Final = "http://iiif.io/api/image"
IIIF_PROFILE: Final = "http://iiif.io/api/image/2/level2.json"

_SUPPORTS: Final = [
    "baseUriRedirect",
    "cors",
    "jsonldMediaType",
    "profileLinkHeader",
    "regionByPct",
    "regionByPx",
    "rotationBy90s",
    "sizeByForcedWh",
    "sizeByH",
    "sizeByPct",
    "sizeByW",
    "sizeByWh",
]


class ImageRequestService:
    """Answer IIIF image and info requests for stored identifiers."""

    def __init__(
        self,
        store: FileImageStore,
        gateway: TransformGateway,
        *,
        image_creator: str = "auto",
        max_dynamic_size: int = 0,
        timeout: float | None = None,
        legacy_best_fit_collapse: bool = True,
    ):
        self.store = store
        self.gateway = gateway
        self.image_creator = (image_creator or "auto").strip().lower()
        self.max_dynamic_size = max_dynamic_size
        self.timeout = timeout
        self.legacy_best_fit_collapse = legacy_best_fit_collapse

    @classmethod
    def from_config(cls, config: ConfigManager | None = None) -> ImageRequestService:
        cm = config or get_config_manager()
        store = FileImageStore(
            cm.get_files_dir(),
            base_url=str(cm.get_setting("image_server.base_url", "/files")),
            derivative_types=cm.get_derivative_types(),
        )
        gateway = PillowTransformGateway(
            cm.get_temp_dir(),
            jpeg_quality=int(cm.get_setting("image_server.jpeg_quality", 90)),
        )
        logger.debug("Image service over %s", store.files_dir)
        return cls(
            store,
            gateway,
            image_creator=str(cm.get_setting("image_server.image_creator", "auto")),
            max_dynamic_size=cm.get_max_dynamic_size(),
            timeout=cm.get_transform_timeout(),
            legacy_best_fit_collapse=bool(cm.get_setting("image_server.legacy_best_fit_collapse", True)),
        )

    def close(self) -> None:
        """Release the backend's resources (its HTTP session, if any)."""
        close = getattr(self.gateway, "close", None)
        if callable(close):
            close()

    def __enter__(self) -> ImageRequestService:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    @property
    def arbitrary_rotation(self) -> bool:
        """Arbitrary angles need a capable backend not forced to basic mode."""
        return bool(getattr(self.gateway, "supports_arbitrary_rotation", False)) and self.image_creator != "basic"

    def _image_source(self, identifier: str) -> SourceDescriptor:
        source = self.store.lookup_source(identifier)
        if not source.mime_type.startswith("image/"):
            raise ResolutionError(ErrorKind.NOT_AN_IMAGE, identifier)
        return source

    def fetch(self, identifier: str, region: str, size: str, rotation: str, quality: str, fmt: str) -> Outcome:
        """Resolve one image request to a redirect, rendered bytes or a failure."""
        log = get_request_logger(identifier)
        request = summarize_for_debug(f"{region}/{size}/{rotation}/{quality}.{fmt}", 120)
        try:
            source = self._image_source(identifier)
            derivatives = self.store.list_derivatives(identifier)
            grammar = RequestGrammar(
                derivatives,
                arbitrary_rotation=self.arbitrary_rotation,
                legacy_best_fit_collapse=self.legacy_best_fit_collapse,
            )
            plan = grammar.parse(region, size, rotation, quality, fmt, source)
        except ParseError as exc:
            log.info("Rejected request %s: %s", request, exc.kind.value)
            return failure_from(exc)
        except ImageRequestError as exc:
            log.info("Cannot serve %s: %s", identifier, exc.kind.value)
            return failure_from(exc)

        resolver = PlanResolver(
            self.gateway,
            derivatives=derivatives,
            pyramid=self.store.pyramid_metadata(identifier),
            max_dynamic_size=self.max_dynamic_size,
            timeout=self.timeout,
        )
        outcome = resolver.resolve(plan)
        log.debug("Resolved %s -> %s", request, type(outcome).__name__)
        return outcome

    def info(self, identifier: str, base_uri: str) -> dict[str, Any]:
        """Build the IIIF Image API 2 `info.json` of an identifier.

        Raises `SourceNotFoundError` or `ResolutionError` like `fetch` would.
        """
        source = self._image_source(identifier)
        supports = list(_SUPPORTS)
        if self.arbitrary_rotation:
            supports.append("rotationArbitrary")

        info: dict[str, Any] = {
            "@context": IIIF_CONTEXT,
            "@id": base_uri.rstrip("/"),
            "protocol": IIIF_PROTOCOL,
            "width": source.width,
            "height": source.height,
            "profile": [
                IIIF_PROFILE,
                {
                    "formats": sorted(MIME_TYPES),
                    "qualities": list(QUALITIES),
                    "supports": sorted(supports),
                },
            ],
        }

        derivatives = [d for d in self.store.list_derivatives(identifier) if is_full_rendition(d, source)]
        if derivatives:
            sizes = sorted({(d.width, d.height) for d in derivatives})
            info["sizes"] = [{"width": w, "height": h} for w, h in sizes]

        pyramid = self.store.pyramid_metadata(identifier)
        if pyramid is not None:
            info["tiles"] = [{"width": pyramid.tile_size, "scaleFactors": list(pyramid.resolutions)}]

        return info
