"""IIIF Image API routes.

Thin HTTP layer over `ImageRequestService`: it maps outcomes to responses
and adds the CORS and profile headers IIIF clients expect. Request
resolution itself lives in `iiif_image_core`.
"""

from __future__ import annotations

import json
from urllib.parse import quote, unquote

from fasthtml.common import Request, Response
from starlette.responses import RedirectResponse

from iiif_image_core.errors import ImageRequestError
from iiif_image_core.logger import get_logger
from iiif_image_core.models import QUALITIES, Failure, Outcome, Redirect, Rendered
from iiif_image_core.service import IIIF_PROFILE, ImageRequestService

logger = get_logger(__name__)

IIIF_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Link": f'<{IIIF_PROFILE}>;rel="profile"',
}


def _service() -> ImageRequestService:
    return ImageRequestService.from_config()


def _error_response(message: str, status_code: int) -> Response:
    return Response(message, status_code=status_code, media_type="text/plain")


def outcome_response(outcome: Outcome) -> Response:
    """Turn a resolution outcome into the HTTP response."""
    match outcome:
        case Redirect(url=url, content_type=content_type):
            return RedirectResponse(url, status_code=302, headers={**IIIF_HEADERS, "Content-Type": content_type})
        case Rendered(content_type=content_type, data=data):
            return Response(content=data, media_type=content_type, headers=dict(IIIF_HEADERS))
        case Failure(message=message, status_code=status_code):
            return _error_response(message, status_code)
    raise TypeError(f"Unexpected outcome: {outcome!r}")


def serve_image(identifier: str, region: str, size: str, rotation: str, quality: str, fmt: str) -> Response:
    """Answer `/{identifier}/{region}/{size}/{rotation}/{quality}.{format}`."""
    identifier = unquote(identifier)
    if quality not in QUALITIES:
        return _error_response(
            f'The IIIF server cannot fulfill the request: the quality "{quality}" is not supported.', 400
        )

    try:
        with _service() as service:
            outcome = service.fetch(identifier, unquote(region), unquote(size), rotation, quality, fmt)
    except Exception as exc:  # pragma: no cover - route-level safety
        logger.exception("Error serving %s: %s", identifier, exc)
        return _error_response("The IIIF server encountered an unexpected error.", 500)

    if isinstance(outcome, Failure):
        logger.info("%s -> %d %s", identifier, outcome.status_code, outcome.kind.value)
    return outcome_response(outcome)


def serve_info(request: Request, identifier: str) -> Response:
    """Send `info.json` for an identifier."""
    identifier = unquote(identifier)
    base_uri = f"{request.url.scheme}://{request.url.netloc}/iiif/{quote(identifier, safe='')}"
    try:
        with _service() as service:
            info = service.info(identifier, base_uri)
    except ImageRequestError as exc:
        return _error_response(exc.message, exc.status_code)

    accept = request.headers.get("accept", "")
    media_type = "application/ld+json" if "application/ld+json" in accept else "application/json"
    return Response(content=json.dumps(info), media_type=media_type, headers={"Access-Control-Allow-Origin": "*"})


def redirect_to_info(identifier: str) -> Response:
    """The base URI of an image redirects to its `info.json`."""
    return RedirectResponse(f"/iiif/{quote(unquote(identifier), safe='')}/info.json", status_code=303)


def setup_image_routes(app) -> None:
    """Register the IIIF Image API routes."""
    app.get("/iiif/{identifier}/info.json")(serve_info)
    app.get("/iiif/{identifier}/{region}/{size}/{rotation}/{quality}.{fmt}")(serve_image)
    app.get("/iiif/{identifier}")(redirect_to_info)
