from collections.abc import Awaitable, Callable

from fasthtml.common import RedirectResponse, fast_app, serve
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response
from starlette.staticfiles import StaticFiles

from iiif_image_core import __version__
from iiif_image_core.config_manager import get_config_manager
from iiif_image_core.logger import get_logger, setup_logging
from iiif_image_web.routes.image import setup_image_routes

setup_logging()
logger = get_logger(__name__)

config = get_config_manager()

app, rt = fast_app(pico=False)

# FastHTML's default static route (/{fname:path}.{ext:static}) would swallow
# every image request ending in .jpg/.png before the IIIF routes see it.
if app.routes and "static_route" in getattr(app.routes[0], "name", ""):
    app.routes.pop(0)

# Originals, derivatives and zoom tiles are redirect targets.
files_path = config.get_files_dir()
base_url = str(config.get_setting("image_server.base_url", "/files")).rstrip("/") or "/files"
if base_url.startswith("/"):
    app.mount(base_url, StaticFiles(directory=str(files_path)), name="files")
    logger.info("📂 Mounted files directory: %s at %s", files_path, base_url)


class LoggingMiddleware(BaseHTTPMiddleware):
    """Middleware to log incoming requests."""

    async def dispatch(self, request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
        """Dispatch the request and log the response."""
        logger.info("🌐 [%s] %s", request.method, request.url.path)
        return await call_next(request)


app.add_middleware(LoggingMiddleware)

setup_image_routes(app)


@rt("/")
def index():
    """Redirect root to the health check."""
    return RedirectResponse(url="/health")


@rt("/health")
def health():
    """Simple health check endpoint."""
    return {"status": "ok", "version": __version__}


def main():
    """Entry point of the `iiif-image-server` command."""
    logger.info("🚀 Starting IIIF Image Server")
    logger.info("📍 Files directory: %s", files_path)
    serve(
        appname="server_app",
        app="app",
        port=8182,
        reload=False,
    )


if __name__ == "__main__":
    main()
