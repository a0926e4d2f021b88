import argparse
import json
import sys
from pathlib import Path

from iiif_image_core import __version__
from iiif_image_core.errors import ImageRequestError
from iiif_image_core.logger import get_logger, setup_logging
from iiif_image_core.models import Failure, Redirect, Rendered
from iiif_image_core.service import ImageRequestService

logger = get_logger(__name__)


def _split_quality_format(value: str) -> tuple[str, str]:
    quality, sep, fmt = (value or "").rpartition(".")
    if not sep:
        raise argparse.ArgumentTypeError(f"expected QUALITY.FORMAT, got {value!r}")
    return quality, fmt


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="IIIF Image Server tools")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    sub = parser.add_subparsers(dest="command", required=True)

    resolve = sub.add_parser("resolve", help="Resolve one image request")
    resolve.add_argument("identifier")
    resolve.add_argument("region", help="full, x,y,w,h or pct:x,y,w,h")
    resolve.add_argument("size", help="full, pct:n, w,h, !w,h, w, or ,h")
    resolve.add_argument("rotation", help="0, 90, 180, 270 or any angle")
    resolve.add_argument("quality_format", type=_split_quality_format, metavar="QUALITY.FORMAT")
    resolve.add_argument("-o", "--output", help="Where to write rendered bytes")

    info = sub.add_parser("info", help="Print info.json of an identifier")
    info.add_argument("identifier")
    info.add_argument("--base-uri", default="http://localhost:8182/iiif", help="Public prefix of image URIs")
    return parser


def _run_resolve(service: ImageRequestService, args) -> int:
    quality, fmt = args.quality_format
    outcome = service.fetch(args.identifier, args.region, args.size, args.rotation, quality, fmt)

    match outcome:
        case Redirect(url=url, content_type=content_type):
            print(f"↪️  redirect {url} ({content_type})")
            return 0
        case Rendered(content_type=content_type, data=data):
            if args.output:
                out = Path(args.output)
                out.parent.mkdir(parents=True, exist_ok=True)
                out.write_bytes(data)
                print(f"✅ rendered {len(data)} bytes ({content_type}) -> {out}")
            else:
                print(f"✅ rendered {len(data)} bytes ({content_type})")
            return 0
        case Failure(kind=kind, message=message, status_code=status_code):
            print(f"❌ {status_code} {kind.value}: {message}", file=sys.stderr)
            return 1
    return 1


def _run_info(service: ImageRequestService, args) -> int:
    base = f"{args.base_uri.rstrip('/')}/{args.identifier}"
    try:
        info = service.info(args.identifier, base)
    except ImageRequestError as exc:
        print(f"❌ {exc.status_code} {exc.kind.value}: {exc.message}", file=sys.stderr)
        return 1
    print(json.dumps(info, indent=2, ensure_ascii=False))
    return 0


def main(argv=None) -> int:
    """Command line entry point."""
    setup_logging()
    args = _build_parser().parse_args(argv)
    logger.debug("CLI command: %s", args.command)

    with ImageRequestService.from_config() as service:
        if args.command == "resolve":
            return _run_resolve(service, args)
        return _run_info(service, args)


if __name__ == "__main__":
    sys.exit(main())
