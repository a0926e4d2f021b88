import io

import pytest
from PIL import Image as PILImage

from iiif_image_core.errors import ErrorKind, SourceNotFoundError
from iiif_image_core.models import Failure, Redirect, Rendered
from iiif_image_core.service import IIIF_PROFILE, ImageRequestService


@pytest.fixture
def service(_isolated_config):
    return ImageRequestService.from_config(_isolated_config)


@pytest.fixture
def manuscript(store_image, store_pyramid):
    store_image("original", "ms1", (1000, 800))
    store_image("medium", "ms1", (400, 320))
    store_image("large", "ms1", (800, 640))
    store_pyramid("ms1", 1000, 800)
    return "ms1"


def test_from_config_reads_settings(_isolated_config, files_dir):
    _isolated_config.set_setting("image_server.max_dynamic_size", 1234)
    _isolated_config.set_setting("image_server.transform_timeout_s", 0)
    _isolated_config.set_setting("image_server.image_creator", "Basic")

    service = ImageRequestService.from_config(_isolated_config)

    assert service.store.files_dir == files_dir
    assert service.max_dynamic_size == 1234
    assert service.timeout is None
    assert service.image_creator == "basic"
    assert service.arbitrary_rotation is False


def test_identity_redirect(service, manuscript):
    outcome = service.fetch(manuscript, "full", "full", "0", "default", "jpg")
    assert outcome == Redirect("/files/original/ms1.jpg", "image/jpeg")


def test_derivative_redirect(service, manuscript):
    outcome = service.fetch(manuscript, "full", "600,", "0", "default", "jpg")
    assert outcome == Redirect("/files/large/ms1.jpg", "image/jpeg")


def test_listed_size_redirect(service, manuscript):
    outcome = service.fetch(manuscript, "full", "400,320", "0", "default", "jpg")
    assert outcome == Redirect("/files/medium/ms1.jpg", "image/jpeg")


def test_tile_redirect(service, manuscript):
    outcome = service.fetch(manuscript, "256,0,256,256", "256,", "0", "default", "jpg")
    assert outcome == Redirect("/files/zoom_tiles/ms1_zdata/TileGroup0/2-1-0.jpg", "image/jpeg")


def test_dynamic_render(service, manuscript):
    outcome = service.fetch(manuscript, "0,0,300,200", "150,", "0", "gray", "png")

    assert isinstance(outcome, Rendered)
    assert outcome.content_type == "image/png"
    img = PILImage.open(io.BytesIO(outcome.data))
    assert img.size == (150, 100)
    assert img.mode == "L"


def test_dynamic_render_refused_for_large_files(_isolated_config, manuscript):
    _isolated_config.set_setting("image_server.max_dynamic_size", 10)
    service = ImageRequestService.from_config(_isolated_config)

    outcome = service.fetch(manuscript, "0,0,300,200", "150,", "0", "default", "jpg")

    assert isinstance(outcome, Failure)
    assert outcome.kind is ErrorKind.TOO_LARGE_FOR_DYNAMIC_PROCESSING


def test_missing_identifier(service):
    outcome = service.fetch("nope", "full", "full", "0", "default", "jpg")
    assert isinstance(outcome, Failure)
    assert outcome.kind is ErrorKind.NOT_FOUND
    assert outcome.status_code == 404


def test_non_image_original(service, files_dir):
    target = files_dir / "original" / "doc.pdf"
    target.parent.mkdir(parents=True)
    target.write_bytes(b"%PDF-1.4\n%%EOF\n")

    outcome = service.fetch("doc", "full", "full", "0", "default", "jpg")

    assert isinstance(outcome, Failure)
    assert outcome.kind is ErrorKind.NOT_AN_IMAGE
    assert outcome.status_code == 501


@pytest.mark.parametrize(
    "region,size,rotation,fmt,kind",
    [
        ("full", "full", "0", "bmp", ErrorKind.UNSUPPORTED_FORMAT),
        ("1,2,3", "full", "0", "jpg", ErrorKind.BAD_REGION),
        ("full", "pct:0", "0", "jpg", ErrorKind.BAD_SIZE),
        ("full", "full", "x", "jpg", ErrorKind.BAD_ROTATION),
    ],
)
def test_bad_requests(service, manuscript, region, size, rotation, fmt, kind):
    outcome = service.fetch(manuscript, region, size, rotation, "default", fmt)
    assert isinstance(outcome, Failure)
    assert outcome.kind is kind
    assert outcome.status_code == 400


def test_arbitrary_rotation_follows_image_creator(_isolated_config, manuscript):
    auto = ImageRequestService.from_config(_isolated_config)
    assert isinstance(auto.fetch(manuscript, "0,0,100,100", "full", "45", "default", "png"), Rendered)

    _isolated_config.set_setting("image_server.image_creator", "basic")
    basic = ImageRequestService.from_config(_isolated_config)
    outcome = basic.fetch(manuscript, "0,0,100,100", "full", "45", "default", "png")
    assert isinstance(outcome, Failure)
    assert outcome.kind is ErrorKind.UNSUPPORTED_ROTATION


def test_info(service, manuscript):
    info = service.info(manuscript, "http://localhost:8182/iiif/ms1/")

    assert info["@id"] == "http://localhost:8182/iiif/ms1"
    assert (info["width"], info["height"]) == (1000, 800)
    assert info["profile"][0] == IIIF_PROFILE
    assert "rotationArbitrary" in info["profile"][1]["supports"]
    assert "jpg" in info["profile"][1]["formats"]
    assert info["sizes"] == [{"width": 400, "height": 320}, {"width": 800, "height": 640}]
    assert info["tiles"] == [{"width": 256, "scaleFactors": [1, 2, 4]}]


def test_info_without_derivatives_or_tiles(service, store_image):
    store_image("original", "plain", (50, 40), ext="png")

    info = service.info("plain", "http://localhost/iiif/plain")

    assert "sizes" not in info
    assert "tiles" not in info


def test_info_missing(service):
    with pytest.raises(SourceNotFoundError):
        service.info("nope", "http://localhost/iiif/nope")


def test_square_thumbnail_is_not_a_full_rendition(service, store_image):
    store_image("original", "ms9", (1000, 800))
    store_image("square", "ms9", (200, 200))
    store_image("large", "ms9", (800, 640))

    outcome = service.fetch("ms9", "full", "150,", "0", "default", "jpg")

    assert isinstance(outcome, Redirect)
    assert outcome.url == "/files/large/ms9.jpg"
    assert service.info("ms9", "http://localhost/iiif/ms9")["sizes"] == [{"width": 800, "height": 640}]


def test_decimal_right_angle_allowed_in_basic_mode(_isolated_config, manuscript):
    _isolated_config.set_setting("image_server.image_creator", "basic")
    service = ImageRequestService.from_config(_isolated_config)

    outcome = service.fetch(manuscript, "0,0,200,100", "full", "90.0", "default", "png")

    assert isinstance(outcome, Rendered)
    img = PILImage.open(io.BytesIO(outcome.data))
    assert img.size == (100, 200)


def test_service_closes_its_gateway(service):
    closed = []
    service.gateway.close = lambda: closed.append(True)

    with service:
        pass

    assert closed == [True]
