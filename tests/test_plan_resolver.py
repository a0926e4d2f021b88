from iiif_image_core.errors import ErrorKind, GatewayError
from iiif_image_core.grammar import RequestGrammar
from iiif_image_core.models import (
    DerivativeDescriptor,
    Failure,
    ForcedSize,
    FullSize,
    Redirect,
    Rendered,
    SourceDescriptor,
    TilePyramidDescriptor,
)
from iiif_image_core.resolver import PlanResolver, is_identity


class FakeGateway:
    supports_arbitrary_rotation = True

    def __init__(self, payload=b"rendered-bytes", error=None):
        self.payload = payload
        self.error = error
        self.calls = []

    def render(self, plan, timeout=None):
        self.calls.append((plan, timeout))
        if self.error is not None:
            raise self.error
        return self.payload


SOURCE = SourceDescriptor(
    "/data/original/ms4.jpg", "image/jpeg", 2000, 1500, url="/files/original/ms4.jpg", file_size=4_000_000
)

LARGE = DerivativeDescriptor("large", "/data/large/ms4.jpg", "image/jpeg", 800, 600, url="/files/large/ms4.jpg")

TILED_SOURCE = SourceDescriptor("/data/original/ms5.jpg", "image/jpeg", 1000, 800, url="/files/original/ms5.jpg")

PYRAMID = TilePyramidDescriptor(
    tile_size=256, width=1000, height=800, path="/data/zoom_tiles/ms5_zdata", url="/files/zoom_tiles/ms5_zdata"
)


def _plan(region="full", size="full", rotation="0", quality="default", fmt="jpg", source=SOURCE, derivatives=()):
    grammar = RequestGrammar(derivatives, arbitrary_rotation=True)
    return grammar.parse(region, size, rotation, quality, fmt, source)


def test_identity_redirects_to_original():
    gateway = FakeGateway()
    plan = _plan()
    assert is_identity(plan)
    outcome = PlanResolver(gateway).resolve(plan)
    assert outcome == Redirect("/files/original/ms4.jpg", "image/jpeg")
    assert gateway.calls == []


def test_listed_size_redirects_to_derivative():
    gateway = FakeGateway()
    plan = _plan(size="800,600", derivatives=[LARGE])
    outcome = PlanResolver(gateway, derivatives=[LARGE]).resolve(plan)
    assert outcome == Redirect("/files/large/ms4.jpg", "image/jpeg")
    assert gateway.calls == []


def test_sufficient_derivative_is_served_as_is():
    gateway = FakeGateway()
    outcome = PlanResolver(gateway, derivatives=[LARGE]).resolve(_plan(size="700,"))
    assert outcome == Redirect("/files/large/ms4.jpg", "image/jpeg")
    assert gateway.calls == []


def test_derivative_with_post_processing_is_rendered():
    gateway = FakeGateway()
    outcome = PlanResolver(gateway, derivatives=[LARGE]).resolve(_plan(size="700,", fmt="png"))
    assert outcome == Rendered("image/png", b"rendered-bytes")
    rendered_plan, _ = gateway.calls[0]
    assert rendered_plan.source.path == "/data/large/ms4.jpg"
    assert rendered_plan.size == FullSize(800, 600)


def test_single_tile_redirect():
    gateway = FakeGateway()
    resolver = PlanResolver(gateway, pyramid=PYRAMID)
    outcome = resolver.resolve(_plan(region="0,0,256,256", size="256,", source=TILED_SOURCE))
    assert outcome == Redirect("/files/zoom_tiles/ms5_zdata/TileGroup0/2-0-0.jpg", "image/jpeg")
    assert gateway.calls == []


def test_single_tile_with_post_processing():
    gateway = FakeGateway()
    resolver = PlanResolver(gateway, pyramid=PYRAMID)
    outcome = resolver.resolve(_plan(region="0,0,256,256", size="256,", quality="gray", source=TILED_SOURCE))
    assert isinstance(outcome, Rendered)
    rendered_plan, _ = gateway.calls[0]
    assert rendered_plan.source.path == "/data/zoom_tiles/ms5_zdata/TileGroup0/2-0-0.jpg"
    assert rendered_plan.quality == "gray"


def test_single_tile_downscaled():
    gateway = FakeGateway()
    resolver = PlanResolver(gateway, pyramid=PYRAMID)
    resolver.resolve(_plan(region="0,0,256,256", size="128,", source=TILED_SOURCE))
    rendered_plan, _ = gateway.calls[0]
    assert rendered_plan.source.path.endswith("TileGroup0/2-0-0.jpg")
    assert rendered_plan.size == ForcedSize(128, 128, 128, 128)


def test_tile_smaller_than_target_falls_back_to_original():
    gateway = FakeGateway()
    resolver = PlanResolver(gateway, pyramid=PYRAMID)
    resolver.resolve(_plan(fmt="png", source=TILED_SOURCE))
    rendered_plan, _ = gateway.calls[0]
    assert rendered_plan.source == TILED_SOURCE


def test_irregular_last_cell_falls_back_to_original():
    gateway = FakeGateway()
    resolver = PlanResolver(gateway, pyramid=PYRAMID)
    outcome = resolver.resolve(_plan(region="700,700,300,100", size="300,", source=TILED_SOURCE))
    assert isinstance(outcome, Rendered)
    rendered_plan, _ = gateway.calls[0]
    assert rendered_plan.source == TILED_SOURCE


def test_large_source_is_refused_without_calling_backend():
    gateway = FakeGateway()
    resolver = PlanResolver(gateway, derivatives=[LARGE], max_dynamic_size=1_000_000)
    outcome = resolver.resolve(_plan(region="0,0,300,300", size="full"))
    assert isinstance(outcome, Failure)
    assert outcome.kind is ErrorKind.TOO_LARGE_FOR_DYNAMIC_PROCESSING
    assert outcome.status_code == 500
    assert gateway.calls == []


def test_size_guard_does_not_block_stored_assets():
    gateway = FakeGateway()
    resolver = PlanResolver(gateway, derivatives=[LARGE], max_dynamic_size=1_000_000)
    assert resolver.resolve(_plan(size="700,")) == Redirect("/files/large/ms4.jpg", "image/jpeg")
    assert resolver.resolve(_plan()) == Redirect("/files/original/ms4.jpg", "image/jpeg")


def test_size_guard_disabled_by_zero():
    gateway = FakeGateway()
    outcome = PlanResolver(gateway, max_dynamic_size=0).resolve(_plan(region="0,0,300,300"))
    assert isinstance(outcome, Rendered)


def test_timeout_is_forwarded_to_backend():
    gateway = FakeGateway()
    PlanResolver(gateway, timeout=2.5).resolve(_plan(rotation="90"))
    assert gateway.calls[0][1] == 2.5


def test_empty_render_is_a_failure():
    outcome = PlanResolver(FakeGateway(payload=b"")).resolve(_plan(rotation="90"))
    assert isinstance(outcome, Failure)
    assert outcome.kind is ErrorKind.TRANSFORM_FAILED


def test_backend_error_becomes_failure():
    error = GatewayError(ErrorKind.BACKEND_FAILURE, SOURCE.path, "boom")
    outcome = PlanResolver(FakeGateway(error=error)).resolve(_plan(rotation="90"))
    assert isinstance(outcome, Failure)
    assert outcome.kind is ErrorKind.BACKEND_FAILURE
    assert "could not be transformed" in outcome.message


def test_unexpected_backend_exception_becomes_failure():
    outcome = PlanResolver(FakeGateway(error=MemoryError("oom"))).resolve(_plan(rotation="90"))
    assert isinstance(outcome, Failure)
    assert outcome.kind is ErrorKind.BACKEND_FAILURE
