import io

import pytest
from PIL import Image

from cineflow.config import OUTBOUND_MAX_DIM, UPLOAD_MAX_DIM
from cineflow.imagegen import candidate_prompt, edit_image, generate_reference_images
from cineflow.imaging import (
    is_data_uri,
    prepare_images,
    process_upload,
    resize_image,
    split_data_uri,
    to_data_uri,
)
from cineflow.jobs import VideoRequest
from cineflow.videogen import generate_transition_video

from conftest import ScriptedRouter


def _png(width, height, mode="RGBA"):
    buf = io.BytesIO()
    Image.new(mode, (width, height)).save(buf, format="PNG")
    return buf.getvalue()


def _size(data_uri):
    return Image.open(io.BytesIO(split_data_uri(data_uri)[1])).size


def test_data_uri_helpers():
    uri = to_data_uri(b"abc", "image/png")
    assert is_data_uri(uri)
    assert split_data_uri(uri) == ("image/png", b"abc")
    assert split_data_uri("YWJj") == ("image/jpeg", b"abc")


def test_resize_bounds_longest_side():
    resized = resize_image(to_data_uri(_png(2048, 1024), "image/png"))
    assert resized.startswith("data:image/jpeg;base64,")
    assert _size(resized) == (OUTBOUND_MAX_DIM, OUTBOUND_MAX_DIM // 2)


def test_resize_keeps_small_images_small():
    assert _size(resize_image(to_data_uri(_png(300, 200)))) == (300, 200)


def test_resize_passes_remote_urls_through():
    assert resize_image("https://fal/img.png") == "https://fal/img.png"
    assert resize_image("") == ""


def test_resize_tolerates_undecodable_data():
    bogus = to_data_uri(b"definitely not pixels")
    assert resize_image(bogus) == bogus


def test_process_upload():
    uri = process_upload(_png(4000, 3000))
    assert uri.startswith("data:image/jpeg;base64,")
    assert max(_size(uri)) == UPLOAD_MAX_DIM


@pytest.mark.asyncio
async def test_prepare_images_keeps_order():
    urls = ["https://a.png", to_data_uri(_png(10, 10)), "https://b.png"]
    prepared = await prepare_images(urls)
    assert prepared[0] == "https://a.png"
    assert prepared[1].startswith("data:image/jpeg")
    assert prepared[2] == "https://b.png"


def test_candidate_prompt_variations():
    assert "(Cinematic wide)" in candidate_prompt("Dunes", 0, 3)
    assert "(Abstract macro)" in candidate_prompt("Dunes", 4, 5)
    assert "(" not in candidate_prompt("Dunes", 0, 1).split("STRICT")[0]


@pytest.mark.asyncio
async def test_edit_image_request():
    router = ScriptedRouter(lambda r: "https://img/edited.png")
    assert await edit_image(router, "https://img/1.png", "remove the logo") == "https://img/edited.png"
    request = router.requests[0]
    assert request.source_image == "https://img/1.png"
    assert 'Modification: "remove the logo"' in request.prompt


@pytest.mark.asyncio
async def test_reference_images_drop_failures():
    calls = []

    def _handle(request):
        calls.append(request)
        if "Variation 1" in request.prompt:
            return RuntimeError("blocked")
        return "https://img/ref.png"

    images = await generate_reference_images(ScriptedRouter(_handle), "desert chase", 2)
    assert images == ["https://img/ref.png"]
    assert all(r.web_search and r.aspect_ratio == "1:1" for r in calls)


@pytest.mark.asyncio
async def test_transition_video_bridge_and_standalone():
    router = ScriptedRouter(lambda r: "https://video/1.mp4")
    progress = []

    await generate_transition_video(router, "Crane up", "https://img/1.png", "https://img/2.png",
                                    transition_type="bridge", on_progress=progress.append)
    await generate_transition_video(router, "Orbit", "https://img/1.png", "https://img/2.png",
                                    transition_type="standalone")

    bridge, standalone = router.requests
    assert isinstance(bridge, VideoRequest)
    assert bridge.end_image == "https://img/2.png"
    assert standalone.end_image is None
    assert progress == [5, 50]
