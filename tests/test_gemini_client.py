import io
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from PIL import Image

from cineflow.config import IMAGE_MODEL_FLASH, Config
from cineflow.errors import MalformedResponseError
from cineflow.imaging import to_data_uri
from cineflow.jobs import ImageRequest, JobHandle, PollState, TextRequest, VideoRequest
from cineflow.utils import GeminiImageClient, GeminiTextClient, GeminiVideoClient, gemini_client

CONFIG = Config(gemini_api_key="g-secret")


def _with_fake_sdk(client):
    """Swap the lazily-built genai.Client for an AsyncMock-backed fake."""
    sdk = MagicMock()
    sdk.aio.models.generate_content = AsyncMock()
    sdk.aio.models.generate_videos = AsyncMock()
    sdk.aio.operations.get = AsyncMock()
    client._client = sdk
    return sdk


def _image_response(data=b"\x89PNG", mime="image/png"):
    part = SimpleNamespace(inline_data=SimpleNamespace(data=data, mime_type=mime))
    return SimpleNamespace(candidates=[SimpleNamespace(content=SimpleNamespace(parts=[part]))])


def test_missing_key_is_rejected():
    with pytest.raises(ValueError, match="GEMINI_API_KEY"):
        GeminiTextClient(Config()).client


@pytest.mark.asyncio
async def test_text_submit_with_schema():
    client = GeminiTextClient(CONFIG)
    sdk = _with_fake_sdk(client)
    sdk.aio.models.generate_content.return_value = SimpleNamespace(text=' {"title": "x"} ', candidates=[])

    text = await client.submit(TextRequest(prompt="Draft", json_schema={"type": "OBJECT"}))

    assert text == '{"title": "x"}'
    config = sdk.aio.models.generate_content.call_args.kwargs["config"]
    assert config.response_mime_type == "application/json"


@pytest.mark.asyncio
async def test_text_web_search_appends_sources():
    client = GeminiTextClient(CONFIG)
    sdk = _with_fake_sdk(client)
    chunk = SimpleNamespace(web=SimpleNamespace(uri="https://ref.example", title="Ref"))
    sdk.aio.models.generate_content.return_value = SimpleNamespace(
        text="Warm key light.",
        candidates=[SimpleNamespace(grounding_metadata=SimpleNamespace(grounding_chunks=[chunk]))],
    )

    text = await client.submit(TextRequest(prompt="Research", web_search=True))

    assert text.startswith("Warm key light.")
    assert "- [Ref: Ref](https://ref.example)" in text


@pytest.mark.asyncio
async def test_image_submit_returns_data_uri():
    client = GeminiImageClient(CONFIG)
    sdk = _with_fake_sdk(client)
    sdk.aio.models.generate_content.return_value = _image_response()

    uri = await client.submit(ImageRequest(prompt="Dunes", model=IMAGE_MODEL_FLASH,
                                           reference_images=[to_data_uri(b"ref")]))

    assert uri == to_data_uri(b"\x89PNG", "image/png")
    contents = sdk.aio.models.generate_content.call_args.kwargs["contents"]
    # Flash takes references before the text
    assert contents[-1].text == "Dunes"


@pytest.mark.asyncio
async def test_remote_reference_is_downscaled(monkeypatch):
    buf = io.BytesIO()
    Image.new("RGB", (2048, 1024), "orange").save(buf, format="PNG")
    fetched = []

    def _download(url):
        fetched.append(url)
        return "image/png", buf.getvalue()

    monkeypatch.setattr(gemini_client, "_download", _download)
    client = GeminiImageClient(CONFIG)
    sdk = _with_fake_sdk(client)
    sdk.aio.models.generate_content.return_value = _image_response()

    await client.submit(ImageRequest(prompt="Dunes", model=IMAGE_MODEL_FLASH,
                                     reference_images=["https://fal/big.png"]))

    assert fetched == ["https://fal/big.png"]
    inline = sdk.aio.models.generate_content.call_args.kwargs["contents"][0].inline_data
    assert inline.mime_type == "image/jpeg"
    assert Image.open(io.BytesIO(inline.data)).size == (1024, 512)


@pytest.mark.asyncio
async def test_undecodable_remote_reference_is_sent_as_is(monkeypatch):
    monkeypatch.setattr(gemini_client, "_download", lambda url: ("image/webp", b"not an image"))
    client = GeminiImageClient(CONFIG)
    sdk = _with_fake_sdk(client)
    sdk.aio.models.generate_content.return_value = _image_response()

    await client.submit(ImageRequest(prompt="Dunes", model=IMAGE_MODEL_FLASH,
                                     reference_images=["https://fal/odd.webp"]))

    inline = sdk.aio.models.generate_content.call_args.kwargs["contents"][0].inline_data
    assert (inline.mime_type, inline.data) == ("image/webp", b"not an image")


@pytest.mark.asyncio
async def test_image_without_inline_data_is_malformed():
    client = GeminiImageClient(CONFIG)
    sdk = _with_fake_sdk(client)
    sdk.aio.models.generate_content.return_value = SimpleNamespace(candidates=[])
    with pytest.raises(MalformedResponseError):
        await client.submit(ImageRequest(prompt="Dunes"))


@pytest.mark.asyncio
async def test_video_submit_and_poll():
    client = GeminiVideoClient(CONFIG)
    sdk = _with_fake_sdk(client)
    pending = SimpleNamespace(name="operations/123", done=False, error=None, response=None)
    finished = SimpleNamespace(
        name="operations/123",
        done=True,
        error=None,
        response=SimpleNamespace(generated_videos=[SimpleNamespace(video=SimpleNamespace(uri="https://veo/v.mp4"))]),
    )
    sdk.aio.models.generate_videos.return_value = pending
    sdk.aio.operations.get.side_effect = [pending, finished]

    handle = await client.submit(VideoRequest(prompt="Chase", start_image=to_data_uri(b"a"),
                                              end_image=to_data_uri(b"b")))
    assert isinstance(handle, JobHandle)
    assert handle.job_id == "operations/123"
    assert sdk.aio.models.generate_videos.call_args.kwargs["config"].last_frame is not None

    assert (await client.poll(handle)).state is PollState.PENDING
    done = await client.poll(handle)
    assert done.state is PollState.DONE
    assert done.result == "https://veo/v.mp4?key=g-secret"


@pytest.mark.asyncio
async def test_video_poll_reports_failure_and_empty_result():
    client = GeminiVideoClient(CONFIG)
    sdk = _with_fake_sdk(client)
    handle = JobHandle(job_id="op", backend=client.name, data={"operation": object()})

    sdk.aio.operations.get.return_value = SimpleNamespace(done=True, error={"message": "filtered"}, response=None)
    failed = await client.poll(handle)
    assert failed.state is PollState.FAILED
    assert "filtered" in failed.reason

    sdk.aio.operations.get.return_value = SimpleNamespace(done=True, error=None, response=None)
    with pytest.raises(MalformedResponseError):
        await client.poll(handle)
