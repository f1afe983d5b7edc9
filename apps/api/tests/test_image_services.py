import base64
import json
from contextlib import contextmanager
from unittest.mock import patch

import httpx
import pytest

from conftest import FakeObjectStore, png_bytes
from services.errors import RemoteServiceError
from services.image_services import ReferenceImageInput, generate_image, remove_background, resize_image
from services.imaging import image_dimensions, trim_transparent
from services.storage import PUBLIC

_RealAsyncClient = httpx.AsyncClient


@contextmanager
def _mock_http(handler):
    """Route every client the image services open through a MockTransport."""

    def factory(**kwargs):
        return _RealAsyncClient(transport=httpx.MockTransport(handler), **kwargs)

    with patch("services.image_services.httpx.AsyncClient", side_effect=factory):
        yield


@pytest.mark.asyncio
async def test_generate_image_sends_ordered_references_and_decodes_result():
    seen = {}
    result = png_bytes(size=(8, 8))

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        payload = {
            "candidates": [
                {"content": {"parts": [{"text": "here"}, {"inlineData": {"mimeType": "image/png", "data": base64.b64encode(result).decode()}}]}}
            ]
        }
        return httpx.Response(200, json=payload)

    refs = [ReferenceImageInput(b"first", label="Reference: one"), ReferenceImageInput(b"second")]
    with patch("services.image_services.require_gemini_api_key", return_value="g-key"), _mock_http(handler):
        image = await generate_image(
            "A bank",
            refs,
            {"temperature": 0.5, "aspectRatio": "3:2"},
            model="image-model",
            system_instructions="House style",
        )

    assert image == result
    assert "models/image-model:generateContent" in seen["url"]
    assert "key=g-key" in seen["url"]
    parts = seen["body"]["contents"][0]["parts"]
    assert parts[0] == {"text": "A bank"}
    assert parts[1] == {"text": "Reference: one"}
    assert base64.b64decode(parts[2]["inlineData"]["data"]) == b"first"
    assert base64.b64decode(parts[3]["inlineData"]["data"]) == b"second"
    assert seen["body"]["generationConfig"]["imageConfig"] == {"aspectRatio": "3:2"}
    assert seen["body"]["systemInstruction"]["parts"][0]["text"] == "House style"


@pytest.mark.asyncio
async def test_generate_image_without_image_part_raises():
    def handler(request):
        return httpx.Response(200, json={"candidates": [{"content": {"parts": [{"text": "I cannot draw that"}]}}]})

    with patch("services.image_services.require_gemini_api_key", return_value="g-key"), _mock_http(handler):
        with pytest.raises(RemoteServiceError) as exc_info:
            await generate_image("A bank", [], {})
    assert "I cannot draw that" in exc_info.value.body


@pytest.mark.asyncio
async def test_remove_background_preserves_error_body():
    body = '{"error":"Insufficient credits","credits":0}'

    def handler(request):
        assert request.headers["API-KEY"] == "bg-key"
        return httpx.Response(402, text=body)

    with patch("services.image_services.require_background_removal_key", return_value="bg-key"), _mock_http(handler):
        with pytest.raises(RemoteServiceError) as exc_info:
            await remove_background(b"png")
    assert exc_info.value.status_code == 402
    assert exc_info.value.body == body
    assert body in str(exc_info.value)


@pytest.mark.asyncio
async def test_remove_background_requires_credentials():
    with patch("services.image_services.settings.BACKGROUND_REMOVAL_API_KEY", ""):
        with pytest.raises(ValueError):
            await remove_background(b"png")


@pytest.mark.asyncio
async def test_resize_cleans_up_temporary_object_on_success_and_failure():
    store = FakeObjectStore()
    requested = []

    def ok(request):
        requested.append(str(request.url))
        return httpx.Response(200, content=b"webp-bytes")

    with _mock_http(ok):
        assert await resize_image(store, b"png", 64, 32) == b"webp-bytes"
    assert "width=64,height=32,fit=contain,format=webp" in requested[0]
    assert "cdn.test/_tmp/resize/" in requested[0]
    assert store.keys(PUBLIC) == []
    assert len(store.deleted) == 1

    def broken(request):
        return httpx.Response(500, text="transform exploded")

    with _mock_http(broken):
        with pytest.raises(RemoteServiceError) as exc_info:
            await resize_image(store, b"png", 64, 64)
    assert exc_info.value.body == "transform exploded"
    assert store.keys(PUBLIC) == []
    assert len(store.deleted) == 2


def test_trim_transparent_crops_to_opaque_bounds():
    trimmed = trim_transparent(png_bytes(size=(50, 40), box=(5, 6, 25, 16)))
    assert image_dimensions(trimmed) == (20, 10)

    solid = png_bytes(size=(12, 12))
    assert trim_transparent(solid) is solid
    empty = png_bytes(size=(12, 12), color=(0, 0, 0, 0))
    assert trim_transparent(empty) is empty


@pytest.mark.asyncio
async def test_generate_image_refuses_more_references_than_the_limit():
    def handler(request):
        raise AssertionError("no request should be sent")

    refs = [ReferenceImageInput(b"img") for _ in range(3)]
    with (
        patch("services.image_services.require_gemini_api_key", return_value="g-key"),
        patch("services.image_services.settings.MAX_REFERENCE_IMAGES", 2),
        _mock_http(handler),
    ):
        with pytest.raises(ValueError):
            await generate_image("A bank", refs, {})
