"""Remote image services: generation, background removal and resize/convert."""

from __future__ import annotations

import base64
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from config import require_background_removal_key, require_gemini_api_key, settings
from services.errors import RemoteServiceError
from services.storage import PUBLIC, ObjectStore

logger = logging.getLogger(__name__)

GENERATION_SERVICE = "image_generation"
BACKGROUND_REMOVAL_SERVICE = "background_removal"
RESIZE_SERVICE = "resize"


@dataclass
class ReferenceImageInput:
    data: bytes
    mime_type: str = "image/png"
    label: Optional[str] = None


def _generation_config(generation_settings: Dict[str, Any]) -> Dict[str, Any]:
    config: Dict[str, Any] = {"responseModalities": ["IMAGE", "TEXT"]}
    for key in ("temperature", "topK", "topP"):
        if generation_settings.get(key) is not None:
            config[key] = generation_settings[key]
    image_config = {}
    if generation_settings.get("aspectRatio"):
        image_config["aspectRatio"] = generation_settings["aspectRatio"]
    if generation_settings.get("imageSize"):
        image_config["imageSize"] = generation_settings["imageSize"]
    if image_config:
        config["imageConfig"] = image_config
    return config


def _extract_image(payload: Dict[str, Any]) -> Optional[bytes]:
    candidates = payload.get("candidates") or []
    if not candidates:
        return None
    parts = (candidates[0].get("content") or {}).get("parts") or []
    for part in parts:
        inline = part.get("inlineData") or part.get("inline_data")
        if inline and inline.get("data"):
            return base64.b64decode(inline["data"])
    return None


async def generate_image(
    prompt: str,
    reference_images: List[ReferenceImageInput],
    generation_settings: Dict[str, Any],
    *,
    model: Optional[str] = None,
    system_instructions: Optional[str] = None,
) -> bytes:
    """Generate one image from a prompt plus ordered reference images."""
    api_key = require_gemini_api_key()
    model_name = model or settings.IMAGE_GENERATION_MODEL
    if len(reference_images) > settings.MAX_REFERENCE_IMAGES:
        raise ValueError(
            f"{len(reference_images)} reference images exceed the limit of {settings.MAX_REFERENCE_IMAGES}"
        )
    parts: List[Dict[str, Any]] = [{"text": prompt}]
    for ref in reference_images:
        if ref.label:
            parts.append({"text": ref.label})
        parts.append(
            {
                "inlineData": {
                    "mimeType": ref.mime_type,
                    "data": base64.b64encode(ref.data).decode("ascii"),
                }
            }
        )

    body: Dict[str, Any] = {
        "contents": [{"parts": parts}],
        "generationConfig": _generation_config(generation_settings or {}),
    }
    if system_instructions:
        body["systemInstruction"] = {"parts": [{"text": system_instructions}]}

    url = f"{settings.GEMINI_API_BASE_URL.rstrip('/')}/models/{model_name}:generateContent"
    try:
        async with httpx.AsyncClient(timeout=settings.IMAGE_GENERATION_TIMEOUT_SECONDS) as client:
            response = await client.post(url, params={"key": api_key}, json=body)
    except httpx.HTTPError as exc:
        raise RemoteServiceError(GENERATION_SERVICE, f"{GENERATION_SERVICE} request failed: {exc}") from exc

    if response.status_code >= 400:
        raise RemoteServiceError.from_response(GENERATION_SERVICE, response.status_code, response.text)

    image = _extract_image(response.json())
    if image is None:
        raise RemoteServiceError(
            GENERATION_SERVICE,
            "No image in response",
            status_code=response.status_code,
            body=response.text,
        )
    return image


async def remove_background(image_bytes: bytes, *, crop: bool = True) -> bytes:
    """Cut the background out; crop=True also trims transparent borders."""
    api_key = require_background_removal_key()
    files = {"source_image_file": ("image.png", image_bytes, "image/png")}
    data = {"crop": "true" if crop else "false"}
    try:
        async with httpx.AsyncClient(timeout=settings.BACKGROUND_REMOVAL_TIMEOUT_SECONDS) as client:
            response = await client.post(
                settings.BACKGROUND_REMOVAL_API_URL,
                headers={"API-KEY": api_key},
                files=files,
                data=data,
            )
    except httpx.HTTPError as exc:
        raise RemoteServiceError(
            BACKGROUND_REMOVAL_SERVICE, f"{BACKGROUND_REMOVAL_SERVICE} request failed: {exc}"
        ) from exc

    if response.status_code >= 400:
        raise RemoteServiceError.from_response(BACKGROUND_REMOVAL_SERVICE, response.status_code, response.text)
    return response.content


def transform_url(source_url: str, width: int, height: int, output_format: str) -> str:
    options = f"width={width},height={height},fit=contain,format={output_format}"
    return f"{settings.RESIZE_TRANSFORM_BASE_URL.rstrip('/')}/{options}/{source_url}"


async def resize_image(
    store: ObjectStore,
    image_bytes: bytes,
    width: int,
    height: int,
    output_format: str = "webp",
) -> bytes:
    """Resize and convert through the URL transform service.

    The transform only fetches public URLs, so the source is written to a
    temporary public key which is always removed afterwards.
    """
    temp_key = f"{settings.RESIZE_TEMP_PREFIX.strip('/')}/{uuid.uuid4().hex}.png"
    await store.put(PUBLIC, temp_key, image_bytes, "image/png")
    try:
        url = transform_url(store.public_url(temp_key), width, height, output_format)
        try:
            async with httpx.AsyncClient(timeout=settings.RESIZE_TIMEOUT_SECONDS) as client:
                response = await client.get(url)
        except httpx.HTTPError as exc:
            raise RemoteServiceError(RESIZE_SERVICE, f"{RESIZE_SERVICE} request failed: {exc}") from exc
        if response.status_code >= 400:
            raise RemoteServiceError.from_response(RESIZE_SERVICE, response.status_code, response.text)
        return response.content
    finally:
        try:
            await store.delete(PUBLIC, temp_key)
        except Exception:
            logger.warning("Could not cleanup temporary resize object %s", temp_key)
