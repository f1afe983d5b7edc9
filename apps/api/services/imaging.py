"""Local image helpers (Pillow)."""

from __future__ import annotations

from io import BytesIO
from typing import Tuple

from PIL import Image


def image_dimensions(data: bytes) -> Tuple[int, int]:
    with Image.open(BytesIO(data)) as img:
        return img.size


def trim_transparent(data: bytes) -> bytes:
    """Drop fully transparent border rows and columns.

    Images without an alpha channel, or with nothing opaque, are returned unchanged.
    """
    with Image.open(BytesIO(data)) as img:
        if img.mode not in ("RGBA", "LA") and not (img.mode == "P" and "transparency" in img.info):
            return data
        rgba = img.convert("RGBA")
        bbox = rgba.getchannel("A").getbbox()
        if bbox is None or bbox == (0, 0, rgba.width, rgba.height):
            return data
        cropped = rgba.crop(bbox)
        buf = BytesIO()
        cropped.save(buf, "PNG")
        return buf.getvalue()
