"""Two-tier object storage (private originals, public CDN) over an S3-compatible API."""

from __future__ import annotations

import asyncio
import logging
from functools import lru_cache
from typing import Optional

import boto3
from botocore.exceptions import ClientError

from config import settings

logger = logging.getLogger(__name__)

PRIVATE = "private"
PUBLIC = "public"

_MISSING_CODES = {"NoSuchKey", "404", "NotFound"}


class ObjectNotFound(Exception):
    """Raised when a key does not exist in the requested tier."""

    def __init__(self, tier: str, key: str):
        self.tier = tier
        self.key = key
        super().__init__(f"{tier} object not found: {key}")


class ObjectStore:
    """Blocking boto3 calls are pushed to a thread so callers stay async."""

    def __init__(self, client, private_bucket: str, public_bucket: str, public_base_url: str):
        self._client = client
        self._buckets = {PRIVATE: private_bucket, PUBLIC: public_bucket}
        self._public_base_url = public_base_url.rstrip("/")

    def _bucket(self, tier: str) -> str:
        try:
            return self._buckets[tier]
        except KeyError as exc:
            raise ValueError(f"Unknown storage tier: {tier}") from exc

    async def put(self, tier: str, key: str, data: bytes, content_type: str = "image/png") -> None:
        await asyncio.to_thread(
            self._client.put_object,
            Bucket=self._bucket(tier),
            Key=key,
            Body=data,
            ContentType=content_type,
        )

    async def get(self, tier: str, key: Optional[str]) -> bytes:
        if not key:
            raise ObjectNotFound(tier, str(key))
        try:
            response = await asyncio.to_thread(self._client.get_object, Bucket=self._bucket(tier), Key=key)
        except ClientError as exc:
            code = str(exc.response.get("Error", {}).get("Code", ""))
            if code in _MISSING_CODES:
                raise ObjectNotFound(tier, key) from exc
            raise
        return await asyncio.to_thread(response["Body"].read)

    async def delete(self, tier: str, key: str) -> None:
        await asyncio.to_thread(self._client.delete_object, Bucket=self._bucket(tier), Key=key)

    def public_url(self, key: str) -> str:
        return f"{self._public_base_url}/{key.lstrip('/')}"


@lru_cache(maxsize=1)
def get_object_store() -> ObjectStore:
    client = boto3.client(
        "s3",
        endpoint_url=settings.STORAGE_ENDPOINT_URL or None,
        aws_access_key_id=settings.STORAGE_ACCESS_KEY_ID or None,
        aws_secret_access_key=settings.STORAGE_SECRET_ACCESS_KEY or None,
        region_name=settings.STORAGE_REGION or None,
    )
    return ObjectStore(
        client,
        private_bucket=settings.PRIVATE_BUCKET,
        public_bucket=settings.PUBLIC_BUCKET,
        public_base_url=settings.PUBLIC_BASE_URL,
    )


# Key layout

def raw_key(category: str, asset_key: str, variant: int) -> str:
    """Private key for a fresh generation result."""
    if category.endswith("_ref"):
        return f"refs/{asset_key}_ref_v{variant}.png"
    if category == "scene":
        return f"scenes/{asset_key}_v{variant}.png"
    return f"raw/{category}_{asset_key}_raw_v{variant}.png"


def transparent_key(private_key: str) -> str:
    if private_key.endswith("_transparent.png"):
        return private_key
    if private_key.endswith(".png"):
        return private_key[: -len(".png")] + "_transparent.png"
    return f"{private_key}_transparent.png"


def original_key(private_key: str) -> str:
    """Undo transparent_key so re-runs always start from the untouched original."""
    if private_key.endswith("_transparent.png"):
        return private_key[: -len("_transparent.png")] + ".png"
    return private_key


def processed_key(category: str, asset_key: str, variant: int, timestamp: int) -> str:
    return f"processed/{category}/{asset_key}_v{variant}_{timestamp}.png"


def published_key(category: str, asset_key: str, variant: int, extension: str) -> str:
    if category == "scene":
        return f"scenes/{asset_key}_v{variant}.{extension}"
    return f"sprites/{category}/{asset_key}_v{variant}.{extension}"


def reference_library_key(image_id: int, filename: str) -> str:
    return f"reference-library/{image_id}_{filename}"


def avatar_composite_key(company_id: str, context: str) -> str:
    return f"composites/avatar_{company_id}_{context}.png"


def scene_composite_key(scene_id: str, company_id: str) -> str:
    return f"scenes/composed/{scene_id}_{company_id}.png"
