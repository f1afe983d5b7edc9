from contextlib import ExitStack
from io import BytesIO
from typing import Dict, Optional, Tuple
from unittest.mock import patch

import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from PIL import Image
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from database import Base, get_db
from main import app
from models.generated_asset import GeneratedAsset
from services.storage import PRIVATE, PUBLIC, ObjectNotFound


SESSION_MAKER_TARGETS = (
    "services.generation.async_session_maker",
    "services.pipeline.async_session_maker",
    "services.job_queue.async_session_maker",
)

OBJECT_STORE_TARGETS = (
    "services.generation.get_object_store",
    "services.versioning.get_object_store",
    "services.pipeline.get_object_store",
    "services.composites.get_object_store",
    "services.references.get_object_store",
)


class FakeObjectStore:
    """In-memory two-tier store with the same surface as services.storage.ObjectStore."""

    def __init__(self, public_base_url: str = "https://cdn.test"):
        self.objects: Dict[str, Dict[str, Tuple[bytes, str]]] = {PRIVATE: {}, PUBLIC: {}}
        self.public_base_url = public_base_url
        self.deleted = []

    async def put(self, tier: str, key: str, data: bytes, content_type: str = "image/png") -> None:
        self.objects[tier][key] = (data, content_type)

    async def get(self, tier: str, key: Optional[str]) -> bytes:
        if not key or key not in self.objects[tier]:
            raise ObjectNotFound(tier, str(key))
        return self.objects[tier][key][0]

    async def delete(self, tier: str, key: str) -> None:
        self.objects[tier].pop(key, None)
        self.deleted.append((tier, key))

    def public_url(self, key: str) -> str:
        return f"{self.public_base_url}/{key.lstrip('/')}"

    def keys(self, tier: str):
        return sorted(self.objects[tier])


def png_bytes(size=(32, 32), color=(200, 40, 40, 255), box=None) -> bytes:
    """RGBA PNG; when box is given only that region is opaque."""
    if box is None:
        img = Image.new("RGBA", size, color)
    else:
        img = Image.new("RGBA", size, (0, 0, 0, 0))
        img.paste(Image.new("RGBA", (box[2] - box[0], box[3] - box[1]), color), box[:2])
    buf = BytesIO()
    img.save(buf, "PNG")
    return buf.getvalue()


class _FakeJob:
    def __init__(self, job_id: str):
        self.id = job_id


async def add_asset(session_maker, store: Optional[FakeObjectStore] = None, image: Optional[bytes] = None, **fields) -> GeneratedAsset:
    """Insert a row directly; when a store is given the private image is written too."""
    values = {
        "variant": 1,
        "base_prompt": "A test prompt",
        "current_prompt": "A test prompt",
        "prompt_version": 1,
        "rejection_count": 0,
        "status": "completed",
        "is_active": False,
        "background_removed": False,
        "generation_model": "test-model",
        "generation_settings": {"temperature": 0.7},
    }
    values.update(fields)
    if store is not None and "private_key" not in values:
        values["private_key"] = f"raw/{values['category']}_{values['asset_key']}_raw_v{values['variant']}.png"
    async with session_maker() as db:
        asset = GeneratedAsset(**values)
        db.add(asset)
        await db.commit()
        await db.refresh(asset)
    if store is not None:
        await store.put(PRIVATE, asset.private_key, image or png_bytes())
    return asset


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'assets.db'}")
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield maker
    await engine.dispose()


@pytest_asyncio.fixture
async def object_store():
    return FakeObjectStore()


@pytest_asyncio.fixture
async def services_env(session_maker, object_store):
    """Point every background-session and object-store seam at the test doubles."""
    with ExitStack() as stack:
        for target in SESSION_MAKER_TARGETS:
            stack.enter_context(patch(target, session_maker))
        for target in OBJECT_STORE_TARGETS:
            stack.enter_context(patch(target, return_value=object_store))
        yield session_maker, object_store


@pytest_asyncio.fixture
async def api_client(services_env):
    session_maker, object_store = services_env

    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client, session_maker, object_store
    app.dependency_overrides.pop(get_db, None)
