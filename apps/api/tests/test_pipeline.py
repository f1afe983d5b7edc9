from datetime import datetime, timedelta, timezone
from io import BytesIO
from unittest.mock import AsyncMock, patch

import pytest
from PIL import Image
from sqlalchemy.future import select

from conftest import add_asset, png_bytes
from models.asset_audit_log import AssetAuditLog
from models.generated_asset import GeneratedAsset
from services.errors import RemoteServiceError
from services.pipeline import claim_pipeline_run, run_pipeline
from services.storage import PRIVATE, PUBLIC


def _cutout() -> bytes:
    """64x64 canvas with an opaque 20x10 block; trimming leaves just the block."""
    return png_bytes(size=(64, 64), box=(10, 20, 30, 30))


async def _row(session_maker, asset_id) -> GeneratedAsset:
    async with session_maker() as db:
        return await db.get(GeneratedAsset, asset_id)


async def _actions(session_maker, asset_id):
    async with session_maker() as db:
        result = await db.execute(
            select(AssetAuditLog.action).where(AssetAuditLog.asset_id == asset_id).order_by(AssetAuditLog.id)
        )
        return list(result.scalars().all())


@pytest.mark.asyncio
async def test_pipeline_cuts_out_trims_resizes_and_publishes(services_env):
    session_maker, store = services_env
    original = png_bytes(size=(64, 64), color=(10, 200, 10, 255))
    asset = await add_asset(
        session_maker, store, image=original, category="building_sprite", asset_key="market_stall", status="approved", is_active=True
    )
    remover = AsyncMock(return_value=_cutout())
    resizer = AsyncMock(return_value=b"webp-bytes")

    with (
        patch("services.pipeline.remove_background", remover),
        patch("services.pipeline.resize_image", resizer),
    ):
        outcome = await run_pipeline(asset.id)

    assert outcome == "completed"
    remover.assert_awaited_once_with(original, crop=True)
    trimmed = resizer.await_args.args[1]
    with Image.open(BytesIO(trimmed)) as img:
        assert img.size == (20, 10)
    assert resizer.await_args.args[2:] == (128, 128, "webp")

    row = await _row(session_maker, asset.id)
    assert row.pipeline_status == "completed"
    assert row.pipeline_error is None
    assert row.background_removed is True
    assert row.public_key == "sprites/building_sprite/market_stall_v1.webp"
    assert row.public_url == "https://cdn.test/sprites/building_sprite/market_stall_v1.webp"
    assert row.private_key == "raw/building_sprite_market_stall_raw_v1_transparent.png"
    assert row.processed_key.startswith("processed/building_sprite/market_stall_v1_")
    assert row.pipeline_completed_at is not None
    assert await store.get(PUBLIC, row.public_key) == b"webp-bytes"
    assert await store.get(PRIVATE, row.processed_key) == trimmed
    assert await store.get(PRIVATE, "raw/building_sprite_market_stall_raw_v1.png") == original
    assert "pipeline_completed" in await _actions(session_maker, asset.id)


@pytest.mark.asyncio
async def test_resize_failure_publishes_unresized_png(services_env):
    session_maker, store = services_env
    asset = await add_asset(session_maker, store, category="effect", asset_key="fire", status="approved", is_active=True)
    cutout = _cutout()

    with (
        patch("services.pipeline.remove_background", AsyncMock(return_value=cutout)),
        patch(
            "services.pipeline.resize_image",
            AsyncMock(side_effect=RemoteServiceError.from_response("resize", 500, "transform error")),
        ),
    ):
        outcome = await run_pipeline(asset.id)

    assert outcome == "completed"
    row = await _row(session_maker, asset.id)
    assert row.pipeline_status == "completed"
    assert row.pipeline_error.startswith("Resize failed")
    assert "transform error" in row.pipeline_error
    assert row.public_url.endswith("sprites/effect/fire_v1.png")
    published = await store.get(PUBLIC, "sprites/effect/fire_v1.png")
    with Image.open(BytesIO(published)) as img:
        assert img.format == "PNG"
        assert img.size == (20, 10)


@pytest.mark.asyncio
async def test_rerun_is_skipped_unless_forced_and_starts_from_original(services_env):
    session_maker, store = services_env
    original = png_bytes(size=(64, 64))
    asset = await add_asset(
        session_maker, store, image=original, category="terrain", asset_key="road_corner", status="approved", is_active=True
    )
    remover = AsyncMock(return_value=_cutout())

    with patch("services.pipeline.remove_background", remover), patch(
        "services.pipeline.resize_image", AsyncMock(side_effect=RuntimeError("resize down"))
    ):
        assert await run_pipeline(asset.id) == "completed"
    assert (await _row(session_maker, asset.id)).public_key == "sprites/terrain/road_corner_v1.png"

    with patch("services.pipeline.remove_background", remover), patch(
        "services.pipeline.resize_image", AsyncMock(return_value=b"webp")
    ):
        assert await run_pipeline(asset.id) == "skipped"
        assert remover.await_count == 1
        assert await run_pipeline(asset.id, force=True) == "completed"

    assert remover.await_count == 2
    assert remover.await_args.args[0] == original
    row = await _row(session_maker, asset.id)
    assert row.public_key == "sprites/terrain/road_corner_v1.webp"
    assert row.pipeline_error is None
    assert row.private_key == "raw/terrain_road_corner_raw_v1_transparent.png"
    assert (PUBLIC, "sprites/terrain/road_corner_v1.png") in store.deleted
    assert store.keys(PUBLIC) == ["sprites/terrain/road_corner_v1.webp"]


@pytest.mark.asyncio
async def test_grass_background_skips_background_removal(services_env):
    session_maker, store = services_env
    asset = await add_asset(session_maker, store, category="terrain", asset_key="grass_bg", status="approved", is_active=True)
    remover = AsyncMock()
    resizer = AsyncMock(return_value=b"webp")
    with patch("services.pipeline.remove_background", remover), patch("services.pipeline.resize_image", resizer):
        assert await run_pipeline(asset.id) == "completed"
    remover.assert_not_awaited()
    assert resizer.await_args.args[2:] == (512, 512, "webp")


@pytest.mark.asyncio
async def test_missing_original_fails_run(services_env):
    session_maker, _ = services_env
    asset = await add_asset(
        session_maker,
        category="npc",
        asset_key="car_n",
        status="approved",
        is_active=True,
        private_key="raw/npc_car_n_raw_v1.png",
    )
    with patch("services.pipeline.remove_background", AsyncMock()) as remover:
        assert await run_pipeline(asset.id) == "failed"
    remover.assert_not_awaited()
    row = await _row(session_maker, asset.id)
    assert row.pipeline_status == "failed"
    assert "Original image not found" in row.pipeline_error
    assert row.background_removed is False
    assert row.public_url is None
    assert "pipeline_failed" in await _actions(session_maker, asset.id)


@pytest.mark.asyncio
async def test_background_removal_error_body_is_preserved(services_env):
    session_maker, store = services_env
    asset = await add_asset(session_maker, store, category="npc", asset_key="ped_walk_s", status="approved", is_active=True)
    body = '{"error": {"code": "insufficient_credits", "detail": "0 credits left"}}'
    with patch(
        "services.pipeline.remove_background",
        AsyncMock(side_effect=RemoteServiceError.from_response("background_removal", 402, body)),
    ):
        assert await run_pipeline(asset.id) == "failed"
    row = await _row(session_maker, asset.id)
    assert body in row.pipeline_error
    assert "402" in row.pipeline_error
    assert store.keys(PUBLIC) == []


@pytest.mark.asyncio
async def test_claim_respects_lease_and_approval(services_env):
    session_maker, store = services_env
    now = datetime.now(timezone.utc)
    running = await add_asset(
        session_maker,
        store,
        category="effect",
        asset_key="robbery",
        status="approved",
        pipeline_status="processing",
        pipeline_started_at=now - timedelta(minutes=1),
    )
    stale = await add_asset(
        session_maker,
        store,
        category="effect",
        asset_key="vandalism",
        status="approved",
        pipeline_status="processing",
        pipeline_started_at=now - timedelta(hours=3),
    )
    pending = await add_asset(session_maker, store, category="effect", asset_key="blackout", status="review")

    assert await claim_pipeline_run(running.id) is False
    assert await claim_pipeline_run(running.id, force=True) is False
    assert await claim_pipeline_run(stale.id) is True
    assert await claim_pipeline_run(stale.id) is False
    assert await claim_pipeline_run(pending.id, force=True) is False
    assert (await _row(session_maker, stale.id)).pipeline_status == "processing"
