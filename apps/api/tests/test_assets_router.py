from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy.future import select

from conftest import _FakeJob, add_asset, png_bytes
from models.generated_asset import GeneratedAsset
from services.errors import RemoteServiceError


def _pipeline_job(asset_id, force=False):
    return _FakeJob(f"pipeline:{asset_id}:{'force' if force else 'auto'}")


@pytest.mark.asyncio
async def test_generate_approve_reject_flow_over_http(api_client):
    client, session_maker, store = api_client
    with patch("services.generation.generate_image", AsyncMock(return_value=png_bytes())):
        resp = await client.post(
            "/assets/generate",
            json={"category": "ui", "asset_key": "cursor_select", "prompt": "Select cursor"},
            headers={"X-Actor": "dana"},
        )
    assert resp.status_code == 200
    asset = resp.json()
    assert asset["status"] == "completed"
    assert asset["variant"] == 1
    assert asset["generation_settings"]["temperature"] == 0.7

    reject_resp = await client.put(f"/assets/{asset['id']}/reject", json={"reason": "arrow too thin"})
    assert reject_resp.status_code == 200
    assert "arrow too thin" in reject_resp.json()["current_prompt"]

    history = await client.get(f"/assets/{asset['id']}/rejections")
    assert [item["rejection_reason"] for item in history.json()["rejections"]] == ["arrow too thin"]

    approve_resp = await client.put(f"/assets/{asset['id']}/approve")
    assert approve_resp.status_code == 409
    assert approve_resp.json()["detail"]["error"] == "invalid_transition"

    audit = await client.get(f"/assets/{asset['id']}/audit")
    entries = audit.json()["entries"]
    assert entries[0]["actor"] == "dana"
    assert {"generate", "generation_completed", "reject"} <= {entry["action"] for entry in entries}


@pytest.mark.asyncio
async def test_generate_reports_remote_failure_with_asset_id(api_client):
    client, _, _ = api_client
    failure = RemoteServiceError.from_response("image_generation", 429, "RESOURCE_EXHAUSTED")
    with patch("services.generation.generate_image", AsyncMock(side_effect=failure)):
        resp = await client.post(
            "/assets/generate",
            json={"category": "overlay", "asset_key": "under_attack", "prompt": "Warning overlay"},
        )
    assert resp.status_code == 502
    detail = resp.json()["detail"]
    assert detail["error"] == "generation_failed"
    assert "RESOURCE_EXHAUSTED" in detail["message"]

    failed = await client.get(f"/assets/{detail['asset_id']}")
    assert failed.json()["status"] == "failed"


@pytest.mark.asyncio
async def test_generate_dependency_gate_over_http(api_client):
    client, session_maker, _ = api_client
    with patch("services.generation.generate_image", AsyncMock()) as generator:
        resp = await client.post(
            "/assets/generate",
            json={"category": "npc", "asset_key": "car_w", "prompt": "Car heading west"},
        )
    assert resp.status_code == 400
    assert resp.json()["detail"]["missing"] == ["vehicle_ref/car"]
    generator.assert_not_awaited()
    async with session_maker() as db:
        assert (await db.execute(select(GeneratedAsset))).scalars().all() == []


@pytest.mark.asyncio
async def test_approve_over_http_reports_pipeline(api_client):
    client, session_maker, store = api_client
    await add_asset(session_maker, store, category="building_ref", asset_key="bank", status="approved", is_active=True)
    sprite = await add_asset(session_maker, store, category="building_sprite", asset_key="bank", status="review")

    with patch("services.versioning.enqueue_pipeline_job", side_effect=_pipeline_job):
        resp = await client.put(f"/assets/{sprite.id}/approve")
    assert resp.status_code == 200
    payload = resp.json()
    assert payload["pipeline"] == "started"
    assert payload["pipeline_job_id"] == f"pipeline:{sprite.id}:auto"
    assert payload["asset"]["is_active"] is True
    assert payload["asset"]["status"] == "approved"


@pytest.mark.asyncio
async def test_process_endpoint_forces_rerun_and_reports_queue_outage(api_client):
    client, session_maker, store = api_client
    sprite = await add_asset(
        session_maker, store, category="effect", asset_key="poisoning", status="approved", is_active=True, background_removed=True
    )
    ref = await add_asset(session_maker, store, category="effect_ref", asset_key="poisoning", status="approved", is_active=True)
    draft = await add_asset(session_maker, store, category="effect", asset_key="blackout", status="completed")

    with patch("routers.assets.enqueue_pipeline_job", side_effect=_pipeline_job) as enqueue:
        ok = await client.post(f"/assets/{sprite.id}/process")
        assert ok.status_code == 200
        assert ok.json()["pipeline_job_id"] == f"pipeline:{sprite.id}:force"
        enqueue.assert_called_once_with(sprite.id, force=True)

        assert (await client.post(f"/assets/{ref.id}/process")).status_code == 422
        assert (await client.post(f"/assets/{draft.id}/process")).status_code == 422
        assert (await client.post("/assets/99999/process")).status_code == 404

    with patch("routers.assets.enqueue_pipeline_job", side_effect=RuntimeError("redis offline")):
        down = await client.post(f"/assets/{sprite.id}/process")
    assert down.status_code == 503
    detail = (await client.get(f"/assets/{sprite.id}")).json()
    assert detail["pipeline_status"] == "failed"
    assert detail["pipeline_error"].startswith("queue_unavailable")


@pytest.mark.asyncio
async def test_list_queue_and_sprite_status(api_client):
    client, session_maker, store = api_client
    ref = await add_asset(session_maker, store, category="terrain_ref", asset_key="road", status="review")
    await add_asset(session_maker, store, category="terrain", asset_key="road_straight", status="approved", is_active=True)

    with (
        patch("services.versioning.enqueue_generation_job", side_effect=lambda entry_id: _FakeJob(f"generation:{entry_id}")),
        patch("services.versioning.enqueue_pipeline_job") as enqueue_pipeline,
    ):
        approve = await client.put(f"/assets/{ref.id}/approve")
    assert approve.status_code == 200
    enqueue_pipeline.assert_not_called()
    assert [item["asset_key"] for item in approve.json()["auto_queued"]] == [
        "road_corner",
        "road_tjunction",
        "road_crossroad",
        "road_deadend",
    ]

    queue = (await client.get("/assets/queue")).json()
    assert queue["pending"] == 4
    assert queue["generating"] == 0

    status = (await client.get(f"/assets/sprite-status/{ref.id}")).json()
    assert status["total"] == 5
    assert status["completed"] == 1
    assert status["in_progress"] == 4
    assert status["percent_complete"] == 20

    listed = (await client.get("/assets/list/terrain")).json()
    assert {item["asset_key"] for item in listed} == {
        "road_straight",
        "road_corner",
        "road_tjunction",
        "road_crossroad",
        "road_deadend",
    }

    requirements = (await client.get("/assets/sprite-requirements/vehicle_ref")).json()
    assert requirements["sprite_category"] == "npc"
    assert {"ref_asset_key": "car", "sprite_category": "npc", "sprite_asset_key": "car_s"} in requirements["requirements"]
    assert (await client.get("/assets/sprite-requirements/npc")).status_code == 422


@pytest.mark.asyncio
async def test_prompt_templates_and_reference_library(api_client):
    client, _, store = api_client
    put = await client.put(
        "/assets/prompts/building_sprite/casino",
        json={"base_prompt": "A casino {CUSTOM_DETAILS}", "change_notes": "first draft"},
    )
    assert put.json()["version"] == 1
    put_again = await client.put("/assets/prompts/building_sprite/casino", json={"base_prompt": "A neon casino"})
    assert put_again.json()["version"] == 2
    active = (await client.get("/assets/prompts/building_sprite/casino")).json()
    assert active["base_prompt"] == "A neon casino"
    assert (await client.get("/assets/prompts/building_sprite/bank")).status_code == 404

    upload = await client.post(
        "/assets/reference-library/upload",
        files={"file": ("neon sign.png", png_bytes(size=(40, 30)), "image/png")},
        data={"name": "Neon", "category": "building_ref"},
    )
    assert upload.status_code == 200
    image = upload.json()
    assert (image["width"], image["height"]) == (40, 30)
    assert image["storage_key"] in store.keys("private")

    bad = await client.post(
        "/assets/reference-library/upload",
        files={"file": ("notes.txt", b"hello", "text/plain")},
    )
    assert bad.status_code == 422

    archived = await client.post(f"/assets/reference-library/{image['id']}/archive")
    assert archived.json()["is_archived"] is True
    assert (await client.get("/assets/reference-library")).json()["images"] == []


@pytest.mark.asyncio
async def test_configuration_publish_gate(api_client):
    client, session_maker, store = api_client
    sprite = await add_asset(
        session_maker,
        store,
        category="building_sprite",
        asset_key="temple",
        status="approved",
        is_active=True,
        public_url="https://cdn.test/sprites/building_sprite/temple_v1.webp",
    )
    draft = await add_asset(session_maker, store, category="building_sprite", asset_key="temple", variant=2, status="completed")

    blocked = await client.post("/assets/configurations/building_sprite/temple/publish")
    assert blocked.status_code == 422

    wrong = await client.put("/assets/configurations/building_sprite/temple", json={"active_sprite_id": draft.id})
    assert wrong.status_code == 422

    updated = await client.put(
        "/assets/configurations/building_sprite/temple",
        json={"active_sprite_id": sprite.id, "cost_override": 5000},
    )
    assert updated.status_code == 200
    assert updated.json()["cost_override"] == 5000

    published = await client.post("/assets/configurations/building_sprite/temple/publish", headers={"X-Actor": "lee"})
    assert published.json()["is_published"] is True
    assert published.json()["published_by"] == "lee"

    listing = (await client.get("/assets/configurations/building_sprite")).json()["configurations"]
    temple = next(item for item in listing if item["asset_key"] == "temple")
    assert temple["sprite_url"] == sprite.public_url
    assert temple["available_sprites"] == 1

    unpublished = await client.post("/assets/configurations/building_sprite/temple/unpublish")
    assert unpublished.json()["is_published"] is False


@pytest.mark.asyncio
async def test_health_readiness_lists_missing_credentials(api_client):
    client, _, _ = api_client
    with (
        patch("routers.health.settings.GEMINI_API_KEY", ""),
        patch("routers.health.settings.BACKGROUND_REMOVAL_API_KEY", "key"),
    ):
        resp = await client.get("/health/ready")
    assert resp.status_code == 503
    assert resp.json()["missing"] == ["GEMINI_API_KEY"]
    assert (await client.get("/health/live")).json() == {"alive": True}
