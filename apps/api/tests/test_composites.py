import pytest
from sqlalchemy.future import select

from conftest import png_bytes
from models.composite import AvatarItem, CompositeCacheEntry
from services import composites
from services.errors import AssetValidationError, ReferenceNotFound
from services.storage import PUBLIC


AVATAR_ITEMS = [
    ("bg_city", "background"),
    ("base_male", "base"),
    ("skin_tan", "skin"),
    ("outfit_suit", "outfit"),
    ("outfit_casual", "outfit"),
    ("hair_short", "hair"),
]


async def _seed_items(session_maker):
    async with session_maker() as db:
        for item_id, layer in AVATAR_ITEMS:
            db.add(AvatarItem(id=item_id, layer=layer, name=item_id, storage_key=f"avatar-items/{item_id}.png"))
        await db.commit()


async def _cache_rows(session_maker, kind=None):
    async with session_maker() as db:
        query = select(CompositeCacheEntry)
        if kind:
            query = query.where(CompositeCacheEntry.kind == kind)
        return list((await db.execute(query)).scalars().all())


def test_hash_ignores_order_duplicates_and_empty_values():
    first = composites.compute_composite_hash(["b", "a", None, "", "a"])
    second = composites.compute_composite_hash(["a", "b"])
    assert first == second
    assert len(first) == 16
    assert composites.compute_composite_hash(["a", "c"]) != first


@pytest.mark.asyncio
async def test_get_or_build_hits_only_on_matching_hash(services_env):
    session_maker, store = services_env
    async with session_maker() as db:
        miss = await composites.get_or_build_composite(db, composites.AVATAR, "co-1", "profile", ["x", "y"])
        assert miss.cached is False
        assert miss.url is None

        built = await composites.get_or_build_composite(db, composites.AVATAR, "co-1", "profile", ["x", "y"], png_bytes())
        assert built.cached is False
        assert built.url == f"https://cdn.test/composites/avatar_co-1_profile.png?v={built.content_hash}"

        hit = await composites.get_or_build_composite(db, composites.AVATAR, "co-1", "profile", ["y", "x"])
        assert hit.cached is True
        assert hit.url == built.url

        stale = await composites.get_or_build_composite(db, composites.AVATAR, "co-1", "profile", ["x", "z"])
        assert stale.cached is False
        assert stale.content_hash != built.content_hash

    assert store.keys(PUBLIC) == ["composites/avatar_co-1_profile.png"]
    assert len(await _cache_rows(session_maker)) == 1


@pytest.mark.asyncio
async def test_avatar_selection_validates_slots_and_layers(services_env):
    session_maker, _ = services_env
    await _seed_items(session_maker)
    async with session_maker() as db:
        with pytest.raises(AssetValidationError):
            await composites.save_avatar_selection(db, "co-1", {"cape": "bg_city"})
        with pytest.raises(AssetValidationError):
            await composites.save_avatar_selection(db, "co-1", {"hair": "outfit_suit"})
        with pytest.raises(ReferenceNotFound):
            await composites.save_avatar_selection(db, "co-1", {"hair": "hair_missing"})
        avatar = await composites.save_avatar_selection(db, "co-1", {"base": "base_male", "outfit": "outfit_suit"})
    assert avatar.base_id == "base_male"
    assert avatar.outfit_id == "outfit_suit"
    assert avatar.hair_id is None


@pytest.mark.asyncio
async def test_avatar_change_invalidates_scene_composites(services_env):
    session_maker, store = services_env
    await _seed_items(session_maker)
    async with session_maker() as db:
        await composites.save_avatar_selection(db, "co-1", {"base": "base_male", "outfit": "outfit_suit", "skin": "skin_tan"})
        await composites.save_scene_template(
            db,
            "court",
            name="Courtroom",
            background_key="scenes/court_bg_v1.webp",
            avatar_slot={"x": 100, "y": 200, "width": 300, "height": 400},
        )

        avatar = await composites.get_avatar_composite(db, "co-1")
        assert avatar.cached is False
        assert [layer["slot"] for layer in avatar.layers] == ["base", "skin", "outfit"]
        assert avatar.layers[0]["url"] == "https://cdn.test/avatar-items/base_male.png"

        await composites.save_avatar_composite(db, "co-1", png_bytes())
        assert (await composites.get_avatar_composite(db, "co-1")).cached is True

        scene = await composites.save_scene_composite(db, "court", "co-1", png_bytes(size=(192, 108)))
        assert (await composites.get_scene_composite(db, "court", "co-1")).cached is True
        assert len(await _cache_rows(session_maker, composites.SCENE)) == 1

        await composites.save_avatar_selection(db, "co-1", {"outfit": "outfit_casual"})
        assert (await composites.get_avatar_composite(db, "co-1")).cached is False
        stale_scene = await composites.get_scene_composite(db, "court", "co-1")
        assert stale_scene.cached is False
        assert stale_scene.content_hash != scene.content_hash

        await composites.save_avatar_composite(db, "co-1", png_bytes())

    assert await _cache_rows(session_maker, composites.SCENE) == []
    assert "scenes/composed/court_co-1.png" in store.keys(PUBLIC)


@pytest.mark.asyncio
async def test_scene_template_change_invalidates_its_composites(services_env):
    session_maker, _ = services_env
    await _seed_items(session_maker)
    slot = {"x": 0, "y": 0, "width": 10, "height": 10}
    async with session_maker() as db:
        await composites.save_avatar_selection(db, "co-2", {"base": "base_male"})
        await composites.save_scene_template(db, "bank", name="Bank", background_key="scenes/bank_bg_v1.webp", avatar_slot=slot)
        await composites.save_scene_template(db, "temple", name="Temple", background_key="scenes/temple_bg_v1.webp", avatar_slot=slot)
        await composites.save_scene_composite(db, "bank", "co-2", png_bytes())
        await composites.save_scene_composite(db, "temple", "co-2", png_bytes())

        await composites.save_scene_template(
            db, "bank", name="Bank", background_key="scenes/bank_bg_v2.webp", foreground_key="scenes/bank_fg_v1.webp", avatar_slot=slot
        )
        with pytest.raises(AssetValidationError):
            await composites.save_scene_template(db, "bank", name="Bank", background_key="x", avatar_slot={"x": 1})

        assert (await composites.get_scene_composite(db, "bank", "co-2")).cached is False
        assert (await composites.get_scene_composite(db, "temple", "co-2")).cached is True
        with pytest.raises(ReferenceNotFound):
            await composites.get_scene_composite(db, "missing", "co-2")

    rows = await _cache_rows(session_maker, composites.SCENE)
    assert [row.context for row in rows] == ["temple"]


@pytest.mark.asyncio
async def test_composite_routes(api_client):
    client, session_maker, _ = api_client
    await _seed_items(session_maker)

    selection = await client.put("/composites/avatar/co-9/selection", json={"base": "base_male", "hair": "hair_short"})
    assert selection.status_code == 200
    assert selection.json()["selection"]["hair"] == "hair_short"

    stale = (await client.get("/composites/avatar/co-9")).json()
    assert stale["cached"] is False
    assert [layer["slot"] for layer in stale["layers"]] == ["base", "hair"]

    stored = await client.post("/composites/avatar/co-9", files={"file": ("avatar.png", png_bytes(), "image/png")})
    assert stored.status_code == 200
    assert stored.json()["url"].endswith(f"?v={stale['content_hash']}")
    assert (await client.get("/composites/avatar/co-9")).json()["cached"] is True

    template = await client.put(
        "/composites/scenes/templates/arrest",
        json={
            "name": "Arrest",
            "background_key": "scenes/arrest_bg_v1.webp",
            "avatar_slot": {"x": 10, "y": 20, "width": 300, "height": 400},
        },
    )
    assert template.status_code == 200
    assert [item["id"] for item in (await client.get("/composites/scenes/templates")).json()["templates"]] == ["arrest"]

    scene_miss = (await client.get("/composites/scenes/arrest/co-9")).json()
    assert scene_miss["cached"] is False
    await client.post("/composites/scenes/arrest/co-9", files={"file": ("scene.png", png_bytes(), "image/png")})
    assert (await client.get("/composites/scenes/arrest/co-9")).json()["cached"] is True
    assert (await client.get("/composites/scenes/unknown/co-9")).status_code == 404
