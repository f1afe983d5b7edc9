"""Asset category taxonomy: parent resolution, dependent sprite families and size tables."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple


REFERENCE_CATEGORIES = ("building_ref", "character_ref", "vehicle_ref", "effect_ref", "terrain_ref")
SPRITE_CATEGORIES = ("building_sprite", "npc", "effect", "avatar", "terrain")
STANDALONE_CATEGORIES = ("scene", "ui", "overlay")
ALL_CATEGORIES = REFERENCE_CATEGORIES + SPRITE_CATEGORIES + STANDALONE_CATEGORIES

# Sprite categories that cannot be generated without an approved reference sheet.
GATED_CATEGORIES = frozenset({"building_sprite", "npc", "effect"})

# Categories whose approval runs background removal -> trim -> resize -> publish.
PIPELINE_CATEGORIES = frozenset({"building_sprite", "npc", "effect", "terrain"})

# The grass background is itself the opaque base layer.
BACKGROUND_REMOVAL_EXEMPT = frozenset({("terrain", "grass_bg")})

REF_TO_SPRITE_CATEGORY = {
    "building_ref": "building_sprite",
    "character_ref": "npc",
    "vehicle_ref": "npc",
    "effect_ref": "effect",
    "terrain_ref": "terrain",
}

ASSET_KEYS: Dict[str, List[str]] = {
    "building_ref": [
        "restaurant", "bank", "temple", "casino", "manor", "police_station",
        "high_street_store", "shop", "burger_bar", "motel", "market_stall",
        "hot_dog_stand", "campsite", "claim_stake", "demolished",
    ],
    "character_ref": ["pedestrian", "pedestrian_business", "pedestrian_casual", "avatar_base"],
    "vehicle_ref": ["car", "car_sedan", "car_sports", "car_van", "car_taxi"],
    "effect_ref": ["fire", "cluster_bomb", "vandalism", "robbery", "poisoning", "blackout"],
    "terrain_ref": ["grass", "road", "dirt", "water"],
    "terrain": ["grass_bg", "trees", "mountain", "sand"],
    "scene": [
        "arrest_bg", "court_bg", "prison_bg", "hero_bg", "bank_bg",
        "temple_bg", "casino_bg", "hospital_bg",
    ],
    "ui": ["minimap_player", "minimap_enemy", "cursor_select", "cursor_target"],
    "overlay": ["owned_self", "owned_other", "for_sale", "under_attack"],
}

# Connected tile families. The first tile is the master every connector is sized against.
TERRAIN_FAMILIES: Dict[str, List[str]] = {
    "grass": ["grass"],
    "road": ["road_straight", "road_corner", "road_tjunction", "road_crossroad", "road_deadend"],
    "dirt": ["dirt_ns", "dirt_ew", "dirt_ne", "dirt_nw", "dirt_se", "dirt_sw"],
    "water": [
        "water_edge_n", "water_edge_e", "water_edge_s", "water_edge_w",
        "water_corner_ne", "water_corner_nw", "water_corner_se", "water_corner_sw",
        "water_inner_ne", "water_inner_nw", "water_inner_se", "water_inner_sw",
    ],
}

DIRECTIONAL_VARIANTS: Dict[Tuple[str, str], List[str]] = {
    ("character_ref", "pedestrian"): ["ped_walk_n", "ped_walk_s", "ped_walk_e", "ped_walk_w"],
    ("vehicle_ref", "car"): ["car_n", "car_s", "car_e", "car_w"],
}

BUILDING_SIZE_CLASSES: Dict[str, Tuple[str, int]] = {
    "market_stall": ("SHORT", 128),
    "hot_dog_stand": ("SHORT", 128),
    "campsite": ("SHORT", 128),
    "claim_stake": ("SHORT", 128),
    "demolished": ("SHORT", 128),
    "shop": ("MEDIUM", 192),
    "burger_bar": ("MEDIUM", 192),
    "motel": ("MEDIUM", 192),
    "high_street_store": ("TALL", 256),
    "restaurant": ("TALL", 256),
    "manor": ("TALL", 256),
    "police_station": ("TALL", 256),
    "casino": ("VERY_TALL", 320),
    "temple": ("VERY_TALL", 320),
    "bank": ("VERY_TALL", 320),
}

# One building per size class, smallest first, shown to the model as scale context for effects.
EFFECT_CONTEXT_BUILDINGS = ("market_stall", "shop", "restaurant", "casino")

DEFAULT_GENERATION_SETTINGS = {
    "temperature": 0.7,
    "topK": 40,
    "topP": 0.95,
    "aspectRatio": "1:1",
    "imageSize": "4K",
}

_TILE_TO_FAMILY = {tile: family for family, tiles in TERRAIN_FAMILIES.items() for tile in tiles}
_CAR_DIRECTIONS = frozenset(DIRECTIONAL_VARIANTS[("vehicle_ref", "car")])


@dataclass(frozen=True)
class AssetRef:
    category: str
    asset_key: str

    def __str__(self) -> str:
        return f"{self.category}/{self.asset_key}"


@dataclass(frozen=True)
class SpriteRequirement:
    category: str
    asset_key: str
    parent: AssetRef


def is_reference_category(category: str) -> bool:
    return category in REFERENCE_CATEGORIES


def resolve_parent(category: str, asset_key: str) -> Optional[AssetRef]:
    """Return the reference sheet a sprite is derived from, or None when it has none.

    Defined for every (category, asset_key) pair; unknown keys in gated
    categories still resolve so the dependency gate can name what is missing.
    """
    key = (asset_key or "").strip()
    if category == "building_sprite":
        return AssetRef("building_ref", key)
    if category == "effect":
        return AssetRef("effect_ref", key)
    if category == "avatar":
        return AssetRef("character_ref", "avatar_base")
    if category == "npc":
        if key.startswith("ped_walk_"):
            return AssetRef("character_ref", "pedestrian")
        if key.startswith("pedestrian"):
            if "business" in key or "suit" in key:
                return AssetRef("character_ref", "pedestrian_business")
            return AssetRef("character_ref", "pedestrian_casual")
        if key in _CAR_DIRECTIONS:
            return AssetRef("vehicle_ref", "car")
        if key.startswith("car"):
            return AssetRef("vehicle_ref", key)
        return AssetRef("character_ref", key)
    if category == "terrain":
        family = _TILE_TO_FAMILY.get(key)
        if family:
            return AssetRef("terrain_ref", family)
        return None
    return None


def requires_approved_parent(category: str) -> bool:
    return category in GATED_CATEGORIES


def dependent_sprites(category: str, asset_key: str) -> List[SpriteRequirement]:
    """Sprites auto-enqueued when the given reference sheet is approved."""
    parent = AssetRef(category, asset_key)
    if category == "terrain_ref" and asset_key in TERRAIN_FAMILIES:
        return [SpriteRequirement("terrain", tile, parent) for tile in TERRAIN_FAMILIES[asset_key]]
    directions = DIRECTIONAL_VARIANTS.get((category, asset_key))
    if directions:
        return [SpriteRequirement("npc", key, parent) for key in directions]
    return []


def required_sprites_for(ref_category: str, ref_key: str) -> List[SpriteRequirement]:
    """Sprites a single reference sheet is expected to produce."""
    family = dependent_sprites(ref_category, ref_key)
    if family:
        return family
    if ref_category in ("building_ref", "effect_ref", "vehicle_ref"):
        return [SpriteRequirement(REF_TO_SPRITE_CATEGORY[ref_category], ref_key, AssetRef(ref_category, ref_key))]
    return []


def sprite_requirements(ref_category: str) -> List[SpriteRequirement]:
    """Every sprite expected from the reference sheets of a reference category."""
    if ref_category not in REFERENCE_CATEGORIES:
        return []
    requirements: List[SpriteRequirement] = []
    for ref_key in ASSET_KEYS.get(ref_category, []):
        requirements.extend(required_sprites_for(ref_category, ref_key))
    return requirements


def master_tile(asset_key: str) -> Optional[str]:
    """Return the master tile of the family a terrain tile belongs to."""
    family = _TILE_TO_FAMILY.get(asset_key)
    if not family:
        return None
    return TERRAIN_FAMILIES[family][0]


def family_tiles(asset_key: str) -> List[str]:
    family = _TILE_TO_FAMILY.get(asset_key)
    return list(TERRAIN_FAMILIES.get(family, [])) if family else []


def target_size(category: str, asset_key: str) -> Optional[Tuple[int, int]]:
    """Published pixel size for a sprite, or None when it is published at source size."""
    if category == "building_sprite":
        size_class = BUILDING_SIZE_CLASSES.get(asset_key)
        if not size_class:
            return None
        return size_class[1], size_class[1]
    if category == "terrain":
        if asset_key == "grass_bg":
            return 512, 512
        return 64, 64
    if category == "npc":
        if asset_key.startswith("ped_walk_"):
            return 64, 32  # two-frame strip
        return 64, 64
    if category == "effect":
        return 128, 128
    return None


def removes_background(category: str, asset_key: str) -> bool:
    return (category, asset_key) not in BACKGROUND_REMOVAL_EXEMPT


def default_generation_settings(category: str) -> Dict[str, object]:
    settings = dict(DEFAULT_GENERATION_SETTINGS)
    if is_reference_category(category):
        settings["aspectRatio"] = "3:2"
    elif category == "scene":
        settings["aspectRatio"] = "16:9"
    return settings
