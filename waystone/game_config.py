"""Typed engine settings backed by ``GameConfig`` rows.

Each subsystem reads one JSON row (``regen``, ``boss``, ``travel``,
``scheduler``) and merges it over the code defaults below, so a partial row
only overrides the keys it names. Bad values are skipped with a warning and
the default is kept; a broken row never stops the engine.

Deployment-level values (spawn/default location ids, tick interval) come from
``app.config`` which is populated from the environment in ``create_app``.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

from flask import current_app, has_app_context

from waystone.logging_utils import get_logger
from waystone.models import Biome, BossTier, GameConfig
from waystone.utils.clock import HOUR_MS, MINUTE_MS

log = get_logger("waystone.config")


@dataclass(frozen=True)
class RegenFactors:
    health: float = 1.0
    stamina: float = 1.0

    def __mul__(self, other: "RegenFactors") -> "RegenFactors":
        return RegenFactors(self.health * other.health, self.stamina * other.stamina)


NEUTRAL = RegenFactors(1.0, 1.0)


@dataclass(frozen=True)
class ActivityPenalty:
    duration_ms: int
    factors: RegenFactors


@dataclass(frozen=True)
class EffectBonus:
    factors: RegenFactors
    duration_ms: int


DEFAULT_REGEN_CONFIG: Dict[str, Any] = {
    "max_health": 100,
    "max_stamina": 100,
    "base_health_per_minute": 2,
    "base_stamina_per_minute": 3,
    "premium": {
        "health_multiplier": 1.5,
        "stamina_multiplier": 1.3,
        "max_health_bonus": 50,
        "max_stamina_bonus": 30,
    },
    "location_bonuses": {
        "city": {"health": 1.0, "stamina": 1.0},
        "forest": {"health": 1.2, "stamina": 1.1},
        "meadow": {"health": 1.1, "stamina": 1.2},
        "water": {"health": 1.1, "stamina": 1.0},
        "mountain": {"health": 1.0, "stamina": 0.9},
        "ruins": {"health": 1.0, "stamina": 1.0},
        "desert": {"health": 0.9, "stamina": 0.8},
        "swamp": {"health": 0.9, "stamina": 0.9},
        "ice": {"health": 0.8, "stamina": 0.8},
        "volcanic": {"health": 0.8, "stamina": 0.9},
    },
    "activity_penalties": {
        "recently_traveled": {"duration_ms": 5 * MINUTE_MS, "health": 0.7, "stamina": 0.3},
        "in_combat": {"duration_ms": 10 * MINUTE_MS, "health": 0.2, "stamina": 0.1},
    },
    "item_bonuses": {
        "healing_salve": {"health": 2.0, "stamina": 1.0, "duration_ms": 15 * MINUTE_MS},
        "energy_tonic": {"health": 1.0, "stamina": 2.0, "duration_ms": 15 * MINUTE_MS},
        "campfire_kit": {"health": 1.5, "stamina": 1.5, "duration_ms": 30 * MINUTE_MS},
    },
    "default_effect_duration_ms": 15 * MINUTE_MS,
}

DEFAULT_TIER_WEIGHTS: Dict[int, int] = {1: 40, 2: 30, 3: 20, 4: 8, 5: 2}

DEFAULT_BOSS_CONFIG: Dict[str, Any] = {
    "ceiling": 1,
    "ttl_ms": HOUR_MS,
    "base_hp": 2000,
    "hp_scaling": 0.4,
    "tier_weights": dict(DEFAULT_TIER_WEIGHTS),
    # Independent knobs: per-location spawn cooldown vs global post-defeat cooldown
    "location_cooldown_ms": HOUR_MS,
    "defeat_cooldown_ms": 5 * MINUTE_MS,
    "orphan_sweep_every": 2,
    "names": {
        "volcanic": ["Inferno Drake", "Magma Colossus", "Pyroclast Titan", "Ember Lord", "Volcanic Warden"],
        "ice": ["Frost Giant", "Glacial Behemoth", "Blizzard King", "Ice Wraith", "Arctic Sovereign"],
        "forest": ["Ancient Treant", "Forest Guardian", "Thorn Monarch", "Verdant Colossus", "Woodland Protector"],
        "desert": ["Sand Worm", "Dune Stalker", "Desert Pharaoh", "Mirage Demon", "Sandstone Golem"],
        "swamp": ["Bog Monster", "Marsh Tyrant", "Pestilent Drake", "Swamp Leviathan", "Mire Lord"],
        "mountain": ["Stone Giant", "Peak Guardian", "Crag Demon", "Mountain King", "Boulder Behemoth"],
        "ruins": ["Ancient Sentinel", "Ruin Wraith", "Forgotten Titan", "Temple Guardian", "Lost Colossus"],
        "meadow": ["Storm Eagle", "Wind Dancer", "Prairie Lord", "Grassland Titan", "Nature's Fury"],
        "water": ["Kraken Spawn", "Tidal Behemoth", "Deep Sea Terror", "Ocean Lord", "Abyssal Guardian"],
        "city": ["Iron Juggernaut", "Sewer Hydra", "Clockwork Tyrant", "Gutter King", "Rooftop Gargoyle"],
    },
}

DEFAULT_TRAVEL_CONFIG: Dict[str, Any] = {
    "landmark_prefix": "landmark_",
    "first_visit_reward": 2,
}

DEFAULT_SCHEDULER_CONFIG: Dict[str, Any] = {
    "boss_cycle_interval_ms": 0,
    "use_lease": True,
    "lease_ttl_ms": 5 * MINUTE_MS,
}


def _load_row(key: str) -> Dict[str, Any]:
    raw = GameConfig.get(key)
    if not raw:
        return {}
    try:
        data = json.loads(raw)
    except (TypeError, ValueError):
        log.warn(event="config_invalid_json", key=key)
        return {}
    if not isinstance(data, dict):
        log.warn(event="config_not_object", key=key)
        return {}
    return data


def _merge(defaults: Mapping[str, Any], overrides: Mapping[str, Any]) -> Dict[str, Any]:
    merged = dict(defaults)
    for k, v in overrides.items():
        if isinstance(v, dict) and isinstance(merged.get(k), dict):
            merged[k] = _merge(merged[k], v)
        else:
            merged[k] = v
    return merged


def _num(data: Mapping[str, Any], key: str, default: float, *, minimum: float = 0.0) -> float:
    try:
        value = float(data.get(key, default))
    except (TypeError, ValueError):
        log.warn(event="config_bad_number", key=key, value=data.get(key))
        return float(default)
    if value < minimum:
        log.warn(event="config_below_minimum", key=key, value=value)
        return float(default)
    return value


def _factors(data: Any) -> RegenFactors:
    if not isinstance(data, Mapping):
        return NEUTRAL
    return RegenFactors(_num(data, "health", 1.0), _num(data, "stamina", 1.0))


def _app_setting(name: str) -> Optional[Any]:
    if not has_app_context():
        return None
    return current_app.config.get(name)


# ---------------------------------------------------------------------------
# Regen
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RegenSettings:
    max_health: float = 100.0
    max_stamina: float = 100.0
    base_health_per_minute: float = 2.0
    base_stamina_per_minute: float = 3.0
    premium_factors: RegenFactors = RegenFactors(1.5, 1.3)
    premium_max_health_bonus: float = 50.0
    premium_max_stamina_bonus: float = 30.0
    location_bonuses: Mapping[Biome, RegenFactors] = field(default_factory=dict)
    recently_traveled: ActivityPenalty = ActivityPenalty(5 * MINUTE_MS, RegenFactors(0.7, 0.3))
    in_combat: ActivityPenalty = ActivityPenalty(10 * MINUTE_MS, RegenFactors(0.2, 0.1))
    item_bonuses: Mapping[str, EffectBonus] = field(default_factory=dict)
    default_effect_duration_ms: int = 15 * MINUTE_MS

    def location_factors(self, biome: Optional[Biome]) -> RegenFactors:
        if biome is None:
            return NEUTRAL
        return self.location_bonuses.get(biome, NEUTRAL)

    def effect_factors(self, effect_id: str) -> RegenFactors:
        bonus = self.item_bonuses.get(effect_id)
        return bonus.factors if bonus else NEUTRAL

    def premium(self, is_premium: bool) -> RegenFactors:
        return self.premium_factors if is_premium else NEUTRAL

    def max_health_for(self, is_premium: bool) -> float:
        return self.max_health + (self.premium_max_health_bonus if is_premium else 0.0)

    def max_stamina_for(self, is_premium: bool) -> float:
        return self.max_stamina + (self.premium_max_stamina_bonus if is_premium else 0.0)


def regen_settings_from_dict(data: Mapping[str, Any]) -> RegenSettings:
    cfg = _merge(DEFAULT_REGEN_CONFIG, data)
    premium = cfg.get("premium") or {}
    locations: Dict[Biome, RegenFactors] = {}
    for raw_biome, factors in (cfg.get("location_bonuses") or {}).items():
        biome = Biome.parse(raw_biome)
        if biome is None:
            log.warn(event="config_unknown_biome", biome=raw_biome)
            continue
        locations[biome] = _factors(factors)
    penalties = cfg.get("activity_penalties") or {}
    traveled = penalties.get("recently_traveled") or {}
    combat = penalties.get("in_combat") or {}
    default_duration = int(_num(cfg, "default_effect_duration_ms", 15 * MINUTE_MS))
    items: Dict[str, EffectBonus] = {}
    for effect_id, bonus in (cfg.get("item_bonuses") or {}).items():
        if not isinstance(bonus, Mapping):
            continue
        items[str(effect_id)] = EffectBonus(
            _factors(bonus), int(_num(bonus, "duration_ms", default_duration, minimum=1))
        )
    return RegenSettings(
        max_health=_num(cfg, "max_health", 100, minimum=1),
        max_stamina=_num(cfg, "max_stamina", 100, minimum=1),
        base_health_per_minute=_num(cfg, "base_health_per_minute", 2),
        base_stamina_per_minute=_num(cfg, "base_stamina_per_minute", 3),
        premium_factors=RegenFactors(
            _num(premium, "health_multiplier", 1.5), _num(premium, "stamina_multiplier", 1.3)
        ),
        premium_max_health_bonus=_num(premium, "max_health_bonus", 50),
        premium_max_stamina_bonus=_num(premium, "max_stamina_bonus", 30),
        location_bonuses=locations,
        recently_traveled=ActivityPenalty(
            int(_num(traveled, "duration_ms", 5 * MINUTE_MS)), RegenFactors(
                _num(traveled, "health", 0.7), _num(traveled, "stamina", 0.3)
            )
        ),
        in_combat=ActivityPenalty(
            int(_num(combat, "duration_ms", 10 * MINUTE_MS)), RegenFactors(
                _num(combat, "health", 0.2), _num(combat, "stamina", 0.1)
            )
        ),
        item_bonuses=items,
        default_effect_duration_ms=default_duration,
    )


def load_regen_settings() -> RegenSettings:
    return regen_settings_from_dict(_load_row("regen"))


# ---------------------------------------------------------------------------
# Boss
# ---------------------------------------------------------------------------


def validate_tier_weights(raw: Mapping[Any, Any]) -> Dict[BossTier, int]:
    """Normalise a tier -> weight mapping; raises ValueError unless it covers 1..5 and sums to 100."""
    weights: Dict[BossTier, int] = {}
    for key, value in raw.items():
        try:
            tier = BossTier(int(key))
            weight = int(value)
        except (TypeError, ValueError):
            raise ValueError(f"invalid tier weight entry {key!r}: {value!r}")
        if weight < 0:
            raise ValueError(f"negative weight for tier {tier.value}")
        weights[tier] = weight
    missing = [t.value for t in BossTier if t not in weights]
    if missing:
        raise ValueError(f"tier weights missing tiers {missing}")
    total = sum(weights.values())
    if total != 100:
        raise ValueError(f"tier weights must sum to 100 (got {total})")
    return dict(sorted(weights.items()))


@dataclass(frozen=True)
class BossSettings:
    ceiling: int = 1
    ttl_ms: int = HOUR_MS
    base_hp: int = 2000
    hp_scaling: float = 0.4
    tier_weights: Mapping[BossTier, int] = field(
        default_factory=lambda: validate_tier_weights(DEFAULT_TIER_WEIGHTS)
    )
    location_cooldown_ms: int = HOUR_MS
    defeat_cooldown_ms: int = 5 * MINUTE_MS
    orphan_sweep_every: int = 2
    names: Mapping[str, tuple] = field(default_factory=dict)
    spawn_location_id: Optional[str] = None

    def names_for(self, biome: Optional[Biome]) -> tuple:
        if biome is not None and self.names.get(biome.value):
            return self.names[biome.value]
        return self.names.get(Biome.RUINS.value) or ("Ancient Beast",)

    def max_hp_for(self, tier: BossTier) -> int:
        return int(self.base_hp * (1 + (int(tier) - 1) * self.hp_scaling))


def boss_settings_from_dict(data: Mapping[str, Any], spawn_location_id: Optional[str] = None) -> BossSettings:
    cfg = _merge(DEFAULT_BOSS_CONFIG, data)
    # tier_weights replaces wholesale: a partial mapping cannot sum to 100
    raw_weights = data.get("tier_weights", DEFAULT_TIER_WEIGHTS)
    try:
        weights = validate_tier_weights(raw_weights if isinstance(raw_weights, Mapping) else {})
    except ValueError as exc:
        log.warn(event="config_bad_tier_weights", error=str(exc))
        weights = validate_tier_weights(DEFAULT_TIER_WEIGHTS)
    names = {
        str(k).lower(): tuple(str(n) for n in v)
        for k, v in (cfg.get("names") or {}).items()
        if isinstance(v, (list, tuple)) and v
    }
    return BossSettings(
        ceiling=max(1, int(_num(cfg, "ceiling", 1, minimum=1))),
        ttl_ms=int(_num(cfg, "ttl_ms", HOUR_MS, minimum=1)),
        base_hp=int(_num(cfg, "base_hp", 2000, minimum=1)),
        hp_scaling=_num(cfg, "hp_scaling", 0.4),
        tier_weights=weights,
        location_cooldown_ms=int(_num(cfg, "location_cooldown_ms", HOUR_MS)),
        defeat_cooldown_ms=int(_num(cfg, "defeat_cooldown_ms", 5 * MINUTE_MS)),
        orphan_sweep_every=max(1, int(_num(cfg, "orphan_sweep_every", 2, minimum=1))),
        names=names,
        spawn_location_id=spawn_location_id,
    )


def load_boss_settings() -> BossSettings:
    return boss_settings_from_dict(_load_row("boss"), spawn_location_id=_app_setting("SPAWN_LOCATION_ID"))


# ---------------------------------------------------------------------------
# Travel / scheduler
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TravelSettings:
    landmark_prefix: str = "landmark_"
    first_visit_reward: int = 2
    default_location_id: Optional[str] = None

    def landmark_id(self, destination: Optional[str]) -> Optional[str]:
        if destination and destination.startswith(self.landmark_prefix):
            return destination[len(self.landmark_prefix):]
        return None


def load_travel_settings() -> TravelSettings:
    cfg = _merge(DEFAULT_TRAVEL_CONFIG, _load_row("travel"))
    default_location = _app_setting("DEFAULT_LOCATION_ID") or _app_setting("SPAWN_LOCATION_ID")
    return TravelSettings(
        landmark_prefix=str(cfg.get("landmark_prefix") or "landmark_"),
        first_visit_reward=int(_num(cfg, "first_visit_reward", 2)),
        default_location_id=default_location,
    )


@dataclass(frozen=True)
class SchedulerSettings:
    tick_seconds: float = 60.0
    boss_cycle_interval_ms: int = 0
    use_lease: bool = True
    lease_ttl_ms: int = 5 * MINUTE_MS


def load_scheduler_settings() -> SchedulerSettings:
    cfg = _merge(DEFAULT_SCHEDULER_CONFIG, _load_row("scheduler"))
    tick_seconds = _app_setting("TICK_SECONDS") or 60.0
    return SchedulerSettings(
        tick_seconds=float(tick_seconds),
        boss_cycle_interval_ms=int(_num(cfg, "boss_cycle_interval_ms", 0)),
        use_lease=bool(cfg.get("use_lease", True)),
        lease_ttl_ms=int(_num(cfg, "lease_ttl_ms", 5 * MINUTE_MS, minimum=1)),
    )


DEFAULT_ROWS = {
    "regen": DEFAULT_REGEN_CONFIG,
    "boss": DEFAULT_BOSS_CONFIG,
    "travel": DEFAULT_TRAVEL_CONFIG,
    "scheduler": DEFAULT_SCHEDULER_CONFIG,
}
