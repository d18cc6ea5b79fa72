"""Health / stamina regeneration.

Each stat regenerates independently, in whole minutes, from its own
``*_updated_at`` timestamp:

    elapsed    = floor((now - updated_at) / 60000)
    multiplier = location(biome) * activity(travel, combat) * timed_effects * premium
    new_value  = clamp(old + elapsed * base_rate * multiplier, 0, max_for_stat)

A stat with less than one whole elapsed minute is left alone, timestamp
included, so the fractional minute carries into the next call. Timestamps
only ever move forward, which makes overlapping ad hoc and batch calls safe:
a second run inside the same minute is a no-op.

Expired timed effects (``expires_at <= now``) are pruned as a side effect of
computing the multiplier. ``get_regen_status`` reports rates without pruning
or writing anything.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from waystone import db
from waystone.game_config import NEUTRAL, RegenFactors, RegenSettings, load_regen_settings
from waystone.logging_utils import get_logger
from waystone.models import Biome, Player
from waystone.utils.clock import MINUTE_MS, now_ms, resolve_now

log = get_logger("waystone.regen")


def _clamp(value: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, value))


def live_effects(effects: Dict[str, int], now: int) -> Dict[str, int]:
    return {effect_id: expires_at for effect_id, expires_at in effects.items() if expires_at > now}


def activity_factors(player: Player, settings: RegenSettings, now: int) -> RegenFactors:
    """Compound the recent-travel and recent-combat penalties that apply at ``now``."""
    factors = NEUTRAL
    traveled = settings.recently_traveled
    in_transit = (player.travel_arrival_at or 0) > 0
    last_arrival = player.last_arrival_at or 0
    if in_transit or (last_arrival and now - last_arrival < traveled.duration_ms):
        factors = factors * traveled.factors
    last_combat = player.last_combat_at or 0
    if last_combat and now - last_combat < settings.in_combat.duration_ms:
        factors = factors * settings.in_combat.factors
    return factors


def effect_factors(effects: Dict[str, int], settings: RegenSettings) -> RegenFactors:
    factors = NEUTRAL
    for effect_id in effects:
        factors = factors * settings.effect_factors(effect_id)
    return factors


def regen_multiplier(
    player: Player, settings: RegenSettings, now: int, effects: Dict[str, int]
) -> RegenFactors:
    """Full multiplier for ``player`` given the already-filtered live ``effects``."""
    biome = Biome.parse(player.current_biome)
    if biome is None:
        log.debug(event="regen_unknown_biome", user_id=player.user_id, biome=player.current_biome)
    return (
        settings.location_factors(biome)
        * activity_factors(player, settings, now)
        * effect_factors(effects, settings)
        * settings.premium(bool(player.is_premium))
    )


def advance_stat(
    value: float, updated_at: int, max_value: float, base_rate: float, factor: float, now: int
) -> Tuple[float, int]:
    """Return ``(new_value, new_updated_at)`` for one stat."""
    elapsed = (now - (updated_at or 0)) // MINUTE_MS
    if elapsed <= 0:
        return value, updated_at
    new_value = _clamp(value + elapsed * base_rate * factor, 0.0, max_value)
    if new_value != value or value >= max_value:
        # At max and staying there still advances, otherwise the next call re-counts the same minutes
        return new_value, now
    return value, updated_at


@dataclass
class RegenBatchReport:
    processed: int = 0
    updated: int = 0
    failed: int = 0


class VitalsRegenerator:
    """Applies regeneration to players, one at a time or in a single batch transaction."""

    def __init__(self, settings: Optional[RegenSettings] = None, clock=now_ms):
        self._settings = settings
        self._clock = clock

    @property
    def settings(self) -> RegenSettings:
        # Re-read each call so config-set takes effect without a restart
        return self._settings or load_regen_settings()

    def _apply(self, player: Player, settings: RegenSettings, now: int) -> bool:
        """Mutate ``player`` in place; return True if any column changed."""
        stored = player.active_timed_effects
        effects = live_effects(stored, now)
        changed = False
        if effects != stored:
            player.active_timed_effects = effects
            changed = True

        factors = regen_multiplier(player, settings, now, effects)
        premium = bool(player.is_premium)

        health, health_at = advance_stat(
            float(player.health or 0.0),
            int(player.health_updated_at or 0),
            settings.max_health_for(premium),
            settings.base_health_per_minute,
            factors.health,
            now,
        )
        stamina, stamina_at = advance_stat(
            float(player.stamina or 0.0),
            int(player.stamina_updated_at or 0),
            settings.max_stamina_for(premium),
            settings.base_stamina_per_minute,
            factors.stamina,
            now,
        )
        if (health, health_at) != (player.health, player.health_updated_at):
            player.health, player.health_updated_at = health, health_at
            changed = True
        if (stamina, stamina_at) != (player.stamina, player.stamina_updated_at):
            player.stamina, player.stamina_updated_at = stamina, stamina_at
            changed = True
        return changed

    def apply_regen_for_user(self, user_id: str, now: Optional[int] = None) -> Optional[Player]:
        """Bring one player's vitals up to ``now``. Unknown users return None."""
        player = db.session.get(Player, user_id)
        if player is None:
            return None
        now = resolve_now(now, self._clock)
        if self._apply(player, self.settings, now):
            db.session.commit()
        return player

    def apply_regen_to_all(self, now: Optional[int] = None) -> RegenBatchReport:
        """Regenerate every player inside one transaction.

        Each player runs in its own SAVEPOINT: a corrupt row is rolled back,
        logged and counted, and the batch moves on.
        """
        now = resolve_now(now, self._clock)
        settings = self.settings
        report = RegenBatchReport()
        for player in Player.query.order_by(Player.user_id.asc()).all():
            report.processed += 1
            try:
                with db.session.begin_nested():
                    if self._apply(player, settings, now):
                        report.updated += 1
            except Exception as exc:  # noqa: BLE001 - one bad row must not block the batch
                report.failed += 1
                log.warn(event="regen_player_failed", user_id=player.user_id, error=f"{type(exc).__name__}: {exc}")
        db.session.commit()
        if report.failed:
            log.error(event="regen_batch_failures", failed=report.failed, processed=report.processed)
        else:
            log.debug(event="regen_batch", processed=report.processed, updated=report.updated)
        return report

    def get_regen_status(self, user_id: str, now: Optional[int] = None) -> Optional[dict]:
        """Current vitals and effective per-minute rates; read-only."""
        player = db.session.get(Player, user_id)
        if player is None:
            return None
        now = resolve_now(now, self._clock)
        settings = self.settings
        premium = bool(player.is_premium)
        effects = live_effects(player.active_timed_effects, now)
        factors = regen_multiplier(player, settings, now, effects)
        return {
            "health": player.health,
            "max_health": settings.max_health_for(premium),
            "stamina": player.stamina,
            "max_stamina": settings.max_stamina_for(premium),
            "health_rate_per_min": settings.base_health_per_minute * factors.health,
            "stamina_rate_per_min": settings.base_stamina_per_minute * factors.stamina,
            "active_effects": effects,
            "current_biome": player.current_biome,
            "is_premium": premium,
        }

    # -- state changes that alter future rates: settle accrued regen first ------------

    def ensure_player(
        self,
        user_id: str,
        name: Optional[str] = None,
        location_id: Optional[str] = None,
        now: Optional[int] = None,
    ) -> Player:
        """Return the player row, creating it with full vitals on first interaction."""
        player = db.session.get(Player, user_id)
        if player is not None:
            return player
        now = resolve_now(now, self._clock)
        settings = self.settings
        player = Player(
            user_id=user_id,
            name=name,
            health=settings.max_health,
            stamina=settings.max_stamina,
            health_updated_at=now,
            stamina_updated_at=now,
            current_biome=Biome.CITY.value,
            regen_effects="{}",
            location_id=location_id,
            created_at=now,
        )
        db.session.add(player)
        db.session.commit()
        log.info(event="player_created", user_id=user_id, location_id=location_id)
        return player

    def apply_timed_effect(
        self, user_id: str, effect_id: str, duration_ms: Optional[int] = None, now: Optional[int] = None
    ) -> bool:
        settings = self.settings
        bonus = settings.item_bonuses.get(effect_id)
        if bonus is None:
            return False
        player = db.session.get(Player, user_id)
        if player is None:
            return False
        now = resolve_now(now, self._clock)
        self._apply(player, settings, now)
        effects = player.active_timed_effects
        effects[effect_id] = now + int(duration_ms or bonus.duration_ms)
        player.active_timed_effects = effects
        db.session.commit()
        return True

    def mark_combat(self, user_id: str, now: Optional[int] = None) -> bool:
        player = db.session.get(Player, user_id)
        if player is None:
            return False
        now = resolve_now(now, self._clock)
        self._apply(player, self.settings, now)
        player.last_combat_at = now
        db.session.commit()
        return True

    def set_biome(self, user_id: str, biome, now: Optional[int] = None) -> bool:
        parsed = Biome.parse(biome)
        if parsed is None:
            log.warn(event="set_biome_unknown", user_id=user_id, biome=biome)
            return False
        player = db.session.get(Player, user_id)
        if player is None:
            return False
        now = resolve_now(now, self._clock)
        self._apply(player, self.settings, now)
        player.current_biome = parsed.value
        db.session.commit()
        return True


__all__ = [
    "RegenBatchReport",
    "VitalsRegenerator",
    "activity_factors",
    "advance_stat",
    "live_effects",
    "regen_multiplier",
]
