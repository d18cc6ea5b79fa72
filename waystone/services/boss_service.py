"""Global boss encounter lifecycle: expiry, spawn, defeat and capability cleanup.

One cycle (``run_lifecycle_cycle``) runs these steps in order:
  1. Expire active encounters past ``expires_at`` and clean up their participants.
  2. Every ``orphan_sweep_every``-th cycle, revoke fighting capabilities that
     no longer back onto an active encounter.
  3. Stop if the active ceiling is reached.
  4. Stop while the global defeat cooldown is running.
  5. Pick a random eligible location; stop if there is none.
  6. Roll tier, hp, ttl and name.
  7. Insert into the lowest free ``active_slot`` and notify.

The UNIQUE ``active_slot`` column is what actually bounds the number of
active encounters: a runner that loses the race gets an IntegrityError and
reports ``spawn_conflict`` instead of inserting a second row.

Capability grants/revokes and notifications are best-effort; they never undo
an expiry, spawn or defeat that has already committed.
"""

from __future__ import annotations

import random
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Set

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError

from waystone import db
from waystone.game_config import BossSettings, load_boss_settings
from waystone.logging_utils import get_logger
from waystone.models import Biome, BossEncounter, BossTier, CooldownSetting, EncounterParticipant, Location
from waystone.utils.clock import now_ms, resolve_now

from .best_effort import best_effort
from .hooks import FightingRoles, Notifier

log = get_logger("waystone.boss")

LAST_GLOBAL_DEFEAT_KEY = "last_global_defeat_at"


@dataclass
class SchedulerContext:
    """Counters carried from one scheduler cycle to the next."""

    boss_cycles: int = 0
    ticks: int = 0
    last_boss_cycle_at: Optional[int] = None


@dataclass
class CycleReport:
    expired: List[int] = field(default_factory=list)
    swept: Optional[int] = None
    spawned_id: Optional[int] = None
    skipped: Optional[str] = None


def choose_tier(weights: Mapping[BossTier, int], rng=None) -> BossTier:
    """Weighted pick over ``weights`` (tier -> integer weight)."""
    rng = rng or random
    tiers = sorted(weights)
    total = sum(weights[t] for t in tiers)
    pivot = rng.random() * total
    acc = 0.0
    chosen = tiers[-1]
    for tier in tiers:
        acc += weights[tier]
        if pivot < acc:
            chosen = tier
            break
    return BossTier(chosen)


class BossLifecycleManager:
    def __init__(
        self,
        roles: FightingRoles,
        notifier: Notifier,
        settings: Optional[BossSettings] = None,
        rng=None,
        clock=now_ms,
    ):
        self.roles = roles
        self.notifier = notifier
        self._settings = settings
        self.rng = rng or random
        self._clock = clock

    @property
    def settings(self) -> BossSettings:
        return self._settings or load_boss_settings()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def active_encounters(self, now: Optional[int] = None) -> List[BossEncounter]:
        """Active encounters that are still fightable at ``now``."""
        now = resolve_now(now, self._clock)
        return (
            BossEncounter.query.filter(BossEncounter.active.is_(True), BossEncounter.expires_at > now)
            .order_by(BossEncounter.active_slot.asc())
            .all()
        )

    def eligible_locations(self, now: Optional[int] = None, settings: Optional[BossSettings] = None) -> List[Location]:
        now = resolve_now(now, self._clock)
        settings = settings or self.settings
        busy = select(BossEncounter.location_id).where(BossEncounter.active.is_(True))
        q = Location.query.filter(
            Location.archived.is_(False),
            Location.lat.isnot(None),
            Location.lon.isnot(None),
            Location.id.not_in(busy),
            or_(
                Location.last_encounter_at.is_(None),
                Location.last_encounter_at <= now - settings.location_cooldown_ms,
            ),
        )
        if settings.spawn_location_id:
            q = q.filter(Location.id != settings.spawn_location_id)
        return q.order_by(Location.id.asc()).all()

    def tier_distribution(self, samples: int) -> Dict[BossTier, float]:
        """Observed share of each tier over ``samples`` rolls with the configured weights."""
        weights = self.settings.tier_weights
        counts = Counter(choose_tier(weights, self.rng) for _ in range(samples))
        return {tier: counts.get(tier, 0) / float(samples or 1) for tier in BossTier}

    def _users_still_fighting(self, now: int, exclude_encounter_id: Optional[int] = None) -> Set[str]:
        q = (
            db.session.query(EncounterParticipant.user_id)
            .join(BossEncounter, BossEncounter.id == EncounterParticipant.encounter_id)
            .filter(BossEncounter.active.is_(True), BossEncounter.expires_at > now)
        )
        if exclude_encounter_id is not None:
            q = q.filter(BossEncounter.id != exclude_encounter_id)
        return {user_id for (user_id,) in q.distinct()}

    # ------------------------------------------------------------------
    # Participant / capability cleanup
    # ------------------------------------------------------------------

    def _cleanup_participants(self, encounter: BossEncounter, now: int) -> int:
        """Revoke capabilities nobody else backs, then delete the encounter's participant rows.

        Revocations are attempted while the rows still exist; the rows are
        deleted afterwards whether or not each revocation succeeded. Returns
        the number of successful revocations.
        """
        participants = EncounterParticipant.query.filter_by(encounter_id=encounter.id).all()
        user_ids = [p.user_id for p in participants]
        still_fighting = self._users_still_fighting(now, exclude_encounter_id=encounter.id)

        revoked = 0
        for user_id in user_ids:
            if user_id in still_fighting:
                log.debug(event="capability_kept", user_id=user_id, encounter_id=encounter.id)
                continue
            result = best_effort(
                "revoke_fighting_role",
                self.roles.revoke_fighting_role,
                encounter.location_id,
                user_id,
                encounter_id=encounter.id,
                user_id=user_id,
            )
            if result.ok:
                revoked += 1

        EncounterParticipant.query.filter_by(encounter_id=encounter.id).delete(synchronize_session=False)
        db.session.commit()
        return revoked

    def _purge_stale_participants(self) -> int:
        live = select(BossEncounter.id).where(BossEncounter.active.is_(True))
        removed = EncounterParticipant.query.filter(EncounterParticipant.encounter_id.not_in(live)).delete(
            synchronize_session=False
        )
        db.session.commit()
        if removed:
            log.warn(event="participants_purged", removed=removed)
        return removed

    def sweep_orphan_capabilities(self, now: Optional[int] = None) -> int:
        """Revoke every capability holder who is not fighting an active, unexpired encounter."""
        now = resolve_now(now, self._clock)
        listing = best_effort("list_fighting_roles", self.roles.holders)
        if not listing.ok:
            return 0
        fighting = self._users_still_fighting(now)
        revoked = 0
        for location_id, user_id in list(listing.value or []):
            if user_id in fighting:
                continue
            result = best_effort(
                "revoke_fighting_role",
                self.roles.revoke_fighting_role,
                location_id,
                user_id,
                location_id=location_id,
                user_id=user_id,
            )
            if result.ok:
                revoked += 1
        if revoked:
            log.info(event="orphan_capabilities_revoked", revoked=revoked)
        return revoked

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _expire(self, now: int) -> List[int]:
        due = BossEncounter.query.filter(BossEncounter.active.is_(True), BossEncounter.expires_at <= now).all()
        if not due:
            return []
        for encounter in due:
            encounter.active = False
            encounter.active_slot = None
        db.session.commit()
        for encounter in due:
            log.info(event="boss_expired", encounter_id=encounter.id, location_id=encounter.location_id, hp=encounter.hp)
            self._cleanup_participants(encounter, now)
        return [e.id for e in due]

    def _last_global_defeat_at(self) -> int:
        row = db.session.get(CooldownSetting, LAST_GLOBAL_DEFEAT_KEY)
        return int(row.value) if row else 0

    def _free_slot(self, ceiling: int) -> Optional[int]:
        taken = {
            slot
            for (slot,) in db.session.query(BossEncounter.active_slot).filter(BossEncounter.active_slot.isnot(None))
        }
        return next((n for n in range(1, ceiling + 1) if n not in taken), None)

    def _spawn(self, settings: BossSettings, now: int, report: CycleReport) -> None:
        candidates = self.eligible_locations(now, settings)
        if not candidates:
            report.skipped = "no_candidates"
            return
        location = self.rng.choice(candidates)
        slot = self._free_slot(settings.ceiling)
        if slot is None:
            report.skipped = "ceiling"
            return

        tier = choose_tier(settings.tier_weights, self.rng)
        biome = Biome.parse(location.biome)
        max_hp = settings.max_hp_for(tier)
        encounter = BossEncounter(
            location_id=location.id,
            name=self.rng.choice(settings.names_for(biome)),
            max_hp=max_hp,
            hp=max_hp,
            tier=int(tier),
            started_at=now,
            expires_at=now + settings.ttl_ms,
            active=True,
            active_slot=slot,
        )
        db.session.add(encounter)
        location.last_encounter_at = now
        try:
            db.session.commit()
        except IntegrityError:
            # Another runner took the slot between our read and insert
            db.session.rollback()
            log.warn(event="boss_spawn_conflict", location_id=location.id, slot=slot)
            report.skipped = "spawn_conflict"
            return

        report.spawned_id = encounter.id
        log.info(
            event="boss_spawned",
            encounter_id=encounter.id,
            location_id=location.id,
            tier=tier.label,
            hp=max_hp,
            slot=slot,
        )
        payload = encounter.to_dict()
        payload.update(location_name=location.name, tier_label=tier.label)
        best_effort("notify_boss_spawned", self.notifier.notify, "boss_spawned", payload, encounter_id=encounter.id)

    def run_lifecycle_cycle(self, ctx: SchedulerContext, now: Optional[int] = None) -> CycleReport:
        now = resolve_now(now, self._clock)
        settings = self.settings
        report = CycleReport()

        report.expired = self._expire(now)
        self._purge_stale_participants()

        ctx.boss_cycles += 1
        ctx.last_boss_cycle_at = now
        if ctx.boss_cycles % settings.orphan_sweep_every == 0:
            report.swept = self.sweep_orphan_capabilities(now)

        active = BossEncounter.query.filter(BossEncounter.active.is_(True)).count()
        if active >= settings.ceiling:
            report.skipped = "ceiling"
            return report
        last_defeat = self._last_global_defeat_at()
        if last_defeat and now - last_defeat < settings.defeat_cooldown_ms:
            report.skipped = "defeat_cooldown"
            return report

        self._spawn(settings, now, report)
        if report.skipped:
            log.debug(event="boss_spawn_skipped", reason=report.skipped, cycle=ctx.boss_cycles)
        return report

    # ------------------------------------------------------------------
    # Fight outcome
    # ------------------------------------------------------------------

    def record_defeat(self, encounter_id: int, now: Optional[int] = None) -> bool:
        """Close an active encounter as defeated. Unknown or inactive ids return False."""
        now = resolve_now(now, self._clock)
        result = db.session.execute(
            update(BossEncounter)
            .where(BossEncounter.id == encounter_id, BossEncounter.active.is_(True))
            .values(active=False, active_slot=None)
        )
        if result.rowcount != 1:
            db.session.rollback()
            return False
        row = db.session.get(CooldownSetting, LAST_GLOBAL_DEFEAT_KEY)
        if row is None:
            row = CooldownSetting(key=LAST_GLOBAL_DEFEAT_KEY)
            db.session.add(row)
        row.value = now
        row.updated_at = now
        db.session.commit()

        encounter = db.session.get(BossEncounter, encounter_id)
        db.session.refresh(encounter)
        log.info(event="boss_defeated", encounter_id=encounter.id, location_id=encounter.location_id)
        self._cleanup_participants(encounter, now)
        best_effort(
            "notify_boss_defeated", self.notifier.notify, "boss_defeated", encounter.to_dict(), encounter_id=encounter.id
        )
        return True

    def record_damage(self, encounter_id: int, user_id: str, damage: int, now: Optional[int] = None) -> Optional[int]:
        """Apply ``damage`` from ``user_id``; return remaining hp, or None if not fightable."""
        now = resolve_now(now, self._clock)
        encounter = db.session.get(BossEncounter, encounter_id)
        if encounter is None or not encounter.active or encounter.expires_at <= now:
            return None
        damage = max(0, int(damage))
        participant = EncounterParticipant.query.filter_by(encounter_id=encounter_id, user_id=user_id).first()
        joined = participant is None
        if joined:
            participant = EncounterParticipant(encounter_id=encounter_id, user_id=user_id, damage_dealt=0)
            db.session.add(participant)
        participant.damage_dealt = (participant.damage_dealt or 0) + damage
        encounter.hp = max(0, int(encounter.hp) - damage)
        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            raise

        if joined:
            best_effort(
                "grant_fighting_role",
                self.roles.grant_fighting_role,
                encounter.location_id,
                user_id,
                encounter_id=encounter_id,
                user_id=user_id,
            )
        remaining = encounter.hp
        if remaining == 0:
            self.record_defeat(encounter_id, now)
        return remaining


__all__ = [
    "BossLifecycleManager",
    "CycleReport",
    "LAST_GLOBAL_DEFEAT_KEY",
    "SchedulerContext",
    "choose_tier",
]
