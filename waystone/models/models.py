"""
project: Waystone
module: models.py
License: MIT

Database models used by the world engine.

Notes:
- All timestamps are integer epoch milliseconds (BigInteger columns).
- Timed regen effects are stored as a JSON string on ``Player.regen_effects``;
  business logic only ever touches the typed ``active_timed_effects`` map.
- ``BossEncounter.active_slot`` carries a UNIQUE constraint so the number of
  active encounters can never exceed the number of slots handed out.
"""

import json
from typing import Dict

from waystone import db

from .enums import Biome


class Player(db.Model):
    """One row per account.

    Attributes:
        user_id: Opaque account id (chat platform snowflake, etc.).
        health / stamina: Current vitals, bounded by the premium-aware maxima.
        health_updated_at / stamina_updated_at: Last time regen was applied to each stat.
        travel_arrival_at: 0 when idle, else the arrival deadline of the current trip.
    """

    user_id = db.Column(db.String(64), primary_key=True)
    name = db.Column(db.String(120), nullable=True)
    # Vitals
    health = db.Column(db.Float, nullable=False, default=100.0)
    stamina = db.Column(db.Float, nullable=False, default=100.0)
    health_updated_at = db.Column(db.BigInteger, nullable=False, default=0)
    stamina_updated_at = db.Column(db.BigInteger, nullable=False, default=0)
    # Regen modifiers
    is_premium = db.Column(db.Boolean, nullable=False, default=False)
    current_biome = db.Column(db.String(20), nullable=False, default=Biome.CITY.value)
    last_combat_at = db.Column(db.BigInteger, nullable=False, default=0)
    regen_effects = db.Column(db.Text, nullable=False, default="{}")
    # Travel state
    location_id = db.Column(db.String(64), nullable=True, index=True)
    travel_from_location_id = db.Column(db.String(64), nullable=True)
    travel_start_at = db.Column(db.BigInteger, nullable=False, default=0)
    travel_arrival_at = db.Column(db.BigInteger, nullable=False, default=0, index=True)
    last_arrival_at = db.Column(db.BigInteger, nullable=False, default=0)
    locations_visited = db.Column(db.Integer, nullable=False, default=0)
    # Economy (default reward hook)
    gems = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(db.BigInteger, nullable=False, default=0)

    @property
    def active_timed_effects(self) -> Dict[str, int]:
        """Typed view of ``regen_effects``: effect id -> expiry (ms).

        Accepts the legacy ``{"id": {"expiresAt": ms}}`` shape as well as the
        flat ``{"id": ms}`` shape written by this code. Corrupt JSON reads as empty.
        """
        try:
            raw = json.loads(self.regen_effects or "{}")
        except (TypeError, ValueError):
            return {}
        if not isinstance(raw, dict):
            return {}
        effects: Dict[str, int] = {}
        for effect_id, value in raw.items():
            if isinstance(value, dict):
                value = value.get("expiresAt", value.get("expires_at"))
            try:
                effects[str(effect_id)] = int(value)
            except (TypeError, ValueError):
                continue
        return effects

    @active_timed_effects.setter
    def active_timed_effects(self, effects: Dict[str, int]) -> None:
        self.regen_effects = json.dumps({str(k): int(v) for k, v in effects.items()}, sort_keys=True)

    @property
    def biome(self):
        return Biome.parse(self.current_biome)


class Location(db.Model):
    """A spawn point for encounters and a travel destination."""

    id = db.Column(db.String(64), primary_key=True)
    name = db.Column(db.String(160), nullable=False, default="")
    lat = db.Column(db.Float, nullable=True)
    lon = db.Column(db.Float, nullable=True)
    biome = db.Column(db.String(20), nullable=True)
    archived = db.Column(db.Boolean, nullable=False, default=False, index=True)
    # Per-location boss cooldown marker
    last_encounter_at = db.Column(db.BigInteger, nullable=True)


class BossEncounter(db.Model):
    """The global boss encounter (active row) and its immutable history (inactive rows)."""

    __tablename__ = "boss_encounter"

    id = db.Column(db.Integer, primary_key=True)
    location_id = db.Column(db.String(64), db.ForeignKey("location.id"), nullable=False, index=True)
    name = db.Column(db.String(160), nullable=False)
    max_hp = db.Column(db.Integer, nullable=False)
    hp = db.Column(db.Integer, nullable=False)
    tier = db.Column(db.Integer, nullable=False, default=1)
    started_at = db.Column(db.BigInteger, nullable=False)
    expires_at = db.Column(db.BigInteger, nullable=False, index=True)
    active = db.Column(db.Boolean, nullable=False, default=True, index=True)
    # 1..ceiling while active, NULL once inactive (NULLs never collide)
    active_slot = db.Column(db.Integer, nullable=True)
    __table_args__ = (db.UniqueConstraint("active_slot", name="uq_boss_active_slot"),)

    def to_dict(self):
        return {
            "id": self.id,
            "location_id": self.location_id,
            "name": self.name,
            "max_hp": self.max_hp,
            "hp": self.hp,
            "tier": self.tier,
            "started_at": self.started_at,
            "expires_at": self.expires_at,
            "active": bool(self.active),
        }


class EncounterParticipant(db.Model):
    """Join row between an encounter and a user who dealt damage to it."""

    __tablename__ = "encounter_participant"

    id = db.Column(db.Integer, primary_key=True)
    encounter_id = db.Column(db.Integer, nullable=False, index=True)
    user_id = db.Column(db.String(64), nullable=False, index=True)
    damage_dealt = db.Column(db.Integer, nullable=False, default=0)
    __table_args__ = (db.UniqueConstraint("encounter_id", "user_id", name="uq_participant_encounter_user"),)


class TravelHistoryEntry(db.Model):
    """Append-only record of a completed trip."""

    __tablename__ = "travel_history"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(64), nullable=False, index=True)
    from_location_id = db.Column(db.String(64), nullable=True)
    to_location_id = db.Column(db.String(64), nullable=False, index=True)
    from_name = db.Column(db.String(160), nullable=True)
    to_name = db.Column(db.String(160), nullable=True)
    duration_ms = db.Column(db.BigInteger, nullable=False)
    completed_at = db.Column(db.BigInteger, nullable=False, index=True)


class CooldownSetting(db.Model):
    """Generic key -> timestamp store (``last_global_defeat_at``, scheduler leases).

    ``holder`` is only set on lease rows: the worker that owns the lease until ``value``.
    """

    __tablename__ = "cooldown_setting"

    key = db.Column(db.String(80), primary_key=True)
    value = db.Column(db.BigInteger, nullable=False, default=0)
    updated_at = db.Column(db.BigInteger, nullable=False, default=0)
    holder = db.Column(db.String(64), nullable=True)


class Landmark(db.Model):
    """Point of interest reachable through a virtual ``landmark_<id>`` destination."""

    id = db.Column(db.String(64), primary_key=True)
    name = db.Column(db.String(160), nullable=False)
    lat = db.Column(db.Float, nullable=True)
    lon = db.Column(db.Float, nullable=True)
    country = db.Column(db.String(80), nullable=True)
    category = db.Column(db.String(40), nullable=True)
    discovery_reward = db.Column(db.Integer, nullable=False, default=0)


class LandmarkVisit(db.Model):
    __tablename__ = "landmark_visit"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(64), nullable=False, index=True)
    landmark_id = db.Column(db.String(64), nullable=False)
    visited_at = db.Column(db.BigInteger, nullable=False)
    __table_args__ = (db.UniqueConstraint("user_id", "landmark_id", name="uq_landmark_visit_user"),)


class FightingRoleGrant(db.Model):
    """Who currently holds the derived 'fighting' capability, per location."""

    __tablename__ = "fighting_role_grant"

    id = db.Column(db.Integer, primary_key=True)
    location_id = db.Column(db.String(64), nullable=False)
    user_id = db.Column(db.String(64), nullable=False, index=True)
    granted_at = db.Column(db.BigInteger, nullable=False, default=0)
    __table_args__ = (db.UniqueConstraint("location_id", "user_id", name="uq_fighting_role_location_user"),)


class RewardLedgerEntry(db.Model):
    __tablename__ = "reward_ledger"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(64), nullable=False, index=True)
    amount = db.Column(db.Integer, nullable=False)
    reason = db.Column(db.String(120), nullable=False)
    created_at = db.Column(db.BigInteger, nullable=False)


class GameConfig(db.Model):
    """Key/value style game configuration storage.

    Stores tunable engine constants (regen rates, boss timings, tier weights)
    so they can be adjusted without code changes. Values are persisted as
    JSON-serializable text and merged over code defaults when read.

    Example rows:
        key='regen', value='{"base_health_per_minute":2,"max_health":100}'
        key='boss', value='{"ceiling":1,"tier_weights":{"1":40,"2":30,"3":20,"4":8,"5":2}}'
    """

    __tablename__ = "game_config"

    id = db.Column(db.Integer, primary_key=True)
    key = db.Column(db.String(80), unique=True, nullable=False)
    value = db.Column(db.Text, nullable=False)

    @staticmethod
    def get(key: str):
        row = GameConfig.query.filter_by(key=key).first()
        return row.value if row else None

    @staticmethod
    def set(key: str, value: str):
        row = GameConfig.query.filter_by(key=key).first()
        if not row:
            row = GameConfig(key=key, value=value)
            db.session.add(row)
        else:
            row.value = value
        db.session.commit()
