"""Test data factories and recording collaborators.

Usage examples:
    from tests.factories import create_player, create_location, start_travel

    def test_something(t0):
        create_location("forest-1", biome="forest")
        p = create_player("alice", location_id="home", now=t0)
        start_travel(p, "forest-1", start_at=t0, arrival_at=t0 + 60_000)
"""

from __future__ import annotations

from typing import Optional

from waystone import db
from waystone.models import BossEncounter, EncounterParticipant, Landmark, Location, Player


def create_player(user_id: str = "u1", now: int = 0, **kw) -> Player:
    fields = dict(
        user_id=user_id,
        name=user_id.title(),
        health=100.0,
        stamina=100.0,
        health_updated_at=now,
        stamina_updated_at=now,
        current_biome="city",
        regen_effects="{}",
        created_at=now,
    )
    fields.update(kw)
    p = Player(**fields)
    db.session.add(p)
    db.session.commit()
    return p


def create_location(loc_id: str, name: Optional[str] = None, biome: str = "forest", lat=45.0, lon=-73.0, **kw) -> Location:
    loc = Location(id=loc_id, name=name or loc_id.replace("-", " ").title(), biome=biome, lat=lat, lon=lon, **kw)
    db.session.add(loc)
    db.session.commit()
    return loc


def create_landmark(poi_id: str, name: str = "Old Lighthouse", discovery_reward: int = 0) -> Landmark:
    lm = Landmark(id=poi_id, name=name, lat=1.0, lon=2.0, country="CA", category="monument", discovery_reward=discovery_reward)
    db.session.add(lm)
    db.session.commit()
    return lm


def start_travel(player: Player, destination: str, start_at: int, arrival_at: int, origin: Optional[str] = None) -> Player:
    """Put ``player`` in transit the way the travel command does."""
    player.travel_from_location_id = origin if origin is not None else player.location_id
    player.location_id = destination
    player.travel_start_at = start_at
    player.travel_arrival_at = arrival_at
    db.session.commit()
    return player


def create_encounter(location_id: str, now: int, ttl_ms: int = 3_600_000, slot: Optional[int] = 1, **kw) -> BossEncounter:
    fields = dict(
        location_id=location_id,
        name="Test Beast",
        max_hp=2000,
        hp=2000,
        tier=1,
        started_at=now,
        expires_at=now + ttl_ms,
        active=True,
        active_slot=slot,
    )
    fields.update(kw)
    enc = BossEncounter(**fields)
    db.session.add(enc)
    db.session.commit()
    return enc


def add_participant(encounter: BossEncounter, user_id: str, damage: int = 10) -> EncounterParticipant:
    p = EncounterParticipant(encounter_id=encounter.id, user_id=user_id, damage_dealt=damage)
    db.session.add(p)
    db.session.commit()
    return p


# ---------------------------------------------------------------------------
# Recording collaborators
# ---------------------------------------------------------------------------


class RecordingRewards:
    def __init__(self, fail: bool = False):
        self.calls = []
        self.fail = fail

    def award_currency_or_gems(self, user_id, amount, reason):
        if self.fail:
            raise RuntimeError("reward service down")
        self.calls.append((user_id, amount, reason))
        return True


class RecordingAchievements:
    def __init__(self):
        self.calls = []

    def check_achievements(self, user_id, category):
        self.calls.append((user_id, category))


class RecordingChallenges:
    def __init__(self):
        self.calls = []

    def update_challenge_progress(self, user_id, kind, delta):
        self.calls.append((user_id, kind, delta))


class RecordingNotifier:
    def __init__(self, fail: bool = False):
        self.events = []
        self.fail = fail

    def notify(self, event, payload):
        if self.fail:
            raise RuntimeError("socket closed")
        self.events.append((event, payload))


class MemoryRoles:
    """In-memory capability store; ``fail_revoke_for`` makes revokes for those users raise."""

    def __init__(self, fail_revoke_for=()):
        self.granted = set()
        self.revoked = []
        self.fail_revoke_for = set(fail_revoke_for)

    def grant_fighting_role(self, location_id, user_id):
        self.granted.add((location_id, user_id))
        return True

    def revoke_fighting_role(self, location_id, user_id):
        if user_id in self.fail_revoke_for:
            raise RuntimeError("permission denied")
        self.revoked.append((location_id, user_id))
        self.granted.discard((location_id, user_id))
        return True

    def holders(self):
        return sorted(self.granted)


class FakeRandom:
    """Deterministic stand-in for ``random``: scripted ``random()`` values, first-item ``choice``."""

    def __init__(self, values=(0.0,), pick: int = 0):
        self.values = list(values)
        self.pick = pick
        self._i = 0

    def random(self):
        v = self.values[self._i % len(self.values)]
        self._i += 1
        return v

    def choice(self, seq):
        return seq[min(self.pick, len(seq) - 1)]
