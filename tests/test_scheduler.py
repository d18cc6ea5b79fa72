import threading

from waystone import db, socketio
from waystone.game_config import SchedulerSettings
from waystone.models import BossEncounter, CooldownSetting, Player, RewardLedgerEntry
from waystone.services.boss_service import CycleReport, SchedulerContext
from waystone.services.regen_service import RegenBatchReport
from waystone.services.scheduler import (
    BOSS_CYCLE_LEASE,
    SchedulerDriver,
    acquire_lease,
    build_default_driver,
    release_lease,
)
from waystone.utils.clock import MINUTE_MS

from tests.factories import create_location, create_player, start_travel

NO_LEASE = SchedulerSettings(tick_seconds=1, boss_cycle_interval_ms=0, use_lease=False)


class _Recorder:
    """Stands in for all three services and records call order."""

    def __init__(self, fail=()):
        self.calls = []
        self.fail = set(fail)

    def _hit(self, name):
        self.calls.append(name)
        if name in self.fail:
            raise RuntimeError(f"{name} exploded")

    def complete_due_travels(self, now=None):
        self._hit("travel")
        return []

    def apply_regen_to_all(self, now=None):
        self._hit("regen")
        return RegenBatchReport(processed=1, updated=1)

    def run_lifecycle_cycle(self, ctx, now=None):
        self._hit("boss")
        ctx.boss_cycles += 1
        ctx.last_boss_cycle_at = now
        return CycleReport()


def _driver(rec, settings=NO_LEASE, ctx=None):
    return SchedulerDriver(travel=rec, regen=rec, boss=rec, ctx=ctx, settings=settings)


def test_tick_runs_phases_in_order(t0):
    rec = _Recorder()
    report = _driver(rec).tick(now=t0)
    assert rec.calls == ["travel", "regen", "boss"]
    assert report.tick == 1
    assert report.errors == {}


def test_failing_phase_does_not_stop_the_tick(t0):
    rec = _Recorder(fail={"travel"})
    report = _driver(rec).tick(now=t0)
    assert rec.calls == ["travel", "regen", "boss"]
    assert "travel" in report.errors
    assert report.regen.updated == 1
    assert report.boss is not None


def test_boss_cycle_interval(t0):
    rec = _Recorder()
    settings = SchedulerSettings(tick_seconds=1, boss_cycle_interval_ms=10 * MINUTE_MS, use_lease=False)
    ctx = SchedulerContext()
    driver = _driver(rec, settings=settings, ctx=ctx)
    driver.tick(now=t0)
    skipped = driver.tick(now=t0 + MINUTE_MS)
    driver.tick(now=t0 + 10 * MINUTE_MS)
    assert rec.calls.count("boss") == 2
    assert skipped.boss_skipped == "interval"
    assert ctx.ticks == 3


def test_lease_acquire_and_expiry(t0):
    assert acquire_lease("job", 5 * MINUTE_MS, now=t0) is True
    assert acquire_lease("job", 5 * MINUTE_MS, now=t0 + MINUTE_MS) is False
    assert acquire_lease("job", 5 * MINUTE_MS, now=t0 + 5 * MINUTE_MS) is True
    release_lease("job", now=t0 + 6 * MINUTE_MS)
    assert acquire_lease("job", 5 * MINUTE_MS, now=t0 + 6 * MINUTE_MS) is True


def test_lease_holder_renews_and_releases(t0):
    ttl = 5 * MINUTE_MS
    assert acquire_lease("job", ttl, now=t0, holder="a") is True
    assert acquire_lease("job", ttl, now=t0 + MINUTE_MS, holder="a") is True
    assert acquire_lease("job", ttl, now=t0 + 2 * MINUTE_MS, holder="b") is False
    # Renewed at +1 min, so still live past the first expiry
    assert acquire_lease("job", ttl, now=t0 + 5 * MINUTE_MS, holder="b") is False
    release_lease("job", now=t0 + 5 * MINUTE_MS, holder="b")
    assert acquire_lease("job", ttl, now=t0 + 5 * MINUTE_MS, holder="b") is False
    release_lease("job", now=t0 + 5 * MINUTE_MS, holder="a")
    assert acquire_lease("job", ttl, now=t0 + 5 * MINUTE_MS, holder="b") is True
    assert db.session.get(CooldownSetting, "lease:job").holder == "b"


def test_held_lease_skips_boss_cycle(t0):
    acquire_lease(BOSS_CYCLE_LEASE, 5 * MINUTE_MS, now=t0, holder="other-worker")
    rec = _Recorder()
    settings = SchedulerSettings(tick_seconds=1, boss_cycle_interval_ms=0, use_lease=True, lease_ttl_ms=5 * MINUTE_MS)
    report = _driver(rec, settings=settings).tick(now=t0 + MINUTE_MS)
    assert "boss" not in rec.calls
    assert report.boss_skipped == "lease_held"


def test_run_stops_when_event_set(t0):
    rec = _Recorder()
    driver = _driver(rec)
    stop = threading.Event()
    driver.run(stop, sleep=lambda seconds: stop.set())
    assert driver.ctx.ticks == 1


def test_default_driver_end_to_end(t0, monkeypatch):
    emitted = []
    monkeypatch.setattr(socketio, "emit", lambda event, payload, **kw: emitted.append((event, kw.get("namespace"))))
    create_location("home", biome="city")
    create_location("cave", biome="mountain")
    traveller = create_player("walker", now=t0 - 10 * MINUTE_MS, location_id="home")
    start_travel(traveller, "cave", start_at=t0 - 10 * MINUTE_MS, arrival_at=t0 - MINUTE_MS)
    create_player("resting", now=t0 - 10 * MINUTE_MS, health=10, stamina=10)

    report = build_default_driver().tick(now=t0)

    assert report.errors == {}
    assert report.completed_travels == 1
    db.session.expire_all()
    walker = db.session.get(Player, "walker")
    assert walker.location_id == "cave" and walker.travel_arrival_at == 0
    assert walker.gems == 2
    assert RewardLedgerEntry.query.filter_by(user_id="walker").count() == 1
    assert db.session.get(Player, "resting").health == 30
    (enc,) = BossEncounter.query.filter_by(active=True).all()
    assert enc.location_id == "cave"
    assert ("boss_spawned", "/world") in emitted


def test_default_driver_runs_boss_cycle_every_tick(t0):
    driver = build_default_driver()
    first = driver.tick(now=t0)
    second = driver.tick(now=t0 + MINUTE_MS)
    third = driver.tick(now=t0 + 2 * MINUTE_MS)
    assert [r.boss_skipped for r in (first, second, third)] == [None, None, None]
    assert all(r.boss is not None for r in (first, second, third))
    assert driver.ctx.boss_cycles == 3


def test_second_driver_waits_for_live_lease(t0):
    leader = build_default_driver(holder="leader")
    follower = build_default_driver(holder="follower")
    leader.tick(now=t0)
    assert follower.tick(now=t0 + MINUTE_MS).boss_skipped == "lease_held"
    leader.tick(now=t0 + 2 * MINUTE_MS)
    assert follower.tick(now=t0 + 6 * MINUTE_MS).boss_skipped == "lease_held"
    # Leader stopped renewing at +2 min; its lease lapses at +7 min
    taken = follower.tick(now=t0 + 7 * MINUTE_MS)
    assert taken.boss is not None
    assert follower.ctx.boss_cycles == 1


def test_run_releases_lease_on_stop(t0):
    settings = SchedulerSettings(tick_seconds=1, boss_cycle_interval_ms=0, use_lease=True, lease_ttl_ms=5 * MINUTE_MS)
    rec = _Recorder()
    driver = SchedulerDriver(travel=rec, regen=rec, boss=rec, settings=settings, clock=lambda: t0, holder="w1")
    stop = threading.Event()
    driver.run(stop, sleep=lambda seconds: stop.set())
    assert rec.calls == ["travel", "regen", "boss"]
    assert acquire_lease(BOSS_CYCLE_LEASE, 5 * MINUTE_MS, now=t0, holder="w2") is True
