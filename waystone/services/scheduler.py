"""Periodic driver for the world engine.

Each tick runs three phases in a fixed order:

    complete_due_travels -> apply_regen_to_all -> boss lifecycle cycle

Phases are isolated: a failure is logged, the session is rolled back and the
next phase still runs. The boss cycle only runs once ``boss_cycle_interval_ms``
has passed since the previous one (the first tick always runs it) and, when
``use_lease`` is on, only while this process holds the ``boss_cycle`` lease.

The lease is a ``CooldownSetting`` row ``lease:<name>`` whose value is the
lease expiry and whose ``holder`` is the owning driver. Acquiring is a
conditional UPDATE on an expired row (or one this holder already owns, which
renews it), or an INSERT that loses cleanly to a concurrent insert. A driver
releases its lease when ``run`` stops.
"""

from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional

from sqlalchemy import or_, update
from sqlalchemy.exc import IntegrityError

from waystone import db
from waystone.game_config import SchedulerSettings, load_scheduler_settings
from waystone.logging_utils import get_logger
from waystone.models import CooldownSetting
from waystone.utils.clock import now_ms, resolve_now

from .boss_service import BossLifecycleManager, CycleReport, SchedulerContext
from .hooks import (
    DbFightingRoles,
    DbLandmarkResolver,
    LedgerRewards,
    LoggingAchievements,
    LoggingChallenges,
    SocketIONotifier,
)
from .regen_service import RegenBatchReport, VitalsRegenerator
from .travel_service import TravelLifecycle

log = get_logger("waystone.scheduler")

BOSS_CYCLE_LEASE = "boss_cycle"


def _lease_key(name: str) -> str:
    return f"lease:{name}"


def acquire_lease(name: str, ttl_ms: int, now: Optional[int] = None, holder: Optional[str] = None) -> bool:
    """Take the named lease, or extend it when ``holder`` already owns it.

    Anonymous callers (``holder=None``) only get an expired lease.
    """
    now = resolve_now(now)
    key = _lease_key(name)
    takeable = CooldownSetting.value <= now
    if holder is not None:
        takeable = or_(takeable, CooldownSetting.holder == holder)
    result = db.session.execute(
        update(CooldownSetting)
        .where(CooldownSetting.key == key, takeable)
        .values(value=now + ttl_ms, updated_at=now, holder=holder)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 1:
        db.session.commit()
        return True
    if db.session.get(CooldownSetting, key) is not None:
        db.session.rollback()
        return False
    db.session.add(CooldownSetting(key=key, value=now + ttl_ms, updated_at=now, holder=holder))
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        return False
    return True


def release_lease(name: str, now: Optional[int] = None, holder: Optional[str] = None) -> None:
    """Expire the lease now. With ``holder`` set, only that holder's lease is released."""
    now = resolve_now(now)
    stmt = update(CooldownSetting).where(CooldownSetting.key == _lease_key(name))
    if holder is not None:
        stmt = stmt.where(CooldownSetting.holder == holder)
    db.session.execute(
        stmt.values(value=now, updated_at=now, holder=None).execution_options(synchronize_session=False)
    )
    db.session.commit()


@dataclass
class TickReport:
    tick: int
    now: int
    completed_travels: int = 0
    regen: Optional[RegenBatchReport] = None
    boss: Optional[CycleReport] = None
    boss_skipped: Optional[str] = None
    errors: Dict[str, str] = field(default_factory=dict)


class SchedulerDriver:
    def __init__(
        self,
        travel: TravelLifecycle,
        regen: VitalsRegenerator,
        boss: BossLifecycleManager,
        ctx: Optional[SchedulerContext] = None,
        settings: Optional[SchedulerSettings] = None,
        clock=now_ms,
        holder: Optional[str] = None,
    ):
        self.travel = travel
        self.regen = regen
        self.boss = boss
        self.ctx = ctx or SchedulerContext()
        self._settings = settings
        self._clock = clock
        self.holder = holder or uuid.uuid4().hex
        self.log = log.bind(worker=self.holder[:8])

    @property
    def settings(self) -> SchedulerSettings:
        return self._settings or load_scheduler_settings()

    def _phase(self, name: str, report: TickReport, fn: Callable, *args):
        try:
            return fn(*args)
        except Exception as exc:  # noqa: BLE001 - a failing phase must not stop the tick
            db.session.rollback()
            report.errors[name] = f"{type(exc).__name__}: {exc}"
            self.log.error(event="scheduler_phase_failed", phase=name, tick=report.tick, error=report.errors[name])
            return None

    def _boss_due(self, settings: SchedulerSettings, now: int) -> bool:
        last = self.ctx.last_boss_cycle_at
        return last is None or now - last >= settings.boss_cycle_interval_ms

    def _boss_cycle(self, settings: SchedulerSettings, now: int, report: TickReport) -> Optional[CycleReport]:
        if settings.use_lease and not acquire_lease(BOSS_CYCLE_LEASE, settings.lease_ttl_ms, now, holder=self.holder):
            report.boss_skipped = "lease_held"
            self.log.debug(event="boss_cycle_lease_held", tick=report.tick)
            return None
        return self.boss.run_lifecycle_cycle(self.ctx, now)

    def tick(self, now: Optional[int] = None) -> TickReport:
        now = resolve_now(now, self._clock)
        settings = self.settings
        self.ctx.ticks += 1
        report = TickReport(tick=self.ctx.ticks, now=now)

        completed = self._phase("travel", report, self.travel.complete_due_travels, now)
        report.completed_travels = len(completed or [])
        report.regen = self._phase("regen", report, self.regen.apply_regen_to_all, now)

        if self._boss_due(settings, now):
            report.boss = self._phase("boss", report, self._boss_cycle, settings, now, report)
            if "boss" in report.errors:
                # Count the attempt so a persistent failure does not retry every tick
                self.ctx.last_boss_cycle_at = now
        else:
            report.boss_skipped = "interval"

        self.log.debug(
            event="scheduler_tick",
            tick=report.tick,
            travels=report.completed_travels,
            regen_updated=report.regen.updated if report.regen else None,
            boss_spawned=report.boss.spawned_id if report.boss else None,
            errors=len(report.errors) or None,
        )
        return report

    def run(self, stop_event: threading.Event, sleep: Optional[Callable[[float], object]] = None) -> None:
        """Tick every ``tick_seconds`` until ``stop_event`` is set. Caller owns the app context."""
        wait = sleep or stop_event.wait
        self.log.info(event="scheduler_started", tick_seconds=self.settings.tick_seconds)
        while not stop_event.is_set():
            self.tick()
            wait(self.settings.tick_seconds)
        if self.settings.use_lease:
            release_lease(BOSS_CYCLE_LEASE, now=self._clock(), holder=self.holder)
        self.log.info(event="scheduler_stopped", ticks=self.ctx.ticks)


def build_default_driver(ctx: Optional[SchedulerContext] = None, rng=None, holder: Optional[str] = None) -> SchedulerDriver:
    """Driver wired to the built-in collaborators from ``hooks``."""
    travel = TravelLifecycle(
        rewards=LedgerRewards(),
        achievements=LoggingAchievements(),
        challenges=LoggingChallenges(),
        landmarks=DbLandmarkResolver(),
    )
    boss = BossLifecycleManager(roles=DbFightingRoles(), notifier=SocketIONotifier(), rng=rng)
    return SchedulerDriver(travel=travel, regen=VitalsRegenerator(), boss=boss, ctx=ctx, holder=holder)


__all__ = [
    "BOSS_CYCLE_LEASE",
    "SchedulerContext",
    "SchedulerDriver",
    "TickReport",
    "acquire_lease",
    "build_default_driver",
    "release_lease",
]
