"""Travel completion lifecycle.

Starting a trip (setting ``travel_from_location_id``, ``travel_start_at`` and
``travel_arrival_at``) belongs to the command layer. This module owns the
other half: noticing that a trip is due and completing it exactly once.

States: Idle (``travel_arrival_at == 0``) -> InTransit (``> 0``) -> Idle.

``complete_due_travels`` selects and claims due rows inside one transaction.
Each claim is a conditional UPDATE keyed on the arrival value that was read,
so a concurrent runner that read the same row gets rowcount 0 and skips it.
Every trip runs in its own SAVEPOINT; one that fails is abandoned alone.
Rewards, achievement checks and challenge progress only run after the commit
and are best-effort.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from sqlalchemy import func, update

from waystone import db
from waystone.game_config import TravelSettings, load_travel_settings
from waystone.logging_utils import get_logger
from waystone.models import Location, Player, TravelHistoryEntry
from waystone.utils.clock import DAY_MS, now_ms, resolve_now

from .best_effort import best_effort
from .hooks import AchievementHook, ChallengeHook, LandmarkResolver, RewardHook

log = get_logger("waystone.travel")


@dataclass
class CompletedTravel:
    user_id: str
    from_location_id: Optional[str]
    to_location_id: str
    duration_ms: int
    final_location_id: Optional[str]
    first_visit: bool = False
    landmark_id: Optional[str] = None
    destination_name: Optional[str] = None
    discovery_reward: Optional[int] = None


def is_traveling(player: Player, now: int) -> bool:
    return (player.travel_arrival_at or 0) > now


class TravelLifecycle:
    def __init__(
        self,
        rewards: RewardHook,
        achievements: AchievementHook,
        challenges: ChallengeHook,
        landmarks: LandmarkResolver,
        settings: Optional[TravelSettings] = None,
        clock=now_ms,
    ):
        self.rewards = rewards
        self.achievements = achievements
        self.challenges = challenges
        self.landmarks = landmarks
        self._settings = settings
        self._clock = clock

    @property
    def settings(self) -> TravelSettings:
        return self._settings or load_travel_settings()

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------

    def _home_for(self, origin_id: Optional[str], settings: TravelSettings) -> Optional[str]:
        """Origin if it is a known location, else the configured default."""
        if origin_id and db.session.get(Location, origin_id) is not None:
            return origin_id
        log.warn(event="travel_origin_unknown", origin=origin_id, fallback=settings.default_location_id)
        return settings.default_location_id

    def _location_name(self, location_id: Optional[str]) -> Optional[str]:
        if not location_id:
            return None
        loc = db.session.get(Location, location_id)
        return loc.name if loc and loc.name else location_id

    def _claim(self, player: Player, arrival_at: int, final_location_id: Optional[str]) -> bool:
        result = db.session.execute(
            update(Player)
            .where(Player.user_id == player.user_id, Player.travel_arrival_at == arrival_at)
            .values(travel_arrival_at=0, last_arrival_at=arrival_at, location_id=final_location_id)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def _abandon(self, user_id: str, arrival_at: int) -> None:
        db.session.execute(
            update(Player)
            .where(Player.user_id == user_id, Player.travel_arrival_at == arrival_at)
            .values(travel_arrival_at=0, last_arrival_at=arrival_at)
            .execution_options(synchronize_session=False)
        )

    def _complete_one(self, player: Player, settings: TravelSettings, now: int) -> Optional[CompletedTravel]:
        arrival_at = int(player.travel_arrival_at)
        origin_id = player.travel_from_location_id
        destination_id = player.location_id
        if not destination_id:
            destination_id = self._home_for(origin_id, settings)
            log.warn(event="travel_destination_missing", user_id=player.user_id, fallback=destination_id)
            if destination_id is None:
                raise ValueError("trip has no destination and no fallback location")
        duration_ms = max(0, arrival_at - int(player.travel_start_at or 0))
        landmark_id = settings.landmark_id(destination_id)
        # Landmarks are visited, not stayed at: the traveller goes back home
        final_location_id = (self._home_for(origin_id, settings) or destination_id) if landmark_id else destination_id

        if not self._claim(player, arrival_at, final_location_id):
            log.info(event="travel_already_claimed", user_id=player.user_id)
            return None

        first_visit = False
        discovery_reward = None
        if landmark_id is not None:
            poi = self.landmarks.resolve_landmark(landmark_id)
            if poi is not None:
                destination_name = getattr(poi, "name", None)
                discovery_reward = getattr(poi, "discovery_reward", None)
                first_visit = bool(self.landmarks.record_first_visit(player.user_id, landmark_id))
            else:
                destination_name = None
                log.warn(event="landmark_unknown", user_id=player.user_id, landmark_id=landmark_id)
        else:
            destination_name = self._location_name(destination_id)
            previous = (
                db.session.query(func.count(TravelHistoryEntry.id))
                .filter(
                    TravelHistoryEntry.user_id == player.user_id,
                    TravelHistoryEntry.to_location_id == destination_id,
                )
                .scalar()
            )
            first_visit = previous == 0

        db.session.add(
            TravelHistoryEntry(
                user_id=player.user_id,
                from_location_id=origin_id,
                to_location_id=destination_id,
                from_name=self._location_name(origin_id),
                to_name=destination_name or destination_id,
                duration_ms=duration_ms,
                completed_at=now,
            )
        )
        if first_visit and landmark_id is None:
            db.session.execute(
                update(Player)
                .where(Player.user_id == player.user_id)
                .values(locations_visited=Player.locations_visited + 1)
                .execution_options(synchronize_session=False)
            )
        return CompletedTravel(
            user_id=player.user_id,
            from_location_id=origin_id,
            to_location_id=destination_id,
            duration_ms=duration_ms,
            final_location_id=final_location_id,
            first_visit=first_visit,
            landmark_id=landmark_id,
            destination_name=destination_name,
            discovery_reward=discovery_reward,
        )

    def complete_due_travels(self, now: Optional[int] = None) -> List[CompletedTravel]:
        """Complete every trip whose arrival time has passed. Safe to call every tick.

        Each trip runs in its own SAVEPOINT. A trip that fails is rolled back,
        logged and abandoned (arrival cleared, location left as is) so it
        cannot block the other trips now or on later ticks.
        """
        now = resolve_now(now, self._clock)
        settings = self.settings
        completed: List[CompletedTravel] = []
        failed = 0
        try:
            due = (
                Player.query.filter(Player.travel_arrival_at > 0, Player.travel_arrival_at <= now)
                .order_by(Player.travel_arrival_at.asc())
                .with_for_update()
                .all()
            )
            for player in due:
                user_id, arrival_at = player.user_id, int(player.travel_arrival_at)
                try:
                    with db.session.begin_nested():
                        done = self._complete_one(player, settings, now)
                except Exception as exc:  # noqa: BLE001 - one bad trip must not block the batch
                    failed += 1
                    log.warn(event="travel_completion_failed", user_id=user_id, error=f"{type(exc).__name__}: {exc}")
                    self._abandon(user_id, arrival_at)
                    continue
                if done is not None:
                    completed.append(done)
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise
        # Claims used bulk UPDATEs; drop stale identity-map copies
        db.session.expire_all()
        if failed:
            log.error(event="travel_batch_failures", failed=failed, due=len(completed) + failed)

        for done in completed:
            log.info(
                event="travel_completed",
                user_id=done.user_id,
                origin=done.from_location_id,
                destination=done.to_location_id,
                duration_ms=done.duration_ms,
                first_visit=done.first_visit,
            )
            self._after_commit(done, settings)
        return completed

    def _after_commit(self, done: CompletedTravel, settings: TravelSettings) -> None:
        context = {"user_id": done.user_id, "destination": done.to_location_id}
        if done.first_visit:
            reward = int(done.discovery_reward or 0) or settings.first_visit_reward
            reason = f"first_visit:{done.to_location_id}"
            best_effort("first_visit_reward", self.rewards.award_currency_or_gems, done.user_id, reward, reason, **context)
        best_effort("achievements", self.achievements.check_achievements, done.user_id, "travel", **context)
        best_effort("challenge_progress", self.challenges.update_challenge_progress, done.user_id, "travel", 1, **context)

    # ------------------------------------------------------------------
    # History queries
    # ------------------------------------------------------------------

    def get_travel_history(self, user_id: str, limit: int = 10) -> List[TravelHistoryEntry]:
        return (
            TravelHistoryEntry.query.filter_by(user_id=user_id)
            .order_by(TravelHistoryEntry.completed_at.desc(), TravelHistoryEntry.id.desc())
            .limit(limit)
            .all()
        )

    def get_travel_stats(self, user_id: str, now: Optional[int] = None) -> Dict[str, Any]:
        """Aggregate travel numbers for a profile view."""
        now = resolve_now(now, self._clock)
        total, unique, total_time, avg_time = (
            db.session.query(
                func.count(TravelHistoryEntry.id),
                func.count(func.distinct(TravelHistoryEntry.to_location_id)),
                func.coalesce(func.sum(TravelHistoryEntry.duration_ms), 0),
                func.coalesce(func.avg(TravelHistoryEntry.duration_ms), 0),
            )
            .filter(TravelHistoryEntry.user_id == user_id)
            .one()
        )
        visits = func.count(TravelHistoryEntry.id).label("visits")
        top = (
            db.session.query(TravelHistoryEntry.to_location_id, func.max(TravelHistoryEntry.to_name), visits)
            .filter(TravelHistoryEntry.user_id == user_id)
            .group_by(TravelHistoryEntry.to_location_id)
            .order_by(visits.desc(), TravelHistoryEntry.to_location_id.asc())
            .limit(5)
            .all()
        )
        recent = (
            db.session.query(func.count(TravelHistoryEntry.id))
            .filter(TravelHistoryEntry.user_id == user_id, TravelHistoryEntry.completed_at > now - 7 * DAY_MS)
            .scalar()
        )
        return {
            "total_travels": int(total or 0),
            "unique_destinations": int(unique or 0),
            "total_travel_time_ms": int(total_time or 0),
            "avg_travel_time_ms": int(round(float(avg_time or 0))),
            "top_destinations": [
                {"location_id": loc_id, "name": name or loc_id, "visits": int(n)} for loc_id, name, n in top
            ],
            "recent_travels": int(recent or 0),
        }


__all__ = ["CompletedTravel", "TravelLifecycle", "is_traveling"]
