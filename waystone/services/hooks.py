"""Collaborator interfaces consumed by the engine, plus default implementations.

The lifecycle services never import reward, achievement or notification code
directly; they receive objects satisfying these protocols at construction
time. The defaults below are what ``build_default_driver`` wires in: they
persist to the engine's own tables or emit over Socket.IO. Deployments with a
real chat platform swap in their own objects (e.g. role grants via a bot API).
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional, Protocol, Tuple

from sqlalchemy import update

from waystone import db, socketio
from waystone.logging_utils import get_logger
from waystone.models import FightingRoleGrant, Landmark, LandmarkVisit, Player, RewardLedgerEntry
from waystone.utils.clock import now_ms

log = get_logger("waystone.hooks")


def _commit_or_rollback() -> None:
    # Hooks run after the caller's commit; leave the session clean for the next one
    try:
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise


class RewardHook(Protocol):
    def award_currency_or_gems(self, user_id: str, amount: int, reason: str) -> Any: ...


class AchievementHook(Protocol):
    def check_achievements(self, user_id: str, category: str) -> Any: ...


class ChallengeHook(Protocol):
    def update_challenge_progress(self, user_id: str, kind: str, delta: int) -> Any: ...


class LandmarkResolver(Protocol):
    def resolve_landmark(self, landmark_id: str) -> Optional[Any]: ...

    def record_first_visit(self, user_id: str, poi_id: str) -> bool: ...


class Notifier(Protocol):
    def notify(self, event: str, payload: Dict[str, Any]) -> Any: ...


class FightingRoles(Protocol):
    def grant_fighting_role(self, location_id: str, user_id: str) -> Any: ...

    def revoke_fighting_role(self, location_id: str, user_id: str) -> Any: ...

    def holders(self) -> Iterable[Tuple[str, str]]: ...


class LedgerRewards:
    """Credit gems to ``Player.gems`` and keep a ledger row per award."""

    def award_currency_or_gems(self, user_id: str, amount: int, reason: str) -> bool:
        if amount <= 0:
            return False
        db.session.add(RewardLedgerEntry(user_id=user_id, amount=int(amount), reason=reason, created_at=now_ms()))
        db.session.execute(update(Player).where(Player.user_id == user_id).values(gems=Player.gems + int(amount)))
        _commit_or_rollback()
        log.info(event="reward_granted", user_id=user_id, amount=amount, reason=reason)
        return True


class LoggingAchievements:
    """Achievement content lives outside the engine; record the trigger only."""

    def check_achievements(self, user_id: str, category: str) -> None:
        log.debug(event="achievement_check", user_id=user_id, category=category)


class LoggingChallenges:
    def update_challenge_progress(self, user_id: str, kind: str, delta: int) -> None:
        log.debug(event="challenge_progress", user_id=user_id, kind=kind, delta=delta)


class DbLandmarkResolver:
    """Landmarks from the ``landmark`` table.

    ``record_first_visit`` runs inside the travel-completion transaction and
    therefore only adds to the session; the caller commits.
    """

    def resolve_landmark(self, landmark_id: str) -> Optional[Landmark]:
        return db.session.get(Landmark, landmark_id)

    def record_first_visit(self, user_id: str, poi_id: str) -> bool:
        seen = LandmarkVisit.query.filter_by(user_id=user_id, landmark_id=poi_id).first()
        if seen:
            return False
        db.session.add(LandmarkVisit(user_id=user_id, landmark_id=poi_id, visited_at=now_ms()))
        return True


class SocketIONotifier:
    """Broadcast engine events to connected clients on the ``/world`` namespace."""

    namespace = "/world"

    def notify(self, event: str, payload: Dict[str, Any]) -> None:
        socketio.emit(event, payload, namespace=self.namespace)


class DbFightingRoles:
    """Fighting capability tracked in ``fighting_role_grant``."""

    def grant_fighting_role(self, location_id: str, user_id: str) -> bool:
        exists = FightingRoleGrant.query.filter_by(location_id=location_id, user_id=user_id).first()
        if exists:
            return False
        db.session.add(FightingRoleGrant(location_id=location_id, user_id=user_id, granted_at=now_ms()))
        _commit_or_rollback()
        return True

    def revoke_fighting_role(self, location_id: str, user_id: str) -> bool:
        removed = FightingRoleGrant.query.filter_by(location_id=location_id, user_id=user_id).delete()
        _commit_or_rollback()
        return bool(removed)

    def holders(self) -> List[Tuple[str, str]]:
        rows = FightingRoleGrant.query.order_by(FightingRoleGrant.id.asc()).all()
        return [(r.location_id, r.user_id) for r in rows]


__all__ = [
    "AchievementHook",
    "ChallengeHook",
    "DbFightingRoles",
    "DbLandmarkResolver",
    "FightingRoles",
    "LandmarkResolver",
    "LedgerRewards",
    "LoggingAchievements",
    "LoggingChallenges",
    "Notifier",
    "RewardHook",
    "SocketIONotifier",
]
