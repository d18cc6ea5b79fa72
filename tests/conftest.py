import os
import sys

import pytest

# Ensure repository root importable early
ROOT_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT_DIR not in sys.path:
    sys.path.insert(0, ROOT_DIR)

from waystone import create_app, db  # noqa: E402
from waystone.services.boss_service import BossLifecycleManager  # noqa: E402
from waystone.services.travel_service import TravelLifecycle  # noqa: E402

from tests.factories import (  # noqa: E402
    FakeRandom,
    MemoryRoles,
    RecordingAchievements,
    RecordingChallenges,
    RecordingNotifier,
    RecordingRewards,
)

T0 = 1_700_000_000_000  # fixed "now" for deterministic tests


@pytest.fixture()
def test_app():
    """Fresh in-memory database per test."""
    app = create_app(
        {
            "SQLALCHEMY_DATABASE_URI": "sqlite://",
            "TESTING": True,
            "SPAWN_LOCATION_ID": "home",
            "DEFAULT_LOCATION_ID": None,
        }
    )
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture(autouse=True)
def _push_app_context(test_app):
    ctx = test_app.app_context()
    ctx.push()
    try:
        yield
    finally:
        ctx.pop()


@pytest.fixture()
def client(test_app):
    return test_app.test_client()


@pytest.fixture()
def t0():
    return T0


@pytest.fixture()
def rewards():
    return RecordingRewards()


@pytest.fixture()
def travel(rewards):
    from waystone.services.hooks import DbLandmarkResolver

    return TravelLifecycle(
        rewards=rewards,
        achievements=RecordingAchievements(),
        challenges=RecordingChallenges(),
        landmarks=DbLandmarkResolver(),
    )


@pytest.fixture()
def roles():
    return MemoryRoles()


@pytest.fixture()
def notifier():
    return RecordingNotifier()


@pytest.fixture()
def boss(roles, notifier):
    return BossLifecycleManager(roles=roles, notifier=notifier, rng=FakeRandom())
