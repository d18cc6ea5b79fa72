import json
import logging

from waystone import db, socketio
from waystone.game_config import DEFAULT_ROWS
from waystone.logging_utils import get_logger
from waystone.models import FightingRoleGrant, GameConfig, Player, RewardLedgerEntry
from waystone.server import _configure_logging, _run_migrations, _seed_game_config
from waystone.services.best_effort import best_effort
from waystone.services.hooks import DbFightingRoles, LedgerRewards, SocketIONotifier

from tests.factories import create_player


def test_seed_writes_defaults_once():
    assert {row.key for row in GameConfig.query.all()} == set(DEFAULT_ROWS)
    GameConfig.set("boss", json.dumps({"ceiling": 3}))
    _seed_game_config()
    assert json.loads(GameConfig.get("boss")) == {"ceiling": 3}
    assert GameConfig.query.count() == len(DEFAULT_ROWS)


def test_migrations_are_a_noop_on_fresh_schema(capsys):
    _run_migrations()
    assert "migrations_applied" not in capsys.readouterr().out


def test_configure_logging_replaces_handlers(test_app, tmp_path, monkeypatch):
    monkeypatch.setattr(test_app, "instance_path", str(tmp_path))
    root = logging.getLogger()
    saved = list(root.handlers)
    try:
        _configure_logging(test_app)
        _configure_logging(test_app)
        assert len(root.handlers) == 2
        assert (tmp_path / "app.log").exists()
    finally:
        for h in list(root.handlers):
            root.removeHandler(h)
            h.close()
        for h in saved:
            root.addHandler(h)


def test_logger_key_value_and_json(monkeypatch, capsys):
    log = get_logger("waystone.test")
    log.info(event="boss spawned", tier=2, skipped=None)
    line = capsys.readouterr().out.strip()
    assert "level=info" in line
    assert "event=boss_spawned" in line and "tier=2" in line
    assert "skipped" not in line

    monkeypatch.setenv("WAYSTONE_LOG_JSON", "1")
    log.info(event="tick", tick=3)
    rec = json.loads(capsys.readouterr().out)
    assert rec["event"] == "tick" and rec["tick"] == 3 and rec["logger"] == "waystone.test"

    monkeypatch.setenv("WAYSTONE_LOG_LEVEL", "warn")
    log.info(event="hidden")
    assert capsys.readouterr().out == ""


def test_best_effort_reports_failure(capsys):
    def boom(user_id):
        raise RuntimeError("down")

    result = best_effort("reward", boom, "u1", encounter_id=7)
    assert result.ok is False
    assert "down" in result.error
    assert best_effort("noop", lambda: 5).value == 5


def test_ledger_rewards_credit_gems():
    create_player("u1")
    rewards = LedgerRewards()
    assert rewards.award_currency_or_gems("u1", 3, "first_visit:x") is True
    assert rewards.award_currency_or_gems("u1", 0, "nothing") is False
    db.session.expire_all()
    assert db.session.get(Player, "u1").gems == 3
    assert RewardLedgerEntry.query.one().reason == "first_visit:x"


def test_db_fighting_roles():
    roles = DbFightingRoles()
    assert roles.grant_fighting_role("a", "u1") is True
    assert roles.grant_fighting_role("a", "u1") is False
    roles.grant_fighting_role("b", "u2")
    assert roles.holders() == [("a", "u1"), ("b", "u2")]
    assert roles.revoke_fighting_role("a", "u1") is True
    assert roles.revoke_fighting_role("a", "u1") is False
    assert FightingRoleGrant.query.count() == 1


def test_socketio_notifier_emits_on_world_namespace(monkeypatch):
    sent = []
    monkeypatch.setattr(socketio, "emit", lambda event, payload, namespace=None: sent.append((event, payload, namespace)))
    SocketIONotifier().notify("boss_defeated", {"id": 1})
    assert sent == [("boss_defeated", {"id": 1}, "/world")]


def test_bound_logger_repeats_context(capsys):
    base = get_logger("waystone.bound")
    worker = base.bind(worker="w1", zone="north")
    worker.info(event="tick", zone="south", done=True)
    line = capsys.readouterr().out.strip()
    assert "worker=w1" in line
    assert "zone=south" in line and "zone=north" not in line
    assert "done=true" in line
    base.info(event="plain")
    assert "worker=" not in capsys.readouterr().out
    assert get_logger("waystone.bound") is base
