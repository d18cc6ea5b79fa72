"""World API blueprint.

Read-only JSON views over the engine state: the active boss encounters and a
player's regeneration status. Business logic stays in the services.
"""

from __future__ import annotations

from flask import Blueprint, jsonify

from waystone import db
from waystone.models import Location
from waystone.services.boss_service import BossLifecycleManager
from waystone.services.hooks import DbFightingRoles, SocketIONotifier
from waystone.services.regen_service import VitalsRegenerator

bp_world = Blueprint("world", __name__)


@bp_world.route("/api/world/boss", methods=["GET"])
def boss_status():
    manager = BossLifecycleManager(roles=DbFightingRoles(), notifier=SocketIONotifier())
    encounters = []
    for enc in manager.active_encounters():
        data = enc.to_dict()
        loc = db.session.get(Location, enc.location_id)
        data["location_name"] = loc.name if loc else None
        encounters.append(data)
    return jsonify({"ok": True, "encounters": encounters})


@bp_world.route("/api/world/regen/<user_id>", methods=["GET"])
def regen_status(user_id: str):
    status = VitalsRegenerator().get_regen_status(user_id)
    if status is None:
        return jsonify({"error": "not_found"}), 404
    return jsonify({"ok": True, "status": status})
