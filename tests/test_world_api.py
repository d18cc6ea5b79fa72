from waystone.utils.clock import now_ms

from tests.factories import create_encounter, create_location, create_player


def test_boss_endpoint_lists_active_encounters(client):
    now = now_ms()
    create_location("crypt", name="Sunken Crypt", biome="ruins")
    create_encounter("crypt", now=now, name="Ruin Wraith")
    create_encounter("crypt", now=now - 7_200_000, slot=None, active=False)

    resp = client.get("/api/world/boss")
    assert resp.status_code == 200
    data = resp.get_json()
    assert data["ok"] is True
    (enc,) = data["encounters"]
    assert enc["name"] == "Ruin Wraith"
    assert enc["location_name"] == "Sunken Crypt"


def test_boss_endpoint_empty(client):
    resp = client.get("/api/world/boss")
    assert resp.get_json() == {"ok": True, "encounters": []}


def test_regen_endpoint(client):
    create_player("u1", now=now_ms(), health=40)
    resp = client.get("/api/world/regen/u1")
    assert resp.status_code == 200
    status = resp.get_json()["status"]
    assert status["max_health"] == 100
    assert status["health_rate_per_min"] == 2


def test_regen_endpoint_unknown_player(client):
    resp = client.get("/api/world/regen/nobody")
    assert resp.status_code == 404
    assert resp.get_json()["error"] == "not_found"
