"""Tests for the HTTP API."""

import pytest
from fastapi.testclient import TestClient

from hortiflow.api.main import create_app
from hortiflow.core.config import Settings
from hortiflow.core.scheduler import EngineScheduler

RULE = {
    "name": "Night heating",
    "priority": 2,
    "cooldown_minutes": 30,
    "conditions": {
        "operator": "AND",
        "rules": [
            {"type": "time", "timeStart": "22:00", "timeEnd": "06:00"},
            {"type": "sensor", "sensorId": "temhum1", "field": "temperature", "operator": "<", "value": 12},
        ],
    },
    "actions": [
        {"type": "device_control", "device_id": "heater1", "action": "turn_on"},
        {"type": "notification", "template": "Heating on ({{temhum1.temperature}}°C)"},
    ],
}


@pytest.fixture
def client(engine, memory):
    app = create_app()
    app.state.engine = engine
    app.state.memory = memory
    app.state.scheduler = EngineScheduler(engine, Settings(database_url="sqlite:///:memory:"))
    return TestClient(app)


@pytest.fixture
def rule_id(client):
    resp = client.post("/api/rules", json=RULE)
    assert resp.status_code == 201
    return resp.json()["id"]


class TestRuleCrud:
    def test_health(self, client):
        assert client.get("/health").json()["status"] == "ok"

    def test_create_normalizes_definition(self, client, rule_id):
        data = client.get(f"/api/rules/{rule_id}").json()

        assert data["conditions"]["type"] == "group"
        assert data["conditions"]["children"][1]["operator"] == "LT"
        assert data["actions"][0]["action"] == "TURN_ON"
        assert data["trigger_count"] == 0
        assert data["enabled"] is True

    def test_create_rejects_unknown_condition_type(self, client):
        resp = client.post("/api/rules", json={**RULE, "conditions": {"type": "moon_phase"}})
        assert resp.status_code == 400
        assert resp.json()["detail"]["errors"]

    def test_create_rejects_unknown_action_type(self, client):
        resp = client.post("/api/rules", json={**RULE, "actions": [{"type": "sms", "to": "+34"}]})
        assert resp.status_code == 400

    def test_list_and_filter(self, client, rule_id):
        client.post(f"/api/rules/{rule_id}/disable")
        client.post("/api/rules", json={**RULE, "name": "Other"})

        assert len(client.get("/api/rules").json()) == 2
        enabled = client.get("/api/rules", params={"enabled": True}).json()
        assert [r["name"] for r in enabled] == ["Other"]

    def test_enable_disable(self, client, rule_id):
        assert client.post(f"/api/rules/{rule_id}/disable").json()["enabled"] is False
        assert client.post(f"/api/rules/{rule_id}/enable").json()["enabled"] is True
        assert client.post("/api/rules/999/enable").status_code == 404

    def test_bulk_disable(self, client, rule_id):
        resp = client.post("/api/rules/bulk/disable", json={"rule_ids": [rule_id, 404]})
        assert resp.json() == {"updated": [rule_id], "not_found": [404]}
        assert client.get(f"/api/rules/{rule_id}").json()["enabled"] is False

    def test_delete(self, client, rule_id):
        assert client.delete(f"/api/rules/{rule_id}").status_code == 200
        assert client.get(f"/api/rules/{rule_id}").status_code == 404
        assert client.delete(f"/api/rules/{rule_id}").status_code == 404


class TestRuleExecution:
    def test_trigger_and_history(self, client, memory, clock):
        memory.add_sensor_reading("temhum1", "temperature", 25.0, recorded_at=clock.now)
        rule_id = client.post("/api/rules", json={
            "name": "Heat alert",
            "conditions": {"type": "sensor", "sensor_id": "temhum1", "field": "temperature",
                           "operator": "GT", "value": 20},
            "actions": [{"type": "notification", "template": "{{rule_name}} fired"}],
        }).json()["id"]

        resp = client.post(f"/api/rules/{rule_id}/trigger")
        assert resp.status_code == 200
        assert resp.json()["status"] == "triggered"

        executions = client.get(f"/api/rules/{rule_id}/executions").json()
        assert len(executions) == 1
        assert executions[0]["success"] is True

        stats = client.get(f"/api/rules/{rule_id}/stats", params={
            "start": "2026-03-10T00:00:00+00:00",
            "end": "2026-03-11T00:00:00+00:00",
        }).json()
        assert stats["total_executions"] == 1
        assert stats["successful_executions"] == 1

    def test_trigger_unknown_rule(self, client):
        assert client.post("/api/rules/999/trigger").status_code == 404

    def test_dry_run(self, client, memory, clock):
        memory.add_sensor_reading("temhum1", "temperature", 10.0, recorded_at=clock.now)

        resp = client.post("/api/rules/test", json={"conditions": {
            "type": "sensor", "sensor_id": "temhum1", "field": "temperature", "operator": "<", "value": 12,
        }})

        assert resp.status_code == 200
        assert resp.json()["result"] is True

    def test_dry_run_invalid(self, client):
        resp = client.post("/api/rules/test", json={"conditions": {"type": "nope"}})
        assert resp.status_code == 400


class TestEngineApi:
    def test_status(self, client):
        data = client.get("/api/engine/status").json()
        assert data["is_running"] is False
        assert data["ticks"] == 0

    def test_manual_tick(self, client, rule_id):
        data = client.post("/api/engine/tick").json()
        assert data["skipped"] is False
        assert data["summary"]["evaluated"] == 1
        assert client.get("/api/engine/status").json()["ticks"] == 1
