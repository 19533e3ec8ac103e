# Copyright 2025 John Brosnihan
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""Tests for the control API.

Synchronous tests use FastAPI's TestClient, which runs the application
lifespan. Tests that need a live decision drive the lifespan and an
httpx ASGI client on the test's own event loop so the fake world's
events reach the orchestrator there.
"""

import json

import httpx
import pytest
from fastapi.testclient import TestClient

from companion.api.routes import get_turn_orchestrator
from companion.config import Settings
from companion.main import create_app
from tests.fakes import FakeOracle, wait_for_decision

STRIKE_E1 = json.dumps({"action": "ability", "ability_name": "Strike", "target_id": "E1"})


def make_settings(**overrides):
    values = dict(_env_file=None, oracle_provider="stub", execution_mode="manual", tick_interval=0.01)
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def oracle():
    return FakeOracle([STRIKE_E1])


@pytest.fixture
def client(world, oracle):
    app = create_app(world, make_settings(), oracle=oracle)
    with TestClient(app) as test_client:
        yield test_client


def test_placeholder_dependency_must_be_overridden():
    with pytest.raises(NotImplementedError):
        get_turn_orchestrator()


def test_health_check(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {
        "status": "healthy",
        "service": "combat-companion",
        "orchestrator_enabled": True
    }


def test_health_degraded_when_disabled(client):
    client.post("/disable")
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "degraded"


def test_status_idle(client):
    response = client.get("/status")
    assert response.status_code == 200
    data = response.json()
    assert data["state"] == "idle"
    assert data["enabled"] is True
    assert data["in_combat"] is False
    assert data["execution_mode"] == "manual"
    assert data["pending_action"] is None
    assert data["controlled_units"] == []


def test_approve_without_pending_decision(client):
    response = client.post("/approve")
    assert response.status_code == 409
    assert response.json()["detail"] == "No decision is pending approval"


def test_set_execution_mode(client):
    response = client.put("/execution-mode", json={"mode": "auto"})
    assert response.status_code == 200
    assert response.json()["execution_mode"] == "auto"


def test_set_invalid_execution_mode(client):
    response = client.put("/execution-mode", json={"mode": "yolo"})
    assert response.status_code == 422


def test_enable_and_disable(client, world):
    response = client.post("/disable")
    assert response.status_code == 200
    assert response.json()["enabled"] is False

    response = client.post("/enable")
    assert response.json()["enabled"] is True


def test_skip_and_cancel_when_idle(client):
    assert client.post("/skip").json()["state"] == "idle"
    assert client.post("/cancel").json()["state"] == "idle"


def test_metrics_disabled(client):
    response = client.get("/metrics")
    assert response.status_code == 404
    assert "ENABLE_METRICS" in response.json()["detail"]


def test_metrics_enabled(world, oracle):
    app = create_app(world, make_settings(enable_metrics=True), oracle=oracle)
    with TestClient(app) as test_client:
        response = test_client.get("/metrics")

    assert response.status_code == 200
    data = response.json()
    assert data["decisions"]["total"] == 0
    assert data["schema_conformance"]["total_decodes"] == 0


def test_debug_parse_disabled(client):
    response = client.post("/debug/parse_action", json={"oracle_response": STRIKE_E1})
    assert response.status_code == 404
    assert "ENABLE_DEBUG_ENDPOINTS" in response.json()["detail"]


class TestDebugParse:

    @pytest.fixture
    def debug_client(self, world, oracle):
        app = create_app(world, make_settings(enable_debug_endpoints=True), oracle=oracle)
        with TestClient(app) as test_client:
            yield test_client

    def test_valid_response(self, debug_client):
        response = debug_client.post(
            "/debug/parse_action",
            json={"oracle_response": f"Sure! {STRIKE_E1}"}
        )
        assert response.status_code == 200
        data = response.json()
        assert data["action_type"] == "UseAbility"
        assert data["action"]["action"] == "ability"
        assert data["action"]["target_id"] == "E1"
        assert data["description"] == "Strike -> E1"
        assert data["is_parse_error"] is False
        assert data["error"] is None

    def test_unparseable_response(self, debug_client):
        response = debug_client.post("/debug/parse_action", json={"oracle_response": "I attack!"})
        data = response.json()
        assert data["action_type"] == "EndTurn"
        assert data["is_parse_error"] is True
        assert data["error"] == "no JSON object found in response"

    def test_empty_response_rejected(self, debug_client):
        response = debug_client.post("/debug/parse_action", json={"oracle_response": ""})
        assert response.status_code == 422


class TestLiveDecision:
    """Approval flow against an orchestrator running on the test loop."""

    @pytest.mark.asyncio
    async def test_pending_decision_approved(self, world, oracle):
        app = create_app(world, make_settings(), oracle=oracle)

        async with app.router.lifespan_context(app):
            transport = httpx.ASGITransport(app=app)
            async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
                orchestrator = app.state.turn_orchestrator
                world.start_combat()
                world.start_turn("C1")
                await wait_for_decision(orchestrator)

                data = (await client.get("/status")).json()
                assert data["state"] == "decision_pending"
                assert data["in_combat"] is True
                assert data["current_unit_id"] == "C1"
                assert data["pending_action"]["ability_name"] == "Strike"
                assert data["pending_action_display"] == "Strike -> E1"
                assert data["controlled_units"] == ["C1"]
                # Prompt text stays hidden unless LOG_PROMPTS is on
                assert data["last_prompt"] is None
                assert world.ability_commands() == []

                response = await client.post("/approve")
                assert response.status_code == 200
                body = response.json()
                assert body["approved"] is True
                assert body["status"]["state"] == "executing"
                assert [c.ability_id for c in world.ability_commands()] == ["abl_strike"]

        assert oracle.closed is True
        # Shutdown hands the unit back to its own AI
        assert world.autonomy_calls[-1] == ("C1", True)

    @pytest.mark.asyncio
    async def test_cancel_pending_ends_turn(self, world, oracle):
        app = create_app(world, make_settings(log_prompts=True), oracle=oracle)

        async with app.router.lifespan_context(app):
            transport = httpx.ASGITransport(app=app)
            async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
                world.start_combat()
                world.start_turn("C1")
                await wait_for_decision(app.state.turn_orchestrator)

                status = (await client.get("/status")).json()
                assert "=== COMBAT SITUATION ===" in status["last_prompt"]

                data = (await client.post("/cancel")).json()
                assert data["pending_action"] is None
                assert world.ability_commands() == []
