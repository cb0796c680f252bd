"""
Tests for FastAPI Endpoints

Integration tests for the metering API.
"""

import asyncio

import pytest
from fastapi.testclient import TestClient
from fastapi.websockets import WebSocketDisconnect

from meter_rail.api import server
from meter_rail.config import MeterConfig


@pytest.fixture
def client(clock):
    """Test client over a fresh engine driven by the manual clock."""
    config = MeterConfig.from_env({
        "API_KEY": "test-key-12345",
        "METER_TICK_INTERVAL_MS": "0",
        "METER_RATE_REFRESH_SECONDS": "0",
    })
    server.app_state = server.AppState(config, clock=clock)
    with TestClient(server.app) as test_client:
        yield test_client
    server.app_state = None


@pytest.fixture
def auth_headers():
    """Headers with valid API key."""
    return {"X-API-Key": "test-key-12345"}


def start(client, auth_headers, **body):
    payload = {"cost_rate": 3600, "currency": "USD"}
    payload.update(body)
    return client.post("/sessions", json=payload, headers=auth_headers)


class TestHealthEndpoint:
    """Test health check endpoint."""

    def test_health_no_auth_required(self, client):
        """Health check should not require authentication."""
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["active_sessions"] == 0
        assert "version" in data
        assert "uptime_seconds" in data


class TestSessionEndpoints:
    """Session lifecycle over HTTP."""

    def test_requires_auth(self, client):
        response = client.post("/sessions", json={"cost_rate": 3600})
        assert response.status_code == 422  # Missing header

    def test_invalid_api_key(self, client):
        response = start(client, {"X-API-Key": "wrong-key"})
        assert response.status_code == 401

    def test_start_and_advance(self, client, auth_headers, clock):
        response = start(client, auth_headers)
        assert response.status_code == 200
        session_id = response.json()["session"]["session_id"]
        assert response.json()["session"]["rate_per_ns_scaled"] == "1000000000"

        clock.advance(seconds=1)
        response = client.post(f"/sessions/{session_id}/advance", headers=auth_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["billing"]["total_cost"] == "1"
        assert data["billing"]["display_cost"] == "1.00"
        assert data["billing"]["duration"]["formatted"] == "0h 0m 1s"
        assert data["caps"]["status"] == "within_limits"
        assert data["stopped"] is False

    def test_invalid_rate(self, client, auth_headers):
        response = start(client, auth_headers, cost_rate=0)

        assert response.status_code == 400
        assert response.json()["error"] == "INVALID_CONFIGURATION"

    def test_unknown_session(self, client, auth_headers):
        response = client.post("/sessions/SESS-MISSING/advance", headers=auth_headers)

        assert response.status_code == 404
        assert response.json()["error"] == "SESSION_NOT_FOUND"

    def test_end_is_idempotent_and_advance_after_end_conflicts(self, client, auth_headers, clock):
        session_id = start(client, auth_headers).json()["session"]["session_id"]
        clock.advance(seconds=5)

        first = client.post(f"/sessions/{session_id}/end", headers=auth_headers)
        clock.advance(seconds=5)
        second = client.post(f"/sessions/{session_id}/end", headers=auth_headers)
        advanced = client.post(f"/sessions/{session_id}/advance", headers=auth_headers)

        assert first.json() == second.json()
        assert first.json()["final_billing"]["total_cost"] == "5"
        assert advanced.status_code == 409
        assert advanced.json()["error"] == "SESSION_NOT_ACTIVE"

    def test_events(self, client, auth_headers):
        session_id = start(client, auth_headers).json()["session"]["session_id"]

        client.post(
            f"/sessions/{session_id}/events",
            json={"description": "stream opened", "metadata": {"bitrate": 128}},
            headers=auth_headers,
        )
        response = client.get(f"/sessions/{session_id}/events", headers=auth_headers)

        assert response.json()["total"] == 1
        assert response.json()["events"][0]["description"] == "stream opened"

    def test_event_for_unknown_session_is_ignored(self, client, auth_headers):
        response = client.post(
            "/sessions/SESS-MISSING/events",
            json={"description": "ignored"},
            headers=auth_headers,
        )

        assert response.status_code == 200
        assert response.json()["recorded"] is False


class TestCapEndpoints:
    """Universal caps and pre-flight conflicts."""

    def test_cap_conflict_rejected(self, client, auth_headers, clock):
        client.put("/payers/0xPAYER/cap", json={"cap": 50}, headers=auth_headers)
        first = start(client, auth_headers, payer_id="0xPAYER").json()["session"]["session_id"]
        clock.advance(seconds=30)
        client.post(f"/sessions/{first}/end", headers=auth_headers)

        response = start(client, auth_headers, payer_id="0xPAYER", session_cap=25)

        assert response.status_code == 409
        assert response.json()["error"] == "CAP_CONFLICT"

        status = client.get("/payers/0xPAYER/caps", headers=auth_headers).json()
        assert status["lifetime_spend"] == "30"
        assert status["remaining"] == "20"
        assert status["active_sessions"] == 0

    def test_auto_stop_on_session_cap(self, client, auth_headers, clock):
        session_id = start(client, auth_headers, session_cap=2).json()["session"]["session_id"]
        clock.advance(seconds=3)

        data = client.post(f"/sessions/{session_id}/advance", headers=auth_headers).json()

        assert data["stopped"] is True
        assert data["caps"]["status"] == "session_cap_reached"

    def test_reset_payer(self, client, auth_headers):
        client.put("/payers/0xPAYER/cap", json={"cap": 50}, headers=auth_headers)

        data = client.post("/payers/0xPAYER/reset", headers=auth_headers).json()

        assert data["universal_cap"] is None


class TestSettlementEndpoints:
    """Settlement over HTTP."""

    def _session_with_cost(self, client, auth_headers, clock, seconds=100):
        session_id = start(client, auth_headers).json()["session"]["session_id"]
        clock.advance(seconds=seconds)
        client.post(f"/sessions/{session_id}/advance", headers=auth_headers)
        return session_id

    def test_overpayment_is_clamped(self, client, auth_headers, clock):
        session_id = self._session_with_cost(client, auth_headers, clock)

        response = client.post(
            "/settlements",
            json={"session_id": session_id, "amount": 150, "destination": "0xPAYER"},
            headers=auth_headers,
        )

        assert response.status_code == 200
        data = response.json()
        assert data["requested_amount"] == "150"
        assert data["charged_amount"] == "100"
        assert data["clamped"] is True
        assert data["unit_amount"] == "0.04"
        assert data["status"] == "pending"

    def test_validate(self, client, auth_headers, clock):
        session_id = self._session_with_cost(client, auth_headers, clock)

        data = client.post(
            "/settlements/validate",
            json={"session_id": session_id, "amount": 150},
            headers=auth_headers,
        ).json()

        assert data["valid"] is True
        assert data["excess_amount"] == "50"

    def test_confirm_twice_conflicts(self, client, auth_headers, clock):
        session_id = self._session_with_cost(client, auth_headers, clock)
        settlement_id = client.post(
            "/settlements",
            json={"session_id": session_id, "amount": 100, "destination": "0xPAYER"},
            headers=auth_headers,
        ).json()["settlement_id"]

        first = client.post(
            f"/settlements/{settlement_id}/confirm", json={"external_tx_ref": "0xabc"}, headers=auth_headers
        )
        second = client.post(
            f"/settlements/{settlement_id}/confirm", json={"external_tx_ref": "0xdef"}, headers=auth_headers
        )

        assert first.status_code == 200
        assert first.json()["status"] == "confirmed"
        assert second.status_code == 409

    def test_unknown_settlement(self, client, auth_headers):
        response = client.get("/settlements/SETTLE-MISSING", headers=auth_headers)
        assert response.status_code == 404

    def test_history_and_summary(self, client, auth_headers, clock):
        session_id = self._session_with_cost(client, auth_headers, clock)
        for amount in (10, 20):
            client.post(
                "/settlements",
                json={"session_id": session_id, "amount": amount, "destination": "0xPAYER"},
                headers=auth_headers,
            )

        history = client.get("/settlements/history", headers=auth_headers).json()
        summary = client.get("/settlements/summary", headers=auth_headers).json()

        assert history["total"] == 2
        assert summary["pending_count"] == 2
        assert summary["total_charged"] == "30"

    def test_refund_for_clamped_settlement_is_null(self, client, auth_headers, clock):
        session_id = self._session_with_cost(client, auth_headers, clock)
        settlement_id = client.post(
            "/settlements",
            json={"session_id": session_id, "amount": 150, "destination": "0xPAYER"},
            headers=auth_headers,
        ).json()["settlement_id"]

        response = client.post(f"/settlements/{settlement_id}/refund", headers=auth_headers)

        assert response.json() == {"refund": None}


class TestRateEndpoints:
    """Rate snapshot, push and conversion."""

    def test_get_rates(self, client, auth_headers):
        data = client.get("/rates", headers=auth_headers).json()

        assert data["snapshot"]["unitPrices"]["ETH"] == "2500"
        assert data["status"]["feed"] == "static"

    def test_push_rates(self, client, auth_headers):
        response = client.post(
            "/rates",
            json={"fiatRates": {"USD": 1}, "unitPrices": {"ETH": 5000}},
            headers=auth_headers,
        )
        converted = client.get("/rates/convert?amount=100&unit=ETH", headers=auth_headers).json()

        assert response.status_code == 200
        assert converted["unit_amount"] == "0.02"

    def test_malformed_push_rejected(self, client, auth_headers):
        response = client.post("/rates", json={"fiatRates": {"USD": 1}}, headers=auth_headers)

        assert response.status_code == 400
        assert response.json()["error"] == "RATE_REFRESH_ERROR"

    def test_unknown_currency(self, client, auth_headers):
        response = client.get("/rates/convert?amount=10&currency=GBP", headers=auth_headers)
        assert response.status_code == 422


class TestLiveUpdates:
    """Websocket stream."""

    def test_rejects_bad_key(self, client):
        with pytest.raises(WebSocketDisconnect):
            with client.websocket_connect("/ws?api_key=wrong"):
                pass

    def test_receives_live_update(self, client, auth_headers, clock):
        session_id = start(client, auth_headers).json()["session"]["session_id"]

        with client.websocket_connect("/ws?api_key=test-key-12345") as websocket:
            clock.advance(seconds=1)
            client.post(f"/sessions/{session_id}/advance", headers=auth_headers)
            message = websocket.receive_json()

        assert message["type"] == "live_update"
        assert message["session_id"] == session_id
        assert message["elapsed"] == "00:00:01"
        assert message["accumulated_cost"] == "1"

    def test_failed_sender_error_is_collected(self):
        async def send_fails():
            raise RuntimeError("socket closed")

        async def run():
            task = asyncio.create_task(send_fails())
            await asyncio.sleep(0)
            return await server.reap_task(task)

        error = asyncio.run(run())

        assert isinstance(error, RuntimeError)
        assert str(error) == "socket closed"

    def test_idle_sender_is_cancelled_quietly(self):
        async def run():
            task = asyncio.create_task(asyncio.sleep(60))
            await asyncio.sleep(0)
            error = await server.reap_task(task)
            return error, task.cancelled()

        error, cancelled = asyncio.run(run())

        assert error is None
        assert cancelled
