"""
Tests for FastAPI Endpoints

Integration tests for the deal API.
"""

import pytest
from fastapi.testclient import TestClient

from deal_oracle.api import server
from deal_oracle.api.server import AppState, app

from conftest import ADDRESS_A, submission_text


@pytest.fixture
def client(oracle):
    """Create test client bound to the in-memory oracle."""
    server.app_state = AppState(oracle)
    yield TestClient(app)
    server.app_state = None


@pytest.fixture
def auth_headers():
    """Headers with valid API key."""
    return {"X-API-Key": "test-key-12345"}


def create_deal(client, auth_headers, **overrides):
    body = {
        "title": "Explain USDC transfers",
        "amount": "10",
        "requirements": "Three bullets with official docs links.",
        "challenge_minutes": 0,
    }
    body.update(overrides)
    response = client.post("/deals", json=body, headers=auth_headers)
    assert response.status_code == 201
    return response.json()


class TestHealthEndpoint:
    """Test health check endpoint."""

    def test_health_no_auth_required(self, client):
        """Health check should not require authentication."""
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["judge"] == "StubJudge"
        assert data["payments_configured"] is True
        assert "uptime_seconds" in data


class TestAuth:
    """Test API key enforcement."""

    def test_create_requires_auth(self, client):
        response = client.post("/deals", json={"title": "t", "amount": "1", "requirements": "r"})

        assert response.status_code == 422  # Missing header

    def test_invalid_api_key(self, client):
        response = client.post(
            "/deals",
            json={"title": "t", "amount": "1", "requirements": "r"},
            headers={"X-API-Key": "wrong-key"},
        )

        assert response.status_code == 401

    def test_listing_requires_auth(self, client):
        assert client.get("/deals", headers={"X-API-Key": "wrong-key"}).status_code == 401


class TestDealLifecycle:
    """Test the full create -> submit -> evaluate -> release flow."""

    def test_full_flow(self, client, auth_headers):
        deal = create_deal(client, auth_headers)
        deal_id = deal["deal_id"]
        assert deal["status"] == "OPEN"
        assert deal["amount"] == "10"

        response = client.post(
            f"/deals/{deal_id}/submissions",
            json={"submission_text": submission_text(ADDRESS_A)},
            headers=auth_headers,
        )
        assert response.status_code == 201
        submission_id = response.json()["submission_id"]

        response = client.post(f"/deals/{deal_id}/evaluate", headers=auth_headers)
        assert response.status_code == 200
        report = response.json()
        assert report["status"] == "EVALUATED"
        assert report["ranking"]["winner_submission_id"] == submission_id

        response = client.post(f"/deals/{deal_id}/release", headers=auth_headers)
        assert response.status_code == 200
        result = response.json()
        assert result["released"] is True
        assert result["winner_submission_id"] == submission_id
        assert result["payout_address"] == ADDRESS_A

        again = client.post(f"/deals/{deal_id}/release", headers=auth_headers).json()
        assert again["already_released"] is True
        assert again["payout_reference"] == result["payout_reference"]

        receipt = client.get(f"/deals/{deal_id}/receipt").json()
        assert receipt["released"] is True
        assert receipt["explorer_url"].startswith("https://sepolia.basescan.org/tx/")

        board = client.get(f"/deals/{deal_id}/scoreboard").json()
        assert board["winner_submission_id"] == submission_id

        status = client.get(f"/deals/{deal_id}").json()
        assert status["status"] == "COMPLETED"

    def test_list_deals(self, client, auth_headers):
        create_deal(client, auth_headers)
        create_deal(client, auth_headers, title="second")

        data = client.get("/deals", headers=auth_headers).json()

        assert data["total"] == 2

    def test_evaluate_single_submission(self, client, auth_headers):
        deal_id = create_deal(client, auth_headers)["deal_id"]
        submitted = client.post(
            f"/deals/{deal_id}/submissions",
            json={"submission_text": "- a\n- b\n- c", "payout_address": ADDRESS_A,
                  "proof_links": ["https://developers.circle.com/x"]},
            headers=auth_headers,
        ).json()

        response = client.post(
            f"/deals/{deal_id}/evaluate",
            json={"submission_id": submitted["submission_id"]},
            headers=auth_headers,
        )

        assert response.status_code == 200
        assert [e["submission_id"] for e in response.json()["evaluated"]] == [submitted["submission_id"]]

    def test_dispute_blocks_release(self, client, auth_headers):
        deal_id = create_deal(client, auth_headers)["deal_id"]

        response = client.post(f"/deals/{deal_id}/dispute", json={"reason": "fraud"}, headers=auth_headers)
        assert response.status_code == 200
        assert response.json()["status"] == "DISPUTED"

        result = client.post(f"/deals/{deal_id}/release", headers=auth_headers).json()
        assert result["released"] is False
        assert "fraud" in result["reason"]


class TestErrorMapping:
    """Test oracle errors mapped to HTTP status codes."""

    def test_validation_error(self, client, auth_headers):
        response = client.post(
            "/deals",
            json={"title": "t", "amount": "0", "requirements": "r"},
            headers=auth_headers,
        )

        assert response.status_code == 400
        assert response.json()["error"] == "ValidationError"

    def test_bad_payout_address(self, client, auth_headers):
        deal_id = create_deal(client, auth_headers)["deal_id"]

        response = client.post(
            f"/deals/{deal_id}/submissions",
            json={"submission_text": "payout_address: 0x" + "a" * 41},
            headers=auth_headers,
        )

        assert response.status_code == 400

    def test_not_found(self, client):
        assert client.get("/deals/deal-missing").status_code == 404

    def test_release_without_evaluations(self, client, auth_headers):
        deal_id = create_deal(client, auth_headers)["deal_id"]

        response = client.post(f"/deals/{deal_id}/release", headers=auth_headers)

        assert response.status_code == 409
        assert response.json()["error"] == "NoEvaluationsError"

    def test_submit_to_disputed_deal(self, client, auth_headers):
        deal_id = create_deal(client, auth_headers)["deal_id"]
        client.post(f"/deals/{deal_id}/dispute", headers=auth_headers)

        response = client.post(
            f"/deals/{deal_id}/submissions",
            json={"submission_text": submission_text()},
            headers=auth_headers,
        )

        assert response.status_code == 409

    def test_payout_failure(self, client, auth_headers, payments):
        payments.failures = 10
        deal_id = create_deal(client, auth_headers)["deal_id"]
        client.post(
            f"/deals/{deal_id}/submissions",
            json={"submission_text": submission_text()},
            headers=auth_headers,
        )
        client.post(f"/deals/{deal_id}/evaluate", headers=auth_headers)

        response = client.post(f"/deals/{deal_id}/release", headers=auth_headers)

        assert response.status_code == 502
        assert client.get(f"/deals/{deal_id}").json()["status"] == "EVALUATED"
