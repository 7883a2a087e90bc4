"""
tests/test_api_routes.py — FastAPI Route Integration Tests
============================================================

These tests verify:
- Health endpoint availability
- Cron bearer-secret guard and job summaries
- JWT guard on mentor self-service endpoints
- Error taxonomy → HTTP status mapping
"""

from __future__ import annotations

import os

import pytest

from conftest import make_credential, make_mentor, make_user_token
from mentorhub.api.main import status_for
from mentorhub.errors import (
    AuthError,
    InvariantViolation,
    MalformedWebhookError,
    NoCredentialError,
    ProcessorError,
)
from mentorhub.services.ranking_service import get_ranking_score, record_event


def _auth(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


CRON = _auth(os.environ["CRON_SECRET"])


# ===========================================================================
# Health endpoint
# ===========================================================================
class TestHealthEndpoint:
    def test_health_returns_ok(self, client):
        resp = client.get("/api/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok"}


# ===========================================================================
# Cron jobs
# ===========================================================================
class TestCronEndpoints:
    ENDPOINTS = [
        "/api/cron/transfer-funds",
        "/api/cron/update-mentor-scores",
        "/api/cron/decay-mentor-scores",
    ]

    @pytest.mark.parametrize("endpoint", ENDPOINTS)
    def test_requires_secret(self, client, endpoint):
        assert client.post(endpoint).status_code == 401
        assert client.post(endpoint, headers=_auth("wrong")).status_code == 401

    def test_update_scores(self, client, db_engine):
        mentor = make_mentor(db_engine)
        for _ in range(10):
            record_event(db_engine, mentor, "PROFILE_VIEW")
        resp = client.post("/api/cron/update-mentor-scores", headers=CRON)
        assert resp.status_code == 200
        assert resp.json()["events_processed"] == 10
        assert get_ranking_score(db_engine, mentor) == 3.0

    def test_decay_scores(self, client, db_engine):
        mentor = make_mentor(db_engine, ranking_score=200.0)
        resp = client.post("/api/cron/decay-mentor-scores", headers=CRON)
        assert resp.json() == {"mentors_decayed": 1}
        assert get_ranking_score(db_engine, mentor) == pytest.approx(198.0)

    def test_transfer_with_nothing_due(self, client):
        resp = client.post("/api/cron/transfer-funds", headers=CRON)
        assert resp.status_code == 200
        assert resp.json()["eligible"] == 0


# ===========================================================================
# Analytics intake
# ===========================================================================
class TestProfileView:
    def test_records_event(self, client, db_engine):
        mentor = make_mentor(db_engine)
        resp = client.post(f"/api/analytics/profile-view/{mentor}")
        assert resp.status_code == 202
        assert "event_id" in resp.json()

    def test_unknown_mentor(self, client):
        assert client.post("/api/analytics/profile-view/999").status_code == 404


# ===========================================================================
# Mentor endpoints
# ===========================================================================
class TestMentorAuthGuards:
    GET_ENDPOINTS = [
        "/api/mentor/scheduling/token",
        "/api/mentor/availability",
        "/api/mentor/event-types",
        "/api/mentor/bookings",
        "/api/mentor/earnings",
        "/api/mentor/ranking",
    ]

    @pytest.mark.parametrize("endpoint", GET_ENDPOINTS)
    def test_no_token_returns_401(self, client, endpoint):
        assert client.get(endpoint).status_code == 401

    @pytest.mark.parametrize("endpoint", GET_ENDPOINTS)
    def test_garbage_token_returns_401(self, client, endpoint):
        assert client.get(endpoint, headers=_auth("not.a.jwt")).status_code == 401


class TestMentorEndpoints:
    def test_earnings_empty(self, client, db_engine):
        mentor = make_mentor(db_engine)
        resp = client.get("/api/mentor/earnings", headers=_auth(make_user_token(mentor)))
        assert resp.status_code == 200
        assert resp.json()["total_earnings"] == {}

    def test_ranking(self, client, db_engine):
        mentor = make_mentor(db_engine, ranking_score=12.5)
        resp = client.get("/api/mentor/ranking", headers=_auth(make_user_token(mentor)))
        assert resp.json()["ranking_score"] == 12.5

    def test_token_without_credential_is_409(self, client, db_engine):
        mentor = make_mentor(db_engine)
        resp = client.get("/api/mentor/scheduling/token", headers=_auth(make_user_token(mentor)))
        assert resp.status_code == 409
        assert resp.json()["error"] == "NoCredentialError"

    def test_valid_stored_token_is_returned(self, client, db_engine):
        from datetime import timedelta

        from mentorhub.engine.clock import utcnow

        mentor = make_mentor(db_engine)
        make_credential(db_engine, mentor, now=utcnow(), access_ttl=timedelta(hours=1))
        resp = client.get("/api/mentor/scheduling/token", headers=_auth(make_user_token(mentor)))
        assert resp.status_code == 200
        assert resp.json() == {"access_token": "access-0"}

    def test_foreign_booking_is_404(self, client, db_engine):
        mentor = make_mentor(db_engine)
        resp = client.post("/api/mentor/bookings/uid-x/cancel", json={},
                           headers=_auth(make_user_token(mentor)))
        assert resp.status_code == 404


# ===========================================================================
# Error mapping
# ===========================================================================
class TestStatusMapping:
    @pytest.mark.parametrize("exc, code", [
        (NoCredentialError(1), 409),
        (AuthError("x"), 502),
        (MalformedWebhookError("x"), 400),
        (ProcessorError("x", provider="payments", retryable=True), 503),
        (ProcessorError("x", provider="payments"), 502),
        (InvariantViolation("x"), 500),
    ])
    def test_codes(self, exc, code):
        assert status_for(exc) == code
