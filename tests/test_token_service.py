"""
tests/test_token_service.py — Access-Token Lifecycle Tests
===========================================================

The scheduling provider is replaced by an :class:`httpx.MockTransport`
that records every request path, so tests can assert exactly which
refresh endpoints were (and were not) called.
"""

from __future__ import annotations

import json
from datetime import timedelta

import httpx
import pytest

from conftest import T0, make_credential, make_mentor
from mentorhub.config import SchedulingConfig
from mentorhub.errors import AuthError, NoCredentialError, ProcessorError
from mentorhub.services.credential_store import (
    compare_and_swap_tokens,
    get_credential,
    save_credential,
)
from mentorhub.services.scheduling_client import SchedulingClient, TokenGrant, parse_token_envelope
from mentorhub.services.token_service import TokenLifecycleManager

CLIENT_ID = "client-abc"
REFRESH_PATH = f"/v2/oauth/{CLIENT_ID}/refresh"
FORCE_PATH = f"/v2/oauth-clients/{CLIENT_ID}/users/4242/force-refresh"


def _ms(dt) -> int:
    return int(dt.timestamp() * 1000)


def token_body(access: str, refresh: str, now=T0) -> dict:
    return {
        "status": "success",
        "data": {
            "accessToken": access,
            "refreshToken": refresh,
            "accessTokenExpiresAt": _ms(now + timedelta(hours=1)),
            "refreshTokenExpiresAt": _ms(now + timedelta(days=365)),
        },
    }


class FakeProvider:
    """Routes requests to canned responses and records the paths hit."""

    def __init__(self):
        self.calls: list[str] = []
        self.routes: dict[str, httpx.Response] = {}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request.url.path)
        response = self.routes.get(request.url.path)
        if response is None:
            return httpx.Response(404, json={"status": "error"})
        return response

    def client(self) -> SchedulingClient:
        cfg = SchedulingConfig(api_url="https://cal.test/v2", client_id=CLIENT_ID)
        return SchedulingClient(cfg, "secret", transport=httpx.MockTransport(self))


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def mentor_id(db_engine):
    return make_mentor(db_engine)


def _manager(engine, provider, now=T0):
    return TokenLifecycleManager(engine, provider.client(), clock=lambda: now)


# ===========================================================================
# Valid / missing credentials
# ===========================================================================
class TestStoredToken:
    def test_no_credential(self, db_engine, provider, mentor_id):
        with pytest.raises(NoCredentialError):
            _manager(db_engine, provider).get_valid_access_token(mentor_id)
        assert provider.calls == []

    def test_valid_token_needs_no_network(self, db_engine, provider, mentor_id):
        make_credential(db_engine, mentor_id)
        token = _manager(db_engine, provider).get_valid_access_token(mentor_id)
        assert token == "access-0"
        assert provider.calls == []


# ===========================================================================
# Refresh paths
# ===========================================================================
class TestRefresh:
    def test_expired_access_uses_standard_refresh(self, db_engine, provider, mentor_id):
        make_credential(db_engine, mentor_id, now=T0 - timedelta(hours=2))
        provider.routes[REFRESH_PATH] = httpx.Response(200, json=token_body("access-1", "refresh-1"))

        token = _manager(db_engine, provider).get_valid_access_token(mentor_id)

        assert token == "access-1"
        assert provider.calls == [REFRESH_PATH]
        stored = get_credential(db_engine, mentor_id)
        assert stored.refresh_token == "refresh-1"
        assert stored.version == 1
        assert stored.access_token_expires_at == T0 + timedelta(hours=1)

    def test_refresh_failure_falls_through_to_forced_reissue(self, db_engine, provider, mentor_id):
        make_credential(db_engine, mentor_id, now=T0 - timedelta(hours=2))
        provider.routes[REFRESH_PATH] = httpx.Response(401, json={"status": "error"})
        provider.routes[FORCE_PATH] = httpx.Response(200, json=token_body("access-2", "refresh-2"))

        token = _manager(db_engine, provider).get_valid_access_token(mentor_id)

        assert token == "access-2"
        assert provider.calls == [REFRESH_PATH, FORCE_PATH]

    def test_malformed_success_envelope_falls_through_to_forced_reissue(
        self, db_engine, provider, mentor_id
    ):
        make_credential(db_engine, mentor_id, now=T0 - timedelta(hours=2))
        provider.routes[REFRESH_PATH] = httpx.Response(200, json={"status": "success", "data": "oops"})
        provider.routes[FORCE_PATH] = httpx.Response(200, json=token_body("access-4", "refresh-4"))

        token = _manager(db_engine, provider).get_valid_access_token(mentor_id)

        assert token == "access-4"
        assert provider.calls == [REFRESH_PATH, FORCE_PATH]
        assert get_credential(db_engine, mentor_id).access_token == "access-4"

    def test_both_tokens_expired_skips_standard_refresh(self, db_engine, provider, mentor_id):
        make_credential(
            db_engine, mentor_id,
            now=T0 - timedelta(days=400),
            access_ttl=timedelta(hours=1),
            refresh_ttl=timedelta(days=365),
        )
        provider.routes[REFRESH_PATH] = httpx.Response(200, json=token_body("never", "never"))
        provider.routes[FORCE_PATH] = httpx.Response(200, json=token_body("access-3", "refresh-3"))

        token = _manager(db_engine, provider).get_valid_access_token(mentor_id)

        assert token == "access-3"
        assert REFRESH_PATH not in provider.calls
        assert provider.calls == [FORCE_PATH]

    def test_forced_reissue_failure_is_terminal(self, db_engine, provider, mentor_id):
        make_credential(db_engine, mentor_id, now=T0 - timedelta(days=400))
        provider.routes[FORCE_PATH] = httpx.Response(403, text="forbidden")

        with pytest.raises(AuthError) as excinfo:
            _manager(db_engine, provider).get_valid_access_token(mentor_id)

        assert excinfo.value.status_code == 403
        assert "forbidden" in excinfo.value.body
        stored = get_credential(db_engine, mentor_id)
        assert stored.access_token == "access-0"
        assert stored.version == 0

    def test_grant_expiring_earlier_than_stored_is_refused(self, db_engine, provider, mentor_id):
        make_credential(db_engine, mentor_id, now=T0 - timedelta(hours=2))
        provider.routes[REFRESH_PATH] = httpx.Response(
            200, json=token_body("old", "old", now=T0 - timedelta(days=30))
        )
        provider.routes[FORCE_PATH] = httpx.Response(
            200, json=token_body("old", "old", now=T0 - timedelta(days=30))
        )
        with pytest.raises(AuthError):
            _manager(db_engine, provider).get_valid_access_token(mentor_id)
        assert get_credential(db_engine, mentor_id).version == 0

    def test_lost_swap_rereads_winning_tokens(self, db_engine, provider, mentor_id):
        make_credential(db_engine, mentor_id, now=T0 - timedelta(hours=2))

        class RacingRefresh:
            """Another writer stores a fresh pair while this refresh is in flight."""

            name = "racing"
            fall_through = True

            def applies(self, credential, now):
                return True

            def attempt(self, client, credential):
                save_credential(
                    db_engine, credential.mentor_id,
                    external_account_id=credential.external_account_id,
                    external_username=credential.external_username,
                    grant=TokenGrant("winner", "r-w", T0 + timedelta(hours=2), T0 + timedelta(days=366)),
                )
                return TokenGrant("loser", "r-l", T0 + timedelta(hours=1), T0 + timedelta(days=365))

        manager = TokenLifecycleManager(
            db_engine, provider.client(), strategies=[RacingRefresh()], clock=lambda: T0,
        )
        assert manager.get_valid_access_token(mentor_id) == "winner"
        stored = get_credential(db_engine, mentor_id)
        assert stored.access_token == "winner"
        assert stored.version == 1


# ===========================================================================
# Credential store
# ===========================================================================
class TestCredentialStore:
    def _grant(self, access: str) -> TokenGrant:
        return TokenGrant(access, "r", T0 + timedelta(hours=1), T0 + timedelta(days=365))

    def test_save_then_reconnect_bumps_version(self, db_engine, mentor_id):
        first = save_credential(
            db_engine, mentor_id, external_account_id=1, external_username="m",
            grant=self._grant("a1"),
        )
        assert first.version == 0
        second = save_credential(
            db_engine, mentor_id, external_account_id=1, external_username="m",
            grant=self._grant("a2"),
        )
        assert second.version == 1
        assert second.access_token == "a2"

    def test_compare_and_swap_rejects_stale_snapshot(self, db_engine, mentor_id):
        make_credential(db_engine, mentor_id)
        snapshot = get_credential(db_engine, mentor_id)
        assert compare_and_swap_tokens(db_engine, snapshot, self._grant("a1"), T0)
        assert not compare_and_swap_tokens(db_engine, snapshot, self._grant("a2"), T0)
        assert get_credential(db_engine, mentor_id).access_token == "a1"


# ===========================================================================
# Envelope parsing
# ===========================================================================
class TestTokenEnvelope:
    def test_missing_expiries_default(self):
        grant = parse_token_envelope(
            {"status": "success", "data": {"accessToken": "a", "refreshToken": "r"}}, now=T0
        )
        assert grant.access_token_expires_at == T0 + timedelta(hours=1)
        assert grant.refresh_token_expires_at == T0 + timedelta(days=365)

    @pytest.mark.parametrize("body", [
        {"status": "error"},
        {"status": "success", "data": {"accessToken": "a"}},
        {"status": "success", "data": "oops"},
        {"status": "success", "data": {"accessToken": 5, "refreshToken": "r"}},
        ["not", "a", "dict"],
    ])
    def test_bad_envelopes(self, body):
        with pytest.raises(ProcessorError):
            parse_token_envelope(body, now=T0)

    def test_timeout_is_retryable(self):
        def raise_timeout(request):
            raise httpx.ReadTimeout("slow", request=request)

        cfg = SchedulingConfig(api_url="https://cal.test/v2", client_id=CLIENT_ID)
        client = SchedulingClient(cfg, "secret", transport=httpx.MockTransport(raise_timeout))
        with pytest.raises(ProcessorError) as excinfo:
            client.refresh_tokens("r")
        assert excinfo.value.retryable is True

    def test_refresh_sends_secret_and_token(self):
        seen = {}

        def handler(request):
            seen["secret"] = request.headers.get("x-cal-secret-key")
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json=token_body("a", "r"))

        cfg = SchedulingConfig(api_url="https://cal.test/v2", client_id=CLIENT_ID)
        SchedulingClient(cfg, "s3cret", transport=httpx.MockTransport(handler)).refresh_tokens("r0")
        assert seen == {"secret": "s3cret", "body": {"refreshToken": "r0"}}
