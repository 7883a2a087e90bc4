"""
mentorhub.services.scheduling_client — Scheduling Provider HTTP Client
=======================================================================

Thin synchronous wrapper over the scheduling provider's REST API (Cal.com
platform endpoints).  Every call is bounded by the configured timeout.

Failures are always raised as :class:`~mentorhub.errors.ProcessorError`:

* timeouts → ``retryable=True``
* transport errors / 5xx / 429 on GET → ``retryable=True``
* anything on a state-mutating call → ``retryable=False``

The token lifecycle manager decides what a failed refresh means; this
module only reports it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

import httpx

from mentorhub.config import SchedulingConfig
from mentorhub.engine.clock import from_epoch_ms, utcnow
from mentorhub.errors import ProcessorError

logger = logging.getLogger(__name__)

PROVIDER = "scheduling"

DEFAULT_ACCESS_TOKEN_TTL = timedelta(hours=1)
DEFAULT_REFRESH_TOKEN_TTL = timedelta(days=365)

_BODY_LOG_LIMIT = 500


@dataclass(frozen=True, slots=True)
class TokenGrant:
    """A freshly issued access/refresh token pair."""

    access_token: str
    refresh_token: str
    access_token_expires_at: datetime
    refresh_token_expires_at: datetime


def parse_token_envelope(body: object, now: datetime | None = None) -> TokenGrant:
    """Extract a :class:`TokenGrant` from ``{"status": "success", "data": {...}}``.

    Missing expiries default to one hour / one year from *now*.

    Raises
    ------
    ProcessorError
        If the envelope is not a success envelope, its ``data`` is not an
        object, or either token is missing.
    """
    now = now or utcnow()
    if not isinstance(body, dict) or body.get("status") != "success":
        raise ProcessorError(
            "Token endpoint returned a non-success envelope",
            provider=PROVIDER, body=str(body)[:_BODY_LOG_LIMIT],
        )
    data = body.get("data") or {}
    if not isinstance(data, dict):
        raise ProcessorError(
            "Token endpoint returned a success envelope without a data object",
            provider=PROVIDER, body=str(body)[:_BODY_LOG_LIMIT],
        )
    access, refresh = data.get("accessToken"), data.get("refreshToken")
    if not isinstance(access, str) or not isinstance(refresh, str) or not access or not refresh:
        raise ProcessorError(
            "Token endpoint response is missing accessToken/refreshToken",
            provider=PROVIDER, body=str(body)[:_BODY_LOG_LIMIT],
        )
    try:
        access_exp = (
            from_epoch_ms(data["accessTokenExpiresAt"])
            if data.get("accessTokenExpiresAt") else now + DEFAULT_ACCESS_TOKEN_TTL
        )
        refresh_exp = (
            from_epoch_ms(data["refreshTokenExpiresAt"])
            if data.get("refreshTokenExpiresAt") else now + DEFAULT_REFRESH_TOKEN_TTL
        )
    except (TypeError, ValueError, OverflowError) as exc:
        raise ProcessorError(
            f"Token endpoint returned unparseable expiry: {exc}",
            provider=PROVIDER, body=str(body)[:_BODY_LOG_LIMIT],
        ) from exc
    return TokenGrant(access, refresh, access_exp, refresh_exp)


class SchedulingClient:
    """Synchronous client for the scheduling provider.

    Parameters
    ----------
    cfg:
        ``scheduling`` section of ``config.yaml``.
    secret_key:
        OAuth client secret (``CALCOM_SECRET_KEY``), sent as
        ``x-cal-secret-key`` on privileged calls.
    transport:
        Optional httpx transport; tests pass an :class:`httpx.MockTransport`.
    """

    def __init__(
        self,
        cfg: SchedulingConfig,
        secret_key: str,
        *,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._cfg = cfg
        self._secret_key = secret_key
        self._client = httpx.Client(
            base_url=cfg.api_url.rstrip("/"),
            timeout=cfg.request_timeout_seconds,
            transport=transport or httpx.HTTPTransport(retries=1),
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> SchedulingClient:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    # -------------------------------------------------------------------
    # Request plumbing
    # -------------------------------------------------------------------
    def _privileged_headers(self) -> dict[str, str]:
        return {"x-cal-secret-key": self._secret_key, "Content-Type": "application/json"}

    def _bearer_headers(self, access_token: str) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {access_token}",
            "cal-api-version": self._cfg.api_version,
            "Content-Type": "application/json",
        }

    def _request(
        self,
        method: str,
        path: str,
        *,
        headers: dict[str, str],
        json: dict | None = None,
    ) -> dict:
        idempotent = method.upper() == "GET"
        try:
            response = self._client.request(method, path, headers=headers, json=json)
        except httpx.TimeoutException as exc:
            logger.warning("Scheduling provider timeout on %s %s", method, path)
            raise ProcessorError(
                f"Timeout calling {method} {path}", provider=PROVIDER, retryable=True,
            ) from exc
        except httpx.HTTPError as exc:
            logger.warning("Scheduling provider transport error on %s %s: %s", method, path, exc)
            raise ProcessorError(
                f"Transport error calling {method} {path}: {exc}",
                provider=PROVIDER, retryable=idempotent,
            ) from exc

        if response.status_code >= 400:
            body = response.text[:_BODY_LOG_LIMIT]
            logger.warning(
                "Scheduling provider returned %d for %s %s: %s",
                response.status_code, method, path, body,
            )
            raise ProcessorError(
                f"{method} {path} returned {response.status_code}",
                provider=PROVIDER,
                status_code=response.status_code,
                body=body,
                retryable=idempotent and (
                    response.status_code >= 500 or response.status_code == 429
                ),
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise ProcessorError(
                f"{method} {path} returned a non-JSON body",
                provider=PROVIDER, status_code=response.status_code,
                body=response.text[:_BODY_LOG_LIMIT],
            ) from exc
        if not isinstance(payload, dict):
            raise ProcessorError(
                f"{method} {path} returned an unexpected JSON shape",
                provider=PROVIDER, status_code=response.status_code,
                body=str(payload)[:_BODY_LOG_LIMIT],
            )
        return payload

    @staticmethod
    def _data(payload: dict):
        if payload.get("status") not in (None, "success"):
            raise ProcessorError(
                "Scheduling provider returned a non-success envelope",
                provider=PROVIDER, body=str(payload)[:_BODY_LOG_LIMIT],
            )
        return payload.get("data", payload)

    # -------------------------------------------------------------------
    # OAuth
    # -------------------------------------------------------------------
    def refresh_tokens(self, refresh_token: str) -> TokenGrant:
        """Exchange *refresh_token* for a new token pair."""
        payload = self._request(
            "POST",
            f"/oauth/{self._cfg.client_id}/refresh",
            headers=self._privileged_headers(),
            json={"refreshToken": refresh_token},
        )
        return parse_token_envelope(payload)

    def force_refresh(self, external_account_id: int) -> TokenGrant:
        """Reissue tokens for a managed user without a refresh token."""
        payload = self._request(
            "POST",
            f"/oauth-clients/{self._cfg.client_id}/users/{external_account_id}/force-refresh",
            headers=self._privileged_headers(),
            json={},
        )
        return parse_token_envelope(payload)

    # -------------------------------------------------------------------
    # Schedules
    # -------------------------------------------------------------------
    def get_default_schedule(self, access_token: str) -> dict:
        payload = self._request(
            "GET", "/schedules/default", headers=self._bearer_headers(access_token)
        )
        return self._data(payload) or {}

    def update_schedule(self, access_token: str, schedule_id: int, body: dict) -> dict:
        payload = self._request(
            "PATCH",
            f"/schedules/{schedule_id}",
            headers=self._bearer_headers(access_token),
            json=body,
        )
        return self._data(payload) or {}

    # -------------------------------------------------------------------
    # Bookings & event types
    # -------------------------------------------------------------------
    def get_booking(self, access_token: str, uid: str) -> dict:
        payload = self._request(
            "GET", f"/bookings/{uid}", headers=self._bearer_headers(access_token)
        )
        return self._data(payload)

    def cancel_booking(self, access_token: str, uid: str, reason: str | None = None) -> dict:
        body = {"cancellationReason": reason} if reason else {}
        payload = self._request(
            "POST",
            f"/bookings/{uid}/cancel",
            headers=self._bearer_headers(access_token),
            json=body,
        )
        return self._data(payload)

    def create_booking(self, access_token: str, body: dict) -> dict:
        payload = self._request(
            "POST", "/bookings", headers=self._bearer_headers(access_token), json=body
        )
        return self._data(payload)

    def list_event_types(self, access_token: str) -> list[dict]:
        payload = self._request(
            "GET", "/event-types", headers=self._bearer_headers(access_token)
        )
        data = self._data(payload)
        if isinstance(data, dict):
            data = data.get("eventTypes") or data.get("event_types") or []
        return list(data or [])
