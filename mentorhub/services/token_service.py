"""
mentorhub.services.token_service — Access-Token Lifecycle Manager
==================================================================

:meth:`TokenLifecycleManager.get_valid_access_token` guarantees a usable
scheduling-provider access token before any provider call:

1. No credential row → :class:`~mentorhub.errors.NoCredentialError`.
2. Stored access token still valid → returned as-is, no network call.
3. Otherwise walk :data:`DEFAULT_STRATEGIES` in order.  A strategy whose
   precondition does not hold (e.g. an expired refresh token) is skipped.
   Each failure goes through :func:`classify_failure`: recoverable
   failures move on to the next strategy, a terminal failure becomes
   :class:`~mentorhub.errors.AuthError` and stored credentials are left
   untouched.

Refreshes for one mentor are serialized by a process-local lock, and the
write itself is a compare-and-swap on the row ``version`` so a second
process cannot clobber a fresher token pair.  A lost swap re-reads the
row and retries.
"""

from __future__ import annotations

import enum
import logging
import threading
from collections.abc import Callable, Sequence
from datetime import datetime
from typing import Protocol

from sqlalchemy import Engine

from mentorhub.engine.clock import utcnow
from mentorhub.errors import AuthError, NoCredentialError, ProcessorError
from mentorhub.services.credential_store import (
    CredentialSnapshot,
    compare_and_swap_tokens,
    get_credential,
)
from mentorhub.services.scheduling_client import SchedulingClient, TokenGrant

logger = logging.getLogger(__name__)

MAX_SWAP_ATTEMPTS = 3


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------
class RefreshStrategy(Protocol):
    name: str
    fall_through: bool

    def applies(self, credential: CredentialSnapshot, now: datetime) -> bool: ...

    def attempt(self, client: SchedulingClient, credential: CredentialSnapshot) -> TokenGrant: ...


class StandardRefresh:
    """Exchange the stored refresh token.  Only tried while it is unexpired."""

    name = "refresh"
    fall_through = True

    def applies(self, credential: CredentialSnapshot, now: datetime) -> bool:
        return credential.refresh_valid(now)

    def attempt(self, client: SchedulingClient, credential: CredentialSnapshot) -> TokenGrant:
        return client.refresh_tokens(credential.refresh_token)


class ForcedReissue:
    """Administrative reissue keyed by the external account id."""

    name = "force-refresh"
    fall_through = False

    def applies(self, credential: CredentialSnapshot, now: datetime) -> bool:
        return True

    def attempt(self, client: SchedulingClient, credential: CredentialSnapshot) -> TokenGrant:
        return client.force_refresh(credential.external_account_id)


DEFAULT_STRATEGIES: tuple[RefreshStrategy, ...] = (StandardRefresh(), ForcedReissue())


class FailureClass(enum.StrEnum):
    RECOVERABLE = "recoverable"
    TERMINAL = "terminal"


def classify_failure(strategy: RefreshStrategy, exc: ProcessorError) -> FailureClass:
    """Decide whether a failed strategy hands over to the next one."""
    return FailureClass.RECOVERABLE if strategy.fall_through else FailureClass.TERMINAL


def _check_monotonic(credential: CredentialSnapshot, grant: TokenGrant) -> None:
    if (
        grant.access_token_expires_at < credential.access_token_expires_at
        or grant.refresh_token_expires_at < credential.refresh_token_expires_at
    ):
        raise ProcessorError(
            "Provider issued tokens that expire before the stored ones",
            provider="scheduling",
        )


# ---------------------------------------------------------------------------
# Per-mentor locks
# ---------------------------------------------------------------------------
_locks: dict[int, threading.Lock] = {}
_locks_guard = threading.Lock()


def _mentor_lock(mentor_id: int) -> threading.Lock:
    with _locks_guard:
        lock = _locks.get(mentor_id)
        if lock is None:
            lock = _locks[mentor_id] = threading.Lock()
        return lock


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------
class TokenLifecycleManager:
    def __init__(
        self,
        engine: Engine,
        client: SchedulingClient,
        *,
        strategies: Sequence[RefreshStrategy] = DEFAULT_STRATEGIES,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._engine = engine
        self._client = client
        self._strategies = tuple(strategies)
        self._clock = clock

    def _load(self, mentor_id: int) -> CredentialSnapshot:
        credential = get_credential(self._engine, mentor_id)
        if credential is None:
            raise NoCredentialError(mentor_id)
        return credential

    def get_valid_access_token(self, mentor_id: int) -> str:
        """Return a currently valid access token for *mentor_id*.

        Raises
        ------
        NoCredentialError
            The mentor never connected a scheduling account.
        AuthError
            Every applicable refresh strategy failed.
        """
        credential = self._load(mentor_id)
        if credential.access_valid(self._clock()):
            return credential.access_token

        with _mentor_lock(mentor_id):
            for _ in range(MAX_SWAP_ATTEMPTS):
                # Another caller may have refreshed while we waited.
                credential = self._load(mentor_id)
                now = self._clock()
                if credential.access_valid(now):
                    return credential.access_token

                grant = self._run_strategies(credential, now)
                if compare_and_swap_tokens(self._engine, credential, grant, self._clock()):
                    logger.info(
                        "Refreshed scheduling token for mentor %d (v%d → v%d)",
                        mentor_id, credential.version, credential.version + 1,
                    )
                    return grant.access_token

                logger.warning(
                    "Token swap lost for mentor %d at v%d; re-reading",
                    mentor_id, credential.version,
                )

        raise AuthError(
            f"Could not persist refreshed tokens for mentor {mentor_id} "
            f"after {MAX_SWAP_ATTEMPTS} attempts"
        )

    def _run_strategies(self, credential: CredentialSnapshot, now: datetime) -> TokenGrant:
        last: ProcessorError | None = None
        for strategy in self._strategies:
            if not strategy.applies(credential, now):
                logger.info(
                    "Skipping %s for mentor %d: precondition not met",
                    strategy.name, credential.mentor_id,
                )
                continue
            try:
                grant = strategy.attempt(self._client, credential)
                _check_monotonic(credential, grant)
                return grant
            except ProcessorError as exc:
                last = exc
                verdict = classify_failure(strategy, exc)
                logger.warning(
                    "Token %s failed for mentor %d (%s, status=%s)",
                    strategy.name, credential.mentor_id, verdict, exc.status_code,
                )
                if verdict is FailureClass.TERMINAL:
                    break

        raise AuthError(
            f"All token refresh strategies failed for mentor {credential.mentor_id}: "
            f"{last.message if last else 'no strategy applied'}",
            status_code=last.status_code if last else None,
            body=last.body if last else "",
        )
