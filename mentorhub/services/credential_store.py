"""
mentorhub.services.credential_store — Scheduling Credential Persistence
========================================================================

One :class:`~mentorhub.database.models.MentorCredential` row per mentor.
Reads hand back an immutable :class:`CredentialSnapshot` so callers never
hold a live ORM object across the network calls made by the token
lifecycle manager.

Only :func:`compare_and_swap_tokens` is used for refreshes; it succeeds
only if the row still carries the ``version`` the caller loaded.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import Engine, delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from mentorhub.database.engine import get_session
from mentorhub.database.models import MentorCredential
from mentorhub.engine.clock import as_utc, utcnow
from mentorhub.services.scheduling_client import TokenGrant

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class CredentialSnapshot:
    mentor_id: int
    external_account_id: int
    external_username: str
    access_token: str
    refresh_token: str
    access_token_expires_at: datetime
    refresh_token_expires_at: datetime
    version: int

    def access_valid(self, now: datetime) -> bool:
        return now < self.access_token_expires_at

    def refresh_valid(self, now: datetime) -> bool:
        return now < self.refresh_token_expires_at


def _snapshot(row: MentorCredential) -> CredentialSnapshot:
    return CredentialSnapshot(
        mentor_id=row.mentor_id,
        external_account_id=row.external_account_id,
        external_username=row.external_username,
        access_token=row.access_token,
        refresh_token=row.refresh_token,
        access_token_expires_at=as_utc(row.access_token_expires_at),
        refresh_token_expires_at=as_utc(row.refresh_token_expires_at),
        version=row.version,
    )


def get_credential(engine: Engine, mentor_id: int) -> CredentialSnapshot | None:
    with Session(engine) as session:
        row = session.scalar(
            select(MentorCredential).where(MentorCredential.mentor_id == mentor_id)
        )
        return _snapshot(row) if row is not None else None


def save_credential(
    engine: Engine,
    mentor_id: int,
    *,
    external_account_id: int,
    external_username: str,
    grant: TokenGrant,
) -> CredentialSnapshot:
    """Store the token pair issued when a mentor connects their account.

    Reconnecting replaces the existing pair and bumps ``version`` so any
    in-flight refresh that loaded the old pair loses its swap.
    """
    values = dict(
        external_account_id=external_account_id,
        external_username=external_username,
        access_token=grant.access_token,
        refresh_token=grant.refresh_token,
        access_token_expires_at=grant.access_token_expires_at,
        refresh_token_expires_at=grant.refresh_token_expires_at,
    )
    with get_session(engine) as session:
        row = session.scalar(
            select(MentorCredential).where(MentorCredential.mentor_id == mentor_id)
        )
        created = False
        if row is None:
            try:
                with session.begin_nested():   # SAVEPOINT
                    row = MentorCredential(mentor_id=mentor_id, version=0, **values)
                    session.add(row)
                    session.flush()
                created = True
            except IntegrityError:
                # Concurrent connect for the same mentor; fall back to update.
                row = session.scalar(
                    select(MentorCredential).where(MentorCredential.mentor_id == mentor_id)
                )
        if not created:
            for key, value in values.items():
                setattr(row, key, value)
            row.version += 1
            row.updated_at = utcnow()
            session.flush()
        snap = _snapshot(row)
    logger.info("Stored scheduling credential for mentor %d (v%d)", mentor_id, snap.version)
    return snap


def compare_and_swap_tokens(
    engine: Engine,
    snapshot: CredentialSnapshot,
    grant: TokenGrant,
    now: datetime,
) -> bool:
    """Persist *grant* only if the row is still at ``snapshot.version``.

    Returns False when another writer got there first.
    """
    stmt = (
        update(MentorCredential)
        .where(
            MentorCredential.mentor_id == snapshot.mentor_id,
            MentorCredential.version == snapshot.version,
        )
        .values(
            access_token=grant.access_token,
            refresh_token=grant.refresh_token,
            access_token_expires_at=grant.access_token_expires_at,
            refresh_token_expires_at=grant.refresh_token_expires_at,
            version=MentorCredential.version + 1,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    with get_session(engine) as session:
        result = session.execute(stmt)
        return result.rowcount == 1


def delete_credential(engine: Engine, mentor_id: int) -> bool:
    """Forget a mentor's scheduling credential (disconnect)."""
    with get_session(engine) as session:
        result = session.execute(
            delete(MentorCredential)
            .where(MentorCredential.mentor_id == mentor_id)
            .execution_options(synchronize_session=False)
        )
        deleted = result.rowcount > 0
    if deleted:
        logger.info("Deleted scheduling credential for mentor %d", mentor_id)
    return deleted
