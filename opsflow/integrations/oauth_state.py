from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
import secrets

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session, sessionmaker

from opsflow.core.errors import OAuthStateError
from opsflow.db.models import OAuthState

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConsumedState:
    provider: str
    user_id: int


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class OAuthStateStore:
    """One-time CSRF state tokens for OAuth redirects, persisted with an expiry."""

    def __init__(self, session_factory: sessionmaker[Session], ttl_seconds: int = 600) -> None:
        self._session_factory = session_factory
        self._ttl = timedelta(seconds=ttl_seconds)

    def issue(self, provider: str, user_id: int, now: datetime | None = None) -> str:
        now = now or datetime.now(timezone.utc)
        state = secrets.token_hex(32)
        with self._session_factory() as session:
            session.add(
                OAuthState(state=state, provider=provider, user_id=user_id, expires_at=now + self._ttl)
            )
            session.commit()
        logger.info(
            "OAuth state issued",
            extra={"event": "oauth_state_issued", "provider": provider, "user_id": user_id},
        )
        return state

    def consume(self, state: str, now: datetime | None = None) -> ConsumedState:
        now = now or datetime.now(timezone.utc)
        with self._session_factory() as session:
            record = session.get(OAuthState, state) if state else None
            if record is None:
                raise OAuthStateError("Invalid or expired OAuth state")

            consumed = ConsumedState(provider=record.provider, user_id=record.user_id)
            expired = _as_utc(record.expires_at) < now
            # Delete-by-key so a concurrent consumer of the same state loses.
            result = session.execute(delete(OAuthState).where(OAuthState.state == state))
            session.commit()

        if result.rowcount != 1:
            raise OAuthStateError("Invalid or expired OAuth state")
        if expired:
            raise OAuthStateError("OAuth state expired")
        return consumed

    def purge_expired(self, now: datetime | None = None) -> int:
        now = now or datetime.now(timezone.utc)
        with self._session_factory() as session:
            result = session.execute(delete(OAuthState).where(OAuthState.expires_at < now))
            session.commit()
        if result.rowcount:
            logger.info(
                "Expired OAuth states purged",
                extra={"event": "oauth_state_purged", "count": result.rowcount},
            )
        return result.rowcount

    def pending_count(self) -> int:
        with self._session_factory() as session:
            return session.scalar(select(func.count()).select_from(OAuthState)) or 0
