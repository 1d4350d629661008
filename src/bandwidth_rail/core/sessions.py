"""
Relay Session Management

A contributor "starts sharing" by activating a relay session. Starting a
new session stops the previous one in the same transaction, under the
contributor's lock, so at most one session is active per contributor.
"""

from datetime import datetime, timezone
from typing import Optional
import structlog

from ..errors import ValidationError
from ..persistence.database import Database
from ..persistence.models import SessionRecord, new_id
from ..persistence.repository import SessionRepository
from .locks import LedgerLocks

logger = structlog.get_logger()


def start_of_day(now: Optional[datetime] = None) -> datetime:
    now = now or datetime.now(timezone.utc)
    return datetime(now.year, now.month, now.day, tzinfo=timezone.utc)


class SessionManager:
    """Starts and stops relay sessions."""

    def __init__(
        self,
        db: Database,
        sessions: SessionRepository,
        locks: LedgerLocks,
        default_bandwidth_limit_gb: float = 50.0,
    ):
        self.db = db
        self.sessions = sessions
        self.locks = locks
        self.default_bandwidth_limit_gb = default_bandwidth_limit_gb

    def start(self, contributor_id: str, bandwidth_limit_gb: Optional[float] = None) -> SessionRecord:
        limit = self.default_bandwidth_limit_gb if bandwidth_limit_gb is None else bandwidth_limit_gb
        if limit <= 0:
            raise ValidationError("bandwidth_limit_gb must be positive")

        with self.locks.contributors.hold(contributor_id):
            with self.db.transaction():
                stopped = self.sessions.deactivate_all(contributor_id)
                session = self.sessions.create(SessionRecord(
                    session_id=new_id("ses"),
                    contributor_id=contributor_id,
                    bandwidth_limit_gb=limit,
                ))

        logger.info(
            "relay_session_started",
            contributor_id=contributor_id,
            session_id=session.session_id,
            bandwidth_limit_gb=limit,
            replaced=stopped,
        )
        return session

    def stop(self, contributor_id: str) -> int:
        with self.locks.contributors.hold(contributor_id):
            with self.db.transaction():
                stopped = self.sessions.deactivate_all(contributor_id)

        logger.info("relay_session_stopped", contributor_id=contributor_id, stopped=stopped)
        return stopped

    def active(self, contributor_id: str) -> Optional[SessionRecord]:
        return self.sessions.get_active(contributor_id)

    def data_shared_today(self, contributor_id: str, now: Optional[datetime] = None) -> float:
        """MB relayed by sessions started during the current UTC day."""
        since = start_of_day(now).isoformat()
        return self.sessions.sum_relayed_since(contributor_id, since)
