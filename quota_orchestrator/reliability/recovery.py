"""
Mining Session Recovery

Repairs mining-session records left inconsistent by a crash, cancellation
or abandonment, and purges records past the retention window.
"""

import asyncio
import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from quota_orchestrator.errors import PersistenceFailure, SessionClosedError, SessionNotFoundError
from quota_orchestrator.models.base import utcnow
from quota_orchestrator.models.mining import MiningSession, SessionStatus
from quota_orchestrator.observability.tracing import get_tracer, trace_span, add_span_attributes
from quota_orchestrator.ratelimit.metrics import record_sessions_cleaned

logger = logging.getLogger(__name__)
tracer = get_tracer("reliability.recovery")

DEFAULT_RETENTION = timedelta(days=7)
DEFAULT_STALE_AFTER = timedelta(minutes=30)

CANCELLED_MESSAGE = "Mining session cancelled by user"
CANCELLED_STEP = "Mining cancelled by user"
INTERRUPTED_MESSAGE = "Session interrupted"
INTERRUPTED_STEP = "Recovered after interruption"


class SessionRecoveryManager:
    """
    Owns the lifecycle transitions of mining-session records.

    recover_session is best-effort and never raises; every other operation
    surfaces store failures as PersistenceFailure.
    """

    def __init__(
        self,
        session_factory: Optional[Callable[[], Session]] = None,
        retention: timedelta = DEFAULT_RETENTION,
        stale_after: timedelta = DEFAULT_STALE_AFTER,
        clock: Callable[[], datetime] = utcnow,
    ):
        if session_factory is None:
            from quota_orchestrator.database import SessionLocal
            session_factory = SessionLocal
        self.session_factory = session_factory
        self.retention = retention
        self.stale_after = stale_after
        self.clock = clock

    def start_session(self, user_id: str, operation_type: str = "enhanced_mining", session_id: Optional[str] = None) -> MiningSession:
        """Create a running session record for a new job."""
        now = self.clock()
        db = self.session_factory()
        try:
            session = MiningSession(
                session_id=session_id or str(uuid.uuid4()),
                user_id=user_id,
                operation_type=operation_type,
                status=SessionStatus.RUNNING.value,
                current_step="Starting",
                progress_percentage=0,
                results_so_far=0,
                started_at=now,
                updated_at=now,
            )
            db.add(session)
            db.commit()
            db.refresh(session)
            logger.info(f"Started mining session {session.session_id} for user {user_id}")
            return session
        except SQLAlchemyError as e:
            db.rollback()
            raise PersistenceFailure(f"Failed to start mining session: {e}") from e
        finally:
            db.close()

    def update_progress(
        self,
        session_id: str,
        user_id: str,
        step: str,
        progress: int,
        results: int = 0,
        error: Optional[str] = None,
    ) -> MiningSession:
        """
        Record job progress, creating the record if the runner got there first.

        Status becomes failed when an error is given, completed at
        progress >= 100, running otherwise.

        Raises:
            SessionClosedError: The session was already cancelled or settled;
                its record is left unchanged
            SessionNotFoundError: The session belongs to another user
        """
        now = self.clock()
        if error:
            status = SessionStatus.FAILED
        elif progress >= 100:
            status = SessionStatus.COMPLETED
        else:
            status = SessionStatus.RUNNING

        db = self.session_factory()
        try:
            session = db.query(MiningSession).filter(
                MiningSession.session_id == session_id
            ).with_for_update().first()
            if session is None:
                session = MiningSession(session_id=session_id, user_id=user_id, started_at=now)
                db.add(session)
            elif session.user_id != user_id:
                raise SessionNotFoundError(session_id)
            elif session.status != SessionStatus.RUNNING.value:
                # Cancelled or settled; the runner has to stop
                logger.info(f"Ignoring progress for {session_id}: session is {session.status}")
                raise SessionClosedError(session_id, session.status)

            session.current_step = step
            session.progress_percentage = progress
            session.results_so_far = results
            session.error_message = error
            session.status = status.value
            session.updated_at = now
            if status != SessionStatus.RUNNING:
                session.completed_at = now
            db.commit()
            db.refresh(session)
            return session
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Progress update error for {session_id}: {e}")
            raise PersistenceFailure(f"Failed to update progress: {e}") from e
        finally:
            db.close()

    def recover_session(self, session_id: str, user_id: str) -> bool:
        """
        Settle an interrupted session into a consistent state.

        A running session that had reached 100% is marked completed; any
        other running session is marked failed. Terminal sessions are left
        untouched. Returns False (never raises) when the session is missing
        or the store fails.
        """
        logger.info(f"Attempting to recover mining session: {session_id}")
        with trace_span(tracer, "session.recover", attributes={"session.id": session_id}) as span:
            db = self.session_factory()
            try:
                session = db.query(MiningSession).filter(
                    MiningSession.session_id == session_id,
                    MiningSession.user_id == user_id,
                ).first()
                if session is None:
                    logger.warning(f"Session recovery failed: {session_id} not found")
                    return False

                if session.status == SessionStatus.RUNNING.value:
                    self._settle(session, self.clock())
                    db.commit()

                add_span_attributes(span, {"session.status": session.status})
                logger.info(f"Successfully recovered session: {session_id} ({session.status})")
                return True
            except Exception as e:
                db.rollback()
                logger.error(f"Session recovery failed for {session_id}: {e}")
                return False
            finally:
                db.close()

    def cancel_session(self, session_id: str, user_id: str) -> Dict[str, Any]:
        """
        Cancel the user's running session.

        Raises:
            SessionNotFoundError: No running session with this id belongs to the user
            PersistenceFailure: If the store fails
        """
        logger.info(f"Cancelling mining session: {session_id}")
        now = self.clock()
        db = self.session_factory()
        try:
            session = db.query(MiningSession).filter(
                MiningSession.session_id == session_id,
                MiningSession.user_id == user_id,
                MiningSession.status == SessionStatus.RUNNING.value,
            ).with_for_update().first()
            if session is None:
                raise SessionNotFoundError(session_id)

            session.status = SessionStatus.CANCELLED.value
            session.error_message = CANCELLED_MESSAGE
            session.current_step = CANCELLED_STEP
            session.updated_at = now
            session.completed_at = now
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Error cancelling mining session {session_id}: {e}")
            raise PersistenceFailure(f"Failed to cancel mining session: {e}") from e
        finally:
            db.close()

        logger.info(f"Successfully cancelled mining session: {session_id}")
        return {
            "success": True,
            "message": "Mining session cancelled successfully",
            "sessionId": session_id,
        }

    def cleanup_stale_sessions(self, user_id: str) -> int:
        """
        Delete the user's sessions started before the retention window, whatever their status.

        Filters by age only, so it is safe alongside in-flight work on
        other sessions.
        """
        cutoff = self.clock() - self.retention
        logger.info(f"Cleaning up mining sessions older than: {cutoff.isoformat()}")

        db = self.session_factory()
        try:
            deleted = db.query(MiningSession).filter(
                MiningSession.user_id == user_id,
                MiningSession.started_at < cutoff,
            ).delete(synchronize_session=False)
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Error cleaning up mining sessions: {e}")
            raise PersistenceFailure(f"Failed to cleanup mining sessions: {e}") from e
        finally:
            db.close()

        record_sessions_cleaned(deleted)
        logger.info(f"Successfully cleaned up {deleted} old mining sessions")
        return deleted

    def recover_stale_sessions(self, stale_after: Optional[timedelta] = None) -> int:
        """Settle running sessions of any user that have not reported progress within `stale_after`."""
        now = self.clock()
        cutoff = now - (stale_after or self.stale_after)

        db = self.session_factory()
        try:
            stale = db.query(MiningSession).filter(
                MiningSession.status == SessionStatus.RUNNING.value,
                MiningSession.updated_at < cutoff,
            ).all()
            for session in stale:
                self._settle(session, now)
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Error recovering stale mining sessions: {e}")
            raise PersistenceFailure(f"Failed to recover stale sessions: {e}") from e
        finally:
            db.close()

        if stale:
            logger.info(f"Recovered {len(stale)} abandoned mining session(s)")
        return len(stale)

    @staticmethod
    def _settle(session: MiningSession, now: datetime) -> None:
        if session.progress_percentage >= 100:
            session.status = SessionStatus.COMPLETED.value
        else:
            session.status = SessionStatus.FAILED.value
            session.error_message = INTERRUPTED_MESSAGE
            session.current_step = INTERRUPTED_STEP
        session.updated_at = now
        session.completed_at = now


class SessionSweeper:
    """Background loop that periodically settles abandoned sessions."""

    def __init__(self, manager: SessionRecoveryManager, interval: float):
        self.manager = manager
        self.interval = interval
        self._task: Optional[asyncio.Task] = None

    async def start(self):
        if self.interval <= 0:
            logger.info("Session sweeper disabled.")
            return
        self._task = asyncio.create_task(self._loop())
        logger.info(f"Session sweeper started (every {self.interval}s).")

    async def stop(self):
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Session sweeper stopped.")

    async def _loop(self):
        while True:
            try:
                await asyncio.to_thread(self.manager.recover_stale_sessions)
            except Exception as e:
                logger.error(f"Session sweep failed: {e}", exc_info=True)
            await asyncio.sleep(self.interval)


# Global manager instance
_recovery_manager: Optional[SessionRecoveryManager] = None


def get_recovery_manager() -> SessionRecoveryManager:
    global _recovery_manager

    if _recovery_manager is None:
        from quota_orchestrator.config import settings
        _recovery_manager = SessionRecoveryManager(
            retention=timedelta(days=settings.SESSION_RETENTION_DAYS),
            stale_after=timedelta(minutes=settings.SESSION_STALE_AFTER_MINUTES),
        )

    return _recovery_manager
