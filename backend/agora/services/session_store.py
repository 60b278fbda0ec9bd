"""Server-side session persistence.

Sessions live as JSON documents in a table whose name comes from
``SESSION_DB_COLLECTION``. Rows past ``expires_at`` are never returned and
are removed by the ``purge_expired_sessions`` background job.
"""

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import MetaData, delete, func, insert, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from agora.config import Settings
from agora.database import Base
from agora.models.session import session_table

logger = logging.getLogger(__name__)

MAX_RECORDED_FAILURES = 100

# Drivers raise socket errors for an unreachable database without wrapping them.
STORE_ERRORS = (SQLAlchemyError, OSError)


class SessionStoreError(Exception):
    """A session store operation failed."""


@dataclass
class StoreFailure:
    operation: str
    session_ref: str
    error: str
    attempts: int
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class SessionStoreMonitor:
    """Keeps track of session store failures for operators.

    Failures are logged and the most recent ones are kept in memory so the
    readiness endpoint can report them.
    """

    def __init__(self, max_failures: int = MAX_RECORDED_FAILURES):
        self.failure_count = 0
        self.recent: deque[StoreFailure] = deque(maxlen=max_failures)

    def record_failure(
        self, operation: str, session_id: str, error: BaseException, attempts: int = 1
    ) -> StoreFailure:
        failure = StoreFailure(
            operation=operation,
            session_ref=_session_ref(session_id),
            error=f"{type(error).__name__}: {error}",
            attempts=attempts,
        )
        self.failure_count += 1
        self.recent.append(failure)
        logger.error(
            "Session store %s failed for %s after %d attempt(s): %s",
            operation,
            failure.session_ref,
            attempts,
            failure.error,
        )
        return failure

    @property
    def last_failure(self) -> Optional[StoreFailure]:
        return self.recent[-1] if self.recent else None

    def snapshot(self) -> dict[str, Any]:
        last = self.last_failure
        return {
            "failure_count": self.failure_count,
            "last_failure": (
                {
                    "operation": last.operation,
                    "error": last.error,
                    "occurred_at": last.occurred_at.isoformat(),
                }
                if last
                else None
            ),
        }


def _session_ref(session_id: str) -> str:
    # Enough to correlate log lines without leaking a usable session id.
    return f"{session_id[:6]}..." if session_id else "<none>"


class SessionStore:
    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        settings: Settings,
        monitor: SessionStoreMonitor | None = None,
        metadata: MetaData | None = None,
    ):
        self.session_maker = session_maker
        self.table = session_table(
            metadata if metadata is not None else Base.metadata, settings.session_db_collection
        )
        self.monitor = monitor or SessionStoreMonitor()
        self.retries = settings.session_store_retries
        self.retry_backoff = settings.session_store_retry_backoff

    async def get(self, session_id: str) -> Optional[dict[str, Any]]:
        """Return the session document, or None if it is unknown or expired."""
        try:
            async with self.session_maker() as db:
                result = await db.execute(
                    select(self.table.c.data).where(
                        self.table.c.id == session_id,
                        self.table.c.expires_at > datetime.now(timezone.utc),
                    )
                )
                data = result.scalar_one_or_none()
        except STORE_ERRORS as e:
            raise SessionStoreError("Failed to load session") from e
        return dict(data) if data is not None else None

    async def set(self, session_id: str, data: dict[str, Any], expires_at: datetime) -> None:
        """Write the session document. Last write wins."""
        try:
            async with self.session_maker() as db:
                async with db.begin():
                    result = await db.execute(
                        update(self.table)
                        .where(self.table.c.id == session_id)
                        .values(data=data, expires_at=expires_at, updated_at=func.now())
                    )
                    if result.rowcount == 0:
                        await db.execute(
                            insert(self.table).values(
                                id=session_id, data=data, expires_at=expires_at
                            )
                        )
        except STORE_ERRORS as e:
            raise SessionStoreError("Failed to save session") from e

    async def destroy(self, session_id: str) -> None:
        try:
            async with self.session_maker() as db:
                async with db.begin():
                    await db.execute(delete(self.table).where(self.table.c.id == session_id))
        except STORE_ERRORS as e:
            raise SessionStoreError("Failed to destroy session") from e

    async def purge_expired(self) -> int:
        try:
            async with self.session_maker() as db:
                async with db.begin():
                    result = await db.execute(
                        delete(self.table).where(
                            self.table.c.expires_at <= datetime.now(timezone.utc)
                        )
                    )
        except STORE_ERRORS as e:
            raise SessionStoreError("Failed to purge expired sessions") from e
        return result.rowcount or 0

    async def load(self, session_id: str) -> Optional[dict[str, Any]]:
        """Like get(), but a store failure counts as "no session"."""
        try:
            return await self.get(session_id)
        except SessionStoreError as e:
            self.monitor.record_failure("load", session_id, e.__cause__ or e)
            return None

    async def save(self, session_id: str, data: dict[str, Any], expires_at: datetime) -> bool:
        """Persist with retry and backoff. Returns False once retries run out."""
        return await self._with_retry("save", session_id, self.set, session_id, data, expires_at)

    async def discard(self, session_id: str) -> bool:
        return await self._with_retry("destroy", session_id, self.destroy, session_id)

    async def _with_retry(self, operation: str, session_id: str, func_, *args: Any) -> bool:
        attempts = self.retries + 1
        retrying = AsyncRetrying(
            retry=retry_if_exception_type(SessionStoreError),
            wait=wait_exponential(multiplier=self.retry_backoff),
            stop=stop_after_attempt(attempts),
            before_sleep=_log_retry(operation, attempts),
            reraise=True,
        )
        try:
            await retrying(func_, *args)
        except SessionStoreError as e:
            self.monitor.record_failure(operation, session_id, e.__cause__ or e, attempts=attempts)
            return False
        return True


def _log_retry(operation: str, attempts: int):
    def log(retry_state: RetryCallState) -> None:
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        logger.warning(
            "Session store %s failed (attempt %d/%d), retrying in %.2fs",
            operation,
            retry_state.attempt_number,
            attempts,
            delay,
        )

    return log
