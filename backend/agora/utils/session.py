"""Signed-cookie sessions backed by the session store.

The cookie only carries a signed session id; the session document itself
lives in the store. Handlers read and write ``request.session`` like a dict.
"""

import enum
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from itsdangerous import BadData, URLSafeTimedSerializer
from starlette.datastructures import MutableHeaders
from starlette.requests import HTTPConnection
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from agora.config import Settings
from agora.services.session_store import SessionStore

logger = logging.getLogger(__name__)

SESSION_SALT = "agora-session-v1"


class SessionState(str, enum.Enum):
    no_session = "no_session"
    loaded = "loaded"


class ServerSession(dict):
    """Session document plus the bookkeeping the middleware needs."""

    def __init__(self, session_id: Optional[str] = None, data: Optional[dict[str, Any]] = None):
        super().__init__(data or {})
        self.session_id = session_id
        self.loaded_id = session_id
        self.modified = False
        self.invalidated = False

    @property
    def state(self) -> SessionState:
        return SessionState.loaded if self.loaded_id else SessionState.no_session

    @property
    def is_new(self) -> bool:
        return self.session_id is None

    def __setitem__(self, key: str, value: Any) -> None:
        self.modified = True
        super().__setitem__(key, value)

    def __delitem__(self, key: str) -> None:
        self.modified = True
        super().__delitem__(key)

    def clear(self) -> None:
        self.modified = True
        super().clear()

    def pop(self, key: str, *args: Any) -> Any:
        self.modified = True
        return super().pop(key, *args)

    def popitem(self) -> tuple[Any, Any]:
        self.modified = True
        return super().popitem()

    def setdefault(self, key: str, default: Any = None) -> Any:
        self.modified = True
        return super().setdefault(key, default)

    def update(self, *args: Any, **kwargs: Any) -> None:
        self.modified = True
        super().update(*args, **kwargs)

    def invalidate(self) -> None:
        """Drop the session: its row is deleted and the cookie cleared."""
        super().clear()
        self.session_id = None
        self.invalidated = True
        self.modified = True

    def regenerate(self) -> None:
        """Move the session to a fresh id, keeping its contents."""
        self.session_id = None
        self.invalidated = False
        self.modified = True

    def ensure_id(self) -> str:
        if self.session_id is None:
            self.session_id = secrets.token_urlsafe(32)
        return self.session_id


class SessionMiddleware:
    def __init__(self, app: ASGIApp, settings: Settings, store: SessionStore) -> None:
        self.app = app
        self.store = store
        self.cookie_name = settings.session_name
        self.max_age = settings.session_max_age
        self.lifetime = timedelta(milliseconds=settings.session_life)
        self.same_site = settings.session_same_site
        self.force_secure = settings.session_cookie_secure
        self.signer = URLSafeTimedSerializer(settings.session_secret, salt=SESSION_SALT)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        connection = HTTPConnection(scope)
        session = await self._load(connection.cookies.get(self.cookie_name))
        scope["session"] = session
        secure = self._is_secure(connection)

        async def send_wrapper(message: Message) -> None:
            if message["type"] == "http.response.start":
                headers = MutableHeaders(scope=message)
                cookie = self._response_cookie(session, secure)
                if cookie is not None:
                    headers.append("Set-Cookie", cookie)
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        finally:
            await self._persist(session)

    def sign(self, session_id: str) -> str:
        return self.signer.dumps(session_id)

    def unsign(self, cookie_value: Optional[str]) -> Optional[str]:
        """Return the session id in a cookie, or None if it fails verification."""
        if not cookie_value:
            return None
        try:
            session_id = self.signer.loads(cookie_value, max_age=self.max_age)
        except BadData:
            logger.debug("Rejected session cookie with a bad or expired signature")
            return None
        return session_id if isinstance(session_id, str) and session_id else None

    async def _load(self, cookie_value: Optional[str]) -> ServerSession:
        session_id = self.unsign(cookie_value)
        if session_id is None:
            return ServerSession()
        data = await self.store.load(session_id)
        if data is None:
            return ServerSession()
        return ServerSession(session_id, data)

    def _is_secure(self, connection: HTTPConnection) -> bool:
        if self.force_secure is not None:
            return self.force_secure
        forwarded = connection.headers.get("x-forwarded-proto", "")
        return connection.url.scheme == "https" or forwarded.split(",")[0].strip() == "https"

    def _response_cookie(self, session: ServerSession, secure: bool) -> Optional[str]:
        if session.invalidated:
            return self._cookie_header("null", 0, secure) if session.loaded_id else None
        if session.is_new and not (session.modified and session):
            # Nothing worth keeping was written to a fresh session.
            return None
        return self._cookie_header(self.sign(session.ensure_id()), self.max_age, secure)

    def _cookie_header(self, value: str, max_age: int, secure: bool) -> str:
        parts = [
            f"{self.cookie_name}={value}",
            "path=/",
            f"Max-Age={max_age}",
            "httponly",
            f"samesite={self.same_site}",
        ]
        if max_age == 0:
            parts.append("expires=Thu, 01 Jan 1970 00:00:00 GMT")
        if secure:
            parts.append("secure")
        return "; ".join(parts)

    async def _persist(self, session: ServerSession) -> None:
        if session.loaded_id and session.loaded_id != session.session_id:
            # Logged out or regenerated; the old row must go.
            await self.store.discard(session.loaded_id)

        if session.invalidated or session.session_id is None:
            return

        # Loaded sessions are re-saved on every request so their lifetime rolls.
        expires_at = datetime.now(timezone.utc) + self.lifetime
        await self.store.save(session.session_id, dict(session), expires_at)
