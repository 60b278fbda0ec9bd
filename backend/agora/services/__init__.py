"""Service layer for business logic."""

from agora.services.session_store import SessionStore, SessionStoreError, SessionStoreMonitor
from agora.services.user_service import ResolvedUser, UserResolutionError, UserService

__all__ = [
    "ResolvedUser",
    "SessionStore",
    "SessionStoreError",
    "SessionStoreMonitor",
    "UserResolutionError",
    "UserService",
]
