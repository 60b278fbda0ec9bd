"""Database models."""

from agora.models.session import session_table
from agora.models.user import AuthMethod, AuthMethodKind, OAuthIdentity, PasswordCredential, User

__all__ = [
    "AuthMethod",
    "AuthMethodKind",
    "OAuthIdentity",
    "PasswordCredential",
    "User",
    "session_table",
]
