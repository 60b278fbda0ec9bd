import enum
import logging
from typing import Annotated, Any, Optional
from uuid import UUID

from fastapi import Depends, HTTPException, Request, status
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from agora.database import get_db
from agora.models.user import User
from agora.schemas.auth import IdentityPayload
from agora.services.user_service import ResolvedUser, UserService
from agora.utils.session import ServerSession

logger = logging.getLogger(__name__)

# Session key holding the serialized identity of a logged-in user
IDENTITY_KEY = "identity"


class SessionSerializationError(Exception):
    """A user or session payload does not have the shape a session needs."""


class AuthState(str, enum.Enum):
    anonymous = "anonymous"
    authenticated = "authenticated"


def serialize_user(resolved: ResolvedUser) -> IdentityPayload:
    """
    Project a resolved user into the identity payload kept in the session.

    Only the user id, names, email and the provider token are kept. Users
    without names or an email (e.g. password accounts) cannot be serialized
    and raise SessionSerializationError instead of producing a partial payload.
    """
    user = resolved.user
    missing = [
        field
        for field, value in (
            ("id", user.id),
            ("given_name", user.given_name),
            ("family_name", user.family_name),
            ("email", user.email),
            ("token", resolved.access_token),
        )
        if not value
    ]
    if missing:
        raise SessionSerializationError(
            f"Cannot serialize user {user.id}: missing {', '.join(missing)}"
        )

    return IdentityPayload(
        user_id=user.id,
        family_name=user.family_name,
        given_name=user.given_name,
        email=user.email,
        token=resolved.access_token,
    )


def parse_identity(data: Any) -> IdentityPayload:
    try:
        return IdentityPayload.model_validate(data)
    except ValidationError as e:
        raise SessionSerializationError(f"Malformed identity payload: {e.error_count()} error(s)") from None


def deserialize_identity(data: Any) -> UUID:
    """Return the key used to look the session's user up again."""
    return parse_identity(data).user_id


async def load_session_user(data: Any, db: AsyncSession) -> Optional[User]:
    return await UserService(db).get_by_id(deserialize_identity(data))


def login_session(session: ServerSession, resolved: ResolvedUser) -> IdentityPayload:
    payload = serialize_user(resolved)
    session.regenerate()
    session[IDENTITY_KEY] = payload.model_dump(mode="json")
    return payload


def session_auth_state(session: ServerSession) -> AuthState:
    return AuthState.authenticated if IDENTITY_KEY in session else AuthState.anonymous


def get_session(request: Request) -> ServerSession:
    return request.session  # type: ignore[return-value]


def get_current_identity_optional(
    session: Annotated[ServerSession, Depends(get_session)],
) -> Optional[IdentityPayload]:
    """
    Get the identity stored in the session.
    Returns None for anonymous sessions or unreadable payloads.
    """
    if session_auth_state(session) is AuthState.anonymous:
        return None
    try:
        return parse_identity(session[IDENTITY_KEY])
    except SessionSerializationError as e:
        logger.warning("Ignoring session identity: %s", e)
        return None


def get_current_identity(
    identity: Annotated[Optional[IdentityPayload], Depends(get_current_identity_optional)],
) -> IdentityPayload:
    if identity is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )
    return identity


async def get_current_user(
    identity: Annotated[IdentityPayload, Depends(get_current_identity)],
    db: Annotated[AsyncSession, Depends(get_db)],
) -> User:
    """Get the authenticated user behind the session."""
    user = await UserService(db).get_by_id(identity.user_id)

    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )

    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User account is inactive",
        )

    return user


# Type aliases for dependency injection
CurrentIdentity = Annotated[IdentityPayload, Depends(get_current_identity)]
CurrentIdentityOptional = Annotated[Optional[IdentityPayload], Depends(get_current_identity_optional)]
CurrentUser = Annotated[User, Depends(get_current_user)]
