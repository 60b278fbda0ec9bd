"""GraphQL endpoint.

Only the identity surface lives here. Feature resolvers (posts, comments,
files, events, notifications) extend ``Query`` and ``Mutation``, receive
the same ``GraphQLContext`` and gate themselves with ``IsAuthenticated``.
"""

import logging
import uuid
from typing import Annotated, Any, Optional

import strawberry
from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession
from strawberry.fastapi import BaseContext, GraphQLRouter
from strawberry.permission import BasePermission
from strawberry.types import Info

from agora.config import Settings
from agora.database import get_db
from agora.models.user import User
from agora.services.user_service import UserService
from agora.utils.auth import (
    IDENTITY_KEY,
    AuthState,
    SessionSerializationError,
    load_session_user,
    session_auth_state,
)
from agora.utils.session import ServerSession

logger = logging.getLogger(__name__)


class GraphQLContext(BaseContext):
    def __init__(self, db: AsyncSession):
        super().__init__()
        self.db = db

    @property
    def session(self) -> ServerSession:
        return self.request.session  # type: ignore[union-attr,return-value]

    @property
    def is_authenticated(self) -> bool:
        return session_auth_state(self.session) is AuthState.authenticated

    async def current_user(self) -> Optional[User]:
        if not self.is_authenticated:
            return None
        try:
            user = await load_session_user(self.session[IDENTITY_KEY], self.db)
        except SessionSerializationError as e:
            logger.warning("Ignoring session identity: %s", e)
            return None
        return user if user is not None and user.is_active else None


async def check_upload_limits(request: Request) -> None:
    """Reject multipart requests with too many files or oversized fields."""
    settings: Settings = request.app.state.settings
    # Parsed once here; the GraphQL view reuses the cached form.
    form = await request.form(max_files=settings.graphql_max_files)
    for key, value in form.multi_items():
        if isinstance(value, str) and len(value.encode()) > settings.graphql_max_field_size:
            raise HTTPException(
                status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                detail=f"Field '{key}' exceeds {settings.graphql_max_field_size} bytes",
            )


async def get_context(
    request: Request, db: Annotated[AsyncSession, Depends(get_db)]
) -> GraphQLContext:
    if request.headers.get("content-type", "").startswith("multipart/form-data"):
        await check_upload_limits(request)
    return GraphQLContext(db)


class IsAuthenticated(BasePermission):
    message = "Not authenticated"

    def has_permission(self, source: Any, info: Info[GraphQLContext, None], **kwargs: Any) -> bool:
        return info.context.is_authenticated


@strawberry.type
class UserType:
    id: strawberry.ID
    username: str
    email: Optional[str]
    given_name: Optional[str]
    family_name: Optional[str]
    avatar_url: Optional[str]

    @classmethod
    def from_model(cls, user: User) -> "UserType":
        return cls(
            id=strawberry.ID(str(user.id)),
            username=user.username,
            email=user.email,
            given_name=user.given_name,
            family_name=user.family_name,
            avatar_url=user.avatar_url,
        )


@strawberry.type
class Query:
    @strawberry.field(description="The logged-in user, or null for anonymous sessions")
    async def me(self, info: Info[GraphQLContext, None]) -> Optional[UserType]:
        user = await info.context.current_user()
        return UserType.from_model(user) if user else None

    @strawberry.field(permission_classes=[IsAuthenticated])
    async def user(self, info: Info[GraphQLContext, None], id: strawberry.ID) -> Optional[UserType]:
        try:
            user_id = uuid.UUID(str(id))
        except ValueError:
            return None
        user = await UserService(info.context.db).get_by_id(user_id)
        return UserType.from_model(user) if user else None


@strawberry.type
class Mutation:
    @strawberry.mutation(description="End the current session")
    def logout(self, info: Info[GraphQLContext, None]) -> bool:
        was_authenticated = info.context.is_authenticated
        info.context.session.invalidate()
        return was_authenticated


schema = strawberry.Schema(query=Query, mutation=Mutation)


def build_graphql_router(settings: Settings) -> GraphQLRouter:
    return GraphQLRouter(
        schema,
        context_getter=get_context,
        graphql_ide=None if settings.in_production else "graphiql",
    )
