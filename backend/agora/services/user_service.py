import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from agora.models.user import OAuthIdentity, User
from agora.schemas.auth import FacebookProfile

logger = logging.getLogger(__name__)

FACEBOOK_PROVIDER = "facebook"


class UserResolutionError(Exception):
    """Finding or creating the local user for an external identity failed."""


@dataclass
class ResolvedUser:
    """A user returned from an OAuth handshake.

    ``access_token`` is the provider token for this login. It lives only on
    this object and is never written to the users table.
    """

    user: User
    access_token: str
    is_new: bool = False


class _UsernameClock:
    """Millisecond stamps that never repeat within the process."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._last = 0

    def next(self) -> int:
        with self._lock:
            stamp = max(int(time.time() * 1000), self._last + 1)
            self._last = stamp
            return stamp


_username_clock = _UsernameClock()


def generate_username(given_name: str, family_name: str) -> str:
    return f"{given_name}{family_name}{_username_clock.next()}"


class UserService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_by_id(self, user_id: UUID) -> Optional[User]:
        result = await self.db.execute(select(User).where(User.id == user_id))
        return result.scalar_one_or_none()

    async def get_by_external_id(
        self, external_id: str, provider: str = FACEBOOK_PROVIDER
    ) -> Optional[User]:
        result = await self.db.execute(
            select(User).where(User.auth_provider == provider, User.external_id == external_id)
        )
        return result.scalar_one_or_none()

    async def get_by_username(self, username: str) -> Optional[User]:
        result = await self.db.execute(select(User).where(User.username == username))
        return result.scalar_one_or_none()

    async def find_or_create_oauth_user(
        self,
        profile: FacebookProfile,
        access_token: str,
        provider: str = FACEBOOK_PROVIDER,
    ) -> ResolvedUser:
        """
        Resolve an external identity to a local user.
        Creates the user on first login, reuses it afterwards.

        The existing record is left as is apart from last_login_at; profile
        changes on the provider side are not synced back.
        """
        try:
            user = await self.get_by_external_id(profile.id, provider=provider)
            now = datetime.now(timezone.utc)

            if user is not None:
                user.last_login_at = now
                await self.db.flush()
                return ResolvedUser(user=user, access_token=access_token, is_new=False)

            user = User(
                email=profile.primary_email,
                given_name=profile.first_name,
                family_name=profile.last_name,
                username=generate_username(profile.first_name, profile.last_name),
                avatar_url=profile.picture_url,
                last_login_at=now,
            )
            user.auth_method = OAuthIdentity(provider=provider, external_id=profile.id)
            self.db.add(user)
            await self.db.flush()
            await self.db.refresh(user)
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error("Could not resolve %s user %s: %s", provider, profile.id, e)
            raise UserResolutionError(f"Could not resolve {provider} user") from e

        logger.info("Created user %s for %s identity", user.id, provider)
        return ResolvedUser(user=user, access_token=access_token, is_new=True)
