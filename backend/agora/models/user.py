import enum
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Union

from sqlalchemy import Boolean, DateTime, Enum, String, UniqueConstraint, Uuid, func, true
from sqlalchemy.orm import Mapped, mapped_column

from agora.database import Base

EXTERNAL_ID_MAX_LENGTH = 255
EMAIL_MAX_LENGTH = 255
NAME_MAX_LENGTH = 100
AVATAR_URL_MAX_LENGTH = 1000


class AuthMethodKind(str, enum.Enum):
    oauth = "oauth"
    password = "password"


@dataclass(frozen=True)
class OAuthIdentity:
    provider: str
    external_id: str


@dataclass(frozen=True)
class PasswordCredential:
    password_hash: str


AuthMethod = Union[OAuthIdentity, PasswordCredential]


class User(Base):
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)

    # Exactly one of (auth_provider + external_id) or password_hash is set,
    # depending on auth_method_kind.
    auth_method_kind: Mapped[AuthMethodKind] = mapped_column(
        Enum(AuthMethodKind, name="auth_method"), nullable=False
    )
    auth_provider: Mapped[Optional[str]] = mapped_column(String(32))
    external_id: Mapped[Optional[str]] = mapped_column(String(EXTERNAL_ID_MAX_LENGTH))
    password_hash: Mapped[Optional[str]] = mapped_column(String(255))

    email: Mapped[Optional[str]] = mapped_column(String(EMAIL_MAX_LENGTH), index=True)
    given_name: Mapped[Optional[str]] = mapped_column(String(NAME_MAX_LENGTH))
    family_name: Mapped[Optional[str]] = mapped_column(String(NAME_MAX_LENGTH))
    username: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    avatar_url: Mapped[Optional[str]] = mapped_column(String(AVATAR_URL_MAX_LENGTH))

    is_active: Mapped[bool] = mapped_column(
        Boolean, default=True, server_default=true(), nullable=False
    )
    last_login_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        UniqueConstraint("auth_provider", "external_id", name="uq_users_provider_external_id"),
    )

    @property
    def auth_method(self) -> AuthMethod:
        if self.auth_method_kind == AuthMethodKind.oauth:
            if not self.auth_provider or not self.external_id:
                raise ValueError(f"OAuth user {self.id} is missing its provider identity")
            return OAuthIdentity(provider=self.auth_provider, external_id=self.external_id)
        if not self.password_hash:
            raise ValueError(f"Password user {self.id} has no password hash")
        return PasswordCredential(password_hash=self.password_hash)

    @auth_method.setter
    def auth_method(self, method: AuthMethod) -> None:
        if isinstance(method, OAuthIdentity):
            self.auth_method_kind = AuthMethodKind.oauth
            self.auth_provider = method.provider
            self.external_id = method.external_id
            self.password_hash = None
        else:
            self.auth_method_kind = AuthMethodKind.password
            self.auth_provider = None
            self.external_id = None
            self.password_hash = method.password_hash
