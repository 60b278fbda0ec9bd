from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict

from agora.models.user import AuthMethodKind


class UserResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    username: str
    email: str | None = None
    given_name: str | None = None
    family_name: str | None = None
    avatar_url: str | None = None
    auth_method_kind: AuthMethodKind
    auth_provider: str | None = None
    is_active: bool
    last_login_at: datetime | None = None
    created_at: datetime
