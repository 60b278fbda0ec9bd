from typing import Annotated, Any
from uuid import UUID

from pydantic import BaseModel, Field, StringConstraints, ValidationError

from agora.models.user import (
    AVATAR_URL_MAX_LENGTH,
    EMAIL_MAX_LENGTH,
    EXTERNAL_ID_MAX_LENGTH,
    NAME_MAX_LENGTH,
)


class ProfileValidationError(ValueError):
    """The identity provider returned a profile with missing or invalid fields."""


class FacebookProfile(BaseModel):
    id: str = Field(..., min_length=1, max_length=EXTERNAL_ID_MAX_LENGTH)
    emails: list[Annotated[str, StringConstraints(max_length=EMAIL_MAX_LENGTH)]] = Field(
        ..., min_length=1
    )
    first_name: str = Field(..., min_length=1, max_length=NAME_MAX_LENGTH)
    last_name: str = Field(..., min_length=1, max_length=NAME_MAX_LENGTH)
    picture_url: str | None = Field(default=None, max_length=AVATAR_URL_MAX_LENGTH)

    @property
    def primary_email(self) -> str:
        return self.emails[0]

    @classmethod
    def from_graph(cls, payload: Any) -> "FacebookProfile":
        """Build a profile from a Graph API ``/me`` response.

        Accepts both the raw Graph shape (``email`` string, nested
        ``picture.data.url``) and the normalised ``emails: [{"value": ...}]``
        list some clients forward.
        """
        if not isinstance(payload, dict):
            raise ProfileValidationError("Profile payload is not an object")

        emails: list[str] = []
        for entry in payload.get("emails") or []:
            value = entry.get("value") if isinstance(entry, dict) else entry
            if value:
                emails.append(str(value))
        if payload.get("email") and payload["email"] not in emails:
            emails.insert(0, str(payload["email"]))

        picture = payload.get("picture")
        picture_url = None
        if isinstance(picture, dict):
            picture_url = (picture.get("data") or {}).get("url")
        elif isinstance(picture, str):
            picture_url = picture
        if picture_url and len(picture_url) > AVATAR_URL_MAX_LENGTH:
            # The avatar is optional; an oversized URL is dropped.
            picture_url = None

        try:
            return cls(
                id=str(payload.get("id") or ""),
                emails=emails,
                first_name=payload.get("first_name") or "",
                last_name=payload.get("last_name") or "",
                picture_url=picture_url,
            )
        except ValidationError as e:
            invalid = sorted({str(err["loc"][0]) for err in e.errors() if err["loc"]})
            raise ProfileValidationError(
                f"Profile has missing or invalid fields: {', '.join(invalid)}"
            ) from None


class IdentityPayload(BaseModel):
    """What a logged-in session remembers about its user."""

    user_id: UUID
    family_name: str
    given_name: str
    email: str
    token: str


class SessionResponse(BaseModel):
    user_id: UUID
    family_name: str
    given_name: str
    email: str
    is_authenticated: bool = True
