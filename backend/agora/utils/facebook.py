import hashlib
import hmac
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any, Optional
from urllib.parse import urlencode

import httpx

from agora.config import Settings
from agora.schemas.auth import FacebookProfile

logger = logging.getLogger(__name__)

DIALOG_BASE_URL = "https://www.facebook.com"
GRAPH_BASE_URL = "https://graph.facebook.com"
PROFILE_FIELDS = ("id", "first_name", "last_name", "email", "picture")
HTTP_TIMEOUT = 10


class IdentityProviderError(Exception):
    """The OAuth handshake with the identity provider failed."""


@dataclass
class ProviderResult:
    access_token: str
    refresh_token: Optional[str]
    profile: FacebookProfile


class FacebookProvider:
    """Facebook login as a two-step handshake.

    ``begin_handshake`` gives the consent URL to redirect the browser to;
    ``complete_handshake`` trades the code Facebook sends back for a token
    and a validated profile.
    """

    name = "facebook"

    def __init__(
        self,
        settings: Settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        profile_fields: Sequence[str] = PROFILE_FIELDS,
    ):
        self.client_id = settings.app_id
        self.client_secret = settings.app_secret
        self.callback_url = settings.fb_callback_url
        self.graph_version = settings.facebook_graph_version
        self.profile_fields = tuple(profile_fields)
        self._transport = transport

    def begin_handshake(self, state: str, scope: Sequence[str] = ("email",)) -> str:
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.callback_url,
            "response_type": "code",
            "scope": ",".join(scope),
            "state": state,
        }
        return f"{DIALOG_BASE_URL}/{self.graph_version}/dialog/oauth?{urlencode(params)}"

    async def complete_handshake(self, code: str) -> ProviderResult:
        """
        Exchange an authorization code for a token and the user's profile.

        Raises IdentityProviderError on transport or provider errors and
        ProfileValidationError when the profile lacks required fields.
        """
        async with httpx.AsyncClient(timeout=HTTP_TIMEOUT, transport=self._transport) as client:
            token_data = await self._get_json(
                client,
                f"{GRAPH_BASE_URL}/{self.graph_version}/oauth/access_token",
                {
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "redirect_uri": self.callback_url,
                    "code": code,
                },
                what="Token exchange",
            )
            access_token = token_data.get("access_token")
            if not access_token:
                raise IdentityProviderError("Token response did not include an access_token")

            profile_data = await self._get_json(
                client,
                f"{GRAPH_BASE_URL}/{self.graph_version}/me",
                {
                    "fields": ",".join(self.profile_fields),
                    "access_token": access_token,
                    "appsecret_proof": self._appsecret_proof(access_token),
                },
                what="Profile fetch",
            )

        return ProviderResult(
            access_token=str(access_token),
            refresh_token=token_data.get("refresh_token"),
            profile=FacebookProfile.from_graph(profile_data),
        )

    def _appsecret_proof(self, access_token: str) -> str:
        return hmac.new(
            self.client_secret.encode(), access_token.encode(), hashlib.sha256
        ).hexdigest()

    async def _get_json(
        self, client: httpx.AsyncClient, url: str, params: dict[str, str], what: str
    ) -> dict[str, Any]:
        try:
            response = await client.get(url, params=params)
        except httpx.HTTPError as e:
            logger.error("%s with Facebook failed: %s", what, e)
            raise IdentityProviderError(f"{what} failed: could not reach provider") from None

        if response.status_code >= 400:
            # Graph errors echo request details; keep only the status.
            raise IdentityProviderError(f"{what} failed (status={response.status_code})")

        try:
            data = response.json()
        except ValueError:
            raise IdentityProviderError(f"{what} returned invalid JSON") from None
        if not isinstance(data, dict):
            raise IdentityProviderError(f"{what} returned an unexpected payload")
        return data
