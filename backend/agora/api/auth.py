import logging
import secrets
from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Query, Request, Response, status
from fastapi.responses import RedirectResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from agora.config import Settings
from agora.database import get_db
from agora.schemas.auth import ProfileValidationError, SessionResponse
from agora.services.user_service import UserResolutionError, UserService
from agora.utils.auth import (
    CurrentIdentity,
    SessionSerializationError,
    get_session,
    login_session,
)
from agora.utils.facebook import FacebookProvider, IdentityProviderError
from agora.utils.session import ServerSession

logger = logging.getLogger(__name__)

OAUTH_STATE_KEY = "oauth_state"

router = APIRouter(prefix="/auth", tags=["Authentication"])


@router.get("/session", response_model=SessionResponse)
async def get_current_session(identity: CurrentIdentity) -> SessionResponse:
    return SessionResponse(
        user_id=identity.user_id,
        family_name=identity.family_name,
        given_name=identity.given_name,
        email=identity.email,
    )


@router.post("/logout", status_code=status.HTTP_204_NO_CONTENT)
async def logout(session: Annotated[ServerSession, Depends(get_session)]) -> Response:
    session.invalidate()
    return Response(status_code=status.HTTP_204_NO_CONTENT)


def build_facebook_router(settings: Settings) -> APIRouter:
    """Facebook login routes, mounted at the paths given in configuration."""
    fb_router = APIRouter(tags=["Authentication"])

    def _redirect(url: str) -> RedirectResponse:
        response = RedirectResponse(url=url, status_code=status.HTTP_302_FOUND)
        response.headers["Cache-Control"] = "no-store"
        return response

    @fb_router.get(settings.fb_login_path)
    async def facebook_login(
        request: Request,
        session: Annotated[ServerSession, Depends(get_session)],
    ) -> RedirectResponse:
        provider: FacebookProvider = request.app.state.identity_provider
        state = secrets.token_urlsafe(32)
        session[OAUTH_STATE_KEY] = state
        return _redirect(provider.begin_handshake(state, scope=("email",)))

    @fb_router.get(settings.fb_login_cb_path)
    async def facebook_callback(
        request: Request,
        session: Annotated[ServerSession, Depends(get_session)],
        db: Annotated[AsyncSession, Depends(get_db)],
        code: Optional[str] = Query(None),
        state: Optional[str] = Query(None),
        error: Optional[str] = Query(None),
    ) -> RedirectResponse:
        expected_state = session.pop(OAUTH_STATE_KEY, None)

        if error:
            logger.info("Facebook login declined: %s", error)
            return _redirect(settings.fb_login_fail_path)

        if not code or not state or not expected_state or not secrets.compare_digest(
            state, expected_state
        ):
            logger.warning("Facebook callback with missing or mismatched OAuth state")
            return _redirect(settings.fb_login_fail_path)

        provider: FacebookProvider = request.app.state.identity_provider
        try:
            result = await provider.complete_handshake(code)
            resolved = await UserService(db).find_or_create_oauth_user(
                result.profile, result.access_token, provider=provider.name
            )
            await db.commit()
            login_session(session, resolved)
        except (IdentityProviderError, ProfileValidationError) as e:
            logger.warning("Facebook handshake failed: %s", e)
            return _redirect(settings.fb_login_fail_path)
        except (UserResolutionError, SessionSerializationError, SQLAlchemyError) as e:
            await db.rollback()
            logger.error("Facebook login could not be completed: %s", e)
            return _redirect(settings.fb_login_fail_path)

        logger.info("User %s logged in with Facebook", resolved.user.id)
        return _redirect(settings.fb_success_url)

    @fb_router.get(settings.fb_login_fail_path)
    async def facebook_login_failed() -> RedirectResponse:
        return _redirect(settings.my_domain)

    return fb_router

