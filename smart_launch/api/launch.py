"""
SMART launch endpoints

- GET /launch.html: EHR launch, redirects to the authorization server
- GET /callback: authorization server redirect back, establishes the session

The router is built per application so that its rate limits come from the
settings and the limiter that application was created with.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import RedirectResponse
from slowapi import Limiter

from smart_launch.api.deps import get_smart_service, session_cookie_name
from smart_launch.core.config import Settings
from smart_launch.core.logging import get_logger
from smart_launch.smart.service import SMARTLaunchService

logger = get_logger(__name__)

POST_LAUNCH_PAGE = "/index.html"


def create_router(limiter: Limiter, app_settings: Settings) -> APIRouter:
    router = APIRouter(tags=["smart-launch"])

    @router.get("/launch.html")
    @limiter.limit(app_settings.LAUNCH_RATE_LIMIT)
    async def launch(
        request: Request,
        iss: Optional[str] = None,
        launch: Optional[str] = None,
        service: SMARTLaunchService = Depends(get_smart_service),
    ):
        """
        SMART EHR launch.

        - **iss**: FHIR server base URL
        - **launch**: opaque launch id issued by the EHR

        Responds 302 to the discovered authorization endpoint.
        """
        authorization_url = await service.handle_launch(iss, launch)
        return RedirectResponse(authorization_url, status_code=status.HTTP_302_FOUND)

    @router.get("/launch", include_in_schema=False)
    @limiter.limit(app_settings.LAUNCH_RATE_LIMIT)
    async def launch_alias(
        request: Request,
        iss: Optional[str] = None,
        launch: Optional[str] = None,
        service: SMARTLaunchService = Depends(get_smart_service),
    ):
        authorization_url = await service.handle_launch(iss, launch)
        return RedirectResponse(authorization_url, status_code=status.HTTP_302_FOUND)

    @router.get("/callback")
    @limiter.limit(app_settings.CALLBACK_RATE_LIMIT)
    async def callback(
        request: Request,
        code: Optional[str] = None,
        state: Optional[str] = None,
        error: Optional[str] = None,
        error_description: Optional[str] = None,
        service: SMARTLaunchService = Depends(get_smart_service),
    ):
        """
        OAuth redirect target.

        - **code**: authorization code
        - **state**: state value issued at launch

        On success sets the session cookie and redirects to the post-launch page.
        """
        cookie_name = session_cookie_name(request)
        session = await service.handle_callback(
            code,
            state,
            error=error,
            error_description=error_description,
            current_session_id=request.cookies.get(cookie_name),
        )

        response = RedirectResponse(POST_LAUNCH_PAGE, status_code=status.HTTP_302_FOUND)
        response.set_cookie(
            cookie_name,
            session.session_id,
            max_age=service.settings.SESSION_TTL_SECONDS,
            httponly=True,
            samesite="lax",
            secure=service.redirect_uri.startswith("https://"),
        )
        return response

    return router
