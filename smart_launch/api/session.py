"""
Post-launch endpoints

- GET /index.html: page shown after a successful launch
- GET /api/session: secret-free JSON summary of the current session
- GET/POST /logout: end the session
"""

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse

from smart_launch.api.deps import get_smart_service, session_cookie_name
from smart_launch.api.pages import render_index_page
from smart_launch.core.api_envelope import error_response, success_response
from smart_launch.core.errors import SessionNotFound
from smart_launch.core.request_id import get_request_id
from smart_launch.smart.service import SMARTLaunchService

router = APIRouter(tags=["session"])


@router.get("/index.html", response_class=HTMLResponse)
async def index(request: Request, service: SMARTLaunchService = Depends(get_smart_service)):
    session = await service.sessions.get(request.cookies.get(session_cookie_name(request)))
    return HTMLResponse(render_index_page(session))


@router.get("/api/session")
async def current_session(request: Request, service: SMARTLaunchService = Depends(get_smart_service)):
    """
    Current SMART session

    Refreshes an expired access token when the session holds a refresh token.
    Never returns token values.
    """
    request_id = get_request_id(request)
    try:
        session = await service.ensure_fresh(request.cookies.get(session_cookie_name(request)))
    except SessionNotFound as e:
        return JSONResponse(
            error_response(e.code, e.user_message, request_id=request_id),
            status_code=status.HTTP_401_UNAUTHORIZED,
        )
    return success_response(session.summary(), request_id=request_id)


@router.api_route("/logout", methods=["GET", "POST"])
async def logout(request: Request, service: SMARTLaunchService = Depends(get_smart_service)):
    cookie_name = session_cookie_name(request)
    await service.logout(request.cookies.get(cookie_name))
    response = RedirectResponse("/index.html", status_code=status.HTTP_303_SEE_OTHER)
    response.delete_cookie(cookie_name)
    return response
