from fastapi import APIRouter, Depends, Request, Response

from ..ceremony import CeremonyEngine, CeremonyResult
from ..schemas import (
    CeremonyCompleteResponse,
    LoginBeginRequest,
    LoginCompleteRequest,
    LoginOptions,
    MeResponse,
    RegisterBeginRequest,
    RegisterCompleteRequest,
    RegistrationOptions,
)

router = APIRouter(prefix="/api/auth", tags=["auth"])


def get_ceremonies(request: Request) -> CeremonyEngine:
    return request.app.state.ceremonies


# ---------- Helpers ----------
def _session_token(request: Request) -> str | None:
    settings = request.app.state.settings
    token = request.cookies.get(settings.SESSION_COOKIE_NAME)
    if token:
        return token
    header = request.headers.get("authorization", "")
    if header.lower().startswith("bearer "):
        return header[7:].strip() or None
    return None


def _start_session(request: Request, response: Response, result: CeremonyResult) -> CeremonyCompleteResponse:
    settings = request.app.state.settings
    response.set_cookie(
        settings.SESSION_COOKIE_NAME,
        result.session_token,
        max_age=settings.SESSION_TTL_SECONDS,
        httponly=True,
        samesite="lax",
        secure=settings.ENV != "dev",
    )
    return CeremonyCompleteResponse(
        user_id=result.user.user_id,
        username=result.user.username,
        email=result.user.email,
        token=result.session_token,
    )


# ---------- Registration ----------
@router.post("/register/begin", response_model=RegistrationOptions)
def register_begin(payload: RegisterBeginRequest, ceremonies: CeremonyEngine = Depends(get_ceremonies)):
    return ceremonies.registration_begin(payload.username, payload.email)


@router.post("/register/complete", response_model=CeremonyCompleteResponse)
def register_complete(
    payload: RegisterCompleteRequest,
    request: Request,
    response: Response,
    ceremonies: CeremonyEngine = Depends(get_ceremonies),
):
    result = ceremonies.registration_complete(payload.user_id, payload.credential)
    return _start_session(request, response, result)


# ---------- Authentication ----------
@router.post("/login/begin", response_model=LoginOptions)
def login_begin(payload: LoginBeginRequest, ceremonies: CeremonyEngine = Depends(get_ceremonies)):
    return ceremonies.login_begin(payload.username)


@router.post("/login/complete", response_model=CeremonyCompleteResponse)
def login_complete(
    payload: LoginCompleteRequest,
    request: Request,
    response: Response,
    ceremonies: CeremonyEngine = Depends(get_ceremonies),
):
    result = ceremonies.login_complete(payload.username, payload.credential)
    return _start_session(request, response, result)


# ---------- Session ----------
@router.post("/logout")
def logout(request: Request, response: Response):
    response.delete_cookie(request.app.state.settings.SESSION_COOKIE_NAME)
    return {"message": "Logged out successfully"}


@router.get("/me", response_model=MeResponse)
def me(request: Request, ceremonies: CeremonyEngine = Depends(get_ceremonies)):
    user = ceremonies.resolve_session(_session_token(request))
    return MeResponse(
        user_id=user.user_id,
        username=user.username,
        email=user.email,
        signature_counter=user.signature_counter,
    )
