from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Path, Request, Response

from timekeeper.api.cookies import (
    access_token_from,
    apply_token_cookies,
    clear_token_cookies,
    refresh_token_from,
)
from timekeeper.api.schemas import (
    Envelope,
    LoginRequest,
    MFACodeRequest,
    MFAEnrollmentResponse,
    PasswordChangeRequest,
    PasswordResetConfirm,
    PasswordResetRequest,
    SessionInfo,
    SessionListResponse,
    TokenRefreshRequest,
    TokenResponse,
)
from timekeeper.service.runtime import get_runtime
from timekeeper.service.tokens import AuthContext, IssuedTokens
from timekeeper.storage.models import utcnow

router = APIRouter(prefix="/api")


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


async def get_user(
    request: Request, authorization: Optional[str] = Header(None)
) -> AuthContext:
    runtime = get_runtime()
    return await runtime.auth.authenticate(access_token_from(request, authorization))


def _token_envelope(response: Response, issued: IssuedTokens) -> Envelope:
    runtime = get_runtime()
    now = utcnow()
    apply_token_cookies(
        response,
        runtime.settings,
        access_token=issued.access_token,
        access_expires_at=issued.access_expires_at,
        refresh_token=issued.refresh_token,
        refresh_expires_at=issued.refresh_expires_at,
        now=now,
    )
    return Envelope(status="ok", data=TokenResponse(**issued.as_response(now)))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Exchange username, password and (when enrolled) a TOTP code for tokens.

    Raises:
        401: invalid credentials, MFA required or MFA invalid
        423: account locked
        429: rate limit exceeded for this IP or username
    """
    runtime = get_runtime()
    issued = await runtime.auth.login(
        body.username,
        body.password,
        body.mfa_code,
        ip_addr=_client_ip(request),
        device_label=body.device_label,
    )
    return _token_envelope(response, issued)


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: TokenRefreshRequest, request: Request, response: Response):
    """Rotate a refresh token. Presenting an already-used token signs out every session."""
    runtime = get_runtime()
    issued = await runtime.auth.refresh(
        refresh_token_from(request, body.refresh_token), ip_addr=_client_ip(request)
    )
    return _token_envelope(response, issued)


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    request: Request,
    response: Response,
    authorization: Optional[str] = Header(None),
):
    runtime = get_runtime()
    access_token = access_token_from(request, authorization)
    ctx = await runtime.auth.authenticate(access_token) if access_token else None
    await runtime.auth.logout(ctx, refresh_token_from(request, None))
    clear_token_cookies(response, runtime.settings)
    return Envelope(status="ok", data={"message": "session revoked"})


@router.post("/auth/logout_all", response_model=Envelope, tags=["auth"])
async def logout_all(response: Response, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    revoked = await runtime.auth.logout_all(principal)
    clear_token_cookies(response, runtime.settings)
    return Envelope(status="ok", data={"revoked_sessions": revoked})


@router.get("/auth/sessions", response_model=Envelope, tags=["auth"])
async def list_sessions(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    sessions = await runtime.auth.list_sessions(principal)
    return Envelope(
        status="ok",
        data=SessionListResponse(items=[SessionInfo(**s) for s in sessions]),
    )


@router.delete("/auth/sessions/{session_id}", response_model=Envelope, tags=["auth"])
async def revoke_session(
    session_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    await runtime.auth.revoke_session(principal, session_id)
    return Envelope(status="ok", data={"session_id": session_id, "revoked": True})


@router.post("/auth/mfa/enroll", response_model=Envelope, tags=["auth"])
async def mfa_enroll(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    enrollment = await runtime.auth.begin_mfa_enrollment(principal)
    return Envelope(status="ok", data=MFAEnrollmentResponse(**enrollment))


@router.post("/auth/mfa/activate", response_model=Envelope, tags=["auth"])
async def mfa_activate(
    body: MFACodeRequest, response: Response, principal: AuthContext = Depends(get_user)
):
    """Confirm enrollment with a current code; every session must log in again."""
    runtime = get_runtime()
    revoked = await runtime.auth.activate_mfa(principal, body.code)
    clear_token_cookies(response, runtime.settings)
    return Envelope(status="ok", data={"mfa_enabled": True, "revoked_sessions": revoked})


@router.post("/auth/mfa/disable", response_model=Envelope, tags=["auth"])
async def mfa_disable(body: MFACodeRequest, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    await runtime.auth.disable_mfa(principal, body.code)
    return Envelope(status="ok", data={"mfa_enabled": False})


@router.post("/auth/password/change", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest,
    response: Response,
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    revoked = await runtime.auth.change_password(
        principal, body.current_password, body.new_password
    )
    clear_token_cookies(response, runtime.settings)
    return Envelope(status="ok", data={"status": "changed", "revoked_sessions": revoked})


@router.post("/auth/reset/request", response_model=Envelope, tags=["auth"])
async def request_reset(body: PasswordResetRequest, request: Request):
    runtime = get_runtime()
    await runtime.rate_limiter.check(utcnow(), ip_addr=_client_ip(request))
    ack = await runtime.auth.request_password_reset(body.email)
    return Envelope(status="ok", data=ack)


@router.post("/auth/reset/confirm", response_model=Envelope, tags=["auth"])
async def confirm_reset(body: PasswordResetConfirm, request: Request):
    runtime = get_runtime()
    await runtime.rate_limiter.check(utcnow(), ip_addr=_client_ip(request))
    await runtime.auth.complete_password_reset(body.token, body.new_password)
    return Envelope(status="ok", data={"status": "password_reset"})


@router.post("/admin/users/{user_id}/unlock", response_model=Envelope, tags=["admin"])
async def admin_unlock(
    user_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    await runtime.auth.unlock_account(principal, user_id)
    return Envelope(status="ok", data={"user_id": user_id, "unlocked": True})
