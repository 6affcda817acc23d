from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import Request, Response

from timekeeper.config import Settings

REFRESH_COOKIE = "tk_refresh"
ACCESS_COOKIE = "tk_access"
# The refresh cookie only needs to reach the token endpoints
REFRESH_COOKIE_PATH = "/api/auth"
ACCESS_COOKIE_PATH = "/"


def _max_age(until: datetime, now: datetime) -> int:
    return max(0, int((until - now).total_seconds()))


def apply_token_cookies(
    response: Response,
    settings: Settings,
    *,
    access_token: str,
    access_expires_at: datetime,
    refresh_token: str,
    refresh_expires_at: datetime,
    now: datetime,
) -> None:
    same_site = settings.cookie_same_site.value
    response.set_cookie(
        ACCESS_COOKIE,
        access_token,
        max_age=_max_age(access_expires_at, now),
        path=ACCESS_COOKIE_PATH,
        httponly=True,
        secure=settings.cookie_secure,
        samesite=same_site,
    )
    response.set_cookie(
        REFRESH_COOKIE,
        refresh_token,
        max_age=_max_age(refresh_expires_at, now),
        path=REFRESH_COOKIE_PATH,
        httponly=True,
        secure=settings.cookie_secure,
        samesite=same_site,
    )


def clear_token_cookies(response: Response, settings: Settings) -> None:
    same_site = settings.cookie_same_site.value
    for name, path in ((ACCESS_COOKIE, ACCESS_COOKIE_PATH), (REFRESH_COOKIE, REFRESH_COOKIE_PATH)):
        response.set_cookie(
            name,
            "",
            max_age=0,
            path=path,
            httponly=True,
            secure=settings.cookie_secure,
            samesite=same_site,
        )


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def access_token_from(request: Request, authorization: Optional[str]) -> Optional[str]:
    """Bearer header wins; the access cookie is only a fallback for browsers."""
    return bearer_token(authorization) or request.cookies.get(ACCESS_COOKIE)


def refresh_token_from(request: Request, body_token: Optional[str]) -> Optional[str]:
    return body_token or request.cookies.get(REFRESH_COOKIE)
