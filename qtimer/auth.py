from __future__ import annotations

import hmac
from dataclasses import dataclass
from typing import Optional

from fastapi import Request, HTTPException, Depends
from itsdangerous import URLSafeTimedSerializer, BadSignature, SignatureExpired

from .settings import settings

COOKIE_NAME = "qtimer_auth"
ADMIN_ROLE = "admin"

def _serializer() -> URLSafeTimedSerializer:
    return URLSafeTimedSerializer(settings.QTIMER_SECRET_KEY, salt="qtimer-admin")

@dataclass
class CurrentUser:
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN_ROLE

def check_admin_password(password: str) -> bool:
    return hmac.compare_digest(password.encode("utf-8"), settings.QTIMER_ADMIN_PASSWORD.encode("utf-8"))

def issue_token(role: str = ADMIN_ROLE) -> str:
    return _serializer().dumps({"r": role})

def read_token(token: str) -> Optional[CurrentUser]:
    try:
        data = _serializer().loads(token, max_age=settings.QTIMER_TOKEN_MAX_AGE)
    except (SignatureExpired, BadSignature):
        return None
    if not isinstance(data, dict):
        return None
    return CurrentUser(role=str(data.get("r") or ""))

def set_login_cookie(request: Request, token: str) -> None:
    request.state._set_auth_cookie = token

def clear_login_cookie(request: Request) -> None:
    request.state._clear_auth_cookie = True

def _request_token(request: Request) -> Optional[str]:
    header = request.headers.get("Authorization", "")
    scheme, _, value = header.partition(" ")
    if scheme.lower() == "bearer" and value.strip():
        return value.strip()
    return request.cookies.get(COOKIE_NAME)

def get_current_user(request: Request) -> Optional[CurrentUser]:
    token = _request_token(request)
    if not token:
        return None
    return read_token(token)

def admin_required(request: Request, user: Optional[CurrentUser] = Depends(get_current_user)) -> CurrentUser:
    if not _request_token(request):
        raise HTTPException(status_code=401, detail="Login required")
    if not user:
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    if not user.is_admin:
        raise HTTPException(status_code=403, detail="Admin required")
    return user

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

class AuthCookieMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        response: Response = await call_next(request)

        token = getattr(request.state, "_set_auth_cookie", None)
        if token:
            response.set_cookie(
                COOKIE_NAME,
                token,
                httponly=True,
                samesite="lax",
                secure=False,  # set True behind HTTPS
                max_age=settings.QTIMER_TOKEN_MAX_AGE,
            )
        if getattr(request.state, "_clear_auth_cookie", False):
            response.delete_cookie(COOKIE_NAME)
        return response
