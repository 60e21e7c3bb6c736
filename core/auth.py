# core/auth.py
"""
Admin authentication, delegated entirely to Supabase Auth.

Sessions are Supabase access tokens. API callers send them as
``Authorization: Bearer <token>``; the dashboard keeps them in a cookie.
"""
from dataclasses import dataclass
from typing import Optional

from fastapi import HTTPException, Request, status
from supabase import AuthError

from core.config import settings, logger as core_logger
from core.data_client import DataAccessClient
from core.errors import AdminError, AuthenticationError

logger = core_logger.getChild("Auth")

LOGIN_PATH = "/login"


@dataclass
class AdminUser:
    id: str
    email: Optional[str]
    access_token: str


@dataclass
class AdminSession:
    access_token: str
    refresh_token: Optional[str]
    expires_in: Optional[int]
    user: AdminUser


async def verify_access_token(db: DataAccessClient, token: str) -> AdminUser:
    """Validates a session token with the backend auth service."""
    if not token:
        raise AuthenticationError("Missing session token.")

    def auth_call():
        try:
            return db.auth.get_user(token)
        except AuthError as e:
            raise AuthenticationError(f"Session rejected by auth service: {e}") from e

    response = await db.execute("[auth] get_user", auth_call)
    user = getattr(response, "user", None)
    if user is None:
        raise AuthenticationError("Session token did not resolve to a user.")
    return AdminUser(id=str(user.id), email=getattr(user, "email", None), access_token=token)


async def sign_in(db: DataAccessClient, email: str, password: str) -> AdminSession:
    def auth_call():
        try:
            return db.auth.sign_in_with_password({"email": email, "password": password})
        except AuthError as e:
            raise AuthenticationError(f"Sign-in rejected: {e}", user_message="Wrong email or password.") from e

    response = await db.execute("[auth] sign_in", auth_call, idempotent=False)
    session = getattr(response, "session", None)
    if session is None or response.user is None:
        raise AuthenticationError("Sign-in returned no session.", user_message="Wrong email or password.")
    logger.info(f"Admin signed in: {response.user.email}")
    return AdminSession(
        access_token=session.access_token,
        refresh_token=getattr(session, "refresh_token", None),
        expires_in=getattr(session, "expires_in", None),
        user=AdminUser(id=str(response.user.id), email=response.user.email, access_token=session.access_token),
    )


def extract_token(request: Request) -> Optional[str]:
    """Bearer header first, then the session cookie."""
    header = (request.headers.get("Authorization") or "").strip()
    if header:
        scheme, _, token = header.partition(" ")
        if scheme.lower() == "bearer" and token.strip():
            return token.strip()
    return request.cookies.get(settings.SESSION_COOKIE_NAME) or None


def _db_from(request: Request) -> DataAccessClient:
    db = getattr(request.app.state, "db", None)
    if db is None:
        logger.error("Auth dependency not met: data client not available in application state.")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Backend connection not ready")
    return db


async def require_admin(request: Request) -> AdminUser:
    """FastAPI dependency for API routes: 401 without a valid session."""
    token = extract_token(request)
    if not token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing session token.",
                            headers={"WWW-Authenticate": "Bearer"})
    try:
        return await verify_access_token(_db_from(request), token)
    except AdminError as e:
        logger.warning(f"Rejected admin request to {request.url.path}: {e}")
        raise HTTPException(status_code=e.status_code, detail=e.user_message,
                            headers={"WWW-Authenticate": "Bearer"} if e.status_code == 401 else None)


async def admin_or_none(request: Request) -> Optional[AdminUser]:
    """Resolves the cookie/header session, or None when absent or invalid."""
    token = extract_token(request)
    if not token:
        return None
    try:
        return await verify_access_token(_db_from(request), token)
    except AdminError as e:
        logger.info(f"Session check failed for {request.url.path}: {e}")
        return None
