"""
FastAPI dependencies: services live on app.state, built once in the lifespan.
"""

from typing import Optional, Tuple

from fastapi import Request
from fastapi.responses import Response

from sso.config import Settings
from sso.constants import SESSION_COOKIE_NAME, SESSION_EXPIRY_SECONDS
from sso.federation.service import FederationResolver
from sso.idp.engine import ProtocolEngine
from sso.idp.registry import ClientRegistry
from sso.idp.tokens import HMACStrategy
from sso.session.schemas import LocalSession
from sso.session.service import SessionManager
from sso.user.schemas import User
from sso.user.service import UserService


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_engine(request: Request) -> ProtocolEngine:
    return request.app.state.engine


def get_registry(request: Request) -> ClientRegistry:
    return request.app.state.registry


def get_hmac(request: Request) -> HMACStrategy:
    return request.app.state.hmac


def get_sessions(request: Request) -> SessionManager:
    return request.app.state.sessions


def get_users(request: Request) -> UserService:
    return request.app.state.users


def get_federation(request: Request) -> FederationResolver:
    return request.app.state.federation


async def get_login(request: Request) -> Optional[Tuple[User, LocalSession]]:
    """The signed-in user and their session, from the session cookie."""
    return await get_sessions(request).resolve_login(request.cookies.get(SESSION_COOKIE_NAME))


async def get_current_user(request: Request) -> Optional[User]:
    login = await get_login(request)
    return login[0] if login else None


def set_session_cookie(response: Response, token: str, settings: Settings):
    response.set_cookie(
        key=SESSION_COOKIE_NAME,
        value=token,
        max_age=SESSION_EXPIRY_SECONDS,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
        path="/",
    )


def clear_session_cookie(response: Response):
    response.delete_cookie(key=SESSION_COOKIE_NAME, path="/")
