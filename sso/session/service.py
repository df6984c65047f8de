"""
Session manager: local login sessions and password credential checks.
"""

import secrets
from datetime import timedelta
from typing import Optional, Tuple

from loguru import logger

from sso.constants import SESSION_EXPIRY_SECONDS, SESSION_TOKEN_BYTES
from sso.exceptions import InvalidCredentialsError
from sso.password import verify_password
from sso.session.repository import SessionRepository
from sso.session.schemas import LocalSession
from sso.user.repository import UserRepository
from sso.user.schemas import User, utcnow


def generate_session_token() -> str:
    """256 bits of randomness, hex encoded."""
    return secrets.token_hex(SESSION_TOKEN_BYTES)


class SessionManager:
    def __init__(
        self,
        session_repo: SessionRepository,
        user_repo: UserRepository,
        lifetime_seconds: int = SESSION_EXPIRY_SECONDS,
    ):
        self.session_repo = session_repo
        self.user_repo = user_repo
        self.lifetime_seconds = lifetime_seconds

    async def validate_credentials(self, username: str, password: str) -> User:
        """
        Return the user when the password matches its digest.
        Unknown users and wrong passwords are indistinguishable to the caller.
        """
        user = await self.user_repo.by_username(username)
        if not user or not verify_password(password, user.password_hash):
            raise InvalidCredentialsError("Invalid username or password")
        return user

    async def create_session(self, user_id: str) -> LocalSession:
        expires_at = utcnow() + timedelta(seconds=self.lifetime_seconds)
        local_session = await self.session_repo.create(
            user_id=user_id,
            token=generate_session_token(),
            expires_at=expires_at,
        )
        logger.info(f"Created session {local_session.session_id} for user {user_id}")
        return local_session

    async def resolve_session(self, token: Optional[str]) -> Optional[User]:
        """User for a live session token; None when missing or expired."""
        if not token:
            return None
        return await self.session_repo.get_user_by_token(token)

    async def resolve_login(self, token: Optional[str]) -> Optional[Tuple[User, LocalSession]]:
        """Like resolve_session, but also returns the session (for auth_time)."""
        if not token:
            return None
        return await self.session_repo.get_login_by_token(token)

    async def logout(self, token: str):
        if token:
            await self.session_repo.delete_by_token(token)

    async def delete_sessions(self, user_id: str) -> int:
        deleted = await self.session_repo.delete_for_user(user_id)
        if deleted:
            logger.info(f"Deleted {deleted} session(s) for user {user_id}")
        return deleted
