"""
Persistence for users.
"""

from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from sso.database import get_session
from sso.exceptions import UsernameTakenError
from sso.session.schemas import LocalSession
from sso.user.schemas import User, utcnow


class UserRepository:
    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory

    async def create(
        self,
        username: str,
        email: Optional[str],
        password_hash: str,
        connector_id: Optional[str] = None,
        upstream_subject: Optional[str] = None,
    ) -> User:
        """Persist a new user; raises UsernameTakenError on a duplicate username."""
        user = User(
            username=username,
            email=email or None,
            password_hash=password_hash,
            connector_id=connector_id,
            upstream_subject=upstream_subject,
            created_at=utcnow(),
        )
        async with get_session(self._session_factory) as session:
            session.add(user)
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise UsernameTakenError(f"Username {username!r} is already taken") from exc
        return user

    async def by_id(self, user_id: str) -> Optional[User]:
        async with get_session(self._session_factory) as session:
            return (
                await session.execute(select(User).where(User.user_id == user_id))
            ).scalar_one_or_none()

    async def by_username(self, username: str) -> Optional[User]:
        async with get_session(self._session_factory) as session:
            return (
                await session.execute(select(User).where(User.username == username))
            ).scalar_one_or_none()

    async def by_upstream(self, connector_id: str, upstream_subject: str) -> Optional[User]:
        async with get_session(self._session_factory) as session:
            return (
                await session.execute(
                    select(User).where(
                        User.connector_id == connector_id,
                        User.upstream_subject == upstream_subject,
                    )
                )
            ).scalar_one_or_none()

    async def by_email(self, email: str) -> Optional[User]:
        """Oldest user with this email, if any."""
        if not email:
            return None
        async with get_session(self._session_factory) as session:
            return (
                await session.execute(
                    select(User).where(User.email == email).order_by(User.created_at).limit(1)
                )
            ).scalar_one_or_none()

    async def delete(self, user_id: str) -> bool:
        """
        Delete the user and all of their sessions.
        Idempotent: returns False when the user was already gone.
        """
        async with get_session(self._session_factory) as session:
            await session.execute(delete(LocalSession).where(LocalSession.user_id == user_id))
            result = await session.execute(delete(User).where(User.user_id == user_id))
            await session.commit()
            return result.rowcount > 0
