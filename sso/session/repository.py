"""
Persistence for local sessions.
"""

from datetime import datetime
from typing import Optional, Tuple

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import async_sessionmaker

from sso.database import generate_uuid, get_session
from sso.session.schemas import LocalSession
from sso.user.schemas import User, utcnow


class SessionRepository:
    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory

    async def create(self, user_id: str, token: str, expires_at: datetime) -> LocalSession:
        local_session = LocalSession(
            session_id=generate_uuid(),
            user_id=user_id,
            token=token,
            created_at=utcnow(),
            expires_at=expires_at,
        )
        async with get_session(self._session_factory) as session:
            session.add(local_session)
            await session.commit()
        return local_session

    async def get_by_token(self, token: str) -> Optional[LocalSession]:
        """Unexpired session for the token, or None."""
        async with get_session(self._session_factory) as session:
            return (
                await session.execute(
                    select(LocalSession).where(
                        LocalSession.token == token,
                        LocalSession.expires_at > utcnow(),
                    )
                )
            ).scalar_one_or_none()

    async def get_user_by_token(self, token: str) -> Optional[User]:
        """User owning an unexpired session, or None."""
        async with get_session(self._session_factory) as session:
            return (
                await session.execute(
                    select(User)
                    .join(LocalSession, LocalSession.user_id == User.user_id)
                    .where(
                        LocalSession.token == token,
                        LocalSession.expires_at > utcnow(),
                    )
                )
            ).scalar_one_or_none()

    async def get_login_by_token(self, token: str) -> Optional[Tuple[User, LocalSession]]:
        """(user, session) for an unexpired session, or None."""
        async with get_session(self._session_factory) as session:
            row = (
                await session.execute(
                    select(User, LocalSession)
                    .join(LocalSession, LocalSession.user_id == User.user_id)
                    .where(
                        LocalSession.token == token,
                        LocalSession.expires_at > utcnow(),
                    )
                )
            ).first()
            return (row[0], row[1]) if row else None

    async def delete_by_token(self, token: str) -> int:
        async with get_session(self._session_factory) as session:
            result = await session.execute(delete(LocalSession).where(LocalSession.token == token))
            await session.commit()
            return result.rowcount

    async def delete_for_user(self, user_id: str) -> int:
        async with get_session(self._session_factory) as session:
            result = await session.execute(
                delete(LocalSession).where(LocalSession.user_id == user_id)
            )
            await session.commit()
            return result.rowcount

    async def delete_expired(self) -> int:
        async with get_session(self._session_factory) as session:
            result = await session.execute(
                delete(LocalSession).where(LocalSession.expires_at <= utcnow())
            )
            await session.commit()
            return result.rowcount
