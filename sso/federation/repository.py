"""
Persistence for upstream connectors.
"""

from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from sso.database import get_session
from sso.exceptions import ValidationError
from sso.federation.schemas import ConnectorArgs, IdPConnector
from sso.user.schemas import utcnow


class ConnectorRepository:
    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory

    async def create(self, args: ConnectorArgs) -> IdPConnector:
        connector = IdPConnector(
            connector_id=args.connector_id,
            name=args.name,
            issuer=args.issuer.rstrip("/"),
            client_id=args.client_id,
            client_secret=args.client_secret,
            created_at=utcnow(),
        )
        async with get_session(self._session_factory) as session:
            session.add(connector)
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise ValidationError(f"Connector {args.connector_id} already exists") from exc
        return connector

    async def get_by_id(self, connector_id: str) -> Optional[IdPConnector]:
        async with get_session(self._session_factory) as session:
            return (
                await session.execute(
                    select(IdPConnector).where(IdPConnector.connector_id == connector_id)
                )
            ).scalar_one_or_none()

    async def list(self) -> List[IdPConnector]:
        async with get_session(self._session_factory) as session:
            return list(
                (await session.execute(select(IdPConnector).order_by(IdPConnector.connector_id)))
                .scalars()
                .all()
            )
