"""
Client registry: lookup, authentication and request validation for relying parties.
"""

from typing import Iterable, List, Optional, Tuple

from loguru import logger
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from sso.database import get_session
from sso.exceptions import NotFoundError, OAuthError, ValidationError
from sso.idp.schemas import Client, ClientCreateArgs, OAuthClient


class ClientRepository:
    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory

    async def create(self, instance: OAuthClient) -> OAuthClient:
        async with get_session(self._session_factory) as session:
            session.add(instance)
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise ValidationError(f"Client {instance.client_id} already exists") from exc
        return instance

    async def get(self, client_id: str) -> Optional[OAuthClient]:
        async with get_session(self._session_factory) as session:
            return (
                await session.execute(select(OAuthClient).where(OAuthClient.client_id == client_id))
            ).scalar_one_or_none()

    async def list(self) -> List[OAuthClient]:
        async with get_session(self._session_factory) as session:
            return list(
                (await session.execute(select(OAuthClient).order_by(OAuthClient.created_at)))
                .scalars()
                .all()
            )

    async def update_secret(self, client_id: str) -> Optional[str]:
        """Regenerate the secret in place, returning the new plaintext once."""
        async with get_session(self._session_factory) as session:
            instance = (
                await session.execute(select(OAuthClient).where(OAuthClient.client_id == client_id))
            ).scalar_one_or_none()
            if not instance:
                return None
            secret = instance.regenerate_secret()
            await session.commit()
            return secret

    async def delete(self, client_id: str) -> bool:
        async with get_session(self._session_factory) as session:
            result = await session.execute(
                delete(OAuthClient).where(OAuthClient.client_id == client_id)
            )
            await session.commit()
            return result.rowcount > 0


class ClientRegistry:
    def __init__(self, repo: ClientRepository):
        self.repo = repo

    async def lookup(self, client_id: Optional[str]) -> Client:
        instance = await self.repo.get(client_id) if client_id else None
        if not instance:
            raise NotFoundError(f"Unknown client {client_id!r}")
        return instance.to_client()

    async def authenticate(self, client_id: Optional[str], secret: Optional[str]) -> Client:
        """Client with a matching secret; every failure is invalid_client."""
        try:
            client = await self.lookup(client_id)
        except NotFoundError as exc:
            raise OAuthError("invalid_client", "Client authentication failed", 401) from exc
        if not client.verify_secret(secret):
            logger.warning(f"Client authentication failed for {client_id}")
            raise OAuthError("invalid_client", "Client authentication failed", 401)
        return client

    async def register(self, args: ClientCreateArgs, client_secret: Optional[str] = None) -> Tuple[Client, str]:
        instance, secret = OAuthClient.create(args, client_secret=client_secret)
        await self.repo.create(instance)
        logger.success(f"Registered client {instance.client_id} ({instance.name})")
        return instance.to_client(), secret

    async def rotate_secret(self, client_id: str) -> str:
        secret = await self.repo.update_secret(client_id)
        if secret is None:
            raise NotFoundError(f"Unknown client {client_id!r}")
        logger.info(f"Rotated secret for client {client_id}")
        return secret

    async def remove(self, client_id: str) -> bool:
        return await self.repo.delete(client_id)

    @staticmethod
    def validate_redirect_uri(client: Client, redirect_uri: Optional[str]):
        if not client.is_valid_redirect_uri(redirect_uri):
            raise OAuthError("invalid_request", "redirect_uri is not registered for this client")

    @staticmethod
    def validate_response_type(client: Client, response_type: Optional[str]):
        if response_type != "code":
            raise OAuthError("unsupported_response_type", f"Unsupported response_type {response_type!r}")
        if response_type not in client.response_types:
            raise OAuthError("unauthorized_client", "Client may not use this response_type")

    @staticmethod
    def validate_grant_type(client: Client, grant_type: str):
        if grant_type not in client.grant_types:
            raise OAuthError("unauthorized_client", f"Client may not use grant_type {grant_type!r}")

    @staticmethod
    def validate_scopes(client: Client, scopes: Iterable[str]):
        """Reject (never silently drop) any scope the client is not allowed."""
        overreach = [s for s in scopes if s not in client.scopes]
        if overreach:
            raise OAuthError("invalid_scope", f"Scope not allowed: {' '.join(overreach)}")
