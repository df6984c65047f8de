"""
Federation resolver: sign in through an upstream provider and link the identity
to a local user.
"""

import secrets
from typing import List

from loguru import logger

from sso.exceptions import ConnectorNotFoundError, UsernameTakenError
from sso.federation.repository import ConnectorRepository
from sso.federation.schemas import IdPConnector, UpstreamClaims
from sso.federation.upstream import UpstreamClient
from sso.password import unusable_password_digest
from sso.session.schemas import LocalSession
from sso.session.service import SessionManager
from sso.user.repository import UserRepository
from sso.user.schemas import User


def callback_url(issuer: str, connector_id: str) -> str:
    return f"{issuer.rstrip('/')}/auth/callback/{connector_id}"


class FederationResolver:
    def __init__(
        self,
        connector_repo: ConnectorRepository,
        upstream: UpstreamClient,
        user_repo: UserRepository,
        sessions: SessionManager,
        issuer: str,
    ):
        self.connector_repo = connector_repo
        self.upstream = upstream
        self.user_repo = user_repo
        self.sessions = sessions
        self.issuer = issuer.rstrip("/")

    async def _connector(self, connector_id: str) -> IdPConnector:
        connector = await self.connector_repo.get_by_id(connector_id)
        if not connector:
            raise ConnectorNotFoundError(f"Unknown connector {connector_id!r}")
        return connector

    async def list_connectors(self) -> List[IdPConnector]:
        return await self.connector_repo.list()

    async def begin_upstream(self, connector_id: str, state: str) -> str:
        """Upstream authorize URL; state is passed through untouched."""
        connector = await self._connector(connector_id)
        return await self.upstream.authorization_url(
            connector, callback_url(self.issuer, connector_id), state
        )

    async def complete_upstream(self, connector_id: str, code: str, redirect_uri: str) -> LocalSession:
        connector = await self._connector(connector_id)
        claims = await self.upstream.exchange(connector, code, redirect_uri)
        user = await self.resolve_user(claims, connector_id)
        logger.info(f"Federated login via {connector_id} for user {user.user_id} (upstream sub {claims.sub})")
        return await self.sessions.create_session(user.user_id)

    async def resolve_user(self, claims: UpstreamClaims, connector_id: str) -> User:
        """
        Find the local user for an upstream identity: the user previously minted
        for (connector_id, sub) first, then a user with the same email. Otherwise
        mint a linked local user that cannot sign in with a password.
        """
        user = await self.user_repo.by_upstream(connector_id, claims.sub)
        if user:
            return user
        if claims.email:
            user = await self.user_repo.by_email(claims.email)
            if user:
                return user
        username = claims.preferred_username or claims.email or claims.sub
        try:
            user = await self.user_repo.create(
                username, claims.email, unusable_password_digest(), connector_id, claims.sub
            )
        except UsernameTakenError:
            username = f"{username}-{secrets.token_hex(3)}"
            user = await self.user_repo.create(
                username, claims.email, unusable_password_digest(), connector_id, claims.sub
            )
        logger.success(f"Created federated user {user.user_id} ({username}) for {connector_id}")
        return user
