"""
OAuth2/OpenID Connect protocol engine: authorize -> code -> token, refresh rotation,
introspection and revocation.

The engine never raises protocol errors to its callers; every operation returns a
typed outcome that the router turns into a redirect, a page or a JSON body.
"""

import time
import uuid
from typing import Any, Callable, Dict, Optional, Tuple, Union
from urllib.parse import urlencode

from loguru import logger
from pydantic import BaseModel, ConfigDict

from sso.constants import (
    ACCESS_TOKEN_EXPIRY_SECONDS,
    ACCESS_TOKEN_PREFIX,
    AUTH_CODE_EXPIRY_SECONDS,
    AUTH_CODE_PREFIX,
    ID_TOKEN_EXPIRY_SECONDS,
    REFRESH_TOKEN_EXPIRY_SECONDS,
    REFRESH_TOKEN_PREFIX,
)
from sso.exceptions import ExpiredError, NotFoundError, OAuthError, ReplayError
from sso.idp.registry import ClientRegistry
from sso.idp.schemas import (
    AuthorizeRequest,
    Client,
    RequesterSnapshot,
    Subject,
    TokenRequest,
    allows_refresh,
    format_scope,
    parse_scope,
)
from sso.idp.store import GrantStore
from sso.idp.tokens import HMACStrategy, IDTokenSigner, at_hash, is_supported_pkce_method, verify_pkce


def append_query(uri: str, params: Dict[str, Any]) -> str:
    query = urlencode({k: v for k, v in params.items() if v is not None})
    if not query:
        return uri
    return f"{uri}{'&' if '?' in uri else '?'}{query}"


class NeedsLogin(BaseModel):
    """No authenticated subject; resume authorize with these params after login."""

    model_config = ConfigDict(frozen=True)

    params: Dict[str, str]


class AuthorizeRedirect(BaseModel):
    model_config = ConfigDict(frozen=True)

    redirect_uri: str
    code: str
    state: Optional[str] = None

    @property
    def location(self) -> str:
        return append_query(self.redirect_uri, {"code": self.code, "state": self.state})


class AuthorizeError(BaseModel):
    """
    Authorization failure. redirect_uri is only set once the client and its
    redirect URI were validated; otherwise the error must be shown, not redirected.
    """

    model_config = ConfigDict(frozen=True)

    error: str
    description: str = ""
    redirect_uri: Optional[str] = None
    state: Optional[str] = None

    @property
    def location(self) -> Optional[str]:
        if not self.redirect_uri:
            return None
        return append_query(
            self.redirect_uri,
            {"error": self.error, "error_description": self.description or None, "state": self.state},
        )


AuthorizeOutcome = Union[NeedsLogin, AuthorizeRedirect, AuthorizeError]


class TokenGrant(BaseModel):
    model_config = ConfigDict(frozen=True)

    access_token: str
    expires_in: int
    scope: str
    refresh_token: Optional[str] = None
    id_token: Optional[str] = None


class TokenError(BaseModel):
    """
    Token endpoint failure. cause keeps the internal category (replay, expired,
    not_found, ...) while error is what goes on the wire.
    """

    model_config = ConfigDict(frozen=True)

    error: str
    description: str = ""
    status_code: int = 400
    cause: Optional[str] = None


TokenOutcome = Union[TokenGrant, TokenError]


class IntrospectionResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    active: bool = True
    token_type: str
    snapshot: RequesterSnapshot
    issued_at: int
    expires_at: int

    @property
    def scopes(self) -> Tuple[str, ...]:
        return self.snapshot.granted_scopes

    def as_response(self) -> Dict[str, Any]:
        """RFC 7662 response body."""
        return {
            "active": True,
            "scope": format_scope(self.snapshot.granted_scopes),
            "client_id": self.snapshot.client_id,
            "sub": self.snapshot.subject,
            "username": self.snapshot.identity.preferred_username,
            "token_type": self.token_type,
            "exp": self.expires_at,
            "iat": self.issued_at,
        }


def _invalid_grant(description: str, cause: str) -> TokenError:
    return TokenError(error="invalid_grant", description=description, cause=cause)


class ProtocolEngine:
    def __init__(
        self,
        store: GrantStore,
        registry: ClientRegistry,
        hmac_strategy: HMACStrategy,
        signer: IDTokenSigner,
        issuer: str,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.registry = registry
        self.hmac = hmac_strategy
        self.signer = signer
        self.issuer = issuer.rstrip("/")
        self._clock = clock

    def _now(self) -> int:
        return int(self._clock())

    def _live(self, record, what: str):
        if record.expires_at <= self._now():
            raise ExpiredError(f"{what} expired")
        return record

    async def authorize(self, request: AuthorizeRequest, subject: Optional[Subject] = None) -> AuthorizeOutcome:
        """
        Validate an authorization request and, with an authenticated subject, mint a code.

        The client and redirect URI are checked before anything else; until both
        pass, errors are never delivered to the (unverified) redirect URI.
        """
        try:
            client = await self.registry.lookup(request.client_id)
        except NotFoundError:
            return AuthorizeError(error="invalid_client", description="Unknown client")

        redirect_uri = request.redirect_uri
        if not redirect_uri and len(client.redirect_uris) == 1:
            redirect_uri = next(iter(client.redirect_uris))
        try:
            self.registry.validate_redirect_uri(client, redirect_uri)
        except OAuthError as exc:
            return AuthorizeError(error=exc.error, description=exc.description)

        try:
            self.registry.validate_response_type(client, request.response_type)
            requested = parse_scope(request.scope)
            self.registry.validate_scopes(client, requested)
            if request.code_challenge_method and not request.code_challenge:
                raise OAuthError("invalid_request", "code_challenge_method without code_challenge")
            if request.code_challenge and not is_supported_pkce_method(request.code_challenge_method):
                raise OAuthError("invalid_request", "Unsupported code_challenge_method")
        except OAuthError as exc:
            return AuthorizeError(
                error=exc.error,
                description=exc.description,
                redirect_uri=redirect_uri,
                state=request.state,
            )

        if subject is None:
            return NeedsLogin(params=request.as_params())

        now = self._now()
        snapshot = RequesterSnapshot(
            request_id=uuid.uuid4().hex,
            client_id=client.client_id,
            subject=subject.user_id,
            redirect_uri=redirect_uri,
            redirect_uri_supplied=bool(request.redirect_uri),
            requested_scopes=requested,
            granted_scopes=requested,
            requested_at=now,
            auth_time=subject.auth_time,
            nonce=request.nonce,
            code_challenge=request.code_challenge,
            code_challenge_method=(request.code_challenge_method or "plain") if request.code_challenge else None,
            identity=subject.identity(),
        )
        code, signature = self.hmac.generate(AUTH_CODE_PREFIX)
        self.store.create_code(signature, snapshot, now + AUTH_CODE_EXPIRY_SECONDS)
        if snapshot.code_challenge:
            self.store.create_pkce_request(signature, snapshot)
        if "openid" in snapshot.granted_scopes:
            self.store.create_oidc_session(signature, snapshot)
        logger.info(
            f"Issued authorization code for request {snapshot.request_id} "
            f"client={client.client_id} user={subject.user_id}"
        )
        return AuthorizeRedirect(redirect_uri=redirect_uri, code=code, state=request.state)

    async def token(self, request: TokenRequest) -> TokenOutcome:
        try:
            client = await self.registry.authenticate(request.client_id, request.client_secret)
            if request.grant_type == "authorization_code":
                return await self._exchange_code(client, request)
            if request.grant_type == "refresh_token":
                return await self._refresh(client, request)
            raise OAuthError("unsupported_grant_type", f"Unsupported grant_type {request.grant_type!r}")
        except OAuthError as exc:
            return TokenError(
                error=exc.error,
                description=exc.description,
                status_code=exc.status_code,
                cause=exc.error,
            )

    def _revoke_grant(self, snapshot: Optional[RequesterSnapshot], what: str):
        if snapshot is None:
            return
        logger.warning(
            f"Replay of {what} detected for request {snapshot.request_id} "
            f"client={snapshot.client_id}, revoking all tokens of the grant"
        )
        self.store.revoke_by_request_id(snapshot.request_id)

    async def _exchange_code(self, client: Client, request: TokenRequest) -> TokenOutcome:
        self.registry.validate_grant_type(client, "authorization_code")
        if not request.code:
            raise OAuthError("invalid_request", "Missing code")
        signature = self.hmac.signature(request.code)

        try:
            record = self._live(self.store.get_code(signature), "Authorization code")
        except NotFoundError:
            return _invalid_grant("Invalid authorization code", "not_found")
        except ExpiredError as exc:
            return _invalid_grant(exc.message, "expired")
        except ReplayError as exc:
            self._revoke_grant(exc.snapshot, "authorization code")
            return _invalid_grant("Authorization code already used", "replay")

        snapshot = record.snapshot
        if snapshot.client_id != client.client_id:
            return _invalid_grant("Authorization code was issued to another client", "client_mismatch")
        # redirect_uri is only required here when the authorization request carried it.
        redirect_checked = snapshot.redirect_uri_supplied or request.redirect_uri
        if redirect_checked and request.redirect_uri != snapshot.redirect_uri:
            return _invalid_grant("redirect_uri does not match the authorization request", "redirect_mismatch")

        if snapshot.code_challenge:
            try:
                pkce = self.store.get_pkce_request(signature)
            except NotFoundError:
                return _invalid_grant("PKCE request not found", "not_found")
            if not verify_pkce(request.code_verifier, pkce.code_challenge, pkce.code_challenge_method):
                return _invalid_grant("PKCE verification failed", "pkce_mismatch")

        try:
            self.store.redeem_code(signature)
        except ReplayError as exc:
            self._revoke_grant(exc.snapshot, "authorization code")
            return _invalid_grant("Authorization code already used", "replay")

        self.store.delete_pkce_request(signature)
        if "openid" in snapshot.granted_scopes:
            try:
                snapshot = self.store.get_oidc_session(signature)
            except NotFoundError:
                logger.warning(f"Missing OpenID Connect session for request {snapshot.request_id}")
            self.store.delete_oidc_session(signature)
        grant = self._mint(client, snapshot)
        logger.info(f"Exchanged authorization code for request {snapshot.request_id} client={client.client_id}")
        return grant

    async def _refresh(self, client: Client, request: TokenRequest) -> TokenOutcome:
        self.registry.validate_grant_type(client, "refresh_token")
        if not request.refresh_token:
            raise OAuthError("invalid_request", "Missing refresh_token")
        signature = self.hmac.signature(request.refresh_token)

        try:
            record = self._live(self.store.get_refresh_token(signature), "Refresh token")
        except NotFoundError:
            return _invalid_grant("Invalid refresh token", "not_found")
        except ExpiredError as exc:
            return _invalid_grant(exc.message, "expired")
        except ReplayError as exc:
            self._revoke_grant(exc.snapshot, "refresh token")
            return _invalid_grant("Refresh token already used", "replay")

        snapshot = record.snapshot
        if snapshot.client_id != client.client_id:
            return _invalid_grant("Refresh token was issued to another client", "client_mismatch")

        granted = snapshot.granted_scopes
        requested = parse_scope(request.scope)
        if requested:
            overreach = [s for s in requested if s not in granted]
            if overreach:
                raise OAuthError("invalid_scope", f"Scope not originally granted: {' '.join(overreach)}")
            granted = requested

        try:
            self.store.redeem_refresh_token(signature)
        except ReplayError as exc:
            self._revoke_grant(exc.snapshot, "refresh token")
            return _invalid_grant("Refresh token already used", "replay")

        grant = self._mint(client, snapshot.narrowed(granted, self._now()))
        logger.info(f"Rotated refresh token for request {snapshot.request_id} client={client.client_id}")
        return grant

    def _mint(self, client: Client, snapshot: RequesterSnapshot) -> TokenGrant:
        now = self._now()
        access_token, access_signature = self.hmac.generate(ACCESS_TOKEN_PREFIX)
        self.store.create_access_token(access_signature, snapshot, now + ACCESS_TOKEN_EXPIRY_SECONDS)

        refresh_token = None
        if allows_refresh(snapshot.granted_scopes) and "refresh_token" in client.grant_types:
            refresh_token, refresh_signature = self.hmac.generate(REFRESH_TOKEN_PREFIX)
            self.store.create_refresh_token(
                refresh_signature, access_signature, snapshot, now + REFRESH_TOKEN_EXPIRY_SECONDS
            )

        id_token = None
        if "openid" in snapshot.granted_scopes:
            id_token = self.signer.sign(self._id_token_claims(snapshot, access_token, now))

        return TokenGrant(
            access_token=access_token,
            expires_in=ACCESS_TOKEN_EXPIRY_SECONDS,
            scope=format_scope(snapshot.granted_scopes),
            refresh_token=refresh_token,
            id_token=id_token,
        )

    def _id_token_claims(self, snapshot: RequesterSnapshot, access_token: str, now: int) -> Dict[str, Any]:
        claims = {
            "iss": self.issuer,
            "sub": snapshot.subject,
            "aud": snapshot.client_id,
            "exp": now + ID_TOKEN_EXPIRY_SECONDS,
            "iat": now,
            "auth_time": snapshot.auth_time,
            "at_hash": at_hash(access_token),
        }
        if snapshot.nonce:
            claims["nonce"] = snapshot.nonce
        claims.update(snapshot.identity.released(snapshot.granted_scopes))
        return claims

    def introspect(self, token: Optional[str]) -> Optional[IntrospectionResult]:
        """Active, unexpired token details; None for anything else."""
        if not token:
            return None
        signature = self.hmac.signature(token)
        try:
            if token.startswith(REFRESH_TOKEN_PREFIX):
                record = self._live(self.store.get_refresh_token(signature), "Refresh token")
                token_type = "refresh_token"
            else:
                record = self._live(self.store.get_access_token(signature), "Access token")
                token_type = "access_token"
        except (NotFoundError, ReplayError, ExpiredError):
            return None
        return IntrospectionResult(
            token_type=token_type,
            snapshot=record.snapshot,
            issued_at=record.issued_at,
            expires_at=record.expires_at,
        )

    def revoke(self, token: Optional[str], client: Client) -> bool:
        """
        RFC 7009 revocation: revoking either token of a grant revokes every token
        of that grant. Unknown tokens and tokens of other clients are ignored.
        """
        result = self.introspect(token)
        if result is None:
            return False
        if result.snapshot.client_id != client.client_id:
            logger.warning(
                f"Client {client.client_id} tried to revoke a token of client {result.snapshot.client_id}"
            )
            return False
        self.store.revoke_by_request_id(result.snapshot.request_id)
        return True

    def jwks(self) -> Dict[str, Any]:
        return self.signer.jwks()
