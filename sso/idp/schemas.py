"""
Database models and value types for OAuth2/OpenID Connect.

Scope Format:
-------------
Only the standard OpenID Connect scopes are recognised:
- "openid" - Issue an ID token and allow userinfo queries
- "profile" - Release preferred_username and name
- "email" - Release email
- "offline_access" (alias "offline") - Issue a refresh token

A request may only ask for scopes registered on the client; anything else is
rejected with invalid_scope rather than silently dropped.
"""

import re
import secrets
import string
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Self, Tuple

from pydantic import BaseModel, ConfigDict, field_validator
from sqlalchemy import JSON, Column, DateTime, String

from sso.constants import (
    DEFAULT_CLIENT_SCOPES,
    DEFAULT_GRANT_TYPES,
    DEFAULT_RESPONSE_TYPES,
    OFFLINE_SCOPES,
    SCOPE_CLAIMS,
)
from sso.database import Base
from sso.password import hash_password, verify_password
from sso.user.schemas import utcnow

SCOPE_DESCRIPTIONS = {
    "openid": "Sign you in and confirm your identity",
    "profile": "Read your username",
    "email": "Read your email address",
    "offline_access": "Stay signed in while you are away",
    "offline": "Stay signed in while you are away",
}

VALID_GRANT_TYPES = ("authorization_code", "refresh_token")
VALID_RESPONSE_TYPES = ("code",)


def get_scope_description(scope: str) -> str:
    return SCOPE_DESCRIPTIONS.get(scope, f"Access: {scope}")


def get_scope_descriptions(scopes: List[str]) -> List[str]:
    """Human-readable descriptions for a consent/login page."""
    return [get_scope_description(s) for s in scopes]


def parse_scope(scope: Optional[str]) -> Tuple[str, ...]:
    """Split a space-delimited scope parameter, dropping duplicates but keeping order."""
    if not scope:
        return ()
    seen = []
    for item in scope.split():
        if item not in seen:
            seen.append(item)
    return tuple(seen)


def format_scope(scopes) -> str:
    return " ".join(scopes)


def allows_refresh(scopes) -> bool:
    return any(s in OFFLINE_SCOPES for s in scopes)


class OptionalClaim(str, Enum):
    """Identity claims that may be released beyond the registered JWT claims."""

    PREFERRED_USERNAME = "preferred_username"
    NAME = "name"
    EMAIL = "email"


def claims_for_scopes(scopes) -> FrozenSet[OptionalClaim]:
    claims = set()
    for scope in scopes:
        for claim in SCOPE_CLAIMS.get(scope, ()):
            claims.add(OptionalClaim(claim))
    return frozenset(claims)


class IdentityClaims(BaseModel):
    """Identity claims captured when the code is issued."""

    model_config = ConfigDict(frozen=True)

    preferred_username: Optional[str] = None
    name: Optional[str] = None
    email: Optional[str] = None

    def released(self, scopes) -> Dict[str, str]:
        """Claims permitted by the granted scopes, skipping empty values."""
        allowed = claims_for_scopes(scopes)
        released = {}
        for claim in OptionalClaim:
            value = getattr(self, claim.value)
            if claim in allowed and value:
                released[claim.value] = value
        return released


class Subject(BaseModel):
    """The authenticated end user presented to authorize()."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    username: str
    email: Optional[str] = None
    auth_time: int

    @classmethod
    def from_user(cls, user, auth_time: int) -> Self:
        return cls(
            user_id=user.user_id,
            username=user.username,
            email=user.email,
            auth_time=auth_time,
        )

    def identity(self) -> IdentityClaims:
        return IdentityClaims(
            preferred_username=self.username,
            name=self.username,
            email=self.email,
        )


class RequesterSnapshot(BaseModel):
    """
    Immutable copy of an accepted authorization request, stored with every record
    derived from it. request_id links all tokens of one grant.
    """

    model_config = ConfigDict(frozen=True)

    request_id: str
    client_id: str
    subject: str
    redirect_uri: str
    # False when the client's single registered URI was filled in at authorize.
    redirect_uri_supplied: bool = True
    requested_scopes: Tuple[str, ...]
    granted_scopes: Tuple[str, ...]
    requested_at: int
    auth_time: int
    nonce: Optional[str] = None
    code_challenge: Optional[str] = None
    code_challenge_method: Optional[str] = None
    identity: IdentityClaims = IdentityClaims()

    def narrowed(self, scopes: Tuple[str, ...], requested_at: int) -> Self:
        return self.model_copy(update={"granted_scopes": scopes, "requested_at": requested_at})


class Client(BaseModel):
    """A registered relying party, as seen by the protocol engine."""

    model_config = ConfigDict(frozen=True)

    client_id: str
    secret_digest: str
    name: str = ""
    redirect_uris: FrozenSet[str]
    grant_types: FrozenSet[str]
    response_types: FrozenSet[str]
    scopes: FrozenSet[str]

    def verify_secret(self, secret: Optional[str]) -> bool:
        return verify_password(secret or "", self.secret_digest)

    def is_valid_redirect_uri(self, uri: Optional[str]) -> bool:
        """Exact string membership, no prefix or pattern matching."""
        return bool(uri) and uri in self.redirect_uris


class AuthorizeRequest(BaseModel):
    """OAuth2 authorization request parameters."""

    model_config = ConfigDict(frozen=True)

    client_id: str
    redirect_uri: Optional[str] = None
    response_type: str = ""
    scope: Optional[str] = None
    state: Optional[str] = None
    nonce: Optional[str] = None
    code_challenge: Optional[str] = None  # PKCE
    code_challenge_method: Optional[str] = None  # PKCE

    def as_params(self) -> Dict[str, str]:
        """Non-empty parameters, for re-issuing the request after login."""
        return {k: v for k, v in self.model_dump().items() if v}


class TokenRequest(BaseModel):
    """OAuth2 token request parameters."""

    grant_type: str
    code: Optional[str] = None
    redirect_uri: Optional[str] = None
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    refresh_token: Optional[str] = None
    scope: Optional[str] = None
    code_verifier: Optional[str] = None  # PKCE


class ClientCreateArgs(BaseModel):
    """Request model for registering a relying party."""

    client_id: Optional[str] = None
    name: str
    redirect_uris: List[str]
    scopes: List[str] = list(DEFAULT_CLIENT_SCOPES)
    grant_types: List[str] = list(DEFAULT_GRANT_TYPES)
    response_types: List[str] = list(DEFAULT_RESPONSE_TYPES)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v):
        if not v or len(v) < 3 or len(v) > 64:
            raise ValueError("Name must be between 3 and 64 characters")
        if not re.match(r"^[\w\s\-\.]+$", v):
            raise ValueError("Name can only contain letters, numbers, spaces, hyphens, and periods")
        return v

    @field_validator("redirect_uris")
    @classmethod
    def validate_redirect_uris(cls, v):
        if not v:
            raise ValueError("At least one redirect URI is required")
        if len(v) > 10:
            raise ValueError("Maximum 10 redirect URIs allowed")
        for uri in v:
            if not uri.startswith(("http://", "https://")):
                raise ValueError(f"Invalid redirect URI: {uri}")
            if "#" in uri:
                raise ValueError(f"Redirect URI must not contain a fragment: {uri}")
        return v

    @field_validator("scopes")
    @classmethod
    def validate_scopes(cls, v):
        for scope in v:
            if scope not in SCOPE_DESCRIPTIONS:
                raise ValueError(f"Unknown scope: {scope}")
        return v

    @field_validator("grant_types")
    @classmethod
    def validate_grant_types(cls, v):
        for grant_type in v:
            if grant_type not in VALID_GRANT_TYPES:
                raise ValueError(f"Unsupported grant type: {grant_type}")
        return v

    @field_validator("response_types")
    @classmethod
    def validate_response_types(cls, v):
        for response_type in v:
            if response_type not in VALID_RESPONSE_TYPES:
                raise ValueError(f"Unsupported response type: {response_type}")
        return v


class OAuthClient(Base):
    """Registered OAuth2 client (relying party)."""

    __tablename__ = "oauth_clients"

    client_id = Column(String, primary_key=True)
    client_secret_hash = Column(String, nullable=False)
    name = Column(String(64), nullable=False, default="")
    redirect_uris = Column(JSON, nullable=False, default=list)
    grant_types = Column(JSON, nullable=False, default=list)
    response_types = Column(JSON, nullable=False, default=list)
    scopes = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=True, onupdate=utcnow)

    @classmethod
    def generate_client_id(cls) -> str:
        return f"cid_{''.join(secrets.choice(string.ascii_lowercase + string.digits) for _ in range(24))}"

    @classmethod
    def generate_client_secret(cls) -> str:
        return f"csc_{''.join(secrets.choice(string.ascii_letters + string.digits) for _ in range(48))}"

    @classmethod
    def create(cls, args: ClientCreateArgs, client_secret: Optional[str] = None) -> tuple[Self, str]:
        """New client with a generated (or supplied) secret; returns the plaintext secret once."""
        client_secret = client_secret or cls.generate_client_secret()
        instance = cls(
            client_id=args.client_id or cls.generate_client_id(),
            client_secret_hash=hash_password(client_secret),
            name=args.name,
            redirect_uris=list(args.redirect_uris),
            grant_types=list(args.grant_types),
            response_types=list(args.response_types),
            scopes=list(args.scopes),
            created_at=utcnow(),
        )
        return instance, client_secret

    def regenerate_secret(self) -> str:
        new_secret = self.generate_client_secret()
        self.client_secret_hash = hash_password(new_secret)
        return new_secret

    def to_client(self) -> Client:
        return Client(
            client_id=self.client_id,
            secret_digest=self.client_secret_hash,
            name=self.name or "",
            redirect_uris=frozenset(self.redirect_uris or ()),
            grant_types=frozenset(self.grant_types or ()),
            response_types=frozenset(self.response_types or ()),
            scopes=frozenset(self.scopes or ()),
        )
