"""
Response models for the OAuth2/OpenID Connect endpoints.
"""

from typing import List, Optional

from pydantic import BaseModel, ConfigDict


class TokenResponse(BaseModel):
    """OAuth2 token response following RFC 6749."""

    access_token: str
    token_type: str = "bearer"
    expires_in: int
    refresh_token: Optional[str] = None
    id_token: Optional[str] = None
    scope: Optional[str] = None


class TokenErrorResponse(BaseModel):
    """OAuth2 error response following RFC 6749."""

    error: str
    error_description: Optional[str] = None


class IntrospectionResponse(BaseModel):
    """RFC 7662 introspection response; only `active` is set for dead tokens."""

    active: bool
    scope: Optional[str] = None
    client_id: Optional[str] = None
    sub: Optional[str] = None
    username: Optional[str] = None
    token_type: Optional[str] = None
    exp: Optional[int] = None
    iat: Optional[int] = None


class UserInfoResponse(BaseModel):
    """Claims released for the access token's scopes."""

    model_config = ConfigDict(extra="allow")

    sub: str
    preferred_username: Optional[str] = None
    name: Optional[str] = None
    email: Optional[str] = None


class ClientCreationResponse(BaseModel):
    """Returned once when a client is registered; includes the plaintext secret."""

    client_id: str
    client_secret: str
    name: str
    redirect_uris: List[str]
    scopes: List[str]
