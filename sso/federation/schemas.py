"""
Upstream identity provider connectors and the claims they return.
"""

from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict
from sqlalchemy import Column, DateTime, String

from sso.database import Base
from sso.user.schemas import utcnow


class IdPConnector(Base):
    """An upstream OpenID provider users may sign in with."""

    __tablename__ = "idp_connectors"

    connector_id = Column(String(64), primary_key=True)
    name = Column(String(64), nullable=False, default="")
    issuer = Column(String, nullable=False)
    client_id = Column(String, nullable=False)
    client_secret = Column(String, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    @property
    def display_name(self) -> str:
        return self.name or self.connector_id


class ConnectorArgs(BaseModel):
    connector_id: str
    name: str = ""
    issuer: str
    client_id: str
    client_secret: str


class UpstreamClaims(BaseModel):
    """Identity asserted by the upstream provider."""

    model_config = ConfigDict(frozen=True)

    sub: str
    email: Optional[str] = None
    preferred_username: Optional[str] = None
    name: Optional[str] = None


class FederationParams(BaseModel):
    """Authorization request parameters carried through the upstream round trip."""

    client_id: str = ""
    redirect_uri: str = ""
    response_type: str = ""
    scope: str = ""
    state: str = ""
    nonce: str = ""
    code_challenge: str = ""
    code_challenge_method: str = ""

    def is_empty(self) -> bool:
        return not self.client_id and not self.redirect_uri

    def as_params(self) -> Dict[str, str]:
        return {k: v for k, v in self.model_dump().items() if v}
