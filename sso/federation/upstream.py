"""
OpenID relying-party client for upstream providers (discovery, code exchange,
ID token verification and userinfo).
"""

from typing import Any, Dict, Optional
from urllib.parse import urlencode

import httpx
import jwt
from loguru import logger
from pydantic import ValidationError as PydanticValidationError

from sso.exceptions import UpstreamError
from sso.federation.schemas import IdPConnector, UpstreamClaims

UPSTREAM_SCOPES = "openid profile email"
ASYMMETRIC_ALGORITHMS = ("RS256", "RS384", "RS512", "PS256", "PS384", "PS512", "ES256", "ES384", "ES512")


def json_object(document: Any, source: str) -> Dict[str, Any]:
    if not isinstance(document, dict):
        logger.warning(f"Upstream response from {source} is not a JSON object")
        raise UpstreamError("Upstream response is not a JSON object")
    return document


def endpoint_of(metadata: Dict[str, Any], name: str) -> str:
    endpoint = metadata.get(name)
    if not endpoint or not isinstance(endpoint, str):
        logger.warning(f"Upstream discovery document for {metadata.get('issuer')} has no {name}")
        raise UpstreamError(f"Upstream discovery document has no {name}")
    return endpoint


class UpstreamClient:
    """
    Talks to upstream providers with a shared httpx client. Transport failures,
    timeouts, bad status codes, malformed documents and unverifiable tokens all
    become UpstreamError.
    """

    def __init__(self, http: httpx.AsyncClient, timeout: float = 5.0):
        self.http = http
        self.timeout = timeout
        self._metadata: Dict[str, Dict[str, Any]] = {}

    async def _get_json(self, url: str, **kwargs) -> Dict[str, Any]:
        try:
            response = await self.http.get(url, timeout=self.timeout, **kwargs)
            response.raise_for_status()
            document = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning(f"Upstream request to {url} failed: {exc}")
            raise UpstreamError("Upstream request failed") from exc
        return json_object(document, url)

    async def metadata(self, issuer: str) -> Dict[str, Any]:
        issuer = issuer.rstrip("/")
        if issuer not in self._metadata:
            document = await self._get_json(f"{issuer}/.well-known/openid-configuration")
            if str(document.get("issuer") or "").rstrip("/") != issuer:
                logger.warning(f"Upstream discovery issuer mismatch for {issuer}: {document.get('issuer')}")
                raise UpstreamError("Upstream issuer mismatch")
            self._metadata[issuer] = document
        return self._metadata[issuer]

    async def authorization_url(self, connector: IdPConnector, redirect_uri: str, state: str) -> str:
        endpoint = endpoint_of(await self.metadata(connector.issuer), "authorization_endpoint")
        params = {
            "response_type": "code",
            "client_id": connector.client_id,
            "redirect_uri": redirect_uri,
            "scope": UPSTREAM_SCOPES,
            "state": state,
        }
        return f"{endpoint}{'&' if '?' in endpoint else '?'}{urlencode(params)}"

    async def exchange(self, connector: IdPConnector, code: str, redirect_uri: str) -> UpstreamClaims:
        """Redeem the upstream code; prefer verified ID token claims over userinfo."""
        metadata = await self.metadata(connector.issuer)
        token_endpoint = endpoint_of(metadata, "token_endpoint")
        try:
            response = await self.http.post(
                token_endpoint,
                data={
                    "grant_type": "authorization_code",
                    "code": code,
                    "redirect_uri": redirect_uri,
                },
                auth=(connector.client_id, connector.client_secret),
                headers={"Accept": "application/json"},
                timeout=self.timeout,
            )
            response.raise_for_status()
            tokens = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning(f"Upstream code exchange with {connector.connector_id} failed: {exc}")
            raise UpstreamError("Upstream code exchange failed") from exc
        tokens = json_object(tokens, token_endpoint)

        id_token = tokens.get("id_token")
        if id_token:
            claims = await self.verify_id_token(connector, metadata, str(id_token))
        else:
            access_token = tokens.get("access_token")
            if not access_token:
                raise UpstreamError("Upstream returned neither an ID token nor an access token")
            claims = await self._get_json(
                endpoint_of(metadata, "userinfo_endpoint"),
                headers={"Authorization": f"Bearer {access_token}"},
            )
        if not claims.get("sub"):
            raise UpstreamError("Upstream identity has no subject")
        try:
            return UpstreamClaims(
                sub=str(claims["sub"]),
                email=claims.get("email") or None,
                preferred_username=claims.get("preferred_username") or None,
                name=claims.get("name") or None,
            )
        except PydanticValidationError as exc:
            logger.warning(f"Upstream claims from {connector.connector_id} are malformed: {exc}")
            raise UpstreamError("Upstream claims are malformed") from exc

    async def verify_id_token(
        self, connector: IdPConnector, metadata: Dict[str, Any], id_token: str
    ) -> Dict[str, Any]:
        advertised = metadata.get("id_token_signing_alg_values_supported")
        if not isinstance(advertised, list):
            advertised = ["RS256"]
        allowed = [alg for alg in advertised if alg in ASYMMETRIC_ALGORITHMS]
        jwks_document = await self._get_json(endpoint_of(metadata, "jwks_uri"))
        try:
            header = jwt.get_unverified_header(id_token)
            jwks = jwt.PyJWKSet.from_dict(jwks_document)
            key = self._select_key(jwks, header.get("kid"))
            return jwt.decode(
                id_token,
                key=key.key,
                algorithms=allowed or ["RS256"],
                audience=connector.client_id,
                issuer=metadata["issuer"],
            )
        except (jwt.PyJWTError, KeyError) as exc:
            logger.warning(f"Upstream ID token from {connector.connector_id} failed verification: {exc}")
            raise UpstreamError("Upstream ID token verification failed") from exc

    @staticmethod
    def _select_key(jwks: jwt.PyJWKSet, kid: Optional[str]) -> jwt.PyJWK:
        if kid:
            for key in jwks.keys:
                if key.key_id == kid:
                    return key
            raise jwt.InvalidKeyError(f"No upstream key with kid {kid}")
        if len(jwks.keys) != 1:
            raise jwt.InvalidKeyError("Upstream token has no kid and the key set is ambiguous")
        return jwks.keys[0]
