"""
OpenID Connect discovery document.
"""

from typing import Any, Dict

from sso.constants import DEFAULT_GRANT_TYPES, DEFAULT_RESPONSE_TYPES, PKCE_METHODS, SUPPORTED_SCOPES


def discovery_document(issuer: str) -> Dict[str, Any]:
    """Endpoints are joined onto the issuer without a trailing slash, so never `//`."""
    issuer = issuer.rstrip("/")
    return {
        "issuer": issuer,
        "authorization_endpoint": f"{issuer}/authorize",
        "token_endpoint": f"{issuer}/token",
        "userinfo_endpoint": f"{issuer}/userinfo",
        "jwks_uri": f"{issuer}/jwks.json",
        "revocation_endpoint": f"{issuer}/token/revoke",
        "introspection_endpoint": f"{issuer}/token/introspect",
        "scopes_supported": list(SUPPORTED_SCOPES),
        "response_types_supported": list(DEFAULT_RESPONSE_TYPES),
        "grant_types_supported": list(DEFAULT_GRANT_TYPES),
        "subject_types_supported": ["public"],
        "id_token_signing_alg_values_supported": ["RS256"],
        "token_endpoint_auth_methods_supported": ["client_secret_basic", "client_secret_post"],
        "code_challenge_methods_supported": list(PKCE_METHODS),
        "claims_supported": [
            "iss",
            "sub",
            "aud",
            "exp",
            "iat",
            "auth_time",
            "nonce",
            "at_hash",
            "preferred_username",
            "name",
            "email",
        ],
    }
