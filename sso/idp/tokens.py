"""
Opaque token minting, PKCE verification and RS256 ID token signing.
"""

import base64
import hashlib
import hmac
import json
import re
import secrets
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import jwt
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from jwt.algorithms import RSAAlgorithm
from loguru import logger

from sso.constants import PKCE_METHODS, TOKEN_SECRET_BYTES
from sso.exceptions import InternalError

PKCE_VERIFIER_CHARS = re.compile(r"[A-Za-z0-9\-._~]+")


def b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


class HMACStrategy:
    """
    Opaque tokens are `{prefix}{random}`; only the HMAC-SHA256 signature of the
    full token is ever stored.
    """

    def __init__(self, global_secret: str):
        self._secret = global_secret.encode()

    def generate(self, prefix: str) -> Tuple[str, str]:
        token = f"{prefix}{secrets.token_urlsafe(TOKEN_SECRET_BYTES)}"
        return token, self.signature(token)

    def signature(self, token: str) -> str:
        return hmac.new(self._secret, token.encode(), hashlib.sha256).hexdigest()

    def sign_blob(self, payload: Dict[str, Any]) -> str:
        """Tamper-evident `base64(json).signature` blob, used for federation state."""
        body = b64url(json.dumps(payload, separators=(",", ":"), sort_keys=True).encode())
        return f"{body}.{self.signature(body)}"

    def verify_blob(self, blob: str) -> Optional[Dict[str, Any]]:
        if not blob or "." not in blob:
            return None
        body, signature = blob.rsplit(".", 1)
        if not hmac.compare_digest(self.signature(body), signature):
            return None
        try:
            padded = body + "=" * (-len(body) % 4)
            return json.loads(base64.urlsafe_b64decode(padded))
        except ValueError:
            return None


def verify_pkce(verifier: Optional[str], challenge: str, method: Optional[str]) -> bool:
    """
    RFC 7636: S256 is BASE64URL(SHA256(verifier)); plain compares directly.
    Verifiers outside the unreserved character set never match.
    """
    if not verifier or not challenge or not PKCE_VERIFIER_CHARS.fullmatch(verifier):
        return False
    method = method or "plain"
    if method == "S256":
        expected = b64url(hashlib.sha256(verifier.encode("ascii")).digest())
        return hmac.compare_digest(expected.encode(), challenge.encode())
    if method == "plain":
        return hmac.compare_digest(verifier.encode(), challenge.encode())
    return False


def is_supported_pkce_method(method: Optional[str]) -> bool:
    return (method or "plain") in PKCE_METHODS


def at_hash(access_token: str) -> str:
    """Left half of SHA-256 of the access token, base64url encoded (RS256)."""
    digest = hashlib.sha256(access_token.encode("ascii")).digest()
    return b64url(digest[: len(digest) // 2])


class IDTokenSigner:
    """RS256 signer for ID tokens; the public half is published as a JWK set."""

    def __init__(self, private_key: rsa.RSAPrivateKey, key_id: str):
        self.private_key = private_key
        self.key_id = key_id

    @classmethod
    def generate(cls, key_id: str) -> "IDTokenSigner":
        logger.warning("No signing key configured, generated an ephemeral RSA key")
        return cls(rsa.generate_private_key(public_exponent=65537, key_size=2048), key_id)

    @classmethod
    def from_pem_file(cls, path: str, key_id: str) -> "IDTokenSigner":
        private_key = serialization.load_pem_private_key(Path(path).read_bytes(), password=None)
        if not isinstance(private_key, rsa.RSAPrivateKey):
            raise ValueError(f"Signing key at {path} is not an RSA private key")
        logger.info(f"Loaded ID token signing key {key_id} from {path}")
        return cls(private_key, key_id)

    @classmethod
    def from_settings(cls, settings) -> "IDTokenSigner":
        if settings.signing_key_path:
            return cls.from_pem_file(settings.signing_key_path, settings.signing_key_id)
        return cls.generate(settings.signing_key_id)

    def sign(self, claims: Dict[str, Any]) -> str:
        try:
            return jwt.encode(
                claims,
                self.private_key,
                algorithm="RS256",
                headers={"kid": self.key_id, "typ": "JWT"},
            )
        except (jwt.PyJWTError, TypeError, ValueError) as exc:
            logger.error(f"Failed to sign ID token with key {self.key_id}: {exc}")
            raise InternalError("ID token signing failed") from exc

    def public_jwk(self) -> Dict[str, Any]:
        jwk = json.loads(RSAAlgorithm.to_jwk(self.private_key.public_key()))
        jwk.update({"use": "sig", "alg": "RS256", "kid": self.key_id})
        return jwk

    def jwks(self) -> Dict[str, Any]:
        return {"keys": [self.public_jwk()]}

    def verify(self, token: str, audience: str, issuer: str) -> Dict[str, Any]:
        """Decode and validate one of our own ID tokens; raises jwt.PyJWTError."""
        return jwt.decode(
            token,
            self.private_key.public_key(),
            algorithms=["RS256"],
            audience=audience,
            issuer=issuer,
        )
