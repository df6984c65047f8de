"""
In-process storage for authorization codes, access/refresh tokens, PKCE requests,
OpenID Connect continuations and the client assertion replay cache.

Every mutation happens under a single re-entrant lock, so the check-and-flip steps
of code redemption and refresh rotation cannot interleave. Records are immutable;
state changes replace the record.

Entries live for the lifetime of the process. A durable deployment would put the
same contract in front of a shared keyed store.
"""

import threading
import time
from typing import Callable, Dict, Optional

from loguru import logger
from pydantic import BaseModel, ConfigDict

from sso.exceptions import NotFoundError, ReplayError
from sso.idp.schemas import RequesterSnapshot


class CodeRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    signature: str
    snapshot: RequesterSnapshot
    issued_at: int
    expires_at: int
    active: bool = True


class AccessTokenRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    signature: str
    request_id: str
    snapshot: RequesterSnapshot
    issued_at: int
    expires_at: int


class RefreshTokenRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    signature: str
    request_id: str
    access_token_signature: str
    snapshot: RequesterSnapshot
    issued_at: int
    expires_at: int
    active: bool = True


class GrantStore:
    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._lock = threading.RLock()
        self._codes: Dict[str, CodeRecord] = {}
        self._access_tokens: Dict[str, AccessTokenRecord] = {}
        self._refresh_tokens: Dict[str, RefreshTokenRecord] = {}
        self._pkce: Dict[str, RequesterSnapshot] = {}
        self._oidc: Dict[str, RequesterSnapshot] = {}
        # request_id -> current signature
        self._access_token_ids: Dict[str, str] = {}
        self._refresh_token_ids: Dict[str, str] = {}
        self._used_jtis: Dict[str, float] = {}

    def _now(self) -> int:
        return int(self._clock())

    # Authorization codes.

    def create_code(self, signature: str, snapshot: RequesterSnapshot, expires_at: int) -> CodeRecord:
        record = CodeRecord(
            signature=signature,
            snapshot=snapshot,
            issued_at=self._now(),
            expires_at=expires_at,
        )
        with self._lock:
            if signature in self._codes:
                raise ValueError("authorization code signature collision")
            self._codes[signature] = record
        return record

    def get_code(self, signature: str) -> CodeRecord:
        """
        Raises NotFoundError for unknown codes and ReplayError (carrying the
        snapshot) for codes that were already redeemed.
        """
        with self._lock:
            record = self._codes.get(signature)
            if record is None:
                raise NotFoundError("authorization code not found")
            if not record.active:
                raise ReplayError("authorization code already used", snapshot=record.snapshot)
            return record

    def invalidate_code(self, signature: str):
        with self._lock:
            record = self._codes.get(signature)
            if record is None:
                raise NotFoundError("authorization code not found")
            self._codes[signature] = record.model_copy(update={"active": False})

    def redeem_code(self, signature: str) -> CodeRecord:
        """Atomic get-and-invalidate; exactly one caller can succeed per code."""
        with self._lock:
            record = self.get_code(signature)
            self.invalidate_code(signature)
            return record

    def delete_code(self, signature: str):
        with self._lock:
            self._codes.pop(signature, None)

    # Access tokens.

    def create_access_token(
        self, signature: str, snapshot: RequesterSnapshot, expires_at: int
    ) -> AccessTokenRecord:
        record = AccessTokenRecord(
            signature=signature,
            request_id=snapshot.request_id,
            snapshot=snapshot,
            issued_at=self._now(),
            expires_at=expires_at,
        )
        with self._lock:
            self._access_tokens[signature] = record
            self._access_token_ids[record.request_id] = signature
        return record

    def get_access_token(self, signature: str) -> AccessTokenRecord:
        with self._lock:
            record = self._access_tokens.get(signature)
            if record is None:
                raise NotFoundError("access token not found")
            return record

    def delete_access_token(self, signature: str):
        with self._lock:
            record = self._access_tokens.pop(signature, None)
            if record and self._access_token_ids.get(record.request_id) == signature:
                del self._access_token_ids[record.request_id]

    def revoke_access_token(self, request_id: str):
        with self._lock:
            signature = self._access_token_ids.get(request_id)
            if signature:
                self.delete_access_token(signature)

    # Refresh tokens.

    def create_refresh_token(
        self,
        signature: str,
        access_token_signature: str,
        snapshot: RequesterSnapshot,
        expires_at: int,
    ) -> RefreshTokenRecord:
        record = RefreshTokenRecord(
            signature=signature,
            request_id=snapshot.request_id,
            access_token_signature=access_token_signature,
            snapshot=snapshot,
            issued_at=self._now(),
            expires_at=expires_at,
        )
        with self._lock:
            if access_token_signature not in self._access_tokens:
                raise NotFoundError("sibling access token is not live")
            self._refresh_tokens[signature] = record
            self._refresh_token_ids[record.request_id] = signature
        return record

    def get_refresh_token(self, signature: str) -> RefreshTokenRecord:
        """Raises NotFoundError, or ReplayError when the token was rotated or revoked."""
        with self._lock:
            record = self._refresh_tokens.get(signature)
            if record is None:
                raise NotFoundError("refresh token not found")
            if not record.active:
                raise ReplayError("refresh token is inactive", snapshot=record.snapshot)
            return record

    def invalidate_refresh_token(self, signature: str):
        with self._lock:
            record = self._refresh_tokens.get(signature)
            if record is None:
                raise NotFoundError("refresh token not found")
            self._refresh_tokens[signature] = record.model_copy(update={"active": False})

    def delete_refresh_token(self, signature: str):
        with self._lock:
            record = self._refresh_tokens.pop(signature, None)
            if record and self._refresh_token_ids.get(record.request_id) == signature:
                del self._refresh_token_ids[record.request_id]

    def revoke_refresh_token(self, request_id: str):
        """Deactivate (not delete) so later presentation is detected as replay."""
        with self._lock:
            signature = self._refresh_token_ids.get(request_id)
            if signature and signature in self._refresh_tokens:
                self.invalidate_refresh_token(signature)

    def rotate(self, request_id: str):
        """Revoke the current refresh token and its sibling access token."""
        with self._lock:
            self.revoke_refresh_token(request_id)
            self.revoke_access_token(request_id)

    def redeem_refresh_token(self, signature: str) -> RefreshTokenRecord:
        """Atomic check-active-and-rotate; exactly one caller can succeed per token."""
        with self._lock:
            record = self.get_refresh_token(signature)
            self.rotate(record.request_id)
            # The index may already point at a newer token of the same grant.
            if self._refresh_tokens[signature].active:
                self.invalidate_refresh_token(signature)
            self.delete_access_token(record.access_token_signature)
            return record

    def revoke_by_request_id(self, request_id: str):
        """Cascade: kill every live token of the grant."""
        with self._lock:
            self.rotate(request_id)
            for signature, record in list(self._refresh_tokens.items()):
                if record.request_id == request_id and record.active:
                    self.invalidate_refresh_token(signature)
            for signature, record in list(self._access_tokens.items()):
                if record.request_id == request_id:
                    self.delete_access_token(signature)
        logger.info(f"Revoked all tokens for request {request_id}")

    # PKCE requests, keyed by code signature.

    def create_pkce_request(self, signature: str, snapshot: RequesterSnapshot):
        with self._lock:
            self._pkce[signature] = snapshot

    def get_pkce_request(self, signature: str) -> RequesterSnapshot:
        with self._lock:
            snapshot = self._pkce.get(signature)
            if snapshot is None:
                raise NotFoundError("PKCE request not found")
            return snapshot

    def delete_pkce_request(self, signature: str):
        with self._lock:
            self._pkce.pop(signature, None)

    # OpenID Connect continuations, keyed by code signature.

    def create_oidc_session(self, signature: str, snapshot: RequesterSnapshot):
        with self._lock:
            self._oidc[signature] = snapshot

    def get_oidc_session(self, signature: str) -> RequesterSnapshot:
        with self._lock:
            snapshot = self._oidc.get(signature)
            if snapshot is None:
                raise NotFoundError("OpenID Connect session not found")
            return snapshot

    def delete_oidc_session(self, signature: str):
        with self._lock:
            self._oidc.pop(signature, None)

    # Client assertion replay cache.

    def is_used(self, jti: str) -> bool:
        with self._lock:
            expiry = self._used_jtis.get(jti)
            return expiry is not None and expiry > self._clock()

    def mark_used(self, jti: str, expiry: float):
        """Record a client assertion id; ReplayError if it is known and unexpired."""
        now = self._clock()
        with self._lock:
            for known, known_expiry in list(self._used_jtis.items()):
                if known_expiry <= now:
                    del self._used_jtis[known]
            if jti in self._used_jtis:
                raise ReplayError(f"client assertion {jti} already used")
            self._used_jtis[jti] = expiry

    # Housekeeping.

    def _grant_has_tokens(self, request_id: str) -> bool:
        return request_id in self._access_token_ids or request_id in self._refresh_token_ids

    def purge_expired(self, now: Optional[int] = None) -> int:
        """
        Drop records past expiry; returns how many were removed.
        A redeemed code is kept while tokens from its grant are still stored, so
        presenting it again is still a replay that revokes those tokens.
        """
        now = self._now() if now is None else now
        removed = 0
        with self._lock:
            for signature, record in list(self._codes.items()):
                if record.expires_at <= now:
                    if not record.active and self._grant_has_tokens(record.snapshot.request_id):
                        continue
                    del self._codes[signature]
                    self._pkce.pop(signature, None)
                    self._oidc.pop(signature, None)
                    removed += 1
            for signature, record in list(self._access_tokens.items()):
                if record.expires_at <= now:
                    self.delete_access_token(signature)
                    removed += 1
            for signature, record in list(self._refresh_tokens.items()):
                if record.expires_at <= now:
                    self.delete_refresh_token(signature)
                    removed += 1
            for jti, expiry in list(self._used_jtis.items()):
                if expiry <= now:
                    del self._used_jtis[jti]
                    removed += 1
        if removed:
            logger.debug(f"Purged {removed} expired grant records")
        return removed
