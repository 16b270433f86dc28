"""
OAuth bearer tokens: issuance and the scope guard.

Two token families share one signing secret but never one scope:

    manage  issued by Support001, accepted by the management APIs
    ca      issued by IA101, required by the CA consent APIs

TokenScopeGuard.authenticate() runs the checks in a fixed order and returns an
AuthResult instead of raising:

    1. "Bearer <token>" header                     -> UNAUTHORIZED
    2. signature, issuer, audience (30 s leeway)   -> INVALID_TOKEN
    3. exp in the future, iat at most 60 s ahead   -> INVALID_TOKEN
    4. scope contains the required scope           -> FORBIDDEN
    5. jti not revoked; lookup errors fail closed  -> INVALID_TOKEN
"""

import logging
import threading
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from jose import JWTError, jwt

from .errors import AuthError

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
DEFAULT_TTL_SECONDS = 3600
CLOCK_SKEW_SECONDS = 30
MAX_IAT_FUTURE_SECONDS = 60

SCOPE_MANAGE = "manage"
SCOPE_CA = "ca"


# ============================================================
# Revocation
# ============================================================

class RevocationStore(ABC):
    """
    Abstract interface for token revocation by jti.

    is_revoked() may raise; callers must treat an error as revoked.
    """

    @abstractmethod
    def is_revoked(self, jti: str) -> bool:
        pass

    @abstractmethod
    def revoke(self, jti: str, expires_at: int) -> None:
        pass


class InMemoryRevocationStore(RevocationStore):
    """Process-local revocation list. Entries are dropped once the token would have expired anyway."""

    def __init__(self):
        self._revoked: Dict[str, int] = {}
        self._lock = threading.RLock()

    def is_revoked(self, jti: str) -> bool:
        with self._lock:
            self._purge(int(time.time()))
            return jti in self._revoked

    def revoke(self, jti: str, expires_at: int) -> None:
        with self._lock:
            self._revoked[jti] = int(expires_at)

    def _purge(self, now: int) -> None:
        expired = [j for j, exp in self._revoked.items() if exp < now]
        for j in expired:
            del self._revoked[j]


# ============================================================
# Issuance
# ============================================================

@dataclass
class IssuedToken:
    access_token: str
    scope: str
    jti: str
    issued_at: int
    expires_at: int
    token_type: str = "Bearer"

    @property
    def expires_in(self) -> int:
        return self.expires_at - self.issued_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "token_type": self.token_type,
            "access_token": self.access_token,
            "expires_in": self.expires_in,
            "scope": self.scope,
            "issued_at": self.issued_at,
        }


class TokenIssuer:
    """Mints HS256 access tokens for the client credentials grant."""

    def __init__(self, secret: str, issuer: str, audience: str, ttl_seconds: int = DEFAULT_TTL_SECONDS):
        self._secret = secret
        self._issuer = issuer
        self._audience = audience
        self._ttl = ttl_seconds

    def issue(
        self,
        client_id: str,
        scope: str,
        org_code: Optional[str] = None,
        now: Optional[int] = None
    ) -> IssuedToken:
        issued_at = int(now if now is not None else time.time())
        jti = str(uuid.uuid4())
        claims = {
            "iss": self._issuer,
            "aud": self._audience,
            "sub": client_id,
            "client_id": client_id,
            "scope": scope,
            "jti": jti,
            "iat": issued_at,
            "exp": issued_at + self._ttl,
        }
        if org_code:
            claims["org_code"] = org_code
        token = jwt.encode(claims, self._secret, algorithm=ALGORITHM)
        return IssuedToken(
            access_token=token,
            scope=scope,
            jti=jti,
            issued_at=issued_at,
            expires_at=issued_at + self._ttl,
        )


# ============================================================
# Guard
# ============================================================

@dataclass
class AuthResult:
    """Outcome of authenticating a request."""
    claims: Dict[str, Any] = field(default_factory=dict)
    error: Optional[AuthError] = None
    detail: Optional[str] = None

    def passed(self) -> bool:
        return self.error is None

    @property
    def client_id(self) -> Optional[str]:
        return self.claims.get("client_id") or self.claims.get("sub")


def scopes_of(claims: Dict[str, Any]) -> List[str]:
    """Normalize the scope claim (space-delimited string or list) to a list."""
    raw: Union[str, List[str], None] = claims.get("scope")
    if raw is None:
        return []
    if isinstance(raw, str):
        return raw.split()
    return [str(s) for s in raw]


def bearer_token(header: Optional[str]) -> Optional[str]:
    """Extract the token from an Authorization header, or None if it is not a Bearer header."""
    if not header:
        return None
    parts = header.split(" ")
    if len(parts) != 2 or parts[0] != "Bearer" or not parts[1]:
        return None
    return parts[1]


class TokenScopeGuard:
    """
    Validates bearer tokens for a required scope.

    Stateless apart from the injected revocation store; safe for concurrent use.
    """

    def __init__(
        self,
        secret: str,
        issuer: str,
        audience: str,
        revocation_store: Optional[RevocationStore] = None,
        clock_skew: int = CLOCK_SKEW_SECONDS,
        max_iat_future: int = MAX_IAT_FUTURE_SECONDS
    ):
        self._secret = secret
        self._issuer = issuer
        self._audience = audience
        self._revocations = revocation_store
        self._clock_skew = clock_skew
        self._max_iat_future = max_iat_future

    def authenticate(
        self,
        header: Optional[str],
        required_scope: Optional[str],
        now: Optional[int] = None
    ) -> AuthResult:
        """
        Authenticate an Authorization header.

        Args:
            header: Raw Authorization header value
            required_scope: Scope the token must carry, or None for any verified token
            now: Current epoch seconds (defaults to time.time())

        Returns:
            AuthResult with the validated claims, or the first AuthError found
        """
        token = bearer_token(header)
        if token is None:
            return AuthResult(error=AuthError.UNAUTHORIZED, detail="missing or malformed Bearer header")

        result = self._decode(token, now)
        if not result.passed():
            return result

        if required_scope is not None and required_scope not in scopes_of(result.claims):
            return AuthResult(
                claims=result.claims,
                error=AuthError.FORBIDDEN,
                detail=f"scope {required_scope!r} required",
            )
        return self._check_revocation(result)

    def verify_token(self, token: str, now: Optional[int] = None) -> AuthResult:
        """Verify signature, claims, timing and revocation of a raw token. No scope check."""
        result = self._decode(token, now)
        if not result.passed():
            return result
        return self._check_revocation(result)

    def _decode(self, token: str, now: Optional[int]) -> AuthResult:
        now = int(now if now is not None else time.time())
        try:
            claims = jwt.decode(
                token,
                self._secret,
                algorithms=[ALGORITHM],
                audience=self._audience,
                issuer=self._issuer,
                options={"leeway": self._clock_skew},
            )
        except JWTError as e:
            return AuthResult(error=AuthError.INVALID_TOKEN, detail=str(e))

        exp = claims.get("exp")
        if not isinstance(exp, (int, float)) or exp <= now:
            return AuthResult(error=AuthError.INVALID_TOKEN, detail="token expired")

        iat = claims.get("iat")
        if iat is not None and (not isinstance(iat, (int, float)) or iat > now + self._max_iat_future):
            return AuthResult(error=AuthError.INVALID_TOKEN, detail="token issued in the future")

        return AuthResult(claims=claims)

    def _check_revocation(self, result: AuthResult) -> AuthResult:
        jti = result.claims.get("jti")
        if not jti or self._revocations is None:
            return result
        try:
            revoked = self._revocations.is_revoked(jti)
        except Exception:
            logger.exception("revocation lookup failed for jti %s, rejecting token", jti)
            return AuthResult(error=AuthError.INVALID_TOKEN, detail="revocation status unavailable")
        if revoked:
            return AuthResult(error=AuthError.INVALID_TOKEN, detail="token revoked")
        return result
