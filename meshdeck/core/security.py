"""Session tokens and RBAC authorization dependencies."""

import logging
import time
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Sequence

from fastapi import Depends, Request, Response
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError, jwt
from sqlalchemy.orm import Session

from meshdeck.core.config import settings
from meshdeck.core.exceptions import AuthenticationError, AuthorizationError
from meshdeck.core.rbac import (
    RoleName, ROLE_HIERARCHY, has_any_role, meets_minimum_role, sort_roles,
)
from meshdeck.db.session import get_db

logger = logging.getLogger("meshdeck")

# JWT bearer scheme
security_scheme = HTTPBearer(auto_error=False)

SESSION_HEADER = "X-Session-Token"


@dataclass(frozen=True)
class SessionClaims:
    """Identity and role snapshot carried by a session token.

    ``roles`` reflect membership at ``roles_refreshed_at``; they are a cache
    of the store with a staleness bound of ``SESSION_REFRESH_SECONDS``.
    """

    user_id: int
    email: Optional[str]
    name: Optional[str]
    roles: List[RoleName] = field(default_factory=list)
    roles_refreshed_at: int = 0
    expires_at: int = 0

    def is_stale(self, now: Optional[float] = None, refresh_seconds: Optional[int] = None) -> bool:
        now = time.time() if now is None else now
        refresh_seconds = settings.SESSION_REFRESH_SECONDS if refresh_seconds is None else refresh_seconds
        return now - self.roles_refreshed_at >= refresh_seconds

    def with_roles(self, roles: Sequence[RoleName], now: Optional[float] = None) -> "SessionClaims":
        return replace(
            self,
            roles=sort_roles(roles),
            roles_refreshed_at=int(time.time() if now is None else now),
        )


@dataclass(frozen=True)
class AuthContext:
    """Verified caller identity handed to protected handlers."""

    user_id: int
    email: Optional[str]
    name: Optional[str]
    roles: List[RoleName]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.user_id,
            "email": self.email,
            "name": self.name,
            "roles": [r.value for r in self.roles],
        }


def create_session_token(claims: SessionClaims) -> str:
    """Sign a session token for the given claims."""
    now = int(time.time())
    expires_at = claims.expires_at or now + settings.SESSION_MAX_AGE_SECONDS
    payload = {
        "sub": str(claims.user_id),
        "email": claims.email,
        "name": claims.name,
        "roles": [r.value for r in claims.roles],
        "rat": claims.roles_refreshed_at or now,
        "iat": now,
        "exp": expires_at,
        "type": "session",
    }
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def decode_session_token(token: str) -> SessionClaims:
    """Decode and validate a session token.

    Raises:
        AuthenticationError: If the token is invalid, expired, or malformed.
    """
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except JWTError:
        raise AuthenticationError("Invalid or expired session")

    if payload.get("type") != "session" or payload.get("sub") is None:
        raise AuthenticationError("Invalid session payload")
    try:
        roles = [RoleName(r) for r in payload.get("roles", [])]
        return SessionClaims(
            user_id=int(payload["sub"]),
            email=payload.get("email"),
            name=payload.get("name"),
            roles=sort_roles(roles),
            roles_refreshed_at=int(payload.get("rat", 0)),
            expires_at=int(payload["exp"]),
        )
    except (TypeError, ValueError, KeyError):
        raise AuthenticationError("Invalid session payload")


def verify_identity_token(token: str) -> Dict[str, Any]:
    """Verify an ID token issued by the identity provider and return its claims."""
    if not settings.OIDC_VERIFY_KEY:
        raise AuthenticationError("Identity provider is not configured")
    try:
        return jwt.decode(
            token,
            settings.OIDC_VERIFY_KEY,
            algorithms=settings.OIDC_ALGORITHMS,
            audience=settings.OIDC_AUDIENCE,
            issuer=settings.OIDC_ISSUER,
            options={"verify_at_hash": False},
        )
    except JWTError:
        raise AuthenticationError("Invalid identity token")


def get_session_claims(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security_scheme),
) -> SessionClaims:
    """Extract session claims from the Bearer token."""
    if credentials is None:
        raise AuthenticationError("Not authenticated")
    return decode_session_token(credentials.credentials)


def current_claims(
    request: Request,
    response: Response,
    claims: SessionClaims = Depends(get_session_claims),
    db: Session = Depends(get_db),
) -> SessionClaims:
    """Session claims, re-read from the store once the role snapshot is stale.

    A refreshed token is returned to the client in ``X-Session-Token``.
    """
    if not claims.is_stale():
        return claims

    from meshdeck.services.session_service import session_service

    refreshed = session_service.refresh_claims(db, claims)
    if refreshed is not claims:
        token = create_session_token(refreshed)
        response.headers[SESSION_HEADER] = token
        request.state.refreshed_session = token
    return refreshed


def _context(claims: SessionClaims) -> AuthContext:
    return AuthContext(
        user_id=claims.user_id,
        email=claims.email,
        name=claims.name,
        roles=list(claims.roles),
    )


def authorize_roles(claims: SessionClaims, allowed: Sequence[RoleName]) -> AuthContext:
    """Exact-set decision: caller must hold one of ``allowed``."""
    if not has_any_role(claims.roles, allowed):
        raise AuthorizationError(required=[r.value for r in allowed])
    return _context(claims)


def authorize_minimum_role(claims: SessionClaims, minimum_role: RoleName) -> AuthContext:
    """Hierarchy decision: caller must hold a role at or above ``minimum_role``."""
    if not meets_minimum_role(claims.roles, minimum_role):
        raise AuthorizationError(required_level=minimum_role.value)
    return _context(claims)


class RequireRoles:
    """Dependency that admits callers holding at least one listed role."""

    def __init__(self, *roles: RoleName):
        if not roles:
            raise ValueError("RequireRoles needs at least one role")
        self.roles = [RoleName(r) for r in roles]

    async def __call__(self, claims: SessionClaims = Depends(current_claims)) -> AuthContext:
        return authorize_roles(claims, self.roles)


class RequireMinimumRole:
    """Dependency that checks the caller's role level against a threshold role."""

    def __init__(self, min_role: RoleName):
        self.min_role = RoleName(min_role)
        self.min_level = ROLE_HIERARCHY[self.min_role]

    async def __call__(self, claims: SessionClaims = Depends(current_claims)) -> AuthContext:
        return authorize_minimum_role(claims, self.min_role)


async def require_session(claims: SessionClaims = Depends(current_claims)) -> AuthContext:
    """Any authenticated caller, whatever its roles."""
    return _context(claims)


# Convenience dependency factories
require_user = RequireMinimumRole(RoleName.USER)
require_auditor = RequireMinimumRole(RoleName.AUDITOR)
require_operator = RequireMinimumRole(RoleName.OPERATOR)
require_admin = RequireMinimumRole(RoleName.ADMIN)
require_owner = RequireRoles(RoleName.OWNER)
