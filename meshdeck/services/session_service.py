"""Session service — login, role-snapshot refresh, logout."""

import logging
import time
from typing import Any, Dict, List, Optional

from fastapi import Request
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from meshdeck.core.config import settings
from meshdeck.core.exceptions import AuthenticationError, MeshDeckError
from meshdeck.core.rbac import LOWEST_ROLE, RoleName
from meshdeck.core.security import (
    SessionClaims, create_session_token, verify_identity_token,
)
from meshdeck.services.audit_service import (
    AuditAction, AuditOutcome, AuditResourceType, audit_service,
)
from meshdeck.services.identity_sync import IdentitySyncService, identity_sync_service

logger = logging.getLogger("meshdeck.identity")


class SessionService:
    """Turns identity-provider logins into MeshDeck sessions."""

    def __init__(self, identity: Optional[IdentitySyncService] = None):
        self.identity = identity or identity_sync_service

    def resolve_roles(
        self,
        db: Session,
        subject: str,
        email: Optional[str],
        name: Optional[str],
        groups: List[str],
    ) -> Dict[str, Any]:
        """Sync the user, bootstrap the owner if needed, and read its roles.

        Any store failure degrades the session to the lowest role; the
        error is logged, never raised.
        """
        user_id = None
        try:
            user = self.identity.upsert_user(db, subject, email, name)
            user_id = user.id
            self.identity.sync_user_roles(db, user, groups)
            self.identity.ensure_owner_exists(db, user_id)
            roles = self.identity.get_user_roles(db, user_id)
            degraded = False
        except (SQLAlchemyError, MeshDeckError) as e:
            db.rollback()
            logger.error("Failed to sync user roles for subject=%s: %s", subject, e)
            roles = [LOWEST_ROLE]
            degraded = True
        return {"user_id": user_id, "roles": roles, "degraded": degraded}

    def login(self, db: Session, request: Request, id_token: str) -> Dict[str, Any]:
        """Verify an identity-provider token and issue a session.

        Raises:
            AuthenticationError: If the identity token is invalid or the user
                record could not be established.
        """
        profile = verify_identity_token(id_token)
        subject = profile.get("sub")
        if not subject:
            raise AuthenticationError("Identity token has no subject")
        email = profile.get("email")
        name = profile.get("name") or profile.get("preferred_username")
        groups = profile.get("groups") or []
        if not isinstance(groups, list):
            groups = [groups]

        resolved = self.resolve_roles(db, subject, email, name, [str(g) for g in groups])
        if resolved["user_id"] is None:
            # Without a user row there is no identity to put in the session
            raise AuthenticationError("Unable to establish user record")

        now = int(time.time())
        claims = SessionClaims(
            user_id=resolved["user_id"],
            email=email,
            name=name,
            roles=resolved["roles"],
            roles_refreshed_at=now,
        )
        token = create_session_token(claims)

        outcome = audit_service.log_from_request(
            db, request,
            actor_user_id=claims.user_id,
            actor_email=email,
            action=AuditAction.USER_LOGIN,
            resource_type=AuditResourceType.USER,
            resource_id=str(claims.user_id),
            metadata={"groups": len(groups), "degraded": resolved["degraded"]},
        )

        return {
            "access_token": token,
            "token_type": "bearer",
            "expires_in": settings.SESSION_MAX_AGE_SECONDS,
            "user": {
                "id": claims.user_id,
                "email": email,
                "name": name,
                "roles": [r.value for r in claims.roles],
            },
            "audit": outcome,
        }

    def refresh_claims(self, db: Session, claims: SessionClaims) -> SessionClaims:
        """Re-read role membership from the store.

        Returns the original claims unchanged if the store cannot be read.
        """
        try:
            roles: List[RoleName] = self.identity.get_user_roles(db, claims.user_id)
        except SQLAlchemyError as e:
            db.rollback()
            logger.warning("Keeping cached roles for user %s, refresh failed: %s", claims.user_id, e)
            return claims
        return claims.with_roles(roles)

    def logout(self, db: Session, request: Request, claims: SessionClaims) -> AuditOutcome:
        """Record the logout. Session tokens are stateless and expire on their own."""
        return audit_service.log_from_request(
            db, request,
            actor_user_id=claims.user_id,
            actor_email=claims.email,
            action=AuditAction.USER_LOGOUT,
            resource_type=AuditResourceType.USER,
            resource_id=str(claims.user_id),
        )


session_service = SessionService()
