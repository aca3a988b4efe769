"""Auth API router — identity-provider callback, refresh, logout, me."""

import time

from fastapi import APIRouter, Depends, Request, Response
from sqlalchemy.orm import Session

from meshdeck.core.config import settings
from meshdeck.core.rbac import get_assignable_roles, highest_role
from meshdeck.core.security import (
    AuthContext, SessionClaims, create_session_token, current_claims,
    get_session_claims, require_session,
)
from meshdeck.db.session import get_db
from meshdeck.schemas.schemas import IdentityLoginRequest, MessageResponse, SessionResponse
from meshdeck.services.audit_service import AUDIT_STATUS_HEADER
from meshdeck.services.session_service import session_service

router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/callback", response_model=SessionResponse)
def login(
    body: IdentityLoginRequest,
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
):
    """Exchange an identity-provider ID token for a MeshDeck session."""
    result = session_service.login(db, request, body.id_token)
    response.headers[AUDIT_STATUS_HEADER] = result["audit"].header_value
    return result


@router.post("/refresh", response_model=SessionResponse)
def refresh(
    db: Session = Depends(get_db),
    claims: SessionClaims = Depends(get_session_claims),
):
    """Re-read the caller's roles now and issue a new session token."""
    refreshed = session_service.refresh_claims(db, claims)
    ctx = AuthContext(
        user_id=refreshed.user_id,
        email=refreshed.email,
        name=refreshed.name,
        roles=list(refreshed.roles),
    )
    return {
        "access_token": create_session_token(refreshed),
        "token_type": "bearer",
        "expires_in": max(0, refreshed.expires_at - int(time.time())),
        "user": ctx.to_dict(),
    }


@router.post("/logout", response_model=MessageResponse)
def logout(
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
    claims: SessionClaims = Depends(current_claims),
):
    """Record the logout. The client discards its token."""
    outcome = session_service.logout(db, request, claims)
    response.headers[AUDIT_STATUS_HEADER] = outcome.header_value
    return MessageResponse(message="Logged out successfully")


@router.get("/me")
async def get_me(ctx: AuthContext = Depends(require_session)):
    """Current user and the roles they may grant."""
    top = highest_role(ctx.roles)
    return {
        **ctx.to_dict(),
        "assignableRoles": [r.value for r in get_assignable_roles(top)] if top else [],
        "sessionRefreshSeconds": settings.SESSION_REFRESH_SECONDS,
    }
