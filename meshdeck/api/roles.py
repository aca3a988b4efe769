"""User role assignment API router."""

import logging

from fastapi import APIRouter, Depends, Query, Request, Response
from sqlalchemy.orm import Session

from meshdeck.core.exceptions import AuthorizationError, ResourceNotFoundError
from meshdeck.core.rbac import RoleName, can_assign_role, get_assignable_roles, highest_role, parse_role
from meshdeck.core.security import AuthContext, RequireRoles
from meshdeck.db.session import get_db
from meshdeck.models.user import User
from meshdeck.schemas.schemas import RoleAssignment
from meshdeck.services.audit_service import (
    AUDIT_STATUS_HEADER, AuditAction, AuditResourceType, audit_service,
)
from meshdeck.services.identity_sync import identity_sync_service

logger = logging.getLogger("meshdeck")

router = APIRouter(prefix="/users/roles", tags=["roles"])

require_role_admin = RequireRoles(RoleName.ADMIN, RoleName.OWNER)


def _resolve(db: Session, body: RoleAssignment, ctx: AuthContext):
    try:
        role = parse_role(body.role)
    except ValueError:
        raise ResourceNotFoundError("Role not found")
    if not can_assign_role(ctx.roles, role):
        raise AuthorizationError(required=[RoleName.OWNER.value])
    user = db.query(User).filter(User.id == body.user_id).first()
    if not user:
        raise ResourceNotFoundError("User not found")
    return user, role


@router.get("")
def get_roles(
    user_id: int = Query(...),
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(require_role_admin),
):
    """Roles held by a user and the roles the caller may grant."""
    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        raise ResourceNotFoundError("User not found")
    return {
        "userId": user.id,
        "roles": [
            {"role": ur.role.name, "source": ur.source.value}
            for ur in user.roles
        ],
        "assignable": [r.value for r in get_assignable_roles(highest_role(ctx.roles))],
    }


@router.post("")
def assign_role(
    body: RoleAssignment,
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(require_role_admin),
):
    """Grant a role inside MeshDeck. Only an OWNER can grant OWNER."""
    user, role = _resolve(db, body, ctx)
    identity_sync_service.assign_role(db, user.id, role)

    outcome = audit_service.log_for_actor(
        db, request, ctx,
        action=AuditAction.ASSIGN_ROLE,
        resource_type=AuditResourceType.ROLE,
        resource_id=role.value,
        metadata={
            "targetUserId": user.id,
            "targetUserEmail": user.email,
            "roleName": role.value,
        },
    )
    response.headers[AUDIT_STATUS_HEADER] = outcome.header_value
    logger.info("User %s assigned %s to user %s", ctx.user_id, role.value, user.id)
    return {"success": True}


@router.delete("")
def remove_role(
    body: RoleAssignment,
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(require_role_admin),
):
    """Revoke a role granted inside MeshDeck. Identity-provider roles follow the groups."""
    user, role = _resolve(db, body, ctx)
    identity_sync_service.remove_role(db, user.id, role)

    outcome = audit_service.log_for_actor(
        db, request, ctx,
        action=AuditAction.REMOVE_ROLE,
        resource_type=AuditResourceType.ROLE,
        resource_id=role.value,
        metadata={
            "targetUserId": user.id,
            "targetUserEmail": user.email,
            "roleName": role.value,
        },
    )
    response.headers[AUDIT_STATUS_HEADER] = outcome.header_value
    logger.info("User %s removed %s from user %s", ctx.user_id, role.value, user.id)
    return {"success": True}
