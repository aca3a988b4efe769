"""ACL policy API router."""

import json
import logging

from fastapi import APIRouter, Depends, Request, Response
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from meshdeck.core.exceptions import ValidationError
from meshdeck.core.rbac import RoleName
from meshdeck.core.security import AuthContext, RequireRoles
from meshdeck.db.session import get_db
from meshdeck.gateway.client import HeadscaleClient, get_headscale
from meshdeck.gateway.errors import error_response
from meshdeck.schemas.schemas import PolicyUpdateRequest
from meshdeck.services.audit_service import (
    AUDIT_STATUS_HEADER, AuditAction, AuditResourceType, audit_service,
)

logger = logging.getLogger("meshdeck")

router = APIRouter(prefix="/headscale/policy", tags=["policy"])

require_policy_admin = RequireRoles(RoleName.ADMIN, RoleName.OWNER)


@router.get("")
async def get_policy(
    headscale: HeadscaleClient = Depends(get_headscale),
    ctx: AuthContext = Depends(require_policy_admin),
):
    """Current ACL policy document."""
    result = await headscale.get_policy()
    if not result.ok:
        return error_response(result.error, "Policy")
    return result.value.model_dump(by_alias=True)


@router.put("")
async def update_policy(
    body: PolicyUpdateRequest,
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
    headscale: HeadscaleClient = Depends(get_headscale),
    ctx: AuthContext = Depends(require_policy_admin),
):
    """Replace the ACL policy. The document must parse as JSON before it is sent."""
    if not body.policy.strip():
        raise ValidationError("Policy content is required and must be a string")
    try:
        json.loads(body.policy)
    except ValueError:
        raise ValidationError("Invalid JSON in policy")

    result = await headscale.set_policy(body.policy)
    if not result.ok:
        return error_response(result.error, "Policy")

    outcome = await run_in_threadpool(
        audit_service.log_for_actor, db, request, ctx,
        action=AuditAction.UPDATE_ACL,
        resource_type=AuditResourceType.ACL,
        resource_id="policy",
        metadata={"policyLength": len(body.policy)},
    )
    response.headers[AUDIT_STATUS_HEADER] = outcome.header_value
    logger.info("User %s updated the ACL policy", ctx.user_id)
    return result.value.model_dump(by_alias=True)
