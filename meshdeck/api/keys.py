"""Pre-auth keys API router."""

import logging

from fastapi import APIRouter, Depends, Query, Request, Response
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from meshdeck.core.rbac import RoleName
from meshdeck.core.security import AuthContext, RequireRoles
from meshdeck.db.session import get_db
from meshdeck.gateway.client import HeadscaleClient, get_headscale
from meshdeck.gateway.errors import error_response
from meshdeck.schemas.schemas import PreAuthKeyCreate, PreAuthKeyExpire
from meshdeck.services.audit_service import (
    AUDIT_STATUS_HEADER, AuditAction, AuditResourceType, audit_service,
)

logger = logging.getLogger("meshdeck")

router = APIRouter(prefix="/headscale/keys", tags=["keys"])

require_key_manager = RequireRoles(RoleName.OPERATOR, RoleName.ADMIN, RoleName.OWNER)


@router.get("")
async def list_keys(
    user: str = Query(..., min_length=1),
    headscale: HeadscaleClient = Depends(get_headscale),
    ctx: AuthContext = Depends(require_key_manager),
):
    """Pre-auth keys belonging to one Headscale user."""
    result = await headscale.list_preauth_keys(user)
    if not result.ok:
        return error_response(result.error, "User")
    return result.value.model_dump(by_alias=True)


@router.post("", status_code=201)
async def create_key(
    body: PreAuthKeyCreate,
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
    headscale: HeadscaleClient = Depends(get_headscale),
    ctx: AuthContext = Depends(require_key_manager),
):
    result = await headscale.create_preauth_key(
        user=body.user,
        reusable=body.reusable,
        ephemeral=body.ephemeral,
        expiration=body.expiration,
        acl_tags=body.acl_tags,
    )
    if not result.ok:
        return error_response(result.error, "User")
    key = result.value.pre_auth_key

    # The key itself goes to the caller only
    outcome = await run_in_threadpool(
        audit_service.log_for_actor, db, request, ctx,
        action=AuditAction.CREATE_KEY,
        resource_type=AuditResourceType.KEY,
        resource_id=key.id,
        metadata={
            "headscaleUser": body.user,
            "reusable": body.reusable,
            "ephemeral": body.ephemeral,
            "aclTags": body.acl_tags,
        },
    )
    response.headers[AUDIT_STATUS_HEADER] = outcome.header_value
    logger.info("User %s created pre-auth key %s for %s", ctx.user_id, key.id, body.user)
    return result.value.model_dump(by_alias=True)


@router.post("/expire")
async def expire_key(
    body: PreAuthKeyExpire,
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
    headscale: HeadscaleClient = Depends(get_headscale),
    ctx: AuthContext = Depends(require_key_manager),
):
    result = await headscale.expire_preauth_key(body.user, body.key)
    if not result.ok:
        return error_response(result.error, "Key")

    key_prefix = body.key[:8]
    outcome = await run_in_threadpool(
        audit_service.log_for_actor, db, request, ctx,
        action=AuditAction.EXPIRE_KEY,
        resource_type=AuditResourceType.KEY,
        resource_id=key_prefix,
        metadata={"headscaleUser": body.user},
    )
    response.headers[AUDIT_STATUS_HEADER] = outcome.header_value
    logger.info("User %s expired pre-auth key %s...", ctx.user_id, key_prefix)
    return {"success": True}
