"""Headscale users (tailnet namespaces) API router."""

import logging

from fastapi import APIRouter, Depends, Request, Response
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from meshdeck.core.rbac import RoleName
from meshdeck.core.security import AuthContext, RequireRoles, require_operator
from meshdeck.db.session import get_db
from meshdeck.gateway.client import HeadscaleClient, get_headscale
from meshdeck.gateway.errors import error_response
from meshdeck.schemas.schemas import HeadscaleUserCreate, HeadscaleUserRename
from meshdeck.services.audit_service import (
    AUDIT_STATUS_HEADER, AuditAction, AuditResourceType, audit_service,
)

logger = logging.getLogger("meshdeck")

router = APIRouter(prefix="/headscale/users", tags=["headscale-users"])

require_user_admin = RequireRoles(RoleName.ADMIN, RoleName.OWNER)


@router.get("")
async def list_users(
    headscale: HeadscaleClient = Depends(get_headscale),
    ctx: AuthContext = Depends(require_operator),
):
    result = await headscale.list_users()
    if not result.ok:
        return error_response(result.error, "Users")
    return result.value.model_dump(by_alias=True)


@router.post("", status_code=201)
async def create_user(
    body: HeadscaleUserCreate,
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
    headscale: HeadscaleClient = Depends(get_headscale),
    ctx: AuthContext = Depends(require_user_admin),
):
    result = await headscale.create_user(body.name)
    if not result.ok:
        return error_response(result.error, "User")
    user = result.value.user

    outcome = await run_in_threadpool(
        audit_service.log_for_actor, db, request, ctx,
        action=AuditAction.CREATE_USER,
        resource_type=AuditResourceType.USER,
        resource_id=user.id,
        new_value={"name": user.name},
    )
    response.headers[AUDIT_STATUS_HEADER] = outcome.header_value
    logger.info("User %s created Headscale user %s", ctx.user_id, user.name)
    return result.value.model_dump(by_alias=True)


@router.post("/{name}/rename")
async def rename_user(
    name: str,
    body: HeadscaleUserRename,
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
    headscale: HeadscaleClient = Depends(get_headscale),
    ctx: AuthContext = Depends(require_user_admin),
):
    result = await headscale.rename_user(name, body.new_name)
    if not result.ok:
        return error_response(result.error, "User")

    outcome = await run_in_threadpool(
        audit_service.log_for_actor, db, request, ctx,
        action=AuditAction.RENAME_USER,
        resource_type=AuditResourceType.USER,
        resource_id=result.value.user.id,
        old_value={"name": name},
        new_value={"name": body.new_name},
    )
    response.headers[AUDIT_STATUS_HEADER] = outcome.header_value
    logger.info("User %s renamed Headscale user %s to %s", ctx.user_id, name, body.new_name)
    return result.value.model_dump(by_alias=True)


@router.delete("/{name}")
async def delete_user(
    name: str,
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
    headscale: HeadscaleClient = Depends(get_headscale),
    ctx: AuthContext = Depends(require_user_admin),
):
    result = await headscale.delete_user(name)
    if not result.ok:
        return error_response(result.error, "User")

    outcome = await run_in_threadpool(
        audit_service.log_for_actor, db, request, ctx,
        action=AuditAction.DELETE_USER,
        resource_type=AuditResourceType.USER,
        resource_id=name,
        old_value={"name": name},
    )
    response.headers[AUDIT_STATUS_HEADER] = outcome.header_value
    logger.info("User %s deleted Headscale user %s", ctx.user_id, name)
    return {"success": True}
