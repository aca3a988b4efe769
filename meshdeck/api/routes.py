"""Headscale subnet routes API router."""

import logging

from fastapi import APIRouter, Depends, Request, Response
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from meshdeck.core.rbac import RoleName
from meshdeck.core.security import AuthContext, RequireRoles, require_operator, require_user
from meshdeck.db.session import get_db
from meshdeck.gateway.client import HeadscaleClient, get_headscale
from meshdeck.gateway.errors import error_response
from meshdeck.services.audit_service import (
    AUDIT_STATUS_HEADER, AuditAction, AuditResourceType, audit_service,
)

logger = logging.getLogger("meshdeck")

router = APIRouter(prefix="/headscale/routes", tags=["routes"])


@router.get("")
async def list_routes(
    headscale: HeadscaleClient = Depends(get_headscale),
    ctx: AuthContext = Depends(require_user),
):
    result = await headscale.list_routes()
    if not result.ok:
        return error_response(result.error, "Routes")
    return result.value.model_dump(by_alias=True)


async def _toggle_route(
    route_id: str,
    enable: bool,
    request: Request,
    response: Response,
    db: Session,
    headscale: HeadscaleClient,
    ctx: AuthContext,
):
    if enable:
        result = await headscale.enable_route(route_id)
    else:
        result = await headscale.disable_route(route_id)
    if not result.ok:
        return error_response(result.error, "Route")
    route = result.value.route

    outcome = await run_in_threadpool(
        audit_service.log_for_actor, db, request, ctx,
        action=AuditAction.ENABLE_ROUTE if enable else AuditAction.DISABLE_ROUTE,
        resource_type=AuditResourceType.ROUTE,
        resource_id=route_id,
        new_value={"enabled": enable},
        metadata={
            "prefix": route.prefix,
            "nodeId": route.node.id,
            "nodeName": route.node.given_name,
        },
    )
    response.headers[AUDIT_STATUS_HEADER] = outcome.header_value
    logger.info(
        "User %s %s route %s (%s)",
        ctx.user_id, "enabled" if enable else "disabled", route_id, route.prefix,
    )
    return result.value.model_dump(by_alias=True)


@router.post("/{route_id}/enable")
async def enable_route(
    route_id: str,
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
    headscale: HeadscaleClient = Depends(get_headscale),
    ctx: AuthContext = Depends(require_operator),
):
    """Enable an advertised route."""
    return await _toggle_route(route_id, True, request, response, db, headscale, ctx)


@router.post("/{route_id}/disable")
async def disable_route(
    route_id: str,
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
    headscale: HeadscaleClient = Depends(get_headscale),
    ctx: AuthContext = Depends(require_operator),
):
    """Disable a route."""
    return await _toggle_route(route_id, False, request, response, db, headscale, ctx)


@router.delete("/{route_id}")
async def delete_route(
    route_id: str,
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
    headscale: HeadscaleClient = Depends(get_headscale),
    ctx: AuthContext = Depends(RequireRoles(RoleName.ADMIN, RoleName.OWNER)),
):
    result = await headscale.delete_route(route_id)
    if not result.ok:
        return error_response(result.error, "Route")

    outcome = await run_in_threadpool(
        audit_service.log_for_actor, db, request, ctx,
        action=AuditAction.DELETE_ROUTE,
        resource_type=AuditResourceType.ROUTE,
        resource_id=route_id,
    )
    response.headers[AUDIT_STATUS_HEADER] = outcome.header_value
    logger.info("User %s deleted route %s", ctx.user_id, route_id)
    return {"success": True}
