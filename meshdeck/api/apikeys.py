"""Headscale API keys router. Owner only."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request, Response
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from meshdeck.core.security import AuthContext, require_owner
from meshdeck.db.session import get_db
from meshdeck.gateway.client import HeadscaleClient, get_headscale
from meshdeck.gateway.errors import error_response
from meshdeck.schemas.schemas import ApiKeyCreate
from meshdeck.services.audit_service import (
    AUDIT_STATUS_HEADER, AuditAction, AuditResourceType, audit_service,
)

logger = logging.getLogger("meshdeck")

router = APIRouter(prefix="/headscale/apikeys", tags=["apikeys"])


@router.get("")
async def list_api_keys(
    headscale: HeadscaleClient = Depends(get_headscale),
    ctx: AuthContext = Depends(require_owner),
):
    result = await headscale.list_api_keys()
    if not result.ok:
        return error_response(result.error, "API keys")
    return result.value.model_dump(by_alias=True)


@router.post("", status_code=201)
async def create_api_key(
    request: Request,
    response: Response,
    body: Optional[ApiKeyCreate] = None,
    db: Session = Depends(get_db),
    headscale: HeadscaleClient = Depends(get_headscale),
    ctx: AuthContext = Depends(require_owner),
):
    """Issue a new upstream API key. The key is returned once and never stored or logged."""
    expiration = body.expiration if body else None
    result = await headscale.create_api_key(expiration)
    if not result.ok:
        return error_response(result.error, "API key")

    outcome = await run_in_threadpool(
        audit_service.log_for_actor, db, request, ctx,
        action=AuditAction.CREATE_API_KEY,
        resource_type=AuditResourceType.API_KEY,
        resource_id="new",
        metadata={
            "hasExpiration": bool(expiration),
            "expiration": expiration,
        },
    )
    response.headers[AUDIT_STATUS_HEADER] = outcome.header_value
    logger.info("User %s created an API key", ctx.user_id)
    return result.value.model_dump(by_alias=True)


@router.post("/{prefix}")
async def expire_api_key(
    prefix: str,
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
    headscale: HeadscaleClient = Depends(get_headscale),
    ctx: AuthContext = Depends(require_owner),
):
    result = await headscale.expire_api_key(prefix)
    if not result.ok:
        return error_response(result.error, "API key")

    outcome = await run_in_threadpool(
        audit_service.log_for_actor, db, request, ctx,
        action=AuditAction.EXPIRE_API_KEY,
        resource_type=AuditResourceType.API_KEY,
        resource_id=prefix,
    )
    response.headers[AUDIT_STATUS_HEADER] = outcome.header_value
    logger.info("User %s expired API key %s", ctx.user_id, prefix)
    return {"success": True}


@router.delete("/{prefix}")
async def delete_api_key(
    prefix: str,
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
    headscale: HeadscaleClient = Depends(get_headscale),
    ctx: AuthContext = Depends(require_owner),
):
    result = await headscale.delete_api_key(prefix)
    if not result.ok:
        return error_response(result.error, "API key")

    outcome = await run_in_threadpool(
        audit_service.log_for_actor, db, request, ctx,
        action=AuditAction.DELETE_API_KEY,
        resource_type=AuditResourceType.API_KEY,
        resource_id=prefix,
    )
    response.headers[AUDIT_STATUS_HEADER] = outcome.header_value
    logger.info("User %s deleted API key %s", ctx.user_id, prefix)
    return {"success": True}
