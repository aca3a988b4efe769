"""DNS configuration API router."""

import logging

from fastapi import APIRouter, Depends, Request, Response
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from meshdeck.core.rbac import RoleName
from meshdeck.core.security import AuthContext, RequireRoles
from meshdeck.db.session import get_db
from meshdeck.gateway.client import HeadscaleClient, get_headscale
from meshdeck.gateway.errors import error_response
from meshdeck.schemas.schemas import DNSUpdateRequest
from meshdeck.services.audit_service import (
    AUDIT_STATUS_HEADER, AuditAction, AuditResourceType, audit_service,
)

logger = logging.getLogger("meshdeck")

router = APIRouter(prefix="/headscale/dns", tags=["dns"])

require_dns_admin = RequireRoles(RoleName.ADMIN, RoleName.OWNER)


@router.get("")
async def get_dns(
    headscale: HeadscaleClient = Depends(get_headscale),
    ctx: AuthContext = Depends(require_dns_admin),
):
    result = await headscale.get_dns()
    if not result.ok:
        # Older Headscale releases have no DNS endpoint
        return error_response(result.error, "DNS API")
    return result.value.model_dump(by_alias=True)


@router.put("")
async def update_dns(
    body: DNSUpdateRequest,
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
    headscale: HeadscaleClient = Depends(get_headscale),
    ctx: AuthContext = Depends(require_dns_admin),
):
    """Update nameservers, search domains, MagicDNS and the base domain."""
    config = {
        "nameservers": body.nameservers,
        "domains": body.domains,
        "magicDNS": body.magic_dns,
        "baseDomain": body.base_domain,
    }
    result = await headscale.set_dns({k: v for k, v in config.items() if v is not None})
    if not result.ok:
        return error_response(result.error, "DNS API")

    outcome = await run_in_threadpool(
        audit_service.log_for_actor, db, request, ctx,
        action=AuditAction.UPDATE_DNS,
        resource_type=AuditResourceType.DNS,
        resource_id="config",
        metadata={
            "nameserversCount": len(body.nameservers or []),
            "domainsCount": len(body.domains or []),
            "magicDNS": body.magic_dns,
            "baseDomain": body.base_domain,
        },
    )
    response.headers[AUDIT_STATUS_HEADER] = outcome.header_value
    logger.info("User %s updated the DNS configuration", ctx.user_id)
    return result.value.model_dump(by_alias=True)
