"""Headscale nodes API router."""

import logging

from fastapi import APIRouter, Depends, Request, Response
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from meshdeck.core.exceptions import AuthorizationError, ValidationError
from meshdeck.core.rbac import RoleName, has_any_role
from meshdeck.core.security import AuthContext, RequireRoles, require_operator, require_user
from meshdeck.db.session import get_db
from meshdeck.gateway.client import HeadscaleClient, get_headscale
from meshdeck.gateway.errors import error_body, error_response
from meshdeck.schemas.schemas import NodeBulkRequest, NodeUpdateRequest
from meshdeck.services.audit_service import (
    AUDIT_STATUS_HEADER, AuditAction, AuditResourceType, audit_service, audit_status,
)

logger = logging.getLogger("meshdeck")

router = APIRouter(prefix="/headscale/nodes", tags=["nodes"])

require_node_admin = RequireRoles(RoleName.ADMIN, RoleName.OWNER)


@router.get("")
async def list_nodes(
    headscale: HeadscaleClient = Depends(get_headscale),
    ctx: AuthContext = Depends(require_user),
):
    """List all nodes."""
    result = await headscale.list_nodes()
    if not result.ok:
        return error_response(result.error, "Nodes")
    return result.value.model_dump(by_alias=True)


BULK_AUDIT_ACTIONS = {
    "delete": AuditAction.BULK_DELETE,
    "expire": AuditAction.BULK_EXPIRE,
    "move": AuditAction.BULK_MOVE,
    "tags": AuditAction.BULK_TAGS,
}


async def _apply_bulk(headscale: HeadscaleClient, body: NodeBulkRequest, node_id: str):
    if body.action == "delete":
        return await headscale.delete_node(node_id)
    if body.action == "expire":
        return await headscale.expire_node(node_id)
    if body.action == "move":
        return await headscale.move_node(node_id, body.new_user)
    return await headscale.set_node_tags(node_id, body.tags)


@router.post("/bulk")
async def bulk_update_nodes(
    body: NodeBulkRequest,
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
    headscale: HeadscaleClient = Depends(get_headscale),
    ctx: AuthContext = Depends(require_operator),
):
    """Delete, expire, move or retag several nodes.

    Nodes are processed one by one; a failure on one node does not stop the
    rest. One audit entry covers the whole batch, written only when at least
    one node changed.
    """
    if body.action == "delete" and not has_any_role(ctx.roles, require_node_admin.roles):
        raise AuthorizationError(required=[r.value for r in require_node_admin.roles])

    results = []
    for node_id in body.node_ids:
        result = await _apply_bulk(headscale, body, node_id)
        if result.ok:
            results.append({"nodeId": node_id, "success": True})
        else:
            results.append({
                "nodeId": node_id,
                "success": False,
                "error": error_body(result.error, "Node")["error"],
            })

    succeeded = [r["nodeId"] for r in results if r["success"]]
    failed = len(results) - len(succeeded)

    if succeeded:
        joined = ",".join(succeeded)
        outcome = await run_in_threadpool(
            audit_service.log_for_actor, db, request, ctx,
            action=BULK_AUDIT_ACTIONS[body.action],
            resource_type=AuditResourceType.NODE,
            # Column holds 255 characters; the full list is in metadata
            resource_id=joined if len(joined) <= 255 else f"{len(succeeded)} nodes",
            metadata={
                "action": body.action,
                "nodeIds": body.node_ids,
                "nodeCount": len(body.node_ids),
                "succeeded": len(succeeded),
                "failed": failed,
                "newUser": body.new_user,
                "tags": body.tags,
            },
        )
        response.headers[AUDIT_STATUS_HEADER] = outcome.header_value

    logger.info(
        "User %s bulk %s on %d nodes: %d succeeded, %d failed",
        ctx.user_id, body.action, len(body.node_ids), len(succeeded), failed,
    )
    return {
        "results": results,
        "summary": {
            "total": len(body.node_ids),
            "succeeded": len(succeeded),
            "failed": failed,
        },
    }


@router.get("/{node_id}")
async def get_node(
    node_id: str,
    headscale: HeadscaleClient = Depends(get_headscale),
    ctx: AuthContext = Depends(require_user),
):
    result = await headscale.get_node(node_id)
    if not result.ok:
        return error_response(result.error, "Node")
    return result.value.model_dump(by_alias=True)


@router.patch("/{node_id}")
async def update_node(
    node_id: str,
    body: NodeUpdateRequest,
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
    headscale: HeadscaleClient = Depends(get_headscale),
    ctx: AuthContext = Depends(require_operator),
):
    """Rename, retag, move or expire a node.

    Each requested change is a separate upstream call and a separate audit
    entry. A failing change stops the request; earlier changes stay applied.
    """
    if not body.has_changes():
        raise ValidationError("No changes requested")

    current = await headscale.get_node(node_id)
    if not current.ok:
        return error_response(current.error, "Node")
    node = current.value.node
    latest = current.value
    outcomes = []

    if body.given_name:
        result = await headscale.rename_node(node_id, body.given_name)
        if not result.ok:
            return error_response(result.error, "Node")
        latest = result.value
        outcomes.append(await run_in_threadpool(
            audit_service.log_for_actor, db, request, ctx,
            action=AuditAction.RENAME_NODE,
            resource_type=AuditResourceType.NODE,
            resource_id=node_id,
            old_value={"givenName": node.given_name},
            new_value={"givenName": body.given_name},
        ))
        logger.info("User %s renamed node %s to %s", ctx.user_id, node_id, body.given_name)

    if body.tags is not None:
        result = await headscale.set_node_tags(node_id, body.tags)
        if not result.ok:
            return error_response(result.error, "Node")
        latest = result.value
        outcomes.append(await run_in_threadpool(
            audit_service.log_for_actor, db, request, ctx,
            action=AuditAction.UPDATE_TAGS,
            resource_type=AuditResourceType.NODE,
            resource_id=node_id,
            old_value={"tags": node.forced_tags},
            new_value={"tags": body.tags},
        ))
        logger.info("User %s set tags on node %s", ctx.user_id, node_id)

    if body.user:
        result = await headscale.move_node(node_id, body.user)
        if not result.ok:
            return error_response(result.error, "Node")
        latest = result.value
        outcomes.append(await run_in_threadpool(
            audit_service.log_for_actor, db, request, ctx,
            action=AuditAction.MOVE_NODE,
            resource_type=AuditResourceType.NODE,
            resource_id=node_id,
            old_value={"user": node.user.name},
            new_value={"user": body.user},
        ))
        logger.info("User %s moved node %s to %s", ctx.user_id, node_id, body.user)

    if body.expire:
        result = await headscale.expire_node(node_id)
        if not result.ok:
            return error_response(result.error, "Node")
        latest = result.value
        outcomes.append(await run_in_threadpool(
            audit_service.log_for_actor, db, request, ctx,
            action=AuditAction.EXPIRE_NODE,
            resource_type=AuditResourceType.NODE,
            resource_id=node_id,
            old_value={"expiry": node.expiry},
            new_value={"expiry": latest.node.expiry},
        ))
        logger.info("User %s expired node %s", ctx.user_id, node_id)

    response.headers[AUDIT_STATUS_HEADER] = audit_status(outcomes)
    return latest.model_dump(by_alias=True)


@router.post("/{node_id}/expire")
async def expire_node(
    node_id: str,
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
    headscale: HeadscaleClient = Depends(get_headscale),
    ctx: AuthContext = Depends(require_operator),
):
    """Force a node to re-authenticate."""
    result = await headscale.expire_node(node_id)
    if not result.ok:
        return error_response(result.error, "Node")
    node = result.value.node

    outcome = await run_in_threadpool(
        audit_service.log_for_actor, db, request, ctx,
        action=AuditAction.EXPIRE_NODE,
        resource_type=AuditResourceType.NODE,
        resource_id=node_id,
        new_value={"expiry": node.expiry},
        metadata={"nodeName": node.given_name},
    )
    response.headers[AUDIT_STATUS_HEADER] = outcome.header_value
    logger.info("User %s expired node %s", ctx.user_id, node_id)
    return result.value.model_dump(by_alias=True)


@router.delete("/{node_id}")
async def delete_node(
    node_id: str,
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
    headscale: HeadscaleClient = Depends(get_headscale),
    ctx: AuthContext = Depends(require_node_admin),
):
    """Delete a node (admin only)."""
    current = await headscale.get_node(node_id)
    if not current.ok:
        return error_response(current.error, "Node")
    node = current.value.node

    result = await headscale.delete_node(node_id)
    if not result.ok:
        return error_response(result.error, "Node")

    outcome = await run_in_threadpool(
        audit_service.log_for_actor, db, request, ctx,
        action=AuditAction.DELETE_NODE,
        resource_type=AuditResourceType.NODE,
        resource_id=node_id,
        old_value=node.model_dump(by_alias=True),
        metadata={"nodeName": node.given_name},
    )
    response.headers[AUDIT_STATUS_HEADER] = outcome.header_value
    logger.info("User %s deleted node %s (%s)", ctx.user_id, node_id, node.given_name)
    return {"success": True}
