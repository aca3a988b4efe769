"""Audit log API router."""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from meshdeck.core.config import settings
from meshdeck.core.exceptions import ValidationError
from meshdeck.core.rbac import RoleName
from meshdeck.core.security import AuthContext, RequireRoles
from meshdeck.db.session import get_db
from meshdeck.services.audit_service import (
    AUDIT_ACTION_LABELS, AuditAction, AuditQuery, AuditResourceType, audit_service,
)

router = APIRouter(prefix="/audit", tags=["audit"])

require_audit_reader = RequireRoles(
    RoleName.AUDITOR, RoleName.OPERATOR, RoleName.ADMIN, RoleName.OWNER,
)


def _parse_enum(enum_cls, value: Optional[str], field: str):
    if value is None or value == "":
        return None
    try:
        return enum_cls(value)
    except ValueError:
        valid = [m.value for m in enum_cls]
        raise ValidationError(f"Invalid {field}. Valid values: {', '.join(valid)}", valid_values=valid)


def _parse_date(value: Optional[str], field: str) -> Optional[datetime]:
    if value is None or value == "":
        return None
    try:
        # Accept the trailing "Z" that JavaScript clients send
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        raise ValidationError(f"Invalid {field}: expected an ISO 8601 date")


@router.get("")
def query_audit_logs(
    action: Optional[str] = Query(None),
    resource_type: Optional[str] = Query(None, alias="resourceType"),
    resource_id: Optional[str] = Query(None, alias="resourceId"),
    actor_user_id: Optional[int] = Query(None, alias="actorUserId"),
    start_date: Optional[str] = Query(None, alias="startDate"),
    end_date: Optional[str] = Query(None, alias="endDate"),
    limit: int = Query(settings.AUDIT_DEFAULT_PAGE_SIZE),
    offset: int = Query(0),
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(require_audit_reader),
):
    """Query audit logs, newest first. ``limit`` is capped at the configured maximum."""
    params = AuditQuery(
        actor_user_id=actor_user_id,
        action=_parse_enum(AuditAction, action, "action"),
        resource_type=_parse_enum(AuditResourceType, resource_type, "resourceType"),
        resource_id=resource_id or None,
        start_date=_parse_date(start_date, "startDate"),
        end_date=_parse_date(end_date, "endDate"),
        limit=limit,
        offset=offset,
    )
    return audit_service.query_logs(db, params)


@router.get("/actions")
async def list_audit_actions(ctx: AuthContext = Depends(require_audit_reader)):
    """Action codes with their display labels, for filter drop-downs."""
    return {
        "actions": [
            {"value": action.value, "label": AUDIT_ACTION_LABELS[action]}
            for action in AuditAction
        ],
        "resourceTypes": [t.value for t in AuditResourceType],
    }
