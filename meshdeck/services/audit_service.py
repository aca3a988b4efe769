"""Audit service — append-only audit trail for all mutations."""

import enum
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Any, Dict, List

from fastapi import Request
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from meshdeck.core.config import settings
from meshdeck.core.exceptions import AuditWriteError
from meshdeck.models.audit_log import AuditLog

logger = logging.getLogger("meshdeck.audit")

AUDIT_STATUS_HEADER = "X-Audit-Status"

# Upper bound on one audit page whatever AUDIT_MAX_PAGE_SIZE says
AUDIT_PAGE_CEILING = 100


class AuditAction(str, enum.Enum):
    # Nodes
    CREATE_NODE = "CREATE_NODE"
    DELETE_NODE = "DELETE_NODE"
    RENAME_NODE = "RENAME_NODE"
    UPDATE_TAGS = "UPDATE_TAGS"
    EXPIRE_NODE = "EXPIRE_NODE"
    MOVE_NODE = "MOVE_NODE"
    BULK_DELETE = "BULK_DELETE"
    BULK_EXPIRE = "BULK_EXPIRE"
    BULK_MOVE = "BULK_MOVE"
    BULK_TAGS = "BULK_TAGS"
    # Routes
    ENABLE_ROUTE = "ENABLE_ROUTE"
    DISABLE_ROUTE = "DISABLE_ROUTE"
    DELETE_ROUTE = "DELETE_ROUTE"
    # ACL
    UPDATE_ACL = "UPDATE_ACL"
    # Pre-auth keys
    CREATE_KEY = "CREATE_KEY"
    EXPIRE_KEY = "EXPIRE_KEY"
    DELETE_KEY = "DELETE_KEY"
    # API keys
    CREATE_API_KEY = "CREATE_API_KEY"
    DELETE_API_KEY = "DELETE_API_KEY"
    EXPIRE_API_KEY = "EXPIRE_API_KEY"
    # DNS
    UPDATE_DNS = "UPDATE_DNS"
    # Upstream users
    CREATE_USER = "CREATE_USER"
    DELETE_USER = "DELETE_USER"
    RENAME_USER = "RENAME_USER"
    # Roles
    ASSIGN_ROLE = "ASSIGN_ROLE"
    REMOVE_ROLE = "REMOVE_ROLE"
    # Settings
    UPDATE_SETTING = "UPDATE_SETTING"
    # Sessions
    USER_LOGIN = "USER_LOGIN"
    USER_LOGOUT = "USER_LOGOUT"


class AuditResourceType(str, enum.Enum):
    NODE = "NODE"
    ROUTE = "ROUTE"
    ACL = "ACL"
    KEY = "KEY"
    API_KEY = "API_KEY"
    DNS = "DNS"
    USER = "USER"
    ROLE = "ROLE"
    SETTING = "SETTING"


AUDIT_ACTION_LABELS: Dict[AuditAction, str] = {
    AuditAction.CREATE_NODE: "Created node",
    AuditAction.DELETE_NODE: "Deleted node",
    AuditAction.RENAME_NODE: "Renamed node",
    AuditAction.UPDATE_TAGS: "Updated tags",
    AuditAction.EXPIRE_NODE: "Expired node",
    AuditAction.MOVE_NODE: "Moved node to user",
    AuditAction.BULK_DELETE: "Bulk deleted nodes",
    AuditAction.BULK_EXPIRE: "Bulk expired nodes",
    AuditAction.BULK_MOVE: "Bulk moved nodes",
    AuditAction.BULK_TAGS: "Bulk updated tags",
    AuditAction.ENABLE_ROUTE: "Enabled route",
    AuditAction.DISABLE_ROUTE: "Disabled route",
    AuditAction.DELETE_ROUTE: "Deleted route",
    AuditAction.UPDATE_ACL: "Updated ACL policy",
    AuditAction.CREATE_KEY: "Created auth key",
    AuditAction.EXPIRE_KEY: "Expired auth key",
    AuditAction.DELETE_KEY: "Deleted auth key",
    AuditAction.CREATE_API_KEY: "Created API key",
    AuditAction.DELETE_API_KEY: "Deleted API key",
    AuditAction.EXPIRE_API_KEY: "Expired API key",
    AuditAction.UPDATE_DNS: "Updated DNS configuration",
    AuditAction.CREATE_USER: "Created user",
    AuditAction.DELETE_USER: "Deleted user",
    AuditAction.RENAME_USER: "Renamed user",
    AuditAction.ASSIGN_ROLE: "Assigned role",
    AuditAction.REMOVE_ROLE: "Removed role",
    AuditAction.UPDATE_SETTING: "Updated setting",
    AuditAction.USER_LOGIN: "User logged in",
    AuditAction.USER_LOGOUT: "User logged out",
}


@dataclass
class AuditEntry:
    """One state-changing action to be recorded."""

    action: AuditAction
    resource_type: AuditResourceType
    actor_user_id: Optional[int] = None
    actor_email: Optional[str] = None
    actor_ip: Optional[str] = None
    resource_id: Optional[str] = None
    old_value: Optional[Any] = None
    new_value: Optional[Any] = None
    metadata: Optional[Dict[str, Any]] = None


@dataclass
class AuditOutcome:
    """Result of an audit write.

    ``recorded`` is False when the entry could not be persisted; the caller's
    action has already happened and is not rolled back.
    """

    recorded: bool
    entry_id: Optional[int] = None
    error: Optional[AuditWriteError] = None

    @property
    def header_value(self) -> str:
        return "recorded" if self.recorded else "failed"


def audit_status(outcomes: List["AuditOutcome"]) -> str:
    """Header value for a response that wrote one or more entries."""
    return "recorded" if all(o.recorded for o in outcomes) else "failed"


@dataclass
class AuditQuery:
    actor_user_id: Optional[int] = None
    action: Optional[AuditAction] = None
    resource_type: Optional[AuditResourceType] = None
    resource_id: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    limit: int = field(default_factory=lambda: settings.AUDIT_DEFAULT_PAGE_SIZE)
    offset: int = 0


def _to_json(value: Optional[Any]) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, default=str)


def _from_json(raw: Optional[str]) -> Optional[Any]:
    if raw is None:
        return None
    return json.loads(raw)


def _naive_utc(value: datetime) -> datetime:
    """Stored timestamps are naive UTC."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def get_client_ip(request: Request) -> Optional[str]:
    """Client address: first X-Forwarded-For hop, then X-Real-IP, then the peer."""
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        first = forwarded_for.split(",")[0].strip()
        if first:
            return first
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return request.client.host if request.client else None


def serialize_entry(log: AuditLog) -> Dict[str, Any]:
    return {
        "id": log.id,
        "action": log.action,
        "actorUserId": log.actor_user_id,
        "actorEmail": log.actor_email,
        "actorIp": log.actor_ip,
        "resourceType": log.resource_type,
        "resourceId": log.resource_id,
        "oldValue": _from_json(log.old_value_json),
        "newValue": _from_json(log.new_value_json),
        "metadata": _from_json(log.metadata_json),
        "timestamp": log.created_at.isoformat() + "Z" if log.created_at else None,
    }


class AuditService:
    """Records immutable audit log entries for system events."""

    @staticmethod
    def log(db: Session, entry: AuditEntry) -> AuditOutcome:
        """Write a single audit log record.

        Commits immediately. A store failure is logged at ERROR and returned
        as an unrecorded outcome; it is never raised to the caller.
        """
        action = AuditAction(entry.action)
        resource_type = AuditResourceType(entry.resource_type)
        row = AuditLog(
            action=action.value,
            actor_user_id=entry.actor_user_id,
            actor_email=entry.actor_email,
            actor_ip=entry.actor_ip,
            resource_type=resource_type.value,
            resource_id=str(entry.resource_id) if entry.resource_id is not None else None,
            old_value_json=_to_json(entry.old_value),
            new_value_json=_to_json(entry.new_value),
            metadata_json=_to_json(entry.metadata),
            created_at=_naive_utc(datetime.now(timezone.utc)),
        )
        try:
            db.add(row)
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            error = AuditWriteError(f"Failed to write audit entry {action.value}: {e}")
            logger.error(
                "AUDIT GAP: action=%s resource=%s:%s actor=%s error=%s",
                action.value,
                resource_type.value,
                entry.resource_id,
                entry.actor_user_id,
                e,
            )
            return AuditOutcome(recorded=False, error=error)
        return AuditOutcome(recorded=True, entry_id=row.id)

    @staticmethod
    def log_from_request(
        db: Session,
        request: Request,
        actor_user_id: Optional[int],
        actor_email: Optional[str],
        action: AuditAction,
        resource_type: AuditResourceType,
        resource_id: Optional[str] = None,
        old_value: Optional[Any] = None,
        new_value: Optional[Any] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> AuditOutcome:
        """Write audit log extracting the client address from the request."""
        return AuditService.log(db, AuditEntry(
            action=action,
            resource_type=resource_type,
            actor_user_id=actor_user_id,
            actor_email=actor_email,
            actor_ip=get_client_ip(request),
            resource_id=resource_id,
            old_value=old_value,
            new_value=new_value,
            metadata=metadata,
        ))

    @staticmethod
    def log_for_actor(
        db: Session,
        request: Request,
        actor,
        action: AuditAction,
        resource_type: AuditResourceType,
        resource_id: Optional[str] = None,
        old_value: Optional[Any] = None,
        new_value: Optional[Any] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> AuditOutcome:
        """Same as ``log_from_request`` with the actor taken from an ``AuthContext``."""
        return AuditService.log_from_request(
            db, request,
            actor_user_id=actor.user_id,
            actor_email=actor.email,
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            old_value=old_value,
            new_value=new_value,
            metadata=metadata,
        )

    @staticmethod
    def query_logs(db: Session, params: AuditQuery) -> Dict[str, Any]:
        """Query audit logs with conjunctive filters, newest first."""
        limit = max(0, min(params.limit, settings.AUDIT_MAX_PAGE_SIZE, AUDIT_PAGE_CEILING))
        offset = max(0, params.offset)

        query = db.query(AuditLog)
        if params.actor_user_id is not None:
            query = query.filter(AuditLog.actor_user_id == params.actor_user_id)
        if params.action is not None:
            query = query.filter(AuditLog.action == AuditAction(params.action).value)
        if params.resource_type is not None:
            query = query.filter(AuditLog.resource_type == AuditResourceType(params.resource_type).value)
        if params.resource_id is not None:
            query = query.filter(AuditLog.resource_id == params.resource_id)
        if params.start_date is not None:
            query = query.filter(AuditLog.created_at >= _naive_utc(params.start_date))
        if params.end_date is not None:
            query = query.filter(AuditLog.created_at <= _naive_utc(params.end_date))

        total = query.count()
        logs = (
            query.order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
            .offset(offset)
            .limit(limit)
            .all()
        )

        return {
            "entries": [serialize_entry(log) for log in logs],
            "total": total,
            "hasMore": offset + len(logs) < total,
        }

    @staticmethod
    def recent_logs(db: Session, limit: int = 5) -> List[Dict[str, Any]]:
        """Latest entries for dashboard display."""
        return AuditService.query_logs(db, AuditQuery(limit=limit))["entries"]

    @staticmethod
    def resource_logs(
        db: Session,
        resource_type: AuditResourceType,
        resource_id: str,
        limit: int = 20,
    ) -> List[Dict[str, Any]]:
        """History of a single resource."""
        return AuditService.query_logs(db, AuditQuery(
            resource_type=resource_type, resource_id=resource_id, limit=limit,
        ))["entries"]


audit_service = AuditService()
