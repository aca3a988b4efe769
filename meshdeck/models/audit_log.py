"""Audit log model — append-only."""

from sqlalchemy import Column, Integer, String, Text, DateTime, ForeignKey, event, func
from meshdeck.db.base import Base


class AuditLog(Base):
    """Immutable audit trail for all state-changing actions.

    This table is APPEND-ONLY: the mapper hooks below refuse any UPDATE or
    DELETE issued through the ORM.
    """
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    action = Column(String(50), nullable=False, index=True)  # e.g. "ENABLE_ROUTE"
    actor_user_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    actor_email = Column(String(255), nullable=True)
    actor_ip = Column(String(45), nullable=True)
    resource_type = Column(String(20), nullable=False, index=True)  # NODE, ROUTE, ACL, ...
    resource_id = Column(String(255), nullable=True, index=True)
    old_value_json = Column(Text, nullable=True)
    new_value_json = Column(Text, nullable=True)
    metadata_json = Column(Text, nullable=True)
    created_at = Column(DateTime, server_default=func.now(), nullable=False, index=True)


@event.listens_for(AuditLog, "before_update")
def _refuse_update(mapper, connection, target):
    raise RuntimeError(f"Audit log entry {target.id} is immutable")


@event.listens_for(AuditLog, "before_delete")
def _refuse_delete(mapper, connection, target):
    raise RuntimeError(f"Audit log entry {target.id} cannot be deleted")
