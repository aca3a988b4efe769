"""User and UserRole models."""

import enum

from sqlalchemy import Column, Integer, String, DateTime, Enum, ForeignKey, UniqueConstraint, func
from sqlalchemy.orm import relationship
from meshdeck.db.base import Base


class RoleSource(str, enum.Enum):
    OIDC = "OIDC"          # mirrored from identity-provider groups on login
    DATABASE = "DATABASE"  # assigned by an administrator or the owner bootstrap


class User(Base):
    """Dashboard user, keyed by the identity provider's subject."""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    oidc_subject = Column(String(255), unique=True, nullable=False, index=True)
    email = Column(String(255), nullable=True, index=True)
    name = Column(String(255), nullable=True)
    last_login_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now(), nullable=False)

    roles = relationship("UserRole", back_populates="user", lazy="selectin", cascade="all, delete-orphan")


class UserRole(Base):
    """Association between users and roles.

    ``bootstrap_slot`` is set to 1 only on the row that made the first
    owner; its unique constraint lets at most one such row exist.
    """
    __tablename__ = "user_roles"
    __table_args__ = (UniqueConstraint("user_id", "role_id", name="uq_user_role"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    role_id = Column(Integer, ForeignKey("roles.id", ondelete="CASCADE"), nullable=False, index=True)
    source = Column(Enum(RoleSource), default=RoleSource.DATABASE, nullable=False)
    bootstrap_slot = Column(Integer, unique=True, nullable=True)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)

    user = relationship("User", back_populates="roles")
    role = relationship("Role", lazy="joined")
