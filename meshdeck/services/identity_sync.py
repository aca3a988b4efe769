"""Identity sync — maps identity-provider groups to roles on login.

Roles mirrored from groups carry source OIDC and are replaced wholesale on
every login. Roles granted inside MeshDeck (administrator assignments and
the bootstrap owner) carry source DATABASE and are left alone by the sync.
"""

import logging
from datetime import datetime, timezone
from typing import Iterable, List, Mapping, Optional, Set

from sqlalchemy import insert, literal, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from meshdeck.core.config import settings
from meshdeck.core.exceptions import ResourceConflictError, ResourceNotFoundError
from meshdeck.core.rbac import RoleName, TOP_ROLE, sort_roles, validate_catalog
from meshdeck.models.role import Role
from meshdeck.models.user import User, UserRole, RoleSource

logger = logging.getLogger("meshdeck.identity")


def map_groups_to_roles(
    groups: Iterable[str],
    group_role_map: Optional[Mapping[str, RoleName]] = None,
) -> Set[RoleName]:
    """Translate group claims into roles. Unknown groups are ignored."""
    if group_role_map is None:
        group_role_map = validate_catalog(settings.OIDC_GROUP_ROLE_MAP)
    return {group_role_map[g] for g in groups if g in group_role_map}


def _role_ids(db: Session) -> dict:
    return {RoleName(r.name): r.id for r in db.query(Role).all()}


class IdentitySyncService:
    """Keeps users and their role membership in step with the identity provider."""

    def __init__(self, group_role_map: Optional[Mapping[str, RoleName]] = None):
        self.group_role_map = group_role_map

    @property
    def groups(self) -> Mapping[str, RoleName]:
        if self.group_role_map is None:
            self.group_role_map = validate_catalog(settings.OIDC_GROUP_ROLE_MAP)
        return self.group_role_map

    @staticmethod
    def upsert_user(db: Session, subject: str, email: Optional[str], name: Optional[str]) -> User:
        """Find the user by identity-provider subject, creating it if absent."""
        user = db.query(User).filter(User.oidc_subject == subject).first()
        if user is None:
            user = User(oidc_subject=subject, email=email, name=name)
            db.add(user)
            try:
                db.commit()
            except IntegrityError:
                # A concurrent login for the same subject inserted first
                db.rollback()
                user = db.query(User).filter(User.oidc_subject == subject).one()
        if user.email != email or user.name != name:
            user.email = email
            user.name = name
        user.last_login_at = datetime.now(timezone.utc).replace(tzinfo=None)
        db.commit()
        return user

    def sync_roles(
        self,
        db: Session,
        subject: str,
        email: Optional[str],
        name: Optional[str],
        groups: Iterable[str],
    ) -> User:
        """Upsert the user and replace its OIDC-sourced roles with the mapped set.

        Idempotent: identical input leaves identical membership.
        """
        user = self.upsert_user(db, subject, email, name)
        self.sync_user_roles(db, user, groups)
        return user

    def sync_user_roles(self, db: Session, user: User, groups: Iterable[str]) -> None:
        """Replace the user's OIDC-sourced roles with the roles mapped from ``groups``."""
        groups = list(groups)
        wanted = map_groups_to_roles(groups, self.groups)
        role_ids = _role_ids(db)
        missing = wanted - role_ids.keys()
        if missing:
            raise ResourceNotFoundError(
                f"Roles not seeded: {', '.join(r.value for r in sort_roles(missing))}"
            )

        current = db.query(UserRole).filter(UserRole.user_id == user.id).all()
        held_ids = {ur.role_id for ur in current}
        wanted_ids = {role_ids[r] for r in wanted}

        for ur in current:
            if ur.source == RoleSource.OIDC and ur.role_id not in wanted_ids:
                db.delete(ur)
        for role_id in wanted_ids - held_ids:
            db.add(UserRole(user_id=user.id, role_id=role_id, source=RoleSource.OIDC))
        db.commit()

        logger.info(
            "Synced roles for subject=%s groups=%d mapped=%s",
            user.oidc_subject, len(groups),
            ",".join(r.value for r in sort_roles(wanted)) or "-",
        )

    @staticmethod
    def ensure_owner_exists(db: Session, user_id: int) -> bool:
        """Grant the top role to ``user_id`` if nobody holds it yet.

        A single conditional INSERT ... SELECT ... WHERE NOT EXISTS; the
        unique ``bootstrap_slot`` rejects a second bootstrap row if two
        logins race past the NOT EXISTS check. Returns True if this call
        created the owner.
        """
        top_role_id = select(Role.id).where(Role.name == TOP_ROLE.value).scalar_subquery()
        owner_exists = (
            select(UserRole.id)
            .where(UserRole.role_id == top_role_id)
            .correlate(None)
            .exists()
        )

        stmt = insert(UserRole).from_select(
            ["user_id", "role_id", "source", "bootstrap_slot", "created_at"],
            select(
                literal(user_id),
                top_role_id,
                literal(RoleSource.DATABASE.name),
                literal(1),
                literal(datetime.now(timezone.utc).replace(tzinfo=None)),
            ).where(~owner_exists).where(top_role_id.is_not(None)),
        )
        try:
            result = db.execute(stmt)
            db.commit()
        except IntegrityError:
            db.rollback()
            return False

        created = result.rowcount == 1
        if created:
            logger.warning("Bootstrapped user %s as %s", user_id, TOP_ROLE.value)
        elif db.query(Role.id).filter(Role.name == TOP_ROLE.value).first() is None:
            raise ResourceNotFoundError(f"{TOP_ROLE.value} role not found - run `meshctl db seed`")
        return created

    @staticmethod
    def get_user_roles(db: Session, user_id: int) -> List[RoleName]:
        """All roles held by the user, highest first."""
        names = (
            db.query(Role.name)
            .join(UserRole, UserRole.role_id == Role.id)
            .filter(UserRole.user_id == user_id)
            .all()
        )
        return sort_roles(RoleName(n) for (n,) in names)

    @staticmethod
    def assign_role(db: Session, user_id: int, role: RoleName) -> UserRole:
        """Add a DATABASE-sourced role.

        Raises:
            ResourceNotFoundError: If the user or role does not exist.
            ResourceConflictError: If the user already holds the role.
        """
        user = db.query(User).filter(User.id == user_id).first()
        if not user:
            raise ResourceNotFoundError("User not found")
        role_row = db.query(Role).filter(Role.name == role.value).first()
        if not role_row:
            raise ResourceNotFoundError("Role not found")

        existing = db.query(UserRole).filter(
            UserRole.user_id == user_id, UserRole.role_id == role_row.id,
        ).first()
        if existing:
            raise ResourceConflictError("User already has this role")

        assignment = UserRole(user_id=user_id, role_id=role_row.id, source=RoleSource.DATABASE)
        db.add(assignment)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            raise ResourceConflictError("User already has this role")
        return assignment

    @staticmethod
    def remove_role(db: Session, user_id: int, role: RoleName) -> None:
        """Remove a DATABASE-sourced role. OIDC roles follow the identity provider."""
        assignment = (
            db.query(UserRole)
            .join(Role, Role.id == UserRole.role_id)
            .filter(
                UserRole.user_id == user_id,
                Role.name == role.value,
                UserRole.source == RoleSource.DATABASE,
            )
            .first()
        )
        if not assignment:
            raise ResourceNotFoundError(
                "Database role assignment not found (OIDC roles cannot be removed here)"
            )
        db.delete(assignment)
        db.commit()


identity_sync_service = IdentitySyncService()
