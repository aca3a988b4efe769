import os
import time
from typing import Iterable, Optional

# Settings are read when meshdeck is first imported
os.environ.setdefault("JWT_SECRET", "test-session-secret")
os.environ.setdefault("OIDC_VERIFY_KEY", "test-identity-secret")
os.environ.setdefault("OIDC_ALGORITHMS", '["HS256"]')

import httpx
import pytest
from fastapi.testclient import TestClient

from meshdeck.core.rbac import RoleName
from meshdeck.core.security import SessionClaims, create_session_token
from meshdeck.db.seeds.seed_rbac import seed_rbac
from meshdeck.db.session import Database
from meshdeck.gateway.client import HeadscaleClient
from meshdeck.main import create_app
from meshdeck.models.role import Role
from meshdeck.models.user import RoleSource, User, UserRole

HEADSCALE_URL = "http://headscale.test"


class FakeHeadscale:
    """Scripted upstream behind an ``httpx.MockTransport``.

    Unscripted requests get Headscale's 404 body. Every request is recorded.
    """

    def __init__(self):
        self.calls = []
        self._routes = {}

    def on(self, method: str, path: str, status: int = 200, json=None, exc: Optional[Exception] = None):
        self._routes[(method, "/api/v1" + path)] = (status, json, exc)

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        scripted = self._routes.get((request.method, request.url.path))
        if scripted is None:
            return httpx.Response(404, json={"code": 5, "message": "record not found"})
        status, body, exc = scripted
        if exc is not None:
            raise exc
        return httpx.Response(status, json=body if body is not None else {})

    def paths(self, method: Optional[str] = None):
        return [c.url.path for c in self.calls if method is None or c.method == method]


def hs_user(id="1", name="alice"):
    return {"id": id, "name": name, "createdAt": "2025-01-01T00:00:00Z"}


def hs_node(id="1", given_name="laptop", user=None, tags=None):
    return {
        "id": id,
        "machineKey": "mkey:abc",
        "nodeKey": "nodekey:abc",
        "ipAddresses": ["100.64.0.1", "fd7a:115c:a1e0::1"],
        "name": given_name,
        "user": user or hs_user(),
        "lastSeen": "2025-01-02T10:00:00.123456789Z",
        "expiry": "0001-01-01T00:00:00Z",
        "forcedTags": tags or [],
        "validTags": [],
        "givenName": given_name,
        "online": True,
        "registerMethod": "REGISTER_METHOD_OIDC",
        "createdAt": "2025-01-01T00:00:00Z",
    }


def hs_route(id="r1", prefix="10.0.0.0/24", enabled=False, node=None):
    return {
        "id": id,
        "node": node or hs_node(),
        "prefix": prefix,
        "advertised": True,
        "enabled": enabled,
        "isPrimary": enabled,
        "createdAt": "2025-01-01T00:00:00Z",
    }


@pytest.fixture
def database():
    database = Database("sqlite://", echo=False)
    database.create_all()
    db = database.session()
    try:
        seed_rbac(db)
    finally:
        db.close()
    yield database
    database.dispose()


@pytest.fixture
def db(database):
    session = database.session()
    yield session
    session.close()


@pytest.fixture
def upstream():
    return FakeHeadscale()


@pytest.fixture
def headscale(upstream):
    return HeadscaleClient(
        base_url=HEADSCALE_URL,
        api_key="hskey-test",
        timeout=5.0,
        transport=httpx.MockTransport(upstream.handle),
    )


@pytest.fixture
def app(database, headscale):
    return create_app(database=database, headscale=headscale)


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c


def make_user(db, subject: str, roles: Iterable[RoleName] = (), source: RoleSource = RoleSource.DATABASE) -> User:
    user = User(oidc_subject=subject, email=f"{subject}@example.com", name=subject.title())
    db.add(user)
    db.commit()
    for role in roles:
        role_row = db.query(Role).filter(Role.name == role.value).one()
        db.add(UserRole(user_id=user.id, role_id=role_row.id, source=source))
    db.commit()
    return user


def session_token(user: User, roles: Iterable[RoleName], refreshed_at: Optional[int] = None) -> str:
    return create_session_token(SessionClaims(
        user_id=user.id,
        email=user.email,
        name=user.name,
        roles=list(roles),
        roles_refreshed_at=int(time.time()) if refreshed_at is None else refreshed_at,
    ))


def bearer(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def login_as(db):
    """Create a user holding ``roles`` and return auth headers for it."""

    def _login_as(subject: str, *roles: RoleName):
        user = make_user(db, subject, roles)
        return user, bearer(session_token(user, roles))

    return _login_as
