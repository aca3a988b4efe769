import asyncio
import json

import httpx
import pytest
from sqlalchemy import event
from sqlalchemy.exc import OperationalError

from conftest import hs_node, hs_route, hs_user, make_user
from meshdeck.core.rbac import RoleName
from meshdeck.models.audit_log import AuditLog
from meshdeck.services.audit_service import (
    AuditAction, AuditEntry, AuditResourceType, AuditService, audit_service,
)


@pytest.fixture
def broken_audit_store():
    def refuse(mapper, connection, target):
        raise OperationalError("INSERT INTO audit_logs", {}, Exception("disk full"))

    event.listen(AuditLog, "before_insert", refuse)
    yield
    event.remove(AuditLog, "before_insert", refuse)


def _audit_rows(db, action=None):
    db.expire_all()
    query = db.query(AuditLog)
    if action:
        query = query.filter(AuditLog.action == action)
    return query.order_by(AuditLog.id).all()


def test_health(client):
    resp = client.get("/api/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


# ---- Authorization ----

def test_list_nodes_requires_session(client, upstream):
    resp = client.get("/api/headscale/nodes")
    assert resp.status_code == 401
    assert resp.json() == {"error": "Unauthorized"}
    assert upstream.calls == []


def test_user_cannot_enable_route(client, upstream, login_as):
    _, headers = login_as("viewer", RoleName.USER)

    resp = client.post("/api/headscale/routes/r1/enable", headers=headers)

    assert resp.status_code == 403
    assert resp.json() == {"error": "Forbidden", "requiredLevel": "OPERATOR"}
    assert upstream.calls == []


def test_api_keys_are_owner_only(client, upstream, login_as):
    _, headers = login_as("admin", RoleName.ADMIN)
    resp = client.get("/api/headscale/apikeys", headers=headers)
    assert resp.status_code == 403
    assert resp.json() == {"error": "Forbidden", "required": ["OWNER"]}
    assert upstream.calls == []


def test_auditor_cannot_read_policy(client, login_as):
    _, headers = login_as("auditor", RoleName.AUDITOR)
    resp = client.get("/api/headscale/policy", headers=headers)
    assert resp.status_code == 403


# ---- Routes ----

def test_owner_enables_route_and_it_is_audited(client, db, upstream, login_as):
    upstream.on("POST", "/routes/r1/enable", json={"route": hs_route(id="r1", enabled=True)})
    owner, headers = login_as("owner", RoleName.OWNER)

    resp = client.post("/api/headscale/routes/r1/enable", headers=headers)

    assert resp.status_code == 200
    assert resp.json()["route"]["enabled"] is True
    assert resp.headers["X-Audit-Status"] == "recorded"

    entries = _audit_rows(db, "ENABLE_ROUTE")
    assert len(entries) == 1
    assert entries[0].resource_id == "r1"
    assert entries[0].actor_user_id == owner.id
    assert json.loads(entries[0].new_value_json) == {"enabled": True}
    assert json.loads(entries[0].metadata_json)["prefix"] == "10.0.0.0/24"


def test_upstream_failure_is_not_audited(client, db, upstream, login_as):
    upstream.on("POST", "/routes/r1/disable", exc=httpx.ConnectError("refused"))
    _, headers = login_as("operator", RoleName.OPERATOR)

    resp = client.post("/api/headscale/routes/r1/disable", headers=headers)

    assert resp.status_code == 503
    assert resp.json() == {"error": "Unable to connect to Headscale", "kind": "UpstreamUnreachable"}
    assert resp.headers["Retry-After"] == "5"
    assert "X-Audit-Status" not in resp.headers
    assert _audit_rows(db) == []


def test_unknown_route_is_not_found(client, db, login_as):
    _, headers = login_as("admin", RoleName.ADMIN)
    resp = client.delete("/api/headscale/routes/nope", headers=headers)
    assert resp.status_code == 404
    assert resp.json()["error"] == "Route not found"
    assert _audit_rows(db) == []


def test_audit_failure_is_reported_not_hidden(client, db, upstream, login_as, broken_audit_store):
    upstream.on("POST", "/routes/r1/enable", json={"route": hs_route(enabled=True)})
    _, headers = login_as("operator", RoleName.OPERATOR)

    resp = client.post("/api/headscale/routes/r1/enable", headers=headers)

    # The upstream change happened, so the request still succeeds
    assert resp.status_code == 200
    assert resp.headers["X-Audit-Status"] == "failed"


@pytest.fixture
def audit_threads(monkeypatch):
    """Record, per audit write, whether it ran on the event loop thread."""
    seen = []
    original = AuditService.log

    def spy(db, entry):
        try:
            asyncio.get_running_loop()
            seen.append("event-loop")
        except RuntimeError:
            seen.append("worker")
        return original(db, entry)

    monkeypatch.setattr(AuditService, "log", staticmethod(spy))
    return seen


def test_audit_write_runs_off_the_event_loop(client, upstream, login_as, audit_threads):
    upstream.on("POST", "/routes/r1/enable", json={"route": hs_route(enabled=True)})
    _, headers = login_as("owner", RoleName.OWNER)

    resp = client.post("/api/headscale/routes/r1/enable", headers=headers)

    assert resp.headers["X-Audit-Status"] == "recorded"
    assert audit_threads == ["worker"]


def test_logout_audit_runs_off_the_event_loop(client, login_as, audit_threads):
    _, headers = login_as("owner", RoleName.OWNER)
    resp = client.post("/api/auth/logout", headers=headers)
    assert resp.status_code == 200
    assert audit_threads == ["worker"]


# ---- Nodes ----

def test_list_nodes(client, upstream, login_as):
    upstream.on("GET", "/node", json={"nodes": [hs_node()]})
    _, headers = login_as("viewer", RoleName.USER)

    resp = client.get("/api/headscale/nodes", headers=headers)

    assert resp.status_code == 200
    node = resp.json()["nodes"][0]
    assert node["givenName"] == "laptop"
    assert node["ipAddresses"] == ["100.64.0.1", "fd7a:115c:a1e0::1"]


def test_update_node_audits_each_change(client, db, upstream, login_as):
    upstream.on("GET", "/node/1", json={"node": hs_node()})
    upstream.on("POST", "/node/1/rename/web-01", json={"node": hs_node(given_name="web-01")})
    upstream.on("POST", "/node/1/tags", json={"node": hs_node(given_name="web-01", tags=["tag:web"])})
    _, headers = login_as("operator", RoleName.OPERATOR)

    resp = client.patch(
        "/api/headscale/nodes/1",
        json={"given_name": "web-01", "tags": ["tag:web"]},
        headers=headers,
    )

    assert resp.status_code == 200
    assert resp.json()["node"]["forcedTags"] == ["tag:web"]
    assert resp.headers["X-Audit-Status"] == "recorded"
    assert [e.action for e in _audit_rows(db)] == ["RENAME_NODE", "UPDATE_TAGS"]
    rename = _audit_rows(db, "RENAME_NODE")[0]
    assert json.loads(rename.old_value_json) == {"givenName": "laptop"}
    assert json.loads(rename.new_value_json) == {"givenName": "web-01"}


def test_update_node_rejects_untagged_tags(client, upstream, login_as):
    _, headers = login_as("operator", RoleName.OPERATOR)
    resp = client.patch("/api/headscale/nodes/1", json={"tags": ["web"]}, headers=headers)
    assert resp.status_code == 400
    assert resp.json()["error"] == "Invalid request"
    assert upstream.calls == []


def test_update_node_without_changes(client, upstream, login_as):
    _, headers = login_as("operator", RoleName.OPERATOR)
    resp = client.patch("/api/headscale/nodes/1", json={}, headers=headers)
    assert resp.status_code == 400
    assert resp.json() == {"error": "No changes requested"}
    assert upstream.calls == []


def test_delete_node_records_previous_state(client, db, upstream, login_as):
    upstream.on("GET", "/node/3", json={"node": hs_node(id="3", given_name="old-box")})
    upstream.on("DELETE", "/node/3", json={})
    _, headers = login_as("admin", RoleName.ADMIN)

    resp = client.delete("/api/headscale/nodes/3", headers=headers)

    assert resp.status_code == 200
    assert resp.json() == {"success": True}
    entry = _audit_rows(db, "DELETE_NODE")[0]
    assert entry.resource_id == "3"
    assert json.loads(entry.old_value_json)["givenName"] == "old-box"
    assert upstream.paths("DELETE") == ["/api/v1/node/3"]


def test_bulk_delete_needs_admin(client, db, upstream, login_as):
    upstream.on("DELETE", "/node/1", json={})
    _, headers = login_as("operator", RoleName.OPERATOR)

    resp = client.post(
        "/api/headscale/nodes/bulk",
        json={"action": "delete", "nodeIds": ["1", "2"]},
        headers=headers,
    )

    assert resp.status_code == 403
    assert resp.json() == {"error": "Forbidden", "required": ["ADMIN", "OWNER"]}
    assert upstream.calls == []
    assert _audit_rows(db) == []


def test_bulk_needs_operator(client, upstream, login_as):
    _, headers = login_as("viewer", RoleName.USER)
    resp = client.post(
        "/api/headscale/nodes/bulk",
        json={"action": "expire", "nodeIds": ["1"]},
        headers=headers,
    )
    assert resp.status_code == 403
    assert resp.json()["requiredLevel"] == "OPERATOR"
    assert upstream.calls == []


def test_bulk_expire_reports_each_node(client, db, upstream, login_as):
    # Node 2 is unscripted, so Headscale answers 404 for it
    upstream.on("POST", "/node/1/expire", json={"node": hs_node(id="1")})
    upstream.on("POST", "/node/3/expire", json={"node": hs_node(id="3")})
    operator, headers = login_as("operator", RoleName.OPERATOR)

    resp = client.post(
        "/api/headscale/nodes/bulk",
        json={"action": "expire", "nodeIds": ["1", "2", "3"]},
        headers=headers,
    )

    assert resp.status_code == 200
    body = resp.json()
    assert body["summary"] == {"total": 3, "succeeded": 2, "failed": 1}
    assert body["results"] == [
        {"nodeId": "1", "success": True},
        {"nodeId": "2", "success": False, "error": "Node not found"},
        {"nodeId": "3", "success": True},
    ]
    assert resp.headers["X-Audit-Status"] == "recorded"

    entries = _audit_rows(db)
    assert [e.action for e in entries] == ["BULK_EXPIRE"]
    assert entries[0].resource_id == "1,3"
    assert entries[0].actor_user_id == operator.id
    metadata = json.loads(entries[0].metadata_json)
    assert metadata["nodeIds"] == ["1", "2", "3"]
    assert metadata["succeeded"] == 2
    assert metadata["failed"] == 1


def test_bulk_admin_delete(client, db, upstream, login_as):
    upstream.on("DELETE", "/node/1", json={})
    upstream.on("DELETE", "/node/2", json={})
    _, headers = login_as("admin", RoleName.ADMIN)

    resp = client.post(
        "/api/headscale/nodes/bulk",
        json={"action": "delete", "nodeIds": ["1", "2"]},
        headers=headers,
    )

    assert resp.status_code == 200
    assert resp.json()["summary"]["succeeded"] == 2
    assert upstream.paths("DELETE") == ["/api/v1/node/1", "/api/v1/node/2"]
    assert [e.action for e in _audit_rows(db)] == ["BULK_DELETE"]


def test_bulk_with_no_success_is_not_audited(client, db, upstream, login_as):
    _, headers = login_as("operator", RoleName.OPERATOR)

    resp = client.post(
        "/api/headscale/nodes/bulk",
        json={"action": "move", "nodeIds": ["8", "9"], "newUser": "bob"},
        headers=headers,
    )

    assert resp.status_code == 200
    assert resp.json()["summary"] == {"total": 2, "succeeded": 0, "failed": 2}
    assert "X-Audit-Status" not in resp.headers
    assert _audit_rows(db) == []


@pytest.mark.parametrize("payload", [
    {"action": "move", "nodeIds": ["1"]},
    {"action": "tags", "nodeIds": ["1"]},
    {"action": "tags", "nodeIds": ["1"], "tags": ["web"]},
    {"action": "expire", "nodeIds": []},
    {"action": "reboot", "nodeIds": ["1"]},
])
def test_bulk_rejects_incomplete_requests(client, upstream, login_as, payload):
    _, headers = login_as("operator", RoleName.OPERATOR)
    resp = client.post("/api/headscale/nodes/bulk", json=payload, headers=headers)
    assert resp.status_code == 400
    assert resp.json()["error"] == "Invalid request"
    assert upstream.calls == []


# ---- Policy ----

def test_invalid_policy_never_reaches_upstream(client, db, upstream, login_as):
    _, headers = login_as("admin", RoleName.ADMIN)

    resp = client.put("/api/headscale/policy", json={"policy": "{not json"}, headers=headers)

    assert resp.status_code == 400
    assert resp.json() == {"error": "Invalid JSON in policy"}
    assert upstream.calls == []
    assert _audit_rows(db) == []


def test_policy_update_is_audited(client, db, upstream, login_as):
    policy = '{"acls": [{"action": "accept", "src": ["*"], "dst": ["*:*"]}]}'
    upstream.on("PUT", "/policy", json={"policy": policy, "updatedAt": "2025-01-03T00:00:00Z"})
    _, headers = login_as("owner", RoleName.OWNER)

    resp = client.put("/api/headscale/policy", json={"policy": policy}, headers=headers)

    assert resp.status_code == 200
    assert resp.json()["updatedAt"] == "2025-01-03T00:00:00Z"
    entry = _audit_rows(db, "UPDATE_ACL")[0]
    assert entry.resource_id == "policy"
    assert json.loads(entry.metadata_json) == {"policyLength": len(policy)}


def test_upstream_policy_rejection_passes_message(client, upstream, login_as):
    upstream.on("PUT", "/policy", status=400, json={"code": 3, "message": "unknown group:eng"})
    _, headers = login_as("owner", RoleName.OWNER)

    resp = client.put("/api/headscale/policy", json={"policy": "{}"}, headers=headers)

    assert resp.status_code == 400
    assert resp.json() == {"error": "unknown group:eng", "kind": "UpstreamRejected"}


# ---- Pre-auth keys and API keys ----

def test_create_preauth_key_does_not_log_the_key(client, db, upstream, login_as):
    upstream.on("POST", "/preauthkey", json={"preAuthKey": {"id": "11", "key": "pak-secret", "user": hs_user()}})
    _, headers = login_as("operator", RoleName.OPERATOR)

    resp = client.post("/api/headscale/keys", json={"user": "1", "reusable": True}, headers=headers)

    assert resp.status_code == 201
    assert resp.json()["preAuthKey"]["key"] == "pak-secret"
    entry = _audit_rows(db, "CREATE_KEY")[0]
    assert entry.resource_id == "11"
    assert "pak-secret" not in (entry.metadata_json or "")


def test_owner_creates_api_key(client, db, upstream, login_as):
    upstream.on("POST", "/apikey", json={"apiKey": "hs-new-key"})
    _, headers = login_as("owner", RoleName.OWNER)

    resp = client.post("/api/headscale/apikeys", headers=headers)

    assert resp.status_code == 201
    assert resp.json() == {"apiKey": "hs-new-key"}
    entry = _audit_rows(db, "CREATE_API_KEY")[0]
    assert "hs-new-key" not in (entry.metadata_json or "")


# ---- Headscale users and DNS ----

def test_create_headscale_user(client, db, upstream, login_as):
    upstream.on("POST", "/user", json={"user": hs_user(id="5", name="bob")})
    _, headers = login_as("admin", RoleName.ADMIN)

    resp = client.post("/api/headscale/users", json={"name": "bob"}, headers=headers)

    assert resp.status_code == 201
    assert resp.json()["user"]["name"] == "bob"
    assert _audit_rows(db, "CREATE_USER")[0].resource_id == "5"


def test_update_dns_sends_upstream_field_names(client, db, upstream, login_as):
    upstream.on("PUT", "/dns", json={"dns": {"nameservers": ["1.1.1.1"], "magicDNS": True}})
    _, headers = login_as("owner", RoleName.OWNER)

    resp = client.put(
        "/api/headscale/dns", json={"nameservers": ["1.1.1.1"], "magic_dns": True}, headers=headers,
    )

    assert resp.status_code == 200
    assert resp.json()["dns"]["magicDNS"] is True
    assert json.loads(upstream.calls[0].content) == {"nameservers": ["1.1.1.1"], "magicDNS": True}
    assert _audit_rows(db, "UPDATE_DNS")[0].resource_id == "config"


# ---- Role assignment ----

def test_admin_assigns_role(client, db, login_as):
    _, headers = login_as("admin", RoleName.ADMIN)
    target = make_user(db, "target", [RoleName.USER])

    resp = client.post("/api/users/roles", json={"user_id": target.id, "role": "OPERATOR"}, headers=headers)
    assert resp.status_code == 200
    assert resp.headers["X-Audit-Status"] == "recorded"

    entry = _audit_rows(db, "ASSIGN_ROLE")[0]
    assert entry.resource_id == "OPERATOR"
    assert json.loads(entry.metadata_json)["targetUserId"] == target.id

    again = client.post("/api/users/roles", json={"user_id": target.id, "role": "OPERATOR"}, headers=headers)
    assert again.status_code == 409

    roles = client.get(f"/api/users/roles?user_id={target.id}", headers=headers).json()
    assert {r["role"] for r in roles["roles"]} == {"USER", "OPERATOR"}
    assert "OWNER" not in roles["assignable"]


def test_admin_cannot_grant_owner(client, db, login_as):
    _, headers = login_as("admin", RoleName.ADMIN)
    target = make_user(db, "target")

    resp = client.post("/api/users/roles", json={"user_id": target.id, "role": "OWNER"}, headers=headers)

    assert resp.status_code == 403
    assert resp.json() == {"error": "Forbidden", "required": ["OWNER"]}
    assert _audit_rows(db) == []


def test_owner_removes_role(client, db, login_as):
    _, headers = login_as("owner", RoleName.OWNER)
    target = make_user(db, "target", [RoleName.AUDITOR])

    resp = client.request(
        "DELETE", "/api/users/roles", json={"user_id": target.id, "role": "AUDITOR"}, headers=headers,
    )

    assert resp.status_code == 200
    assert _audit_rows(db, "REMOVE_ROLE")[0].resource_id == "AUDITOR"


def test_unknown_role_name(client, db, login_as):
    _, headers = login_as("owner", RoleName.OWNER)
    target = make_user(db, "target")
    resp = client.post("/api/users/roles", json={"user_id": target.id, "role": "ROOT"}, headers=headers)
    assert resp.status_code == 404
    assert resp.json() == {"error": "Role not found"}


# ---- Audit log ----

def _seed_history(db, count_deletes=12):
    for i in range(count_deletes):
        audit_service.log(db, AuditEntry(
            action=AuditAction.DELETE_NODE, resource_type=AuditResourceType.NODE, resource_id=str(i),
        ))
        audit_service.log(db, AuditEntry(
            action=AuditAction.ENABLE_ROUTE, resource_type=AuditResourceType.ROUTE, resource_id=f"r{i}",
        ))


def test_audit_query_by_action(client, db, login_as):
    _seed_history(db)
    _, headers = login_as("auditor", RoleName.AUDITOR)

    resp = client.get("/api/audit?action=DELETE_NODE&limit=10", headers=headers)

    assert resp.status_code == 200
    body = resp.json()
    assert body["total"] == 12
    assert body["hasMore"] is True
    assert len(body["entries"]) == 10
    assert {e["action"] for e in body["entries"]} == {"DELETE_NODE"}
    ids = [e["id"] for e in body["entries"]]
    assert ids == sorted(ids, reverse=True)
    assert body["entries"][0]["resourceId"] == "11"


def test_audit_query_rejects_unknown_action(client, login_as):
    _, headers = login_as("auditor", RoleName.AUDITOR)

    resp = client.get("/api/audit?action=HACK_THE_PLANET", headers=headers)

    assert resp.status_code == 400
    body = resp.json()
    assert body["error"].startswith("Invalid action")
    assert "DELETE_NODE" in body["validValues"]
    assert len(body["validValues"]) == len(AuditAction)


def test_audit_query_rejects_bad_date(client, login_as):
    _, headers = login_as("auditor", RoleName.AUDITOR)
    resp = client.get("/api/audit?startDate=yesterday", headers=headers)
    assert resp.status_code == 400
    assert "startDate" in resp.json()["error"]


def test_audit_query_accepts_utc_suffix(client, db, login_as):
    _seed_history(db, count_deletes=1)
    _, headers = login_as("auditor", RoleName.AUDITOR)
    resp = client.get("/api/audit?startDate=2000-01-01T00:00:00Z", headers=headers)
    assert resp.status_code == 200
    assert resp.json()["total"] == 2


def test_plain_user_cannot_read_audit(client, login_as):
    _, headers = login_as("viewer", RoleName.USER)
    resp = client.get("/api/audit", headers=headers)
    assert resp.status_code == 403
    assert resp.json()["required"] == ["AUDITOR", "OPERATOR", "ADMIN", "OWNER"]


def test_audit_actions_catalog(client, login_as):
    _, headers = login_as("auditor", RoleName.AUDITOR)
    body = client.get("/api/audit/actions", headers=headers).json()
    assert {"value": "DELETE_NODE", "label": "Deleted node"} in body["actions"]
    assert "ROUTE" in body["resourceTypes"]
