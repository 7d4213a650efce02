import pytest

from auth_gate import API_KEYS, AUDIT_LOG, AuditLog, AuthGate, hash_api_key, issue_api_key, set_api_key_status
from errors import ClawPayError, PersistenceError
from rate_limiter import RateLimiter


def _issue(client, admin_headers, **body):
    body.setdefault("handle", "alice")
    resp = client.post("/api/v1/admin/api-keys", json=body, headers=admin_headers)
    assert resp.status_code == 201
    return resp.get_json()


def _approve(client, admin_headers, key_hash):
    resp = client.post(f"/api/v1/admin/api-keys/{key_hash}/approve", headers=admin_headers)
    assert resp.status_code == 200


def _bearer(key):
    return {"Authorization": f"Bearer {key}"}


def test_missing_key(client):
    resp = client.get("/api/v1/agent/me")
    assert resp.status_code == 401
    assert resp.get_json()["error"] == "api_key_required"


def test_malformed_and_unknown_keys(client):
    assert client.get("/api/v1/agent/me", headers=_bearer("short")).get_json()["error"] == "invalid_api_key"
    assert client.get("/api/v1/agent/me", headers=_bearer("bad key with spaces!")).status_code == 401
    resp = client.get("/api/v1/agent/me", headers={"X-API-Key": "cp_" + "a" * 40})
    assert resp.status_code == 401
    assert resp.get_json()["error"] == "invalid_api_key"


def test_pending_key_is_forbidden_until_approved(client, admin_headers):
    issued = _issue(client, admin_headers)
    assert issued["status"] == "pending"
    assert issued["api_key"].startswith("cp_")

    resp = client.get("/api/v1/agent/me", headers=_bearer(issued["api_key"]))
    assert resp.status_code == 403
    assert resp.get_json()["error"] == "key_pending"

    _approve(client, admin_headers, issued["key_hash"])
    resp = client.get("/api/v1/agent/me", headers=_bearer(issued["api_key"]))
    assert resp.status_code == 200
    agent = resp.get_json()["agent"]
    assert agent["handle"] == "alice"
    assert agent["permissions"] == ["read", "submit", "claim"]
    assert resp.headers["X-RateLimit-Limit"] == "10"
    assert resp.headers["X-RateLimit-Remaining"] == "9"


def test_x_api_key_header_accepted(client, admin_headers):
    issued = _issue(client, admin_headers)
    _approve(client, admin_headers, issued["key_hash"])
    assert client.get("/api/v1/agent/me", headers={"X-API-Key": issued["api_key"]}).status_code == 200


def test_revoked_key(client, admin_headers):
    issued = _issue(client, admin_headers)
    _approve(client, admin_headers, issued["key_hash"])
    client.post(f"/api/v1/admin/api-keys/{issued['key_hash']}/revoke", headers=admin_headers)

    resp = client.get("/api/v1/agent/me", headers=_bearer(issued["api_key"]))
    assert resp.status_code == 403
    assert resp.get_json()["error"] == "key_revoked"


def test_per_key_rate_limit(client, admin_headers):
    issued = _issue(client, admin_headers, rate_limit=2)
    _approve(client, admin_headers, issued["key_hash"])
    headers = _bearer(issued["api_key"])

    assert client.get("/api/v1/agent/me", headers=headers).status_code == 200
    assert client.get("/api/v1/agent/me", headers=headers).status_code == 200
    resp = client.get("/api/v1/agent/me", headers=headers)
    assert resp.status_code == 429
    assert resp.get_json()["error"] == "rate_limited"
    assert int(resp.headers["Retry-After"]) > 0
    assert resp.headers["X-RateLimit-Remaining"] == "0"


def test_missing_permission_is_forbidden(client, admin_headers):
    issued = _issue(client, admin_headers, permissions=["read"])
    _approve(client, admin_headers, issued["key_hash"])
    resp = client.post("/api/v1/agent/claim", json={"reward_id": "x"}, headers=_bearer(issued["api_key"]))
    assert resp.status_code == 403
    assert resp.get_json()["error"] == "insufficient_permissions"


def test_audit_records_are_written(client, admin_headers, services):
    issued = _issue(client, admin_headers)
    client.get("/api/v1/agent/me", headers=_bearer(issued["api_key"]))
    _approve(client, admin_headers, issued["key_hash"])
    client.get("/api/v1/agent/me", headers=_bearer(issued["api_key"]))

    services.audit_log.flush()
    events = sorted((d["type"], d["reason"] or "") for d in services.store.query(AUDIT_LOG))
    assert events == [("auth_failed", "key_not_approved"), ("request", "")]


def test_audit_failures_never_raise(store):
    class BrokenStore:
        def append(self, collection, doc):
            raise OSError("disk full")

    audit = AuditLog(BrokenStore())
    audit.record("request", handle="alice")
    audit.flush()
    audit.shutdown()


def test_key_helpers(store):
    api_key, record = issue_api_key(store, "@Carol", rate_limit=5)
    assert record.key_hash == hash_api_key(api_key)
    assert record.handle == "carol"
    assert store.get("api_keys", record.key_hash)["status"] == "pending"
    assert api_key not in str(store.get("api_keys", record.key_hash))

    assert set_api_key_status(store, record.key_hash, "approved").status == "approved"
    assert set_api_key_status(store, "0" * 64, "approved") is None


def test_admin_key_required(client):
    resp = client.post("/api/v1/admin/api-keys", json={"handle": "alice"})
    assert resp.status_code == 401
    assert resp.get_json()["error"] == "admin_required"
    resp = client.post("/api/v1/admin/api-keys", json={"handle": "alice"}, headers={"X-Admin-Key": "wrong"})
    assert resp.status_code == 401


def test_lookup_failure_is_a_generic_500(store):
    class FailingStore:
        def get(self, collection, doc_id):
            raise PersistenceError("Failed to read data/api_keys/abc.json")

    gate = AuthGate(FailingStore(), RateLimiter(), AuditLog(store))
    with pytest.raises(ClawPayError) as exc:
        gate.authenticate("cp_" + "a" * 40)
    assert exc.value.status_code == 500
    assert exc.value.code == "auth_service_error"
    assert "api_keys" not in exc.value.message


def test_lookup_failure_over_http(client, services, monkeypatch):
    original_get = services.store.get

    def get(collection, doc_id):
        if collection == API_KEYS:
            raise PersistenceError("disk unavailable")
        return original_get(collection, doc_id)

    monkeypatch.setattr(services.store, "get", get)
    resp = client.get("/api/v1/agent/me", headers=_bearer("cp_" + "a" * 40))
    assert resp.status_code == 500
    assert resp.get_json() == {"success": False, "error": "auth_service_error",
                               "message": "Authentication service error"}
