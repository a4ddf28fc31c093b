"""
Tests: Audit Log Endpoints
==========================
"""

from accessguard.models.audit_log import AuditLog


def _create_roles(client, headers, *names):
    for name in names:
        assert client.post("/api/roles", json={"name": name}, headers=headers).status_code == 201


class TestAuditQuery:
    def test_requires_audit_permission(self, client, auth):
        assert client.get("/api/audit-logs", headers=auth["seller"]).status_code == 403

    def test_filters_and_pagination(self, client, auth, users):
        _create_roles(client, auth["admin"], "One", "Two", "Three")
        client.get("/api/roles", headers=auth["seller"])

        page = client.get("/api/audit-logs", params={"action": "rbac.role.", "limit": 2},
                          headers=auth["admin"]).json()
        assert page["total"] == 3
        assert len(page["logs"]) == 2
        assert page["logs"][0]["details"]["next"]["name"] == "Three"

        denied = client.get("/api/audit-logs", params={"userId": users["seller"]}, headers=auth["admin"]).json()
        assert [log["action"] for log in denied["logs"]] == ["access.denied"]

    def test_invalid_date_is_400(self, client, auth):
        resp = client.get("/api/audit-logs", params={"startDate": "yesterday"}, headers=auth["admin"])
        assert resp.status_code == 400

    def test_distinct_actions(self, client, auth):
        _create_roles(client, auth["admin"], "One")
        client.get("/api/roles", headers=auth["seller"])
        actions = client.get("/api/audit-logs/actions", headers=auth["admin"]).json()
        assert actions == ["access.denied", "rbac.role.created"]


class TestAuditExport:
    def test_export_streams_csv_and_is_audited(self, client, auth, session_factory):
        _create_roles(client, auth["admin"], "One")

        resp = client.get("/api/audit-logs/export.csv", headers=auth["admin"])
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/csv")
        assert "attachment" in resp.headers["content-disposition"]
        assert resp.content.startswith("\ufeff".encode("utf-8"))

        lines = resp.content.decode("utf-8-sig").splitlines()
        assert lines[0].split(";")[:4] == ["created_at", "actor_id", "actor_email", "action"]
        assert any("admin@example.com" in line and "rbac.role.created" in line for line in lines)

        db = session_factory()
        try:
            assert db.query(AuditLog).filter(AuditLog.action == "audit.export").count() == 1
        finally:
            db.close()


class TestAuditListing:
    def test_listing_is_audited_after_the_read(self, client, auth, users, session_factory):
        first = client.get("/api/audit-logs", params={"page": 1, "limit": 10}, headers=auth["admin"]).json()
        assert all(log["action"] != "audit.list" for log in first["logs"])

        db = session_factory()
        try:
            entry = db.query(AuditLog).filter(AuditLog.action == "audit.list").one()
        finally:
            db.close()
        assert entry.actor_id == users["admin"]
        assert entry.resource == "audit_logs"
        assert entry.details["page"] == 1
        assert entry.details["limit"] == 10

        second = client.get("/api/audit-logs", params={"action": "audit."}, headers=auth["admin"]).json()
        assert [log["action"] for log in second["logs"]] == ["audit.list"]
