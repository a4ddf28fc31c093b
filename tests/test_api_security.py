"""
Tests: Request Guard over HTTP
==============================
Health endpoint budget, automatic bans, ban expiry and manual unban.
"""

import pytest

from accessguard.core.config import RateLimitRule, Settings
from accessguard.models.audit_log import AuditLog

ABUSER = {"X-Forwarded-For": "203.0.113.9"}


@pytest.fixture
def settings(tmp_path):
    return Settings(
        DATABASE_URL=f"sqlite:///{tmp_path / 'accessguard.db'}",
        COUNTER_BACKEND="memory",
        JWT_SECRET="test-secret",
        TRUST_PROXY_HEADERS=True,
        RATE_LIMIT_RULES={
            "global": RateLimitRule(limit=1000, window_seconds=60),
            "health": RateLimitRule(limit=2, window_seconds=60),
        },
        BAN_VIOLATION_THRESHOLD=2,
        BAN_TTL_TIERS_SECONDS=[3600, 21600],
    )


def _ban_abuser(client):
    assert [client.get("/api/health", headers=ABUSER).status_code for _ in range(4)] == [200, 200, 429, 429]


def _audit_actions(session_factory):
    db = session_factory()
    try:
        return [e.action for e in db.query(AuditLog).order_by(AuditLog.id)]
    finally:
        db.close()


class TestAutomaticBan:
    def test_repeated_violations_ban_the_ip(self, client, session_factory):
        _ban_abuser(client)

        resp = client.get("/api/health", headers=ABUSER)
        assert resp.status_code == 403
        assert resp.json()["code"] == "ip-banned"
        assert resp.headers["Retry-After"] == "3600"
        assert "security.ip_blocked" in _audit_actions(session_factory)

    def test_every_violation_is_audited(self, client, session_factory):
        _ban_abuser(client)

        actions = [a for a in _audit_actions(session_factory) if a.startswith("security.")]
        assert actions == [
            "security.rate_limit_violation",
            "security.rate_limit_violation",
            "security.ip_blocked",
        ]
        db = session_factory()
        try:
            violation = db.query(AuditLog).filter(AuditLog.action == "security.rate_limit_violation").first()
        finally:
            db.close()
        assert violation.entity_id == "203.0.113.9"
        assert violation.ip_address == "203.0.113.9"
        assert violation.actor_id is None
        assert violation.details["route"] == "health"
        assert violation.details["path"] == "/api/health"

    def test_ban_does_not_affect_other_clients(self, client):
        _ban_abuser(client)
        assert client.get("/api/health").status_code == 200

    def test_banned_requests_do_not_count_as_violations(self, client, app):
        _ban_abuser(client)
        for _ in range(5):
            client.get("/api/health", headers=ABUSER)
        assert app.state.ban_list.get("203.0.113.9").offense == 1

    def test_ban_lifts_after_ttl(self, client, clock):
        _ban_abuser(client)
        clock.advance(3599)
        assert client.get("/api/health", headers=ABUSER).status_code == 403
        clock.advance(1)
        assert client.get("/api/health", headers=ABUSER).status_code == 200

    def test_ban_check_applies_to_privileged_routes(self, client, auth):
        _ban_abuser(client)
        resp = client.get("/api/roles", headers={**auth["admin"], **ABUSER})
        assert resp.status_code == 403
        assert resp.json()["code"] == "ip-banned"


class TestManualUnban:
    def test_list_and_unban(self, client, auth, clock, session_factory):
        _ban_abuser(client)

        listed = client.get("/api/security/blocked-ips", headers=auth["admin"])
        assert listed.status_code == 200
        [entry] = listed.json()
        assert entry["ip"] == "203.0.113.9"
        assert entry["ttl_remaining"] == 3600
        assert entry["offense"] == 1

        resp = client.post("/api/security/blocked-ips/203.0.113.9/unban", headers=auth["admin"])
        assert resp.status_code == 200
        assert client.get("/api/security/blocked-ips", headers=auth["admin"]).json() == []
        assert _audit_actions(session_factory).count("security.ip_unblocked") == 1

        clock.advance(60)
        assert client.get("/api/health", headers=ABUSER).status_code == 200

    def test_unban_unknown_ip(self, client, auth):
        resp = client.post("/api/security/blocked-ips/198.51.100.1/unban", headers=auth["admin"])
        assert resp.status_code == 404

    def test_requires_security_permission(self, client, auth):
        assert client.get("/api/security/blocked-ips", headers=auth["seller"]).status_code == 403
