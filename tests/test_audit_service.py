"""
Tests: Audit Trail
==================
Recording, filtering, export and retention.
"""

from datetime import datetime, timedelta

from accessguard.core.clock import utcnow
from accessguard.core.security import RegularPrincipal, RequestContext
from accessguard.models.audit_log import AuditLog
from accessguard.services.audit_service import AuditFilters, audit_service, parse_date_bound

from conftest import make_user


def _entry(db, action, actor_id=None, created_at=None, **kwargs):
    entry = AuditLog(action=action, resource="role", actor_id=actor_id, **kwargs)
    if created_at is not None:
        entry.created_at = created_at
    db.add(entry)
    db.commit()
    return entry


class TestRecord:
    def test_record_for_takes_request_context(self, db):
        actor = make_user(db, "a@example.com")
        ctx = RequestContext(RegularPrincipal(actor.id), "192.0.2.1", "x" * 600)

        entry = audit_service.record_for(db, ctx, "rbac.role.created", "role", entity_id=5,
                                         details={"next": {"name": "Ops"}})

        assert entry.actor_id == actor.id
        assert entry.ip_address == "192.0.2.1"
        assert len(entry.user_agent) == 500
        assert entry.entity_id == "5"

    def test_failed_write_returns_none_and_keeps_session_usable(self, db):
        entry = audit_service.record(db, "rbac.role.created", "role", details={"bad": object()})
        assert entry is None
        assert db.query(AuditLog).count() == 0

        assert audit_service.record(db, "rbac.role.created", "role") is not None
        assert db.query(AuditLog).count() == 1

    def test_diff_keeps_changed_keys_only(self):
        previous = {"name": "Ops", "description": "a", "updated_at": 1}
        nxt = {"name": "Ops", "description": "b", "updated_at": 2}
        assert audit_service.diff(previous, nxt) == {
            "previous": {"description": "a"},
            "next": {"description": "b"},
        }
        assert audit_service.diff(None, {"name": "Ops"}) == {"previous": {}, "next": {"name": "Ops"}}


class TestQuery:
    def test_action_exact_and_prefix(self, db):
        for action in ["rbac.role.created", "rbac.role.deleted", "rbac.user_role.assigned", "security.ip_blocked"]:
            _entry(db, action)

        def actions(filter_value):
            entries, _ = audit_service.query(db, AuditFilters(action=filter_value))
            return sorted(e.action for e in entries)

        assert actions("rbac.role.created") == ["rbac.role.created"]
        assert actions("rbac.role.") == ["rbac.role.created", "rbac.role.deleted"]
        assert actions("rbac*") == ["rbac.role.created", "rbac.role.deleted", "rbac.user_role.assigned"]
        assert actions("rbac") == []

    def test_prefix_does_not_treat_underscore_as_wildcard(self, db):
        _entry(db, "rbac.user_role.assigned")
        _entry(db, "rbac.userXrole.assigned")
        entries, _ = audit_service.query(db, AuditFilters(action="rbac.user_*"))
        assert [e.action for e in entries] == ["rbac.user_role.assigned"]

    def test_actor_and_date_filters(self, db):
        actor = make_user(db, "a@example.com")
        _entry(db, "rbac.role.created", actor.id, created_at=datetime(2025, 1, 10, 9, 0))
        _entry(db, "rbac.role.updated", actor.id, created_at=datetime(2025, 1, 12, 23, 59))
        _entry(db, "rbac.role.deleted", None, created_at=datetime(2025, 1, 12, 12, 0))

        filters = AuditFilters(
            actor_id=actor.id,
            start_date=parse_date_bound("2025-01-11"),
            end_date=parse_date_bound("2025-01-12", end=True),
        )
        entries, total = audit_service.query(db, filters)
        assert total == 1
        assert entries[0].action == "rbac.role.updated"

    def test_pagination_total_is_independent_of_window(self, db):
        base = datetime(2025, 1, 1)
        for i in range(7):
            _entry(db, f"test.{i}", created_at=base + timedelta(minutes=i))

        page, total = audit_service.query(db, page=2, limit=3)
        assert total == 7
        assert [e.action for e in page] == ["test.3", "test.2", "test.1"]

    def test_distinct_actions_sorted(self, db):
        for action in ["b.two", "a.one", "b.two"]:
            _entry(db, action)
        assert audit_service.list_distinct_actions(db) == ["a.one", "b.two"]


class TestExportAndRetention:
    def test_export_csv_has_bom_header_and_actor_email(self, db, session_factory):
        actor = make_user(db, "auditor@example.com")
        _entry(db, "rbac.role.created", actor.id, entity_id="3", details={"message": "Role created"})
        _entry(db, "security.ip_blocked", None, ip_address="203.0.113.5")

        lines = "".join(audit_service.export_csv(session_factory)).splitlines()

        assert lines[0].startswith("\ufeffcreated_at;actor_id;actor_email;action")
        assert len(lines) == 3
        assert "auditor@example.com" in lines[2]
        assert "Role created" in lines[2]
        assert ";System;security.ip_blocked;" in lines[1]

    def test_export_respects_row_cap(self, db, session_factory):
        for i in range(5):
            _entry(db, f"test.{i}")
        lines = "".join(audit_service.export_csv(session_factory, max_rows=2)).splitlines()
        assert len(lines) == 3

    def test_purge_older_than(self, db):
        _entry(db, "old", created_at=utcnow() - timedelta(days=120))
        _entry(db, "recent", created_at=utcnow() - timedelta(days=5))

        assert audit_service.purge_older_than(db, 90) == 1
        assert [e.action for e in db.query(AuditLog)] == ["recent"]
