"""
Tests: Access Control
=====================
Permission resolution, superuser bypass, fail-closed checks, cache invalidation,
and the role assignment graph.
"""

import pytest

from accessguard.core.exceptions import AuthorizationError, ResourceConflictError, ResourceNotFoundError
from accessguard.core.security import RegularPrincipal, RequestContext, SuperuserPrincipal
from accessguard.models.audit_log import AuditLog
from accessguard.models.permission import Permission
from accessguard.models.user import AccountType
from accessguard.services.permission_catalog import permission_catalog

from conftest import make_user, role_named


def _permission_id(db, name):
    return db.query(Permission.id).filter(Permission.name == name).scalar()


# ══════════════════════════════════════════════════════════════
# RESOLUTION
# ══════════════════════════════════════════════════════════════


class TestResolution:
    def test_permissions_are_union_of_roles(self, db, access):
        user = make_user(db, "both@example.com", ["Seller", "Manager"])
        seller = access.get_user_permissions(db, make_user(db, "s@example.com", ["Seller"]).id)
        manager = access.get_user_permissions(db, make_user(db, "m@example.com", ["Manager"]).id)

        assert access.get_user_permissions(db, user.id) == seller | manager

    def test_user_without_roles_has_nothing(self, db, access):
        user = make_user(db, "nobody@example.com")
        assert access.get_user_permissions(db, user.id) == frozenset()
        assert not access.has_permission(db, user.id, "sale:create")

    def test_superuser_has_whole_catalog(self, db, access):
        master = make_user(db, "root@example.com", account_type=AccountType.master)
        assert access.get_user_permissions(db, master.id) == permission_catalog.names()
        assert access.has_permission(db, master.id, "security:manage")

    def test_principal_classification(self, db, access):
        master = make_user(db, "root@example.com", account_type=AccountType.master)
        regular = make_user(db, "reg@example.com", ["Viewer"])
        assert access.principal_for(db, master.id) == SuperuserPrincipal(master.id)
        assert access.principal_for(db, regular.id) == RegularPrincipal(regular.id)

    def test_inactive_user_is_rejected(self, db, access):
        user = make_user(db, "gone@example.com", ["Admin"], is_active=False)
        with pytest.raises(AuthorizationError):
            access.principal_for(db, user.id)
        assert not access.has_permission(db, user.id, "rbac:manage")


class TestFailClosed:
    def test_unknown_permission_is_denied_even_for_superuser(self, db, access):
        master = make_user(db, "root@example.com", account_type=AccountType.master)
        assert not access.has_permission(db, master.id, "nuke:everything")

    def test_unknown_user_is_denied(self, db, access):
        assert access.has_permission(db, 9999, "sale:create") is False

    def test_resolution_error_is_denied(self, db, access, monkeypatch):
        user = make_user(db, "s@example.com", ["Seller"])

        def broken(*args, **kwargs):
            raise RuntimeError("database went away")

        monkeypatch.setattr(access, "_resolve", broken)
        assert access.has_permission(db, user.id, "sale:create") is False


# ══════════════════════════════════════════════════════════════
# CACHE
# ══════════════════════════════════════════════════════════════


class TestPermissionCache:
    def test_assignment_is_visible_immediately(self, db, access):
        user = make_user(db, "s@example.com")
        assert not access.has_permission(db, user.id, "sale:create")

        access.assign_role(db, None, user.id, role_named(db, "Seller").id)
        assert access.has_permission(db, user.id, "sale:create")

    def test_toggle_invalidates_every_user(self, db, access):
        first = make_user(db, "a@example.com", ["Seller"])
        second = make_user(db, "b@example.com", ["Seller"])
        assert not access.has_permission(db, first.id, "audit:view")
        assert not access.has_permission(db, second.id, "audit:view")

        access.toggle_permission(db, None, role_named(db, "Seller").id, _permission_id(db, "audit:view"), True)
        assert access.has_permission(db, first.id, "audit:view")
        assert access.has_permission(db, second.id, "audit:view")

    def test_resolution_started_before_write_is_not_stored(self, cache):
        token = cache.token(7)
        with cache.invalidating(7):
            pass
        assert cache.put(7, frozenset({"sale:create"}), token) is False
        assert cache.get(7) is None

    def test_nothing_served_while_write_pending(self, cache):
        cache.put(7, frozenset({"sale:create"}), cache.token(7))
        with cache.invalidating():
            assert cache.get(7) is None
            assert cache.put(7, frozenset(), cache.token(7)) is False

    def test_entries_expire(self, cache, clock):
        cache.put(7, frozenset({"sale:create"}), cache.token(7))
        assert cache.get(7) == {"sale:create"}
        clock.advance(31)
        assert cache.get(7) is None


# ══════════════════════════════════════════════════════════════
# ASSIGNMENT GRAPH
# ══════════════════════════════════════════════════════════════


class TestAssignmentGraph:
    def test_assign_twice_conflicts(self, db, access):
        user = make_user(db, "s@example.com", ["Seller"])
        with pytest.raises(ResourceConflictError):
            access.assign_role(db, None, user.id, role_named(db, "Seller").id)

    def test_assign_unknown_user_or_role(self, db, access):
        user = make_user(db, "s@example.com")
        with pytest.raises(ResourceNotFoundError):
            access.assign_role(db, None, 9999, role_named(db, "Seller").id)
        with pytest.raises(ResourceNotFoundError):
            access.assign_role(db, None, user.id, 9999)

    def test_unassign_missing_edge(self, db, access):
        user = make_user(db, "s@example.com")
        with pytest.raises(ResourceNotFoundError):
            access.unassign_role(db, None, user.id, role_named(db, "Seller").id)

    def test_assign_and_unassign_are_audited_with_actor(self, db, access):
        actor = make_user(db, "boss@example.com", ["Admin"])
        user = make_user(db, "s@example.com")
        ctx = RequestContext(RegularPrincipal(actor.id), "198.51.100.7", "pytest")
        seller = role_named(db, "Seller")

        access.assign_role(db, ctx, user.id, seller.id)
        access.unassign_role(db, ctx, user.id, seller.id)

        entries = db.query(AuditLog).order_by(AuditLog.id).all()
        assert [e.action for e in entries] == ["rbac.user_role.assigned", "rbac.user_role.unassigned"]
        assert all(e.actor_id == actor.id for e in entries)
        assert all(e.ip_address == "198.51.100.7" for e in entries)
        assert entries[0].entity_id == f"{user.id}:{seller.id}"

    def test_user_roles_sorted(self, db, access):
        user = make_user(db, "x@example.com", ["Viewer", "Manager"])
        assert [r.name for r in access.user_roles(db, user.id)] == ["Manager", "Viewer"]


class TestTogglePermission:
    def test_grant_and_revoke(self, db, access):
        viewer = role_named(db, "Viewer")
        agent = _permission_id(db, "agent:use")

        assert access.toggle_permission(db, None, viewer.id, agent, True) is True
        assert access.toggle_permission(db, None, viewer.id, agent, False) is True

        actions = [e.action for e in db.query(AuditLog).order_by(AuditLog.id)]
        assert actions == ["rbac.permission.granted", "rbac.permission.revoked"]

    def test_repeated_toggle_is_idempotent_and_still_audited(self, db, access):
        seller = role_named(db, "Seller")
        sale = _permission_id(db, "sale:create")

        assert access.toggle_permission(db, None, seller.id, sale, True) is False

        entries = db.query(AuditLog).all()
        assert len(entries) == 1
        assert entries[0].details["changed"] is False

    def test_unknown_permission(self, db, access):
        with pytest.raises(ResourceNotFoundError):
            access.toggle_permission(db, None, role_named(db, "Seller").id, 9999, True)
