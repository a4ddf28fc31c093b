"""Shared fixtures: file-backed SQLite per test, a controllable clock, seeded users."""

import pytest
from fastapi.testclient import TestClient

from accessguard.core.config import RateLimitRule, Settings
from accessguard.core.security import create_access_token
from accessguard.db.seeds.seed_roles import seed_roles
from accessguard.db.session import build_engine, build_session_factory, init_db
from accessguard.main import create_app
from accessguard.models.role import Role, UserRole
from accessguard.models.user import AccountType, User
from accessguard.services.access_control import AccessControlService, PermissionCache
from accessguard.services.anti_lockout import AntiLockoutGuard
from accessguard.services.counter_store import InMemoryCounterStore
from accessguard.services.role_service import RoleService


class FakeClock:
    """Clock whose time only moves when told to."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        DATABASE_URL=f"sqlite:///{tmp_path / 'accessguard.db'}",
        COUNTER_BACKEND="memory",
        JWT_SECRET="test-secret",
        SUPER_ADMIN_EMAIL="master@example.com",
        RATE_LIMIT_RULES={
            "global": RateLimitRule(limit=1000, window_seconds=60),
            "health": RateLimitRule(limit=20, window_seconds=60),
        },
    )


@pytest.fixture
def session_factory(settings):
    engine = build_engine(settings.DATABASE_URL)
    init_db(engine)
    yield build_session_factory(engine)
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    seed_roles(session)
    yield session
    session.close()


def make_user(db, email, roles=(), account_type=AccountType.standard, is_active=True) -> User:
    user = User(email=email, full_name=email.split("@")[0], account_type=account_type, is_active=is_active)
    db.add(user)
    db.flush()
    for name in roles:
        role = db.query(Role).filter(Role.name == name).one()
        db.add(UserRole(user_id=user.id, role_id=role.id))
    db.commit()
    return user


def role_named(db, name) -> Role:
    return db.query(Role).filter(Role.name == name).one()


@pytest.fixture
def cache(clock):
    return PermissionCache(ttl_seconds=30, clock=clock)


@pytest.fixture
def guard():
    return AntiLockoutGuard()


@pytest.fixture
def access(cache, guard):
    return AccessControlService(cache, guard)


@pytest.fixture
def role_service(cache, guard):
    return RoleService(guard, cache)


@pytest.fixture
def store(clock):
    return InMemoryCounterStore(clock=clock)


@pytest.fixture
def app(settings, store, clock):
    return create_app(settings, store=store, clock=clock)


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def users(app, client, session_factory):
    """Seeded accounts: one master, one administrator, one seller, one viewer."""
    session = session_factory()
    try:
        seed_roles(session)
        accounts = {
            "master": make_user(session, "master@example.com", ["Admin"], AccountType.master),
            "admin": make_user(session, "admin@example.com", ["Admin"]),
            "seller": make_user(session, "seller@example.com", ["Seller"]),
            "viewer": make_user(session, "viewer@example.com", ["Viewer"]),
        }
    finally:
        session.close()
    return {name: user.id for name, user in accounts.items()}


@pytest.fixture
def auth(users, settings):
    """Authorization headers per seeded account."""
    return {
        name: {"Authorization": f"Bearer {create_access_token({'sub': str(user_id)}, settings=settings)}"}
        for name, user_id in users.items()
    }
