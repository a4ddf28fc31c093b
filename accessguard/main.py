"""FastAPI main application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.orm import Session

from accessguard.core.clock import Clock, system_clock
from accessguard.core.config import Settings, settings as default_settings
from accessguard.core.exceptions import AccessGuardError
from accessguard.core.middleware import setup_middleware
from accessguard.core.rate_limiter import RateLimitGuard
from accessguard.db.session import build_engine, build_session_factory, get_db, init_db
from accessguard.schemas.schemas import HealthOut
from accessguard.services.access_control import AccessControlService, PermissionCache
from accessguard.services.anti_lockout import AntiLockoutGuard
from accessguard.services.ban_list import BanList
from accessguard.services.counter_store import CounterStore, build_counter_store
from accessguard.services.permission_catalog import permission_catalog
from accessguard.services.rate_limiter import RateLimiter
from accessguard.services.role_service import RoleService

from accessguard.api.roles import router as roles_router
from accessguard.api.users import router as users_router
from accessguard.api.audit import router as audit_router
from accessguard.api.security import router as security_router

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if default_settings.DEBUG else logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("accessguard")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    logger.info("Starting %s API", app.state.settings.APP_NAME)
    init_db(app.state.engine)

    db = app.state.session_factory()
    try:
        permission_catalog.sync(db)
    finally:
        db.close()

    if app.state.counter_store.ping():
        logger.info("Counter store ready (%s)", app.state.settings.COUNTER_BACKEND)
    else:
        logger.warning("Counter store not reachable; rate-limited routes will refuse requests")

    yield

    app.state.engine.dispose()
    logger.info("Shutting down %s API", app.state.settings.APP_NAME)


async def accessguard_exception_handler(request: Request, exc: AccessGuardError):
    content = {"detail": exc.message}
    if exc.code:
        content["code"] = exc.code
    headers = {}
    retry_after = getattr(exc, "retry_after", None)
    if retry_after is not None:
        headers["Retry-After"] = str(retry_after)
    return JSONResponse(status_code=exc.status_code, content=content, headers=headers)


def create_app(
    settings: Settings = None,
    store: CounterStore = None,
    clock: Clock = None,
) -> FastAPI:
    """Build the application and the services it keeps on ``app.state``."""
    settings = settings or default_settings
    clock = clock or system_clock

    app = FastAPI(
        title=f"{settings.APP_NAME} API",
        description="Role-based access control, audit trail and abuse prevention",
        version="0.1.0",
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )

    engine = build_engine(settings.DATABASE_URL, settings.DATABASE_ECHO)
    store = store or build_counter_store(settings, clock)
    cache = PermissionCache(settings.PERMISSION_CACHE_TTL_SECONDS, clock)
    guard = AntiLockoutGuard(permission_catalog)

    app.state.settings = settings
    app.state.clock = clock
    app.state.engine = engine
    app.state.session_factory = build_session_factory(engine)
    app.state.counter_store = store
    app.state.rate_limiter = RateLimiter(
        store,
        settings.RATE_LIMIT_RULES,
        default_rule=settings.RATE_LIMIT_DEFAULT_RULE,
        grace_seconds=settings.RATE_LIMIT_GRACE_SECONDS,
        whitelist=settings.WHITELIST_IPS,
    )
    app.state.ban_list = BanList(
        store,
        clock=clock,
        threshold=settings.BAN_VIOLATION_THRESHOLD,
        interval_seconds=settings.BAN_VIOLATION_INTERVAL_SECONDS,
        ttl_tiers=settings.BAN_TTL_TIERS_SECONDS,
        offense_memory_seconds=settings.BAN_OFFENSE_MEMORY_SECONDS,
        whitelist=settings.WHITELIST_IPS,
    )
    app.state.permission_cache = cache
    app.state.anti_lockout = guard
    app.state.access_control = AccessControlService(cache, guard, permission_catalog)
    app.state.role_service = RoleService(guard, cache)

    # Middleware
    setup_middleware(app, settings)

    # Exception handler for access-control errors
    app.add_exception_handler(AccessGuardError, accessguard_exception_handler)

    # Register routers
    app.include_router(roles_router, prefix=settings.API_PREFIX)
    app.include_router(users_router, prefix=settings.API_PREFIX)
    app.include_router(audit_router, prefix=settings.API_PREFIX)
    app.include_router(security_router, prefix=settings.API_PREFIX)

    @app.get("/")
    async def root():
        return {
            "name": settings.APP_NAME,
            "version": "0.1.0",
            "docs": "/docs",
        }

    @app.get(
        f"{settings.API_PREFIX}/health",
        response_model=HealthOut,
        dependencies=[Depends(RateLimitGuard("health"))],
    )
    def health(request: Request, db: Session = Depends(get_db)):
        """Liveness plus datastore and counter store reachability."""
        try:
            db.execute(text("SELECT 1"))
            database = "ok"
        except Exception:
            logger.exception("Health check: database unreachable")
            database = "unavailable"
        counter_store = "ok" if request.app.state.counter_store.ping() else "unavailable"

        status = "ok" if database == counter_store == "ok" else "degraded"
        body = HealthOut(status=status, database=database, counter_store=counter_store)
        if status != "ok":
            return JSONResponse(status_code=503, content=body.model_dump())
        return body

    return app


app = create_app()
