"""AccessGuard CLI tool (accessguard-ctl)."""

import typer
from sqlalchemy.engine import make_url

from accessguard.core.config import settings

app = typer.Typer(name="accessguard-ctl", help="AccessGuard CLI")
db_app = typer.Typer(help="Database management commands")
security_app = typer.Typer(help="Blocked IP management commands")
audit_app = typer.Typer(help="Audit trail maintenance commands")
token_app = typer.Typer(help="Developer token commands")
app.add_typer(db_app, name="db")
app.add_typer(security_app, name="security")
app.add_typer(audit_app, name="audit")
app.add_typer(token_app, name="token")


def _session():
    from accessguard.db.session import build_engine, build_session_factory
    return build_session_factory(build_engine())()


def _ban_list():
    from accessguard.services.ban_list import BanList
    from accessguard.services.counter_store import build_counter_store

    if settings.COUNTER_BACKEND == "memory":
        typer.echo("⚠️  COUNTER_BACKEND is 'memory': bans live inside the API process and are not visible here.")
    return BanList(
        build_counter_store(settings),
        threshold=settings.BAN_VIOLATION_THRESHOLD,
        interval_seconds=settings.BAN_VIOLATION_INTERVAL_SECONDS,
        ttl_tiers=settings.BAN_TTL_TIERS_SECONDS,
        offense_memory_seconds=settings.BAN_OFFENSE_MEMORY_SECONDS,
        whitelist=settings.WHITELIST_IPS,
    )


def _record(action: str, entity_id=None, details=None) -> None:
    from accessguard.services.audit_service import audit_service

    db = _session()
    try:
        audit_service.record(
            db, action=action, resource="firewall" if action.startswith("security.") else "audit_logs",
            entity_id=entity_id, ip_address="cli", user_agent="accessguard-ctl", details=details,
        )
    finally:
        db.close()


@db_app.command("create")
def db_create():
    """Create the MySQL database if it doesn't exist."""
    import pymysql

    url = make_url(settings.DATABASE_URL)
    if not url.drivername.startswith("mysql"):
        typer.echo(f"ℹ️  Nothing to create for {url.drivername}")
        return

    conn = pymysql.connect(
        host=url.host or "localhost",
        port=url.port or 3306,
        user=url.username,
        password=url.password or "",
    )
    try:
        cursor = conn.cursor()
        cursor.execute(
            f"CREATE DATABASE IF NOT EXISTS `{url.database}` CHARACTER SET utf8mb4 COLLATE utf8mb4_unicode_ci"
        )
        conn.commit()
        typer.echo(f"✅ Database '{url.database}' created (or already exists)")
    finally:
        conn.close()


@db_app.command("init")
def db_init():
    """Create all tables."""
    from accessguard.db.session import build_engine, init_db

    init_db(build_engine())
    typer.echo("✅ Tables created")


@db_app.command("seed")
def db_seed():
    """Seed the permission catalog, system roles, and the master account."""
    from accessguard.db.seeds.seed_roles import seed_roles
    from accessguard.db.seeds.seed_super_admin import seed_super_admin

    db = _session()
    try:
        seed_roles(db)
        seed_super_admin(db)
    finally:
        db.close()
    typer.echo("✅ All seeds applied")


@security_app.command("list-bans")
def list_bans():
    """List currently banned IPs."""
    ban_list = _ban_list()
    now = ban_list.clock()
    entries = ban_list.list_active()
    if not entries:
        typer.echo("No blocked IPs")
        return
    for entry in entries:
        typer.echo(
            f"  {entry.ip}  {int(entry.ttl_remaining(now))}s left"
            f"  (offense #{entry.offense}, {entry.violation_count} violations)"
        )


@security_app.command("unban")
def unban(ip: str = typer.Argument(..., help="IP address to unblock")):
    """Lift the ban on one IP."""
    if not _ban_list().unban(ip):
        typer.echo(f"ℹ️  {ip} is not blocked")
        raise typer.Exit(code=1)
    _record("security.ip_unblocked", entity_id=ip, details={"message": f"IP {ip} unblocked from CLI"})
    typer.echo(f"✅ {ip} unblocked")


@security_app.command("unban-all")
def unban_all():
    """Lift every active ban."""
    ips = _ban_list().unban_all()
    for ip in ips:
        _record("security.ip_unblocked", entity_id=ip, details={"message": f"IP {ip} unblocked from CLI"})
    typer.echo(f"✅ Unblocked {len(ips)} IP(s)")


@audit_app.command("purge")
def audit_purge(
    days: int = typer.Option(settings.AUDIT_RETENTION_DAYS, help="Delete entries older than this many days"),
):
    """Delete audit entries past the retention period."""
    from accessguard.services.audit_service import audit_service

    if days < 1:
        raise typer.BadParameter("days must be at least 1")
    db = _session()
    try:
        deleted = audit_service.purge_older_than(db, days)
    finally:
        db.close()
    _record("audit.cleanup", details={"message": f"Purged {deleted} entries older than {days} days",
                                      "deleted": deleted, "days": days})
    typer.echo(f"✅ Purged {deleted} audit entries older than {days} days")


@token_app.command("issue")
def issue_token(
    user_id: int = typer.Argument(..., help="User ID to put in the token subject"),
    minutes: int = typer.Option(settings.JWT_EXPIRY_MINUTES, help="Token lifetime"),
):
    """Issue a bearer token for local testing."""
    from datetime import timedelta
    from accessguard.core.security import create_access_token

    typer.echo(create_access_token({"sub": str(user_id)}, timedelta(minutes=minutes)))


@app.command("health")
def health(url: str = typer.Option("http://localhost:8000", help="API base URL")):
    """Query the health endpoint of a running API."""
    import httpx
    resp = httpx.get(f"{url}{settings.API_PREFIX}/health", timeout=10)
    typer.echo(resp.json())
    if resp.status_code != 200:
        raise typer.Exit(code=1)


@app.command("serve")
def serve(
    host: str = typer.Option("0.0.0.0", help="Host"),
    port: int = typer.Option(8000, help="Port"),
    reload: bool = typer.Option(False, help="Auto-reload"),
):
    """Start the FastAPI server."""
    import uvicorn
    uvicorn.run("accessguard.main:app", host=host, port=port, reload=reload)


if __name__ == "__main__":
    app()
