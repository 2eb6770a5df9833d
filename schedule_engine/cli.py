"""Schedule Engine CLI tool (schedulectl)."""

from typing import Optional

import typer

app = typer.Typer(name="schedulectl", help="Schedule Engine CLI")
db_app = typer.Typer(help="Database management commands")
tenants_app = typer.Typer(help="Tenant directory commands")
schedules_app = typer.Typer(help="Schedule inspection commands")
app.add_typer(db_app, name="db")
app.add_typer(tenants_app, name="tenants")
app.add_typer(schedules_app, name="schedules")


@db_app.command("create")
def db_create(
    tenant: Optional[str] = typer.Option(None, help="Tenant ID (platform database when omitted)"),
):
    """Create the MySQL database if it doesn't exist."""
    import pymysql
    from sqlalchemy.engine import make_url
    from schedule_engine.db.session import database_manager

    url = make_url(database_manager.url_for(tenant))
    conn = pymysql.connect(
        host=url.host or "localhost",
        port=url.port or 3306,
        user=url.username,
        password=url.password or "",
    )
    try:
        cursor = conn.cursor()
        cursor.execute(
            f"CREATE DATABASE IF NOT EXISTS `{url.database}` "
            "CHARACTER SET utf8mb4 COLLATE utf8mb4_unicode_ci"
        )
        conn.commit()
        typer.echo(f"✅ Database '{url.database}' created (or already exists)")
    finally:
        conn.close()


@db_app.command("init")
def db_init(
    tenant: Optional[str] = typer.Option(None, help="Tenant ID (platform database when omitted)"),
):
    """Create the schedule tables."""
    from schedule_engine.db.session import database_manager

    database_manager.init_schema(tenant)
    typer.echo(f"✅ Tables created in {'tenant ' + tenant if tenant else 'platform'} database")


@tenants_app.command("list")
def tenants_list():
    """List businesses that own a tenant database."""
    from schedule_engine.db.session import database_manager
    from schedule_engine.services.tenant_service import tenant_service

    db = database_manager.session(None)
    try:
        businesses = tenant_service.list_tenants_with_id(db)
        if not businesses:
            typer.echo("No tenants registered")
        for b in businesses:
            typer.echo(f"  [{b.id}] {b.name} (tenant: {b.tenant_id})")
    finally:
        db.close()


@tenants_app.command("add")
def tenants_add(
    name: str = typer.Argument(..., help="Business name"),
    tenant_id: str = typer.Argument(..., help="Tenant ID"),
    init: bool = typer.Option(True, help="Create the tenant's schedule tables"),
):
    """Register a tenant in the platform directory."""
    from schedule_engine.core.exceptions import ValidationError
    from schedule_engine.db.session import database_manager
    from schedule_engine.services.tenant_service import tenant_service

    db = database_manager.session(None)
    try:
        business = tenant_service.create(db, name, tenant_id)
    except ValidationError as e:
        typer.echo(f"❌ {e.message}", err=True)
        raise typer.Exit(code=1)
    finally:
        db.close()

    if init:
        database_manager.init_schema(tenant_id)
    typer.echo(f"✅ Tenant '{business.tenant_id}' registered")


@app.command("sync")
def sync():
    """Run the daily synchronization now (cleanup, then arm today's schedules)."""
    import json
    from schedule_engine.services.arming import install_arming_hook
    from schedule_engine.services.synchronizer import DailyScheduleSynchronizer

    install_arming_hook()
    report = DailyScheduleSynchronizer().setup_daily_schedules()
    typer.echo(json.dumps(report.as_dict(), indent=2))


@schedules_app.command("due")
def schedules_due(
    tenant: Optional[str] = typer.Option(None, help="Tenant ID (platform database when omitted)"),
):
    """List active schedules due today."""
    from schedule_engine.db.session import database_manager
    from schedule_engine.services.schedule_service import schedule_service

    db = database_manager.session(tenant)
    try:
        schedules = schedule_service.get_due_today(db)
        if not schedules:
            typer.echo("No schedules due today")
        for s in schedules:
            typer.echo(
                f"  [{s.id}] {s.title} {s.time_of_day} {s.frequency.value} "
                f"next={s.next_run_date.isoformat() if s.next_run_date else '-'}"
            )
    finally:
        db.close()


@app.command("serve")
def serve(
    host: str = typer.Option("0.0.0.0", help="Host"),
    port: int = typer.Option(8000, help="Port"),
    reload: bool = typer.Option(True, help="Auto-reload"),
):
    """Start the FastAPI development server."""
    import uvicorn
    uvicorn.run("schedule_engine.main:app", host=host, port=port, reload=reload)


if __name__ == "__main__":
    app()
