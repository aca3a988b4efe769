"""MeshDeck CLI tool (meshctl)."""

import typer
from sqlalchemy.engine import make_url

app = typer.Typer(name="meshctl", help="MeshDeck CLI")
db_app = typer.Typer(help="Database management commands")
app.add_typer(db_app, name="db")
roles_app = typer.Typer(help="Role assignment commands")
app.add_typer(roles_app, name="roles")


@db_app.command("create")
def db_create():
    """Create the MySQL database if it doesn't exist."""
    import pymysql
    from meshdeck.core.config import settings

    url = make_url(settings.DATABASE_URL)
    if not url.drivername.startswith("mysql"):
        typer.echo(f"Nothing to create for {url.drivername}")
        raise typer.Exit()

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
        typer.echo(f"Database '{url.database}' created (or already exists)")
    finally:
        conn.close()


@db_app.command("init")
def db_init():
    """Create any missing tables."""
    from meshdeck.db.session import Database

    database = Database()
    try:
        database.create_all()
    finally:
        database.dispose()
    typer.echo("Tables created")


@db_app.command("seed")
def db_seed():
    """Seed roles, permissions, and role-permission assignments."""
    from meshdeck.db.seeds.seed_rbac import seed_rbac
    from meshdeck.db.session import Database

    database = Database()
    db = database.session()
    try:
        seed_rbac(db)
    finally:
        db.close()
        database.dispose()
    typer.echo("Role catalog seeded")


@roles_app.command("list")
def roles_list(subject: str = typer.Argument(..., help="Identity-provider subject")):
    """Show the roles held by a user."""
    from meshdeck.db.session import Database
    from meshdeck.models.user import User

    database = Database()
    db = database.session()
    try:
        user = db.query(User).filter(User.oidc_subject == subject).first()
        if not user:
            typer.echo(f"No user with subject {subject}", err=True)
            raise typer.Exit(code=1)
        for ur in sorted(user.roles, key=lambda ur: -ur.role.level):
            typer.echo(f"  {ur.role.name:<10} {ur.source.value}")
    finally:
        db.close()
        database.dispose()


@roles_app.command("grant")
def roles_grant(
    subject: str = typer.Argument(..., help="Identity-provider subject"),
    role: str = typer.Argument(..., help="Role name, e.g. ADMIN"),
):
    """Grant a role directly, bypassing the API. For recovering a lost owner."""
    from meshdeck.core.exceptions import MeshDeckError
    from meshdeck.core.rbac import parse_role
    from meshdeck.db.session import Database
    from meshdeck.models.user import User
    from meshdeck.services.audit_service import AuditAction, AuditEntry, AuditResourceType, audit_service
    from meshdeck.services.identity_sync import identity_sync_service

    try:
        role_name = parse_role(role)
    except ValueError as e:
        typer.echo(str(e), err=True)
        raise typer.Exit(code=1)

    database = Database()
    db = database.session()
    try:
        user = db.query(User).filter(User.oidc_subject == subject).first()
        if not user:
            typer.echo(f"No user with subject {subject}; they must log in once first", err=True)
            raise typer.Exit(code=1)
        try:
            identity_sync_service.assign_role(db, user.id, role_name)
        except MeshDeckError as e:
            typer.echo(e.message, err=True)
            raise typer.Exit(code=1)
        outcome = audit_service.log(db, AuditEntry(
            action=AuditAction.ASSIGN_ROLE,
            resource_type=AuditResourceType.ROLE,
            resource_id=role_name.value,
            metadata={"targetUserId": user.id, "roleName": role_name.value, "via": "cli"},
        ))
        typer.echo(f"Granted {role_name.value} to {subject} (audit {outcome.header_value})")
    finally:
        db.close()
        database.dispose()


@app.command("serve")
def serve(
    host: str = typer.Option("0.0.0.0", help="Host"),
    port: int = typer.Option(8000, help="Port"),
    reload: bool = typer.Option(False, help="Auto-reload"),
):
    """Start the API server."""
    import uvicorn
    uvicorn.run("meshdeck.main:app", host=host, port=port, reload=reload)


if __name__ == "__main__":
    app()
