"""Typer CLI for Ngevent."""

from __future__ import annotations

import json
from pathlib import Path

from sqlalchemy.exc import OperationalError
import typer
import uvicorn

from .config import load_settings, settings, settings_as_dict, update_config_file
from .crud import get_user_by_email, set_role as assign_role
from .database import get_session
from .lifecycle import complete_past_events, vacuum_database
from .models import ROLES
from .seed import seed_fake_data
from .storage import ensure_email_templates, init_db, upgrade_database

app = typer.Typer(help="Ngevent command-line interface")


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context) -> None:
    """Show help when no subcommand is provided."""
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())
        raise typer.Exit()


@app.command("upgrade-db")
def upgrade_db(
    no_backup: bool = typer.Option(
        False,
        "--no-backup",
        help="Skip creating a .bak copy of the SQLite database before upgrading",
    ),
) -> None:
    """Upgrade the database schema to the latest migration."""
    try:
        actions = upgrade_database(make_backup=not no_backup)
    except OperationalError as exc:
        message = str(getattr(exc, "orig", exc)).lower()
        if "readonly" in message or "read-only" in message:
            typer.secho(
                "Unable to upgrade because the database is read-only. "
                f"Ensure write access to {settings.database_path}.",
                err=True,
                fg=typer.colors.RED,
            )
            raise typer.Exit(code=1)
        raise

    created = ensure_email_templates()
    if created:
        actions.append(f"Created email templates: {', '.join(created)}")
    if not actions:
        typer.echo("Database already up to date.")
        return

    typer.echo("Database upgrade complete:")
    for action in actions:
        typer.echo(f"- {action}")


@app.command("complete-events")
def complete_events(
    vacuum: bool = typer.Option(
        False,
        "--vacuum",
        help="Run SQLite VACUUM after marking finished events",
    ),
) -> None:
    """Mark finished published events as completed."""
    init_db()
    stats = complete_past_events()
    typer.echo(f"Completed {stats['completed']} events.")
    if vacuum:
        if vacuum_database():
            typer.echo("Database vacuum complete.")
        else:
            typer.echo("Vacuum skipped; database is not SQLite.")


@app.command("set-role")
def set_role(
    email: str = typer.Argument(..., help="Email of the account to update"),
    role: str = typer.Argument(..., help=f"One of: {', '.join(ROLES)}"),
) -> None:
    """Change an account's role, e.g. to bootstrap the first admin."""
    init_db()
    with get_session() as session:
        user = get_user_by_email(session, email)
        if not user or not user.profile:
            typer.secho(f"No account found for {email}", err=True, fg=typer.colors.RED)
            raise typer.Exit(code=1)
        try:
            assign_role(session, user.profile, role)
        except ValueError as exc:
            typer.secho(str(exc), err=True, fg=typer.colors.RED)
            raise typer.Exit(code=1)
    typer.echo(f"{email} is now {role}.")


@app.command("runserver")
def runserver(
    host: str = typer.Option(settings.app_host, "--host", help="Host to bind"),
    port: int = typer.Option(settings.app_port, "--port", help="Port to bind"),
):
    """Start the FastAPI app; the lifespan hook runs the scheduler."""
    config = uvicorn.Config(
        "ngevent.api:app",
        host=host,
        port=port,
        reload=False,
        proxy_headers=True,
        forwarded_allow_ips="*",
    )
    server = uvicorn.Server(config)
    typer.echo(f"Starting Ngevent on {host}:{port}")
    server.run()


@app.command("seed-data")
def seed_data(
    organizers: int = typer.Option(
        settings.seed_organizers, "--organizers", min=0, help="Organizer accounts to create"
    ),
    max_events: int = typer.Option(
        settings.seed_events_per_organizer,
        "--max-events",
        min=1,
        help="Maximum events to create per organizer",
    ),
    participants: int = typer.Option(
        settings.seed_participants,
        "--participants",
        min=0,
        help="Participant accounts to create",
    ),
    max_registrations: int = typer.Option(
        settings.seed_registrations_per_event,
        "--max-registrations",
        min=0,
        help="Maximum registrations to attach to each published event",
    ),
):
    """Populate the database with fake accounts and events for testing."""
    stats = seed_fake_data(
        organizer_count=organizers,
        events_per_organizer=max_events,
        participant_count=participants,
        registrations_per_event=max_registrations,
    )
    typer.echo(
        f"Seed complete: {stats['organizers']} organizers, "
        f"{stats['participants']} participants, {stats['events']} events, "
        f"{stats['registrations']} registrations created."
    )


@app.command("config")
def configure(
    show: bool = typer.Option(
        False, "--show", help="Show the current effective configuration"
    ),
    site_url: str | None = typer.Option(
        None, "--site-url", help="Public base URL used in emails and callbacks"
    ),
    host: str | None = typer.Option(None, "--host", help="Default host for runserver"),
    port: int | None = typer.Option(None, "--port", help="Default port for runserver"),
    events_per_page: int | None = typer.Option(
        None, "--events-per-page", min=1, help="Public pagination size"
    ),
    events_cache_seconds: int | None = typer.Option(
        None, "--events-cache-seconds", min=0, help="Event response cache TTL (0 disables)"
    ),
    complete_interval: int | None = typer.Option(
        None,
        "--complete-interval-minutes",
        min=1,
        help="Minutes between completion sweeps",
    ),
    vacuum_hours: int | None = typer.Option(
        None, "--vacuum-hours", min=1, help="Hours between SQLite VACUUM runs"
    ),
    enable_scheduler: bool | None = typer.Option(
        None,
        "--enable-scheduler/--disable-scheduler",
        help="Toggle the background scheduler",
    ),
    config_path: Path | None = typer.Option(
        None, "--config-path", help="Path to ngevent.toml (default: ./ngevent.toml)"
    ),
):
    """View or update the persistent configuration file."""
    updates = {
        "site_url": site_url,
        "app_host": host,
        "app_port": port,
        "events_per_page": events_per_page,
        "events_cache_seconds": events_cache_seconds,
        "complete_events_interval_minutes": complete_interval,
        "sqlite_vacuum_hours": vacuum_hours,
        "enable_scheduler": enable_scheduler,
    }
    clean_updates = {k: v for k, v in updates.items() if v is not None}

    target_path = config_path or settings.config_path
    if clean_updates:
        settings_ref = update_config_file(clean_updates, path=target_path)
        typer.echo(f"Updated configuration in {target_path}")
    else:
        settings_ref = load_settings(target_path)
    if show or not clean_updates:
        effective = settings_as_dict(settings_ref)
        effective["config_path"] = str(target_path)
        typer.echo(json.dumps(effective, indent=2))


if __name__ == "__main__":
    app()
