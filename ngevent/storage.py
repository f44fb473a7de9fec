"""Database initialization and helpers."""

from __future__ import annotations

import shutil
from pathlib import Path

from alembic import command
from alembic.config import Config
from sqlalchemy import inspect, select

from .config import settings
from .database import engine, get_session
from .models import EmailTemplate

DEFAULT_EMAIL_TEMPLATES: dict[str, dict[str, str]] = {
    "welcome": {
        "subject": "Welcome to NGEvent, {{user_name}}!",
        "html_body": (
            "<h1>Welcome to NGEvent!</h1>"
            "<p>Hi {{user_name}},</p>"
            "<p>Your account is ready. Discover events near you at "
            '<a href="{{base_url}}/events">{{base_url}}/events</a>.</p>'
        ),
        "text_body": (
            "Hi {{user_name}},\n\nYour account is ready. "
            "Discover events at {{base_url}}/events."
        ),
    },
    "registration_confirmation": {
        "subject": "Registration confirmed: {{event_title}}",
        "html_body": (
            "<h1>You're registered!</h1>"
            "<p>Hi {{user_name}}, you are registered for "
            "<strong>{{event_title}}</strong>.</p>"
            "<p>When: {{event_date}}<br>Where: {{event_location}}<br>"
            "Organizer: {{organizer_name}}</p>"
            '<p><a href="{{base_url}}/events/{{event_id}}">View event</a></p>'
        ),
        "text_body": (
            "Hi {{user_name}}, you are registered for {{event_title}} on "
            "{{event_date}} at {{event_location}}. "
            "Details: {{base_url}}/events/{{event_id}}"
        ),
    },
}


def init_db() -> None:
    upgrade_database(make_backup=False)
    ensure_email_templates()


def _alembic_config() -> Config:
    package_dir = Path(__file__).resolve().parent
    script_location = package_dir / "alembic"
    ini_path = script_location.parent / "alembic.ini"

    config = Config(str(ini_path)) if ini_path.exists() else Config()
    config.set_main_option("script_location", str(script_location))
    # ConfigParser interpolates "%"; encoded URL characters must be doubled.
    config.set_main_option(
        "sqlalchemy.url",
        engine.url.render_as_string(hide_password=False).replace("%", "%%"),
    )
    return config


def upgrade_database(*, make_backup: bool = True) -> list[str]:
    """Upgrade the database schema in-place.

    Returns a list of applied actions; empty if already up-to-date.
    """
    actions: list[str] = []
    db_path = Path(settings.database_path)

    if make_backup and engine.dialect.name == "sqlite" and db_path.exists():
        backup_path = db_path.with_suffix(db_path.suffix + ".bak")
        shutil.copy(db_path, backup_path)
        actions.append(f"Backup created at {backup_path}")

    inspector = inspect(engine)
    has_alembic = inspector.has_table("alembic_version")
    has_events = inspector.has_table("events")
    config = _alembic_config()

    if not has_alembic and not has_events:
        command.upgrade(config, "head")
        actions.append("Ran Alembic upgrade to head (fresh database)")
    elif not has_alembic:
        # Tables created outside Alembic (e.g. create_all): baseline them.
        command.stamp(config, "head")
        actions.append("Stamped existing database to Alembic head")
    else:
        command.upgrade(config, "head")
        actions.append("Applied Alembic migrations to head")

    return actions


def ensure_email_templates() -> list[str]:
    """Insert the default email templates that are missing."""
    created: list[str] = []
    with get_session() as session:
        existing = set(session.scalars(select(EmailTemplate.template_type)).all())
        for template_type, body in DEFAULT_EMAIL_TEMPLATES.items():
            if template_type in existing:
                continue
            session.add(EmailTemplate(template_type=template_type, active=True, **body))
            created.append(template_type)
    return created
