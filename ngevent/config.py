"""Global configuration for Ngevent."""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any, Callable

DEFAULTS: dict[str, Any] = {
    "database_url": "",
    "environment": "development",
    "site_url": "http://localhost:8000",
    "app_host": "0.0.0.0",
    "app_port": 8000,
    "cors_origins": "",
    "jwt_secret": "change-me",
    "jwt_expires_hours": 24 * 7,
    "password_reset_hours": 1,
    "email_api_url": "https://api.resend.com",
    "email_api_key": "",
    "email_from": "NGEvent <noreply@ngevent.local>",
    "email_audience_id": "",
    "queue_api_url": "https://qstash.upstash.io",
    "queue_token": "",
    "queue_current_signing_key": "",
    "queue_next_signing_key": "",
    "queue_retries": 3,
    "kv_rest_url": "",
    "kv_rest_token": "",
    "turnstile_secret_key": "",
    "turnstile_verify_url": "https://challenges.cloudflare.com/turnstile/v0/siteverify",
    "upload_cloud_name": "",
    "upload_api_key": "",
    "upload_api_secret": "",
    "upload_folder_prefix": "",
    "webhook_secret": "",
    "basic_auth_enabled": False,
    "basic_auth_username": "",
    "basic_auth_password": "",
    "basic_auth_header": "X-Basic-Auth",
    "basic_auth_protect_paths": "",
    "basic_auth_exempt_paths": "/api/health",
    "events_per_page": 20,
    "max_events_per_page": 100,
    "admin_users_per_page": 50,
    "max_admin_users_per_page": 200,
    "events_cache_seconds": 60,
    "broadcast_batch_size": 100,
    "registration_rate_per_minute": 5,
    "verify_human_rate_per_minute": 10,
    "login_max_failures": 5,
    "login_lock_seconds": 300,
    "enable_scheduler": True,
    "complete_events_interval_minutes": 30,
    "sqlite_vacuum_hours": 12,
    "seed_organizers": 3,
    "seed_events_per_organizer": 3,
    "seed_participants": 10,
    "seed_registrations_per_event": 5,
}

TYPE_CASTERS: dict[str, Callable[[Any], Any]] = {
    "database_url": str,
    "environment": str,
    "site_url": str,
    "app_host": str,
    "app_port": int,
    "cors_origins": str,
    "jwt_secret": str,
    "jwt_expires_hours": int,
    "password_reset_hours": int,
    "email_api_url": str,
    "email_api_key": str,
    "email_from": str,
    "email_audience_id": str,
    "queue_api_url": str,
    "queue_token": str,
    "queue_current_signing_key": str,
    "queue_next_signing_key": str,
    "queue_retries": int,
    "kv_rest_url": str,
    "kv_rest_token": str,
    "turnstile_secret_key": str,
    "turnstile_verify_url": str,
    "upload_cloud_name": str,
    "upload_api_key": str,
    "upload_api_secret": str,
    "upload_folder_prefix": str,
    "webhook_secret": str,
    "basic_auth_enabled": bool,
    "basic_auth_username": str,
    "basic_auth_password": str,
    "basic_auth_header": str,
    "basic_auth_protect_paths": str,
    "basic_auth_exempt_paths": str,
    "events_per_page": int,
    "max_events_per_page": int,
    "admin_users_per_page": int,
    "max_admin_users_per_page": int,
    "events_cache_seconds": int,
    "broadcast_batch_size": int,
    "registration_rate_per_minute": int,
    "verify_human_rate_per_minute": int,
    "login_max_failures": int,
    "login_lock_seconds": int,
    "enable_scheduler": bool,
    "complete_events_interval_minutes": int,
    "sqlite_vacuum_hours": int,
    "seed_organizers": int,
    "seed_events_per_organizer": int,
    "seed_participants": int,
    "seed_registrations_per_event": int,
}

# Keys that must never be echoed back by ``settings_as_dict``.
SECRET_KEYS = {
    "jwt_secret",
    "email_api_key",
    "queue_token",
    "queue_current_signing_key",
    "queue_next_signing_key",
    "kv_rest_token",
    "turnstile_secret_key",
    "upload_api_secret",
    "basic_auth_password",
    "webhook_secret",
}

ENVIRONMENTS = {"development", "production", "test"}
INSECURE_JWT_SECRETS = {"", DEFAULTS["jwt_secret"]}


@dataclass(frozen=True)
class Settings:
    base_dir: Path
    data_dir: Path
    database_path: Path
    database_url: str
    environment: str
    site_url: str
    app_host: str
    app_port: int
    cors_origins: str
    jwt_secret: str
    jwt_expires_hours: int
    password_reset_hours: int
    email_api_url: str
    email_api_key: str
    email_from: str
    email_audience_id: str
    queue_api_url: str
    queue_token: str
    queue_current_signing_key: str
    queue_next_signing_key: str
    queue_retries: int
    kv_rest_url: str
    kv_rest_token: str
    turnstile_secret_key: str
    turnstile_verify_url: str
    upload_cloud_name: str
    upload_api_key: str
    upload_api_secret: str
    upload_folder_prefix: str
    webhook_secret: str
    basic_auth_enabled: bool
    basic_auth_username: str
    basic_auth_password: str
    basic_auth_header: str
    basic_auth_protect_paths: str
    basic_auth_exempt_paths: str
    events_per_page: int
    max_events_per_page: int
    admin_users_per_page: int
    max_admin_users_per_page: int
    events_cache_seconds: int
    broadcast_batch_size: int
    registration_rate_per_minute: int
    verify_human_rate_per_minute: int
    login_max_failures: int
    login_lock_seconds: int
    enable_scheduler: bool
    complete_events_interval_minutes: int
    sqlite_vacuum_hours: int
    seed_organizers: int
    seed_events_per_organizer: int
    seed_participants: int
    seed_registrations_per_event: int
    config_path: Path

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def jwt_lifetime(self) -> timedelta:
        return timedelta(hours=self.jwt_expires_hours)

    @property
    def vacuum_interval(self) -> timedelta:
        return timedelta(hours=self.sqlite_vacuum_hours)

    @property
    def broadcast_worker_url(self) -> str:
        return f"{self.site_url.rstrip('/')}/api/queues/broadcast"

    @property
    def cors_origin_list(self) -> list[str]:
        return _split_csv(self.cors_origins)

    @property
    def basic_auth_protected(self) -> list[str]:
        return _split_csv(self.basic_auth_protect_paths)

    @property
    def basic_auth_exempt(self) -> list[str]:
        return _split_csv(self.basic_auth_exempt_paths)


def _split_csv(raw: str) -> list[str]:
    return [part.strip() for part in (raw or "").split(",") if part.strip()]


def _boolify(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    raise ValueError(f"Cannot parse boolean value from {value!r}")


def _cast_value(key: str, value: Any) -> Any:
    if key not in TYPE_CASTERS:
        return value
    caster = TYPE_CASTERS[key]
    if caster is bool:
        return _boolify(value)
    return caster(value)


def _load_toml_config(config_path: Path) -> dict[str, Any]:
    if not config_path.exists():
        return {}
    with config_path.open("rb") as handle:
        return tomllib.load(handle)


def _config_layered_value(key: str, *, toml_config: dict[str, Any]) -> Any:
    env_key = f"NGEVENT_{key.upper()}"
    if env_key in os.environ:
        return _cast_value(key, os.environ[env_key])
    if key in toml_config:
        return _cast_value(key, toml_config[key])
    return DEFAULTS[key]


def _resolve_paths(
    *,
    base_dir: Path,
    data_dir: str | Path | None,
    database_path: str | Path | None,
):
    resolved_base = Path(base_dir)
    resolved_data = Path(data_dir) if data_dir else resolved_base / "data"
    if not resolved_data.is_absolute():
        resolved_data = resolved_base / resolved_data
    resolved_db = Path(database_path) if database_path else resolved_data / "ngevent.db"
    if not resolved_db.is_absolute():
        resolved_db = resolved_base / resolved_db
    return resolved_base, resolved_data, resolved_db


def load_settings(config_override: Path | None = None) -> Settings:
    base_dir = Path(os.getenv("NGEVENT_BASE_DIR", Path.cwd()))
    env_config = os.getenv("NGEVENT_CONFIG")
    config_path = Path(config_override or env_config or base_dir / "ngevent.toml")
    toml_config = _load_toml_config(config_path)

    base_dir_value, data_dir_value, database_path_value = _resolve_paths(
        base_dir=base_dir,
        data_dir=os.getenv("NGEVENT_DATA_DIR", toml_config.get("data_dir")),
        database_path=os.getenv("NGEVENT_DB", toml_config.get("database_path")),
    )

    values = {key: _config_layered_value(key, toml_config=toml_config) for key in DEFAULTS}
    if values["environment"] not in ENVIRONMENTS:
        raise ValueError(
            f"Unknown environment {values['environment']!r}; "
            f"expected one of {sorted(ENVIRONMENTS)}"
        )
    if values["environment"] == "production" and values["jwt_secret"] in INSECURE_JWT_SECRETS:
        raise ValueError("NGEVENT_JWT_SECRET must be set to a private value in production")
    if not values["database_url"]:
        values["database_url"] = f"sqlite:///{database_path_value}"

    settings = Settings(
        base_dir=base_dir_value,
        data_dir=data_dir_value,
        database_path=database_path_value,
        config_path=config_path,
        **values,
    )
    if settings.database_url.startswith("sqlite"):
        settings.data_dir.mkdir(parents=True, exist_ok=True)
    return settings


def settings_as_dict(settings: Settings) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "base_dir": str(settings.base_dir),
        "data_dir": str(settings.data_dir),
        "database_path": str(settings.database_path),
    }
    for key in DEFAULTS:
        if key in SECRET_KEYS:
            payload[key] = "***" if getattr(settings, key) else ""
            continue
        payload[key] = getattr(settings, key)
    return payload


def _toml_literal(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    escaped = str(value).replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def write_config_file(config: dict[str, Any], *, path: Path) -> None:
    lines = ["# Ngevent configuration\n"]
    for key in sorted(config.keys()):
        lines.append(f"{key} = {_toml_literal(config[key])}\n")
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("".join(lines), encoding="utf-8")


def update_config_file(updates: dict[str, Any], *, path: Path | None = None) -> Settings:
    current_settings = settings if "settings" in globals() else load_settings()
    target_path = path or current_settings.config_path
    existing = _load_toml_config(target_path)
    merged = {**existing}
    for key, value in updates.items():
        if key not in DEFAULTS:
            continue
        merged[key] = _cast_value(key, value)
    write_config_file(merged, path=target_path)
    new_settings = load_settings(target_path)
    globals()["settings"] = new_settings
    return new_settings


settings = load_settings()
