from __future__ import annotations

import os
from dataclasses import dataclass


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


@dataclass(frozen=True)
class Settings:
    app_env: str
    persistence_enabled: bool
    persistence_db_path: str
    database_url: str
    client_ref_start: int
    client_ref_force: bool
    meta_pixel_id: str
    meta_access_token: str
    meta_api_version: str
    meta_api_base_url: str
    meta_test_event_code: str
    delivery_timeout_seconds: float
    default_currency: str
    default_event_source_url: str
    default_contact_phone: str
    default_message_template: str
    chat_webhook_secret: str
    payment_webhook_secret: str
    auth_enabled: bool
    jwt_secret: str
    jwt_algorithm: str

    @property
    def client_ref_seed(self) -> int:
        return self.client_ref_start - 1

    @property
    def delivery_enabled(self) -> bool:
        return bool(self.meta_pixel_id and self.meta_access_token)

    def default_message(self, client_ref: str) -> str:
        return self.default_message_template.replace("{client_ref}", str(client_ref))


def load_settings() -> Settings:
    persistence_db_path = os.getenv("PERSISTENCE_DB_PATH", "data/funnel_tracker.sqlite3").strip()
    database_url = os.getenv("DATABASE_URL", "").strip()
    if not database_url:
        database_url = f"sqlite:///{persistence_db_path.replace(chr(92), '/')}"
    return Settings(
        app_env=os.getenv("APP_ENV", "development"),
        persistence_enabled=_bool_env("PERSISTENCE_ENABLED", True),
        persistence_db_path=persistence_db_path,
        database_url=database_url,
        client_ref_start=max(1, _int_env("CLIENT_REF_START", 23000)),
        client_ref_force=_bool_env("CLIENT_REF_FORCE", False),
        meta_pixel_id=os.getenv("META_PIXEL_ID", "").strip(),
        meta_access_token=os.getenv("META_ACCESS_TOKEN", "").strip(),
        meta_api_version=os.getenv("META_API_VERSION", "v18.0").strip(),
        meta_api_base_url=os.getenv(
            "META_API_BASE_URL", "https://graph.facebook.com"
        ).strip().rstrip("/"),
        meta_test_event_code=os.getenv("META_TEST_EVENT_CODE", "").strip(),
        delivery_timeout_seconds=max(1.0, _float_env("DELIVERY_TIMEOUT_SECONDS", 10.0)),
        default_currency=os.getenv("DEFAULT_CURRENCY", "BRL").strip().upper() or "BRL",
        default_event_source_url=os.getenv("DEFAULT_EVENT_SOURCE_URL", "").strip(),
        default_contact_phone=os.getenv("DEFAULT_CONTACT_PHONE", "").strip(),
        default_message_template=os.getenv(
            "DEFAULT_MESSAGE_TEMPLATE",
            "Olá! Quero mais informações. cliente#{client_ref}",
        ),
        chat_webhook_secret=os.getenv("CHAT_WEBHOOK_SECRET", "").strip(),
        payment_webhook_secret=os.getenv("PAYMENT_WEBHOOK_SECRET", "").strip(),
        auth_enabled=_bool_env("AUTH_ENABLED", False),
        jwt_secret=os.getenv("JWT_SECRET", "dev-only-secret-change-in-prod").strip(),
        jwt_algorithm=os.getenv("JWT_ALGORITHM", "HS256").strip(),
    )
