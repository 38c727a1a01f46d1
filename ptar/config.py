from pathlib import Path
from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # App
    app_name: str = "PTAR Operations"
    debug: bool = False
    environment: str = "development"  # development | staging | production
    log_level: str = "INFO"

    # Storage
    db_dir: str = "./data"
    db_file: str = "ptar.sqlite"
    saas_db_file: str = "ptar_saas.sqlite"
    upload_dir: str = "./uploads"
    max_document_mb: int = 100

    # HTTP
    cors_origins: str = "*"
    cors_allow_credentials: bool = True
    rate_limit: str = "200/minute"
    login_rate_limit: str = "10/minute"
    write_rate_limit: str = "60/minute"

    # Auth
    jwt_secret: str = "change-me"
    jwt_algorithm: str = "HS256"
    jwt_expire_minutes: int = 480
    cookie_name: str = "session"
    cookie_samesite: str = "lax"
    cookie_domain: Optional[str] = None
    cookie_secure: bool = False
    admin_default_email: str = "admin@ptar.local"
    admin_default_password: str = "admin123"

    # Email
    smtp_host: Optional[str] = None
    smtp_port: int = 587
    smtp_user: Optional[str] = None
    smtp_pass: Optional[str] = None
    smtp_from: str = "PTAR System <noreply@santapriscila.com>"
    admin_email: Optional[str] = None
    notification_emails: str = ""
    emergency_email_recipients: str = ""
    maintenance_reminder_emails: str = ""
    ticket_notification_emails: str = ""
    whatsapp_support_number: str = ""

    # Background jobs
    scheduler_enabled: bool = True
    scheduler_startup_delay_seconds: int = 10
    seed_demo_data: bool = True

    # Template conversion
    libreoffice_bin: str = "libreoffice"
    libreoffice_timeout_seconds: int = 60

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def db_path(self) -> Path:
        return Path(self.db_dir) / self.db_file

    @property
    def saas_db_path(self) -> Path:
        return Path(self.db_dir) / self.saas_db_file

    def get_cors_origins_list(self) -> List[str]:
        if self.cors_origins.strip() == "*":
            return ["*"]
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    def split_emails(self, value: Optional[str]) -> List[str]:
        """Comma separated address list; falls back to ADMIN_EMAIL when empty."""
        emails = [e.strip() for e in (value or "").split(",") if e.strip()]
        if not emails and self.admin_email:
            emails = [self.admin_email]
        return emails

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        env_prefix="",
        extra="ignore",
    )


settings = Settings()
