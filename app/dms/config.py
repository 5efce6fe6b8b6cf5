import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    secret_key: str
    env: str
    database_url: str
    app_base_url: str

    storage_backend: str
    storage_root: str
    s3_endpoint: str
    s3_region: str
    s3_bucket: str
    s3_access_key_id: str
    s3_secret_access_key: str

    mail_backend: str
    smtp_server: str
    smtp_port: int
    smtp_use_tls: bool
    smtp_username: str
    smtp_password: str
    email_from: str

    mfa_login_required: bool


def _getenv(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def _getbool(name: str, default: str = "0") -> bool:
    return _getenv(name, default).lower() in ("1", "true", "yes", "on")


def load_settings() -> Settings:
    return Settings(
        secret_key=_getenv("SECRET_KEY", "change-me"),
        env=_getenv("ENV", "development"),
        database_url=_getenv("DATABASE_URL", "sqlite:///dms.db"),
        app_base_url=_getenv("APP_BASE_URL", "http://localhost:8080").rstrip("/"),
        storage_backend=_getenv("STORAGE_BACKEND", "local"),
        storage_root=_getenv("STORAGE_ROOT", ""),
        s3_endpoint=_getenv("S3_ENDPOINT", ""),
        s3_region=_getenv("S3_REGION", "nyc3"),
        s3_bucket=_getenv("S3_BUCKET", ""),
        s3_access_key_id=_getenv("S3_ACCESS_KEY_ID", ""),
        s3_secret_access_key=_getenv("S3_SECRET_ACCESS_KEY", ""),
        mail_backend=_getenv("MAIL_BACKEND", "console"),
        smtp_server=_getenv("SMTP_SERVER", ""),
        smtp_port=int(_getenv("SMTP_PORT", "587") or "587"),
        smtp_use_tls=_getbool("SMTP_USE_TLS", "1"),
        smtp_username=_getenv("SMTP_USERNAME", ""),
        smtp_password=_getenv("SMTP_PASSWORD", ""),
        email_from=_getenv("EMAIL_FROM", "no-reply@dealership.local"),
        mfa_login_required=_getbool("MFA_LOGIN_REQUIRED", "1"),
    )


def load_config() -> dict:
    s = load_settings()
    is_production = s.env in ("prod", "production")
    return {
        "SECRET_KEY": s.secret_key,
        "ENV": s.env,
        "DATABASE_URL": s.database_url,
        "APP_BASE_URL": s.app_base_url,
        "STORAGE_BACKEND": s.storage_backend,
        "STORAGE_ROOT": s.storage_root,
        "S3_ENDPOINT": s.s3_endpoint,
        "S3_REGION": s.s3_region,
        "S3_BUCKET": s.s3_bucket,
        "S3_ACCESS_KEY_ID": s.s3_access_key_id,
        "S3_SECRET_ACCESS_KEY": s.s3_secret_access_key,
        "MAIL_BACKEND": s.mail_backend,
        "SMTP_SERVER": s.smtp_server,
        "SMTP_PORT": s.smtp_port,
        "SMTP_USE_TLS": s.smtp_use_tls,
        "SMTP_USERNAME": s.smtp_username,
        "SMTP_PASSWORD": s.smtp_password,
        "EMAIL_FROM": s.email_from,
        "MFA_LOGIN_REQUIRED": s.mfa_login_required,
        # security defaults
        "SESSION_COOKIE_HTTPONLY": True,
        "SESSION_COOKIE_SAMESITE": "Lax",
        "SESSION_COOKIE_SECURE": is_production,  # Require HTTPS in production
        # file upload limits (25MB)
        "MAX_CONTENT_LENGTH": 25 * 1024 * 1024,
    }
