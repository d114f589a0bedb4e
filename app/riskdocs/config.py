import os
from dataclasses import dataclass

_TRUTHY = ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    secret_key: str
    env: str
    database_url: str

    # Locked artifacts: local directory or an S3-compatible bucket.
    storage_backend: str
    storage_root: str
    s3_endpoint: str
    s3_region: str
    s3_bucket: str
    s3_access_key_id: str
    s3_secret_access_key: str

    approval_required: bool
    lineage_lock_timeout: float
    max_artifact_mb: int

    @property
    def is_production(self) -> bool:
        return self.env.lower() in ("prod", "production")


def _env(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def _env_bool(name: str, default: bool) -> bool:
    raw = _env(name)
    return raw.lower() in _TRUTHY if raw else default


def _env_number(name: str, default: float, cast=float):
    raw = _env(name)
    if not raw:
        return default
    try:
        value = cast(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be a number (got {raw!r}).")
    if value < 0:
        raise RuntimeError(f"{name} must not be negative (got {raw!r}).")
    return value


def load_settings() -> Settings:
    return Settings(
        secret_key=_env("SECRET_KEY", "change-me"),
        env=_env("ENV", "development"),
        database_url=_env("DATABASE_URL", "sqlite:///riskdocs.db"),
        storage_backend=_env("STORAGE_BACKEND", "local").lower(),
        storage_root=_env("STORAGE_ROOT"),
        s3_endpoint=_env("S3_ENDPOINT"),
        s3_region=_env("S3_REGION", "nyc3"),
        s3_bucket=_env("S3_BUCKET"),
        s3_access_key_id=_env("S3_ACCESS_KEY_ID"),
        s3_secret_access_key=_env("S3_SECRET_ACCESS_KEY"),
        approval_required=_env_bool("APPROVAL_REQUIRED", True),
        lineage_lock_timeout=_env_number("LINEAGE_LOCK_TIMEOUT", 10.0),
        max_artifact_mb=_env_number("MAX_ARTIFACT_MB", 25, int),
    )


def load_config() -> dict:
    """Flask config mapping built from the environment."""
    s = load_settings()
    return {
        "SECRET_KEY": s.secret_key,
        "ENV": s.env,
        "DATABASE_URL": s.database_url,
        "STORAGE_BACKEND": s.storage_backend,
        "STORAGE_ROOT": s.storage_root,
        "S3_ENDPOINT": s.s3_endpoint,
        "S3_REGION": s.s3_region,
        "S3_BUCKET": s.s3_bucket,
        "S3_ACCESS_KEY_ID": s.s3_access_key_id,
        "S3_SECRET_ACCESS_KEY": s.s3_secret_access_key,
        "APPROVAL_REQUIRED": s.approval_required,
        "LINEAGE_LOCK_TIMEOUT": s.lineage_lock_timeout,
        "SESSION_COOKIE_HTTPONLY": True,
        "SESSION_COOKIE_SAMESITE": "Lax",
        "SESSION_COOKIE_SECURE": s.is_production,
        # Upload cap for rendered artifacts on /issue.
        "MAX_CONTENT_LENGTH": s.max_artifact_mb * 1024 * 1024,
    }
