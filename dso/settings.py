from __future__ import annotations

import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    # Core
    db_path: str = os.getenv("DSO_DB_PATH", "dso.db")
    descriptor_path: str = os.getenv("DSO_DESCRIPTOR", "stack.yaml")
    backend: str = os.getenv("DSO_BACKEND", "docker")  # docker|process
    docker_network: str = os.getenv("DSO_DOCKER_NETWORK", "dso")
    poll_interval_s: float = _env_float("DSO_POLL_INTERVAL_S", 1.0)
    probe_workers: int = _env_int("DSO_PROBE_WORKERS", 8)

    # Supervision defaults (a service descriptor may override them)
    fail_threshold: int = _env_int("DSO_FAIL_THRESHOLD", 3)
    max_restarts: int = _env_int("DSO_MAX_RESTARTS", 5)
    restart_base_s: float = _env_float("DSO_RESTART_BASE_S", 1.0)
    max_backoff_s: float = _env_float("DSO_MAX_BACKOFF_S", 60.0)
    start_timeout_s: float = _env_float("DSO_START_TIMEOUT_S", 120.0)
    stop_timeout_s: int = _env_int("DSO_STOP_TIMEOUT_S", 10)
    ready_timeout_s: float = _env_float("DSO_READY_TIMEOUT_S", 60.0)

    # Reverse proxy
    proxy_config_path: str = os.getenv("DSO_PROXY_CONFIG_PATH", "nginx/conf.d/dso.conf")
    proxy_test_cmd: str = os.getenv("DSO_PROXY_TEST_CMD", "nginx -t")
    proxy_reload_cmd: str = os.getenv("DSO_PROXY_RELOAD_CMD", "nginx -s reload")
    acme_webroot: str = os.getenv("DSO_ACME_WEBROOT", "/var/www/certbot")

    # Certificates
    cert_dir: str = os.getenv("DSO_CERT_DIR", "certs")
    certbot_cmd: str = os.getenv("DSO_CERTBOT_CMD", "certbot")
    letsencrypt_dir: str = os.getenv("DSO_LETSENCRYPT_DIR", "/etc/letsencrypt")
    acme_email: str | None = os.getenv("DSO_ACME_EMAIL")
    acme_staging: bool = _env_bool("DSO_ACME_STAGING", False)
    renewal_threshold_days: int = _env_int("DSO_RENEWAL_THRESHOLD_DAYS", 30)
    renewal_check_interval_s: int = _env_int("DSO_RENEWAL_CHECK_INTERVAL_S", 86400)
    challenge_max_attempts: int = _env_int("DSO_CHALLENGE_MAX_ATTEMPTS", 3)
    challenge_backoff_s: float = _env_float("DSO_CHALLENGE_BACKOFF_S", 30.0)

    # Status API
    # ASGI entry point (main.py) also supervises the stack unless disabled.
    supervise: bool = _env_bool("DSO_SUPERVISE", True)
    api_host: str = os.getenv("DSO_API_HOST", "127.0.0.1")
    api_port: int = _env_int("DSO_API_PORT", 8700)

    # Email alerting (optional)
    enable_email: bool = _env_bool("DSO_ENABLE_EMAIL", False)
    smtp_host: str = os.getenv("DSO_SMTP_HOST", "localhost")
    smtp_port: int = _env_int("DSO_SMTP_PORT", 587)
    smtp_user: str | None = os.getenv("DSO_SMTP_USER")
    smtp_password: str | None = os.getenv("DSO_SMTP_PASSWORD")
    email_from: str | None = os.getenv("DSO_EMAIL_FROM")
    email_to: str | None = os.getenv("DSO_EMAIL_TO")


settings = Settings()
