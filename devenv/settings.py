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
    # Diagnostics
    db_path: str = os.getenv("DEVENV_DB_PATH", "devenv.db")
    log_level: str = os.getenv("DEVENV_LOG_LEVEL", "INFO")

    # Container runtime
    docker_host: str | None = os.getenv("DEVENV_DOCKER_HOST") or None
    docker_network: str = os.getenv("DEVENV_DOCKER_NETWORK", "devenv-network")
    status_timeout_s: float = _env_float("DEVENV_STATUS_TIMEOUT_S", 3.0)
    stats_timeout_s: float = _env_float("DEVENV_STATS_TIMEOUT_S", 2.0)
    stop_timeout_s: int = _env_int("DEVENV_STOP_TIMEOUT_S", 10)
    ready_timeout_s: float = _env_float("DEVENV_READY_TIMEOUT_S", 60.0)
    ready_poll_s: float = _env_float("DEVENV_READY_POLL_S", 1.0)
    max_file_bytes: int = _env_int("DEVENV_MAX_FILE_BYTES", 100 * 1024 * 1024)
    bind_host_ip: str = os.getenv("DEVENV_BIND_HOST_IP", "0.0.0.0")

    # Ports
    port_scan_attempts: int = _env_int("DEVENV_PORT_SCAN_ATTEMPTS", 100)

    # Helper containers
    helper_image: str = os.getenv("DEVENV_HELPER_IMAGE", "alpine:latest")
    rsync_image: str = os.getenv("DEVENV_RSYNC_IMAGE", "devenv-rsync-alpine:latest")
    copy_timeout_s: float = _env_float("DEVENV_COPY_TIMEOUT_S", 300.0)
    sync_timeout_s: float = _env_float("DEVENV_SYNC_TIMEOUT_S", 1800.0)
    max_concurrent_syncs: int = _env_int("DEVENV_MAX_CONCURRENT_SYNCS", 2)

    # Reverse proxy
    proxy_service_id: str = os.getenv("DEVENV_PROXY_SERVICE_ID", "caddy")
    proxy_config_path: str = os.getenv("DEVENV_PROXY_CONFIG_PATH", "/etc/caddy/Caddyfile")
    proxy_root_cert_path: str = os.getenv(
        "DEVENV_PROXY_ROOT_CERT_PATH", "/data/caddy/pki/authorities/local/root.crt"
    )
    proxy_bootstrap_domain: str = os.getenv("DEVENV_PROXY_BOOTSTRAP_DOMAIN", "devenv.local")
    forwarded_port: int = _env_int("DEVENV_FORWARDED_PORT", 8443)
    cert_timeout_s: float = _env_float("DEVENV_CERT_TIMEOUT_S", 30.0)
    cert_poll_s: float = _env_float("DEVENV_CERT_POLL_S", 2.0)

    # Event monitor
    reconcile_debounce_s: float = _env_float("DEVENV_RECONCILE_DEBOUNCE_S", 0.5)
    reconnect_delay_s: float = _env_float("DEVENV_RECONNECT_DELAY_S", 5.0)
    liveness_interval_s: float = _env_float("DEVENV_LIVENESS_INTERVAL_S", 30.0)
    auto_monitor: bool = _env_bool("DEVENV_AUTO_MONITOR", True)

    # HTTP API
    api_host: str = os.getenv("DEVENV_API_HOST", "127.0.0.1")
    api_port: int = _env_int("DEVENV_API_PORT", 8000)


settings = Settings()
