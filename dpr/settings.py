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


_CONFIG_DIR = os.getenv("DPR_CONFIG_DIR", "/opt/nginx/conf.d/auto-generated")


@dataclass(frozen=True)
class Settings:
    # Docker
    docker_network: str = os.getenv("DPR_DOCKER_NETWORK", "app-network")
    create_network: bool = _env_bool("DPR_CREATE_NETWORK", False)
    label_prefix: str = os.getenv("DPR_LABEL_PREFIX", "nginx.")

    # Generated artifacts
    config_dir: str = _CONFIG_DIR
    # Same directory as seen by the nginx process (differs when nginx runs in a container).
    proxy_config_dir: str = os.getenv("DPR_PROXY_CONFIG_DIR", _CONFIG_DIR)
    upstreams_file: str = os.getenv("DPR_UPSTREAMS_FILE", "upstreams.inc")
    locations_file: str = os.getenv("DPR_LOCATIONS_FILE", "locations.inc")

    # Proxy control
    nginx_container: str = os.getenv("DPR_NGINX_CONTAINER", "")
    nginx_bin: str = os.getenv("DPR_NGINX_BIN", "nginx")
    reload_cmd: str = os.getenv("DPR_RELOAD_CMD", "nginx -s reload")
    listen_port: int = _env_int("DPR_LISTEN_PORT", 80)
    proxy_health_url: str = os.getenv("DPR_PROXY_HEALTH_URL", "")

    # Reconciliation
    collision_policy: str = os.getenv("DPR_COLLISION_POLICY", "reject")  # reject|last-wins
    cycle_timeout_s: float = _env_float("DPR_CYCLE_TIMEOUT_S", 30.0)
    command_timeout_s: float = _env_float("DPR_COMMAND_TIMEOUT_S", 20.0)
    start_settle_s: float = _env_float("DPR_START_SETTLE_S", 2.0)
    reconnect_initial_s: float = _env_float("DPR_RECONNECT_INITIAL_S", 1.0)
    reconnect_max_s: float = _env_float("DPR_RECONNECT_MAX_S", 30.0)

    # Audit / logging
    db_path: str = os.getenv("DPR_DB_PATH", "dpr.db")
    log_file: str = os.getenv("DPR_LOG_FILE", "")
    log_level: str = os.getenv("DPR_LOG_LEVEL", "INFO")

    @property
    def staging_dir(self) -> str:
        return os.path.join(self.config_dir, ".staging")

    @property
    def proxy_staging_dir(self) -> str:
        return os.path.join(self.proxy_config_dir, ".staging")


settings = Settings()
