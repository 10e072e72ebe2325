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


@dataclass(frozen=True)
class Settings:
    # Core
    db_path: str = os.getenv("GWSYNC_DB_PATH", "gwsync.db")
    poll_interval_s: int = _env_int("GWSYNC_POLL_INTERVAL_S", 5)
    gateway_timeout_s: int = _env_int("GWSYNC_GATEWAY_TIMEOUT_S", 10)

    # Registry
    registry: str = os.getenv("GWSYNC_REGISTRY", "kubernetes")  # kubernetes|docker|static
    kubernetes_master: str = os.getenv("GWSYNC_KUBERNETES_MASTER", "http://localhost:8080")
    namespace: str = os.getenv("GWSYNC_NAMESPACE", "")
    registry_timeout_s: int = _env_int("GWSYNC_REGISTRY_TIMEOUT_S", 10)
    docker_label_prefix: str = os.getenv("GWSYNC_DOCKER_LABEL_PREFIX", "gwsync.")

    # Selection: "k=v,k2=v2;k3=v3" -> two groups
    selectors: str = os.getenv("GWSYNC_SELECTORS", "")

    # Downstream registration gate (API manager)
    use_api_manager: bool = _env_bool("GWSYNC_USE_API_MANAGER", False)
    gate_policy: str = os.getenv("GWSYNC_GATE_POLICY", "truncate")  # truncate|skip


settings = Settings()
