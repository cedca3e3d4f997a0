from __future__ import annotations

import os
from datetime import timedelta


def _get_int(name: str, default: int) -> int:
    val = os.getenv(name)
    if val is None or val == "":
        return default
    return int(val)


def _get_float(name: str, default: float) -> float:
    val = os.getenv(name)
    if val is None or val == "":
        return default
    return float(val)


def _get_bool(name: str, default: bool) -> bool:
    val = os.getenv(name)
    if val is None or val == "":
        return default
    return val.strip().lower() in {"1", "true", "yes", "y", "on"}


class Settings:
    host: str = os.getenv("STAMPING_HOST", "127.0.0.1")
    port: int = _get_int("STAMPING_PORT", 8080)

    storage_root: str = os.getenv("STAMPING_STORAGE_ROOT", "./blob-local")

    # TSA
    tsa_url: str = os.getenv("STAMPING_TSA_URL", "http://timestamp.digicert.com")
    tsa_timeout_seconds: float = _get_float("STAMPING_TSA_TIMEOUT", 4.0)
    tsa_max_attempts: int = _get_int("STAMPING_TSA_MAX_ATTEMPTS", 3)
    tsa_backoff_base_seconds: float = _get_float("STAMPING_TSA_BACKOFF_BASE", 1.0)
    tsa_backoff_factor: float = _get_float("STAMPING_TSA_BACKOFF_FACTOR", 2.0)
    tsa_use_nonce: bool = _get_bool("STAMPING_TSA_USE_NONCE", True)
    tsa_cert_req: bool = _get_bool("STAMPING_TSA_CERT_REQ", True)
    tsa_policy_oid: str | None = os.getenv("STAMPING_TSA_POLICY_OID") or None
    tsa_accept_granted_with_mods: bool = _get_bool("STAMPING_TSA_ACCEPT_GRANTED_WITH_MODS", True)
    tsa_user: str | None = os.getenv("STAMPING_TSA_USER") or None
    tsa_pass: str | None = os.getenv("STAMPING_TSA_PASS") or None

    # Idempotency
    idempotency_ttl_seconds: int = _get_int("STAMPING_IDEMPOTENCY_TTL_SECONDS", 86400)
    idempotency_cleanup_interval_seconds: int = _get_int("STAMPING_IDEMPOTENCY_CLEANUP_INTERVAL", 300)
    idempotency_wait_seconds: float = _get_float("STAMPING_IDEMPOTENCY_WAIT_SECONDS", 30.0)

    @property
    def idempotency_ttl(self) -> timedelta:
        return timedelta(seconds=self.idempotency_ttl_seconds)


settings = Settings()
