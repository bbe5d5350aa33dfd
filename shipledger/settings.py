from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

_TRUTHY = frozenset({"1", "true", "yes", "on"})


def durable_store_required(environ: Mapping[str, str] | None = None) -> bool:
    """True when startup must fail instead of degrading to the fallback store."""
    env = os.environ if environ is None else environ
    return env.get("SHIPLEDGER_REQUIRE_DURABLE", "").strip().lower() in _TRUTHY


def _env_int(env: Mapping[str, str], name: str, *, default: int, minimum: int) -> int:
    raw = env.get(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, value)


def _env_float(env: Mapping[str, str], name: str, *, default: float, minimum: float) -> float:
    raw = env.get(name, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return max(minimum, value)


@dataclass
class LedgerSettings:
    sqlite_path: str = ".runtime/shipledger.sqlite3"
    fallback_path: str = ""
    fallback_max_bytes: int = 5 * 1024 * 1024
    mirror_backend: str = "none"
    redis_dsn: str = ""
    mirror_key_prefix: str = "shipledger"
    import_chunk_size: int = 50
    import_max_attempts: int = 3
    import_retry_base_delay_s: float = 1.0
    import_yield_s: float = 0.01
    store_tx_timeout_s: float = 30.0
    snapshot_batch_size: int = 500
    stale_warning_days: int = 10
    stale_lost_days: int = 14
    require_durable: bool = False

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "LedgerSettings":
        env = os.environ if environ is None else environ
        return cls(
            sqlite_path=env.get("SHIPLEDGER_SQLITE_PATH", "").strip() or ".runtime/shipledger.sqlite3",
            fallback_path=env.get("SHIPLEDGER_FALLBACK_PATH", "").strip(),
            fallback_max_bytes=_env_int(
                env, "SHIPLEDGER_FALLBACK_MAX_BYTES", default=5 * 1024 * 1024, minimum=1024
            ),
            mirror_backend=env.get("SHIPLEDGER_MIRROR_BACKEND", "none").strip().lower() or "none",
            redis_dsn=env.get("REDIS_DSN", "").strip(),
            mirror_key_prefix=env.get("SHIPLEDGER_MIRROR_KEY_PREFIX", "shipledger").strip() or "shipledger",
            import_chunk_size=_env_int(env, "SHIPLEDGER_IMPORT_CHUNK_SIZE", default=50, minimum=1),
            import_max_attempts=_env_int(env, "SHIPLEDGER_IMPORT_MAX_ATTEMPTS", default=3, minimum=1),
            import_retry_base_delay_s=_env_int(env, "SHIPLEDGER_IMPORT_RETRY_BASE_MS", default=1000, minimum=0)
            / 1000.0,
            import_yield_s=_env_int(env, "SHIPLEDGER_IMPORT_YIELD_MS", default=10, minimum=0) / 1000.0,
            store_tx_timeout_s=_env_float(env, "SHIPLEDGER_STORE_TX_TIMEOUT_S", default=30.0, minimum=0.1),
            snapshot_batch_size=_env_int(env, "SHIPLEDGER_SNAPSHOT_BATCH_SIZE", default=500, minimum=1),
            stale_warning_days=_env_int(env, "SHIPLEDGER_STALE_WARNING_DAYS", default=10, minimum=1),
            stale_lost_days=_env_int(env, "SHIPLEDGER_STALE_LOST_DAYS", default=14, minimum=1),
            require_durable=durable_store_required(env),
        )
