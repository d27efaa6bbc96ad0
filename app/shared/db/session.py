"""
Async engine and session factory for the provisioning ledger.

The engine is built lazily on first use so importing the module never opens a
connection. Postgres goes through asyncpg; tests run on aiosqlite.
"""

import ssl
import time
from threading import Lock
from typing import Any, AsyncGenerator, Dict, Optional

import structlog
from sqlalchemy import event, text
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from app.shared.core.config import get_settings

logger = structlog.get_logger()

# Mappers must be registered before the first session is opened.
import app.models  # noqa: F401, E402

IN_MEMORY_SQLITE = "sqlite+aiosqlite:///:memory:"
SSL_MODES = ("disable", "require", "verify-ca", "verify-full")

_engine: Optional[AsyncEngine] = None
_session_maker: Optional[async_sessionmaker[AsyncSession]] = None
_lock = Lock()


def _normalize_db_url(raw_url: str) -> str:
    url = (raw_url or "").strip()
    for prefix in ("postgresql://", "postgres://"):
        if url.startswith(prefix):
            return "postgresql+asyncpg://" + url[len(prefix):]
    return url


def _resolve_effective_url(settings_obj: Any) -> str:
    url = _normalize_db_url(str(getattr(settings_obj, "DATABASE_URL", "") or ""))
    if getattr(settings_obj, "TESTING", False) and "sqlite" not in url:
        # A test run must never reach a real ledger.
        return IN_MEMORY_SQLITE
    return url


def _ssl_context(mode: str, ca_cert: Optional[str]) -> Any:
    if mode == "disable":
        logger.warning("database_ssl_disabled")
        return False
    if mode == "require":
        context = ssl.create_default_context()
        if ca_cert:
            context.load_verify_locations(cafile=ca_cert)
        else:
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
            logger.warning("database_ssl_unverified")
        return context
    if not ca_cert:
        raise ValueError(f"DB_SSL_CA_CERT_PATH required for ssl_mode={mode}")
    context = ssl.create_default_context(cafile=ca_cert)
    context.check_hostname = mode == "verify-full"
    return context


def _build_connect_args(settings_obj: Any, effective_url: str) -> dict[str, Any]:
    if "postgresql" not in effective_url:
        return {}
    mode = str(getattr(settings_obj, "DB_SSL_MODE", "require")).lower()
    if mode not in SSL_MODES:
        raise ValueError(f"Invalid DB_SSL_MODE: {mode}. Use one of {', '.join(SSL_MODES)}")
    return {
        # Transaction poolers (pgbouncer) cannot keep prepared statements.
        "statement_cache_size": 0,
        "ssl": _ssl_context(mode, getattr(settings_obj, "DB_SSL_CA_CERT_PATH", None)),
    }


def _build_pool_config(settings_obj: Any, effective_url: str) -> dict[str, Any]:
    config: dict[str, Any] = {
        "pool_pre_ping": True,
        "echo": bool(getattr(settings_obj, "DB_ECHO", False)),
    }
    if "sqlite" in effective_url:
        config["poolclass"] = StaticPool
        return config
    config.update(
        pool_size=int(getattr(settings_obj, "DB_POOL_SIZE", 10)),
        max_overflow=int(getattr(settings_obj, "DB_MAX_OVERFLOW", 10)),
        pool_timeout=int(getattr(settings_obj, "DB_POOL_TIMEOUT", 30)),
        pool_recycle=int(getattr(settings_obj, "DB_POOL_RECYCLE", 3600)),
    )
    return config


def _watch_slow_queries(engine: AsyncEngine, threshold: float) -> None:
    def before(conn: Connection, *_: Any) -> None:
        conn.info.setdefault("query_start_time", []).append(time.perf_counter())

    def after(conn: Connection, _cursor: Any, statement: str, *_: Any) -> None:
        elapsed = time.perf_counter() - conn.info["query_start_time"].pop()
        if elapsed > threshold:
            logger.warning(
                "slow_query_detected",
                duration_seconds=round(elapsed, 3),
                threshold_seconds=threshold,
                statement=statement[:200],
            )

    event.listen(engine.sync_engine, "before_cursor_execute", before)
    event.listen(engine.sync_engine, "after_cursor_execute", after)


def _build_db_runtime() -> tuple[AsyncEngine, async_sessionmaker[AsyncSession]]:
    settings_obj = get_settings()
    if not str(getattr(settings_obj, "DATABASE_URL", "") or "").strip() and not getattr(
        settings_obj, "TESTING", False
    ):
        raise ValueError("DATABASE_URL is not set. The application cannot start.")

    url = _resolve_effective_url(settings_obj)
    engine = create_async_engine(
        url,
        **_build_pool_config(settings_obj, url),
        connect_args=_build_connect_args(settings_obj, url),
    )
    threshold = float(getattr(settings_obj, "DB_SLOW_QUERY_THRESHOLD_SECONDS", 0.2) or 0.2)
    _watch_slow_queries(engine, threshold)
    return engine, async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


def _runtime() -> tuple[AsyncEngine, async_sessionmaker[AsyncSession]]:
    global _engine, _session_maker
    with _lock:
        if _engine is None or _session_maker is None:
            _engine, _session_maker = _build_db_runtime()
        return _engine, _session_maker


def get_engine() -> AsyncEngine:
    return _runtime()[0]


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency: one session per request."""
    async with _runtime()[1]() as session:
        yield session


async def health_check() -> Dict[str, Any]:
    """Ledger reachability for /health."""
    start = time.perf_counter()
    try:
        engine, session_maker = _runtime()
        async with session_maker() as session:
            await session.execute(text("SELECT 1"))
    except Exception as exc:
        logger.error("database_health_check_failed", error=str(exc))
        return {
            "status": "down",
            "error": str(exc),
            "latency_ms": round((time.perf_counter() - start) * 1000, 2),
        }
    return {
        "status": "up",
        "latency_ms": round((time.perf_counter() - start) * 1000, 2),
        "engine": engine.dialect.name,
    }
