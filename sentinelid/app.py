from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from sentinelid.api.error_handling import register_exception_handlers
from sentinelid.api.routes import router
from sentinelid.config import Settings
from sentinelid.logging import get_logger, sanitize_error_message, set_correlation_id
from sentinelid.service.runtime import Runtime, get_runtime

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"
__build__ = _settings.build_sha

HEALTH_CHECK_TIMEOUT_SECONDS = 3
MIN_PURGE_INTERVAL_SECONDS = 30

# Applied to every response unless a route already set them
_SECURITY_HEADERS = {
    "X-Frame-Options": "DENY",
    "X-Content-Type-Options": "nosniff",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Permissions-Policy": "camera=(), microphone=(), geolocation=(), payment=()",
    "Content-Security-Policy": "default-src 'none'; frame-ancestors 'none'",
    "API-Version": __version__,
}
_NO_STORE = "no-store, no-cache, must-revalidate, private"
_HSTS = "max-age=63072000; includeSubDomains"


async def _run_purge_loop(store, interval_seconds: int) -> None:
    """Delete expired one-time codes, authorization codes and refresh records on a timer."""
    interval = max(interval_seconds, MIN_PURGE_INTERVAL_SECONDS)
    while True:
        try:
            purged = await asyncio.to_thread(store.purge_expired)
        except asyncio.CancelledError:
            logger.info("purge_task_cancelled")
            raise
        except Exception as exc:
            logger.warning("purge_expired_failed", error=sanitize_error_message(str(exc)))
        else:
            if any(purged.values()):
                logger.info("expired_records_purged", **purged)
        await asyncio.sleep(interval)


@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        runtime = get_runtime()
    except Exception as exc:
        logger.error("startup_failed", error=sanitize_error_message(str(exc)))
        raise
    purge_task = asyncio.create_task(
        _run_purge_loop(runtime.store, runtime.settings.cleanup_interval_seconds)
    )
    logger.info("portal_started", version=__version__, build=__build__)

    yield

    purge_task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await purge_task
    try:
        await get_runtime().close()
    except Exception as exc:
        logger.error("shutdown_failed", error=sanitize_error_message(str(exc)))
    else:
        logger.info("runtime_cleanup_complete")


app = FastAPI(title="SentinelID Identity Portal", version=__version__, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_allow_origins,
    # Dashboards post back with the challenge and refresh cookies
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID", "API-Version"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request: Request, call_next):
    """Tag log lines and the envelope with X-Request-ID (or a fresh UUID) and echo it back."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    for name, value in _SECURITY_HEADERS.items():
        response.headers.setdefault(name, value)
    # Wizard steps and tokens must never be cached
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", _NO_STORE)
    if request.url.scheme == "https":
        response.headers.setdefault("Strict-Transport-Security", _HSTS)
    return response


register_exception_handlers(app)
app.include_router(router)


async def _probe(component: str, check: Callable[[], Any]) -> bool:
    """Run a blocking check in a thread, bounded by HEALTH_CHECK_TIMEOUT_SECONDS."""
    try:
        await asyncio.wait_for(asyncio.to_thread(check), HEALTH_CHECK_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        logger.error(
            "health_check_timeout", component=component, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
        )
        return False
    except Exception as exc:
        logger.error(
            "health_check_failed", component=component, error=sanitize_error_message(str(exc))
        )
        return False
    return True


def _filesystem_check(root: Path) -> Callable[[], None]:
    def _check() -> None:
        if not root.is_dir():
            raise FileNotFoundError(root)
        marker = root / ".health_check"
        marker.write_text(datetime.now(timezone.utc).isoformat())
        marker.read_text()
        marker.unlink(missing_ok=True)

    return _check


async def _component_checks(runtime: Runtime) -> Dict[str, Dict[str, Any]]:
    store_type = "memory" if runtime.settings.use_memory_store else "postgres"
    checks: Dict[str, Dict[str, Any]] = {
        "database": {
            "status": "healthy"
            if await _probe("database", runtime.store.verify_connection)
            else "unhealthy",
            "type": store_type,
        }
    }
    if runtime.cache is None:
        checks["redis"] = {"status": "not_configured"}
    else:
        redis_ok = await _probe("redis", runtime.cache.verify_connection)
        checks["redis"] = {
            "status": "healthy" if redis_ok else "unhealthy",
            "degraded": not redis_ok,
        }
    fs_ok = await _probe("filesystem", _filesystem_check(Path(runtime.settings.shared_fs_root)))
    checks["filesystem"] = {"status": "healthy" if fs_ok else "unhealthy"}
    return checks


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Store, Redis and shared filesystem health with build info."""
    checks = await _component_checks(get_runtime())
    healthy = all(check["status"] in {"healthy", "not_configured"} for check in checks.values())
    return {
        "status": "healthy" if healthy else "unhealthy",
        "checks": checks,
        "version": __version__,
        "build": __build__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def main() -> None:
    """Serve the portal with uvicorn on SERVER_HOST:SERVER_PORT."""
    import uvicorn

    uvicorn.run(
        "sentinelid.app:app",
        host=_settings.server_host,
        port=_settings.server_port,
        reload=_settings.reload,
        log_config=None,
    )


if __name__ == "__main__":
    main()
