from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from adminguard.api.error_handling import _error_response, register_exception_handlers
from adminguard.api.routes import router
from adminguard.config import Settings
from adminguard.logging import get_logger, set_correlation_id
from adminguard.service.errors import PayloadTooLarge, RateLimitExceeded
from adminguard.service.rate_limit import client_origin, policy_for_path

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"

SESSION_CLEANUP_INTERVAL_SECONDS = 300

_cleanup_task: asyncio.Task | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events."""
    global _cleanup_task
    from adminguard.service.runtime import get_runtime

    try:
        runtime = get_runtime()
        _cleanup_task = asyncio.create_task(
            _run_session_cleanup(runtime.sessions, SESSION_CLEANUP_INTERVAL_SECONDS)
        )
    except Exception as exc:
        logger.error("startup_failed", error=str(exc))
        raise

    yield

    try:
        runtime = get_runtime()
        if _cleanup_task:
            _cleanup_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await _cleanup_task
        await runtime.aclose()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="adminguard", version=__version__, lifespan=lifespan)

_BODY_METHODS = {"POST", "PUT", "PATCH", "DELETE"}

CONTENT_SECURITY_POLICY = (
    "default-src 'self'; script-src 'self' 'unsafe-inline' 'unsafe-eval'; "
    "style-src 'self' 'unsafe-inline'; img-src 'self' data: https:; "
    "font-src 'self' data:; connect-src 'self'; frame-ancestors 'none';"
)
PERMISSIONS_POLICY = (
    "geolocation=(), microphone=(), camera=(), payment=(), usb=(), "
    "bluetooth=(), magnetometer=(), gyroscope=(), accelerometer=()"
)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    # Local dev hosts; a wildcard is not allowed alongside credentials
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=_settings.cors_allow_credentials,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=[
        "Content-Type",
        "Authorization",
        _settings.csrf_header_name,
        "X-Request-ID",
    ],
    expose_headers=[
        "X-Request-ID",
        _settings.csrf_header_name,
        "X-RateLimit-Limit",
        "X-RateLimit-Remaining",
        "X-RateLimit-Window",
        "Retry-After",
    ],
    max_age=3600,
)


# Registration order matters: the last middleware registered runs first.


@app.middleware("http")
async def echo_csrf_token(request: Request, call_next):
    """Return the principal's current CSRF token on every authenticated response."""
    response = await call_next(request)
    principal = getattr(request.state, "principal", None)
    if principal is None:
        return response
    from adminguard.service.runtime import get_runtime

    runtime = get_runtime()
    if not runtime.settings.csrf_enabled:
        return response
    header = runtime.settings.csrf_header_name
    if header not in response.headers:
        try:
            response.headers[header] = await runtime.csrf.issue_or_reuse(
                principal.principal_id
            )
        except Exception as exc:
            logger.warning(
                "csrf_echo_failed", principal_id=principal.principal_id, error=str(exc)
            )
    return response


@app.middleware("http")
async def enforce_rate_limit(request: Request, call_next):
    from adminguard.service.runtime import get_runtime

    runtime = get_runtime()
    policy = policy_for_path(request.url.path)
    if not runtime.settings.rate_limit_enabled or policy is None or request.method == "OPTIONS":
        return await call_next(request)
    origin = client_origin(
        request.headers,
        request.client.host if request.client else None,
        trust_proxy_headers=runtime.settings.trust_proxy_headers,
    )
    try:
        decision = await runtime.rate_limiter.check_and_increment(origin, policy)
    except RateLimitExceeded as exc:
        return _error_response(
            429, exc.message, exc.detail, code="rate_limited", headers=exc.headers
        )
    response = await call_next(request)
    if decision.limit > 0:
        response.headers.setdefault("X-RateLimit-Limit", str(decision.limit))
        response.headers.setdefault(
            "X-RateLimit-Remaining", str(max(0, decision.limit - decision.count))
        )
        response.headers.setdefault("X-RateLimit-Window", str(decision.window_seconds))
    return response


@app.middleware("http")
async def limit_request_size(request: Request, call_next):
    if not _settings.request_size_limit_enabled or request.method not in _BODY_METHODS:
        return await call_next(request)
    declared = request.headers.get("content-length")
    if declared is not None:
        try:
            size = int(declared)
        except ValueError:
            size = 0
        if size > _settings.request_size_limit_bytes:
            exc = PayloadTooLarge(_settings.request_size_limit_mb)
            logger.warning(
                "request_too_large",
                path=request.url.path,
                content_length=size,
                limit_bytes=_settings.request_size_limit_bytes,
            )
            return _error_response(413, exc.message, exc.detail, code=exc.error_code)
    return await call_next(request)


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers.setdefault("Content-Security-Policy", CONTENT_SECURITY_POLICY)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-XSS-Protection", "1; mode=block")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    response.headers.setdefault("Permissions-Policy", PERMISSIONS_POLICY)
    response.headers.setdefault("Cross-Origin-Opener-Policy", "same-origin")
    response.headers.setdefault("Cross-Origin-Resource-Policy", "same-origin")
    response.headers.setdefault("X-Permitted-Cross-Domain-Policies", "none")
    response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    if _settings.https_only and request.url.scheme == "https":
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=31536000; includeSubDomains; preload"
        )
    return response


@app.middleware("http")
async def add_correlation_id(request: Request, call_next):
    """Tag each request with a correlation id.

    Taken from ``X-Request-ID`` when the client sends one, otherwise
    generated. It is bound for structured logging and echoed back in the
    ``X-Request-ID`` response header.
    """
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(router)


HEALTH_CHECK_TIMEOUT_SECONDS = 3


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Report store and Redis reachability with bounded probes."""
    from adminguard.service.runtime import get_runtime

    checks: Dict[str, Dict[str, Any]] = {}

    async def _run_bounded(label: str, func) -> bool:
        try:
            await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
            return True
        except asyncio.TimeoutError:
            logger.error(
                "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
            )
        except Exception as exc:
            logger.error("health_check_failed", component=label, error=str(exc))
        return False

    runtime = get_runtime()
    if hasattr(runtime.store, "verify_connection"):
        db_ok = await _run_bounded("database", runtime.store.verify_connection)
        checks["database"] = {"status": "healthy" if db_ok else "unhealthy"}
    else:
        db_ok = True
        checks["database"] = {"status": "healthy", "type": "memory"}

    redis_ok = True
    if runtime.cache is not None:
        redis_ok = await _run_bounded("redis", runtime.cache.verify_connection)
        checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy"}
    else:
        checks["redis"] = {"status": "not_configured"}

    return {
        "status": "healthy" if db_ok and redis_ok else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


async def _run_session_cleanup(registry, interval_seconds: int) -> None:
    """Background loop deleting session rows whose tokens have all expired."""

    interval = max(interval_seconds, 60)
    try:
        while True:
            try:
                await asyncio.to_thread(registry.cleanup_expired)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("session_cleanup_failed", error=str(exc))
            await asyncio.sleep(interval)
    except asyncio.CancelledError:
        logger.info("session_cleanup_task_cancelled")


def create_app() -> FastAPI:
    return app
