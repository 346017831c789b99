"""
FastAPI application for the Impressionist story engine
"""

import time
import uuid
from typing import Any, Callable, Dict

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware

from impressionist.api.sessions import router as sessions_router
from impressionist.api.sessions import sessions_db
from impressionist.config import settings
from impressionist.utils.logger import LogLevel, get_logger, setup_logging

VERSION = "0.1.0"
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def resolve_log_level(raw: str) -> LogLevel:
    """Configured level, or INFO when it is not a standard level name"""
    level = raw.upper()
    return level if level in LOG_LEVELS else "INFO"  # type: ignore[return-value]


log_level = resolve_log_level(settings.log_level)
setup_logging(level=log_level, log_file=settings.log_file, include_timestamp=True)

logger = get_logger(__name__)

app = FastAPI(
    title="Impressionist Story Engine",
    description="Play authored story sketches narrated by a language model",
    version=VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _request_extra(request: Request, request_id: str, **fields: Any) -> Dict[str, Any]:
    extra = {
        "component": "API",
        "request_id": request_id,
        "method": request.method,
        "path": request.url.path,
    }
    extra.update(fields)
    return extra


@app.middleware("http")
async def log_requests(request: Request, call_next: Callable) -> Response:
    """Log every request with its duration and a short correlation ID"""
    request_id = uuid.uuid4().hex[:8]
    request.state.request_id = request_id
    started = time.time()
    route = f"{request.method} {request.url.path}"

    logger.debug(
        f"[API] {request_id} -> {route}",
        extra=_request_extra(
            request,
            request_id,
            client_ip=request.client.host if request.client else "unknown",
        ),
    )

    try:
        response = await call_next(request)
    except Exception as e:
        duration_ms = (time.time() - started) * 1000
        logger.error(
            f"[API] {request_id} {route} raised {type(e).__name__} after {duration_ms:.2f}ms: {e}",
            extra=_request_extra(request, request_id, duration_ms=duration_ms),
            exc_info=True,
        )
        raise

    duration_ms = (time.time() - started) * 1000
    log = logger.warning if response.status_code >= 500 else logger.info
    log(
        f"[API] {request_id} {route} -> {response.status_code} ({duration_ms:.2f}ms)",
        extra=_request_extra(
            request, request_id, status_code=response.status_code, duration_ms=duration_ms
        ),
    )
    return response


app.include_router(sessions_router, prefix="/sessions", tags=["sessions"])


@app.on_event("startup")
async def startup_event():
    """Log the effective configuration"""
    logger.info(
        f"[API] Impressionist {VERSION} starting: provider={settings.model_provider}, "
        f"quality={settings.model_name}, cost={settings.cost_model_name}, "
        f"engine_mode={settings.engine_mode}, api_key_set={bool(settings.openai_api_key)}, "
        f"log_level={log_level}"
    )


@app.on_event("shutdown")
async def shutdown_event():
    """Cancel background compaction for every open session"""
    for session in sessions_db.values():
        session.engine.memory.cancel_compaction()
    logger.info(f"[API] Shut down with {len(sessions_db)} open sessions")


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": "Impressionist Story Engine",
        "version": VERSION,
        "status": "running",
        "engine_mode": settings.engine_mode,
        "active_sessions": len(sessions_db),
    }


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {"status": "healthy"}


if __name__ == "__main__":
    import uvicorn

    logger.info(f"[API] Starting server on {settings.host}:{settings.port}")
    uvicorn.run(
        "impressionist.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=log_level.lower(),
    )
