"""FastAPI application entry point."""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError

from app.api.v1 import audit, clients, migration, policies, policy_instances, policy_templates
from app.compat.config import get_migration_config
from app.compat.strategies import drain_background_tasks, select_strategy
from app.core.config import settings
from app.core.errors import ConflictError, InternalError, PolicyError, ValidationError
from app.core.logging import get_logger, setup_logging
from app.core.retry import is_retryable

logger = get_logger("api")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle hooks."""
    setup_logging()
    startup_log = get_logger("startup")
    config = get_migration_config()
    app.state.policy_strategy = select_strategy(config)
    startup_log.info(
        "Application starting",
        env=settings.APP_ENV,
        phase=config.phase.value,
        strategy=app.state.policy_strategy.name,
    )
    yield
    await drain_background_tasks()
    startup_log.info("Application shutting down")


app = FastAPI(
    title="Policy Template API",
    description="Policy templates, client policy instances, expiry tracking and legacy migration",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Restrict in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── Error mapping ─────────────────────────────

@app.exception_handler(PolicyError)
async def policy_error_handler(request: Request, exc: PolicyError) -> JSONResponse:
    log = logger.bind(path=request.url.path, method=request.method, kind=exc.kind)
    if exc.status_code >= 500:
        log.error("Request failed", error=exc.message)
    else:
        log.info("Request rejected", error=exc.message, fields=sorted(exc.errors))
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed bodies/params reported in the same field-level shape as rule violations."""
    errors: dict[str, str] = {}
    for error in exc.errors():
        location = [str(part) for part in error.get("loc", ()) if part not in ("body", "query", "path")]
        errors.setdefault(".".join(location) or "request", error.get("msg", "Invalid value"))
    return await policy_error_handler(request, ValidationError(errors))


@app.exception_handler(IntegrityError)
async def integrity_error_handler(request: Request, exc: IntegrityError) -> JSONResponse:
    """A uniqueness constraint fired outside a store's own handling."""
    return await policy_error_handler(request, ConflictError("A record with these values already exists"))


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error", path=request.url.path, method=request.method)
    return await policy_error_handler(
        request, InternalError("An unexpected error occurred", retryable=is_retryable(exc))
    )


API_PREFIX = "/api/v1"
app.include_router(policy_templates.router, prefix=API_PREFIX)
app.include_router(policy_instances.router, prefix=API_PREFIX)
app.include_router(clients.router, prefix=API_PREFIX)
app.include_router(policies.router, prefix=API_PREFIX)
app.include_router(audit.router, prefix=API_PREFIX)
app.include_router(migration.router, prefix=API_PREFIX)


@app.get("/health", tags=["Health"])
async def health_check() -> dict[str, str]:
    """Public health-check endpoint."""
    return {"status": "ok", "env": settings.APP_ENV, "phase": get_migration_config().phase.value}
