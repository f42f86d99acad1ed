"""FastAPI application and route handlers."""

import asyncio
import sys
from contextlib import asynccontextmanager, suppress
from datetime import UTC, datetime
from typing import Annotated, Any

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from loguru import logger

from .config import Settings, get_settings, settings
from .exceptions import RateLimitError, RoastAPIError, UnauthorizedError, UpstreamError
from .github import GitHubClient
from .middleware import add_request_id, client_identifier, secret_matches
from .models import (
    AvatarUpdateModel,
    RefreshAvatarsRequest,
    RefreshAvatarsResponse,
    ReportEntry,
    ReportResponse,
)
from .providers import create_roast_generator
from .rate_limiter import InMemoryRateLimiter
from .roast import DeliveryMode, RoastResult, RoastService, validate_username
from .sse import MEDIA_TYPE
from .storage import create_cache_store
from .translations import error_message, resolve_language

VERSION = "1.0.0"


def configure_logging() -> None:
    """Configure logging - should be called at startup, not import time."""
    logger.remove()
    logger.add(
        sys.stderr,
        format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>",
        level=settings.log_level,
        serialize=False,
    )
    if settings.log_file:
        logger.add(
            settings.log_file,
            rotation="10 MB",
            retention="7 days",
            compression="zip",
            level=settings.log_level,
        )


async def sweep_periodically(service: RoastService, interval: int, retention: int) -> None:
    """Delete stale cache rows every ``interval`` seconds until cancelled."""
    while True:
        await asyncio.sleep(interval)
        try:
            await service.sweep(retention)
        except Exception as e:  # noqa: BLE001
            logger.error(f"Cache sweep failed: {e}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle."""
    configure_logging()

    if getattr(app.state, "roast_service", None) is not None:
        # Service injected by the caller, who owns its components.
        yield
        return

    store = create_cache_store()
    github = GitHubClient(
        base_url=settings.github_api_url,
        token=settings.github_token,
        timeout=settings.github_timeout,
    )
    generator = create_roast_generator()
    rate_limiter = InMemoryRateLimiter(
        max_requests=settings.rate_limit_max,
        window_seconds=settings.rate_limit_window_seconds,
    )

    await store.startup()

    service = RoastService(
        store=store,
        rate_limiter=rate_limiter,
        profiles=github,
        generator=generator,
        model=settings.llm_model,
        cache_enabled=settings.cache_enabled,
        repo_limit=settings.top_repos_limit,
        single_flight=settings.single_flight,
        default_mode=DeliveryMode.STREAMED if settings.stream_by_default else DeliveryMode.BUFFERED,
    )
    app.state.roast_service = service

    sweeper = None
    if settings.sweep_interval_seconds:
        sweeper = asyncio.create_task(
            sweep_periodically(
                service, settings.sweep_interval_seconds, settings.cache_retention_seconds
            )
        )

    logger.info("Application started successfully")

    try:
        yield
    finally:
        if sweeper is not None:
            sweeper.cancel()
            with suppress(asyncio.CancelledError):
                await sweeper
        await service.wait_for_writes()
        await github.close()
        await store.shutdown()
        app.state.roast_service = None
        logger.info("Application shutdown complete")


async def validation_exception_handler(
    request: Request,
    exc: RequestValidationError,
) -> JSONResponse:
    """Handle validation errors with clean messages."""
    error_messages = []

    for error in exc.errors():  # type: ignore[attr-defined]
        field = error["loc"][-1] if error["loc"] else "field"
        message = error.get("msg", f"Invalid {field}")

        match error["type"]:
            case "missing":
                message = f"Required field '{field}' is missing"
            case "json_invalid":
                message = "Invalid JSON format"

        error_messages.append(message)

    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"error": "; ".join(error_messages), "details": error_messages},
    )


async def roast_api_exception_handler(request: Request, exc: RoastAPIError) -> JSONResponse:
    """Map domain errors to their status code and localized payload."""
    if exc.status_code >= 500:
        logger.error(f"Roast API error: {exc}")
    else:
        logger.info(f"Request rejected with {exc.status_code}: {exc}")

    headers = None
    if isinstance(exc, RateLimitError):
        headers = {"X-RateLimit-Reset": str(exc.reset_seconds)}

    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


def get_roast_service(request: Request) -> RoastService:
    """Get the roast service from application state."""
    service = getattr(request.app.state, "roast_service", None)
    if service is None:
        raise RuntimeError("Service not initialized")
    return service


router = APIRouter()


@router.get("/roast", tags=["roast"], response_model=None)
async def roast_endpoint(
    request: Request,
    service: Annotated[RoastService, Depends(get_roast_service)],
    username: str | None = Query(None, description="GitHub username to roast"),
    lang: str | None = Query(None, description="en-US or pt-BR"),
    stream: bool | None = Query(None, description="Stream freshly generated roasts as SSE"),
) -> Response:
    """Roast a GitHub profile, from cache when a fresh roast exists."""
    accept_language = request.headers.get("accept-language")
    language = resolve_language(lang, accept_language)

    await service.check_rate_limit(client_identifier(request), language)
    username = validate_username(username, language)
    key = service.resolve_key(username, lang, accept_language)

    if stream is None:
        mode = service.default_mode
    else:
        mode = DeliveryMode.STREAMED if stream else DeliveryMode.BUFFERED

    try:
        outcome = await service.roast(key, mode)
    except RoastAPIError:
        raise
    except Exception as e:
        logger.error(f"Unexpected error roasting {key.username}: {e}")
        raise UpstreamError(error_message(language, "request_failed")) from e

    if isinstance(outcome, RoastResult):
        return JSONResponse(outcome.to_response().model_dump(by_alias=True, exclude_none=True))

    return StreamingResponse(
        outcome,
        media_type=MEDIA_TYPE,
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.post("/admin/refresh-avatars", tags=["admin"])
async def refresh_avatars_endpoint(
    body: RefreshAvatarsRequest,
    service: Annotated[RoastService, Depends(get_roast_service)],
    config: Annotated[Settings, Depends(get_settings)],
) -> JSONResponse:
    """Backfill missing avatar URLs of cached roasts."""
    if not secret_matches(body.secret, config.admin_secret):
        raise UnauthorizedError("Unauthorized")

    try:
        unique_users, updates = await service.refresh_avatars()
    except Exception as e:
        logger.error(f"Error updating avatars: {e}")
        raise UpstreamError("Failed to update avatars") from e

    result = RefreshAvatarsResponse(
        unique_users_updated=unique_users,
        total_records_updated=sum(update["updatedCount"] for update in updates),
        updates=[AvatarUpdateModel.model_validate(update) for update in updates],
    )
    return JSONResponse(result.model_dump(by_alias=True))


@router.get("/admin/report", tags=["admin"])
async def report_endpoint(
    service: Annotated[RoastService, Depends(get_roast_service)],
    config: Annotated[Settings, Depends(get_settings)],
    s: str | None = Query(None, description="Report secret"),
) -> JSONResponse:
    """List every cached roast, most recently accessed first."""
    if not secret_matches(s, config.admin_secret):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not Found")

    records = await service.store.list_all()
    report = ReportResponse(
        total=len(records),
        entries=[ReportEntry.model_validate(record) for record in records],
    )
    return JSONResponse(report.model_dump(mode="json", by_alias=True))


@router.get("/health", tags=["health"])
async def health_endpoint(
    response: Response,
    service: Annotated[RoastService, Depends(get_roast_service)],
) -> dict[str, Any]:
    """Check health status of all components."""
    components = await service.health_check()
    all_healthy = all(components.values())

    if not all_healthy:
        response.status_code = 503

    return {
        "status": "healthy" if all_healthy else "unhealthy",
        "timestamp": datetime.now(UTC).isoformat(),
        "services": components,
    }


@router.get("/", tags=["health"])
async def root_endpoint() -> dict[str, str]:
    """API information endpoint."""
    return {
        "name": "Roast API",
        "version": VERSION,
        "status": "running",
        "docs": "/docs",
    }


def create_app(service: RoastService | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        service: Prebuilt service. When omitted, the lifespan builds one from
            settings.
    """
    app = FastAPI(
        title="Roast API",
        version=VERSION,
        description="Roasts GitHub profiles with an LLM, cached and rate limited",
        lifespan=lifespan,
    )
    app.state.roast_service = service

    app.middleware("http")(add_request_id)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
        expose_headers=["X-RateLimit-Reset", "X-Request-ID"],
    )

    app.add_exception_handler(RequestValidationError, validation_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RoastAPIError, roast_api_exception_handler)  # type: ignore[arg-type]

    app.include_router(router)
    app.openapi_tags = [
        {"name": "roast", "description": "Roast operations"},
        {"name": "admin", "description": "Cache administration"},
        {"name": "health", "description": "Health checks"},
    ]
    return app


app = create_app()
