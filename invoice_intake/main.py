import logging
from collections.abc import AsyncGenerator, Awaitable, Callable
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.responses import Response

from invoice_intake.api.v1.router import router
from invoice_intake.core.config import get_settings
from invoice_intake.core.logging import configure_logging
from invoice_intake.db.repository import InvoiceRepository
from invoice_intake.db.session import create_db_engine, init_db, make_session_factory
from invoice_intake.services.blob_store import build_blob_store
from invoice_intake.services.invoices import InvoiceService, InvoiceServiceError
from invoice_intake.services.llm_extractor import LLMExtractor
from invoice_intake.services.orchestrator import ExtractionOrchestrator
from invoice_intake.services.providers import build_providers
from invoice_intake.services.text_extractor import TextExtractor

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(application: FastAPI) -> AsyncGenerator[None, None]:
    application.state.ready = False
    settings = get_settings()
    configure_logging(settings.log_level)
    try:
        engine = create_db_engine(settings.database_url)
        init_db(engine)
        providers = build_providers(settings)
        llm = LLMExtractor(providers)
        text_extractor = TextExtractor.default(
            remote_url=settings.text_extraction_service_url,
            remote_timeout=settings.text_extraction_timeout_seconds,
            prefer_single_call=settings.prefer_single_call_extractor,
        )
        application.state.invoice_service = InvoiceService(
            repository=InvoiceRepository(make_session_factory(engine)),
            blobs=build_blob_store(settings),
            text_extractor=text_extractor,
            orchestrator=ExtractionOrchestrator(llm, providers=list(providers)),
            default_model=settings.default_provider,
        )
        application.state.configured_providers = [
            name for name, provider in providers.items() if provider.is_configured
        ]
        application.state.ready = True
        logger.info(
            "Service ready",
            extra={
                "providers": application.state.configured_providers,
                "text_strategies": text_extractor.strategy_names,
                "blob_backend": settings.blob_backend,
            },
        )
    except Exception:
        logger.exception("Failed to initialise services during startup")
        raise
    yield
    await text_extractor.aclose()
    await llm.aclose()
    engine.dispose()


app = FastAPI(title="Invoice Intake", lifespan=lifespan)


def _error(status_code: int, error: str, details: str | None = None) -> JSONResponse:
    body: dict[str, object] = {"success": False, "error": error}
    if details:
        body["details"] = details
    return JSONResponse(body, status_code=status_code)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    return _error(exc.status_code, str(exc.detail))


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    return _error(422, "Invalid request", details=str(exc))


@app.exception_handler(InvoiceServiceError)
async def service_exception_handler(
    request: Request, exc: InvoiceServiceError
) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(
            "Service failure on %s %s",
            request.method,
            request.url.path,
            extra={"error": exc.message, "details": exc.details},
        )
    return _error(exc.status_code, exc.message, exc.details)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error(500, "Internal processing failure")


@app.middleware("http")
async def require_ready(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    if request.url.path.startswith("/api/") and not getattr(app.state, "ready", False):
        return _error(503, "Service unavailable: starting up")
    return await call_next(request)


app.include_router(router, prefix="/api/v1")


@app.get("/health")
async def health() -> JSONResponse:
    ready = getattr(app.state, "ready", False)
    return JSONResponse(
        {
            "success": True,
            "status": "ok" if ready else "starting",
            "ready": ready,
            "features": {
                "upload": ready,
                "extraction": bool(getattr(app.state, "configured_providers", [])),
                "database": ready,
            },
        }
    )
