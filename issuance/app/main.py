import sys
import logging
import httpx

from contextlib import asynccontextmanager
from importlib.metadata import version, PackageNotFoundError

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse

from issuance.app.api.routes import router as documents_router
from issuance.app.core.config import get_settings
from issuance.app.core.errors import IssuanceError
from issuance.app.db.session import create_engine, create_session_factory
from issuance.app.orchestrator.issuance import DocumentsService

logger = logging.getLogger("issuance.main")


def get_app_version() -> str:
    try:
        return version("issuance")
    except PackageNotFoundError:
        return "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Guarantees:
    - Fail-fast startup if configuration is invalid
    - One engine pool and one HTTP client shared by every request
    - Orderly disposal on shutdown
    """
    logger.info(
        "issuance_startup_begin",
        extra={"service": "issuance", "version": get_app_version()},
    )

    # ------------------------------------------------------------------
    # Load and validate configuration (FAIL FAST)
    # ------------------------------------------------------------------
    try:
        settings = get_settings()
    except Exception:
        logger.exception("invalid_issuance_configuration")
        raise

    app.state.settings = settings

    # ------------------------------------------------------------------
    # Shared transports
    # ------------------------------------------------------------------
    app.state.engine = create_engine(settings.database_url, echo=settings.database_echo)
    app.state.http_client = httpx.AsyncClient(
        timeout=httpx.Timeout(
            timeout=settings.upload_timeout,
            connect=10.0,
        ),
        limits=httpx.Limits(
            max_keepalive_connections=20,
            max_connections=50,
        ),
        headers={"User-Agent": f"issuance/{get_app_version()}"},
    )

    app.state.documents_service = DocumentsService.from_config(
        settings,
        sessions=create_session_factory(app.state.engine),
        http_client=app.state.http_client,
    )

    logger.info(
        "issuance_startup_complete",
        extra={
            "mock_ipfs": settings.use_mock_ipfs,
            "mock_blockchain": settings.use_mock_blockchain,
        },
    )

    try:
        yield
    finally:
        logger.info("issuance_shutdown_begin")

        try:
            await app.state.http_client.aclose()
        except Exception:
            logger.warning("http_client_shutdown_failed")

        try:
            await app.state.engine.dispose()
        except Exception:
            logger.warning("engine_dispose_failed")


async def issuance_error_handler(request: Request, exc: IssuanceError) -> ORJSONResponse:
    if exc.status_code >= 500:
        logger.error("issuance_error", extra={"error": exc.error_code, "path": request.url.path})
    return ORJSONResponse(status_code=exc.status_code, content=exc.to_payload())


def create_app() -> FastAPI:
    """
    Application factory for the document issuance service.
    """
    app = FastAPI(
        title="Educational Document Issuance",
        description=(
            "Issues, verifies and revokes ledger-anchored educational "
            "documents (diplomas, transcripts, certificates)."
        ),
        version=get_app_version(),
        docs_url="/docs",
        redoc_url=None,
        default_response_class=ORJSONResponse,
        lifespan=lifespan,
    )

    # CORS enforced at the gateway
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[],
        allow_credentials=False,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    app.add_exception_handler(IssuanceError, issuance_error_handler)
    app.include_router(documents_router)

    @app.get(
        "/healthz",
        tags=["Monitoring"],
        summary="Liveness and readiness probe",
    )
    async def health_check():
        """
        Verifies that the runtime is alive.

        Does NOT call the ledger, the content store or the database.
        """
        return ORJSONResponse(
            content={
                "status": "ok",
                "service": "issuance",
                "version": app.version,
                "runtime": f"python {sys.version.split()[0]}",
            }
        )

    return app


app = create_app()
