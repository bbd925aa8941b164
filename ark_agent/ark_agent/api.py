"""
HTTP API of the agent.

create_app() builds the FastAPI application around an already constructed
CredentialBroker. The app holds no globals; everything it needs lives on
app.state.
"""

import time
import uuid
from datetime import datetime, timezone

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from ark_agent.broker import CredentialBroker
from ark_agent.config import AgentSettings
from ark_agent.errors import (
    NotFoundError,
    PersistenceError,
    ProviderError,
    TrainingRequiredError,
    ValidationError,
)
from ark_agent.logging import get_logger
from ark_agent.schemas import (
    CreateBucketRequest,
    CreateBucketResult,
    CredentialRequest,
    ProfileInfo,
)

logger = get_logger("AgentAPI")


class RequestLogMiddleware(BaseHTTPMiddleware):
    """Binds a request id to the log context and logs one line per request."""

    async def dispatch(self, request: Request, call_next):
        request_id = uuid.uuid4().hex[:12]
        structlog.contextvars.bind_contextvars(request_id=request_id)
        start = time.perf_counter()
        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
            logger.info(
                "http request",
                method=request.method,
                path=request.url.path,
                status=response.status_code,
                duration_ms=round((time.perf_counter() - start) * 1000, 2),
            )
            return response
        finally:
            structlog.contextvars.unbind_contextvars("request_id")


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def _describe_validation(exc: RequestValidationError) -> str:
    parts = []
    for err in exc.errors():
        if err.get("type") == "json_invalid":
            return "invalid request body"
        loc = ".".join(str(p) for p in err.get("loc", ()) if p != "body")
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return "; ".join(parts) or "invalid request body"


def _register_error_handlers(app: FastAPI):
    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        return _error(400, _describe_validation(exc))

    @app.exception_handler(ValidationError)
    async def validation_handler(request: Request, exc: ValidationError):
        return _error(400, str(exc))

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError):
        return _error(404, str(exc))

    @app.exception_handler(TrainingRequiredError)
    async def training_required_handler(request: Request, exc: TrainingRequiredError):
        return JSONResponse(
            status_code=403,
            content={
                "status": "blocked",
                "reason": "training_required",
                "required_modules": [m.model_dump() for m in exc.required_modules],
            },
        )

    @app.exception_handler(ProviderError)
    async def provider_handler(request: Request, exc: ProviderError):
        return _error(500, str(exc))

    @app.exception_handler(PersistenceError)
    async def persistence_handler(request: Request, exc: PersistenceError):
        logger.error(f"Store failure on {request.method} {request.url.path}: {exc}")
        return _error(500, str(exc))


def create_app(settings: AgentSettings, broker: CredentialBroker) -> FastAPI:
    """
    Build the agent application.

    Args:
        settings (AgentSettings): Startup settings (version info for /api/system)
        broker (CredentialBroker): Handles every credential and S3 request
    """
    app = FastAPI(title="Ark Agent", version=settings.version)
    app.state.settings = settings
    app.state.broker = broker
    app.add_middleware(RequestLogMiddleware)
    _register_error_handlers(app)

    @app.get("/api/system/health")
    async def health():
        return {
            "status": "healthy",
            "version": settings.version,
            "time": datetime.now(timezone.utc).isoformat(),
        }

    @app.get("/api/system/version")
    async def version():
        return {
            "version": settings.version,
            "commit": settings.commit,
            "build_date": settings.build_date,
        }

    @app.post("/api/credentials")
    async def set_credentials(request: CredentialRequest):
        profile = await broker.set_credential(request)
        return {"status": "success", "profile": profile}

    @app.get("/api/credentials", response_model=list[ProfileInfo])
    async def list_credentials():
        return await broker.list_credentials()

    @app.delete("/api/credentials/{profile}")
    async def delete_credentials(profile: str):
        try:
            await broker.delete_credential(profile)
        except NotFoundError:
            raise NotFoundError("Profile not found") from None
        return {"status": "success"}

    @app.post("/api/credentials/{profile}/validate")
    async def validate_credentials(profile: str):
        try:
            identity, cached = await broker.validate_credential(profile)
        except NotFoundError:
            raise NotFoundError("Profile not found") from None
        return {"profile": profile, **identity.model_dump(), "cached": cached}

    @app.post("/api/s3/buckets", status_code=201, response_model=CreateBucketResult)
    async def create_bucket(request: CreateBucketRequest):
        return await broker.create_bucket(request)

    return app
