from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from src.voicedoc.api.v1.routes_sessions import router as sessions_router_v1
from src.voicedoc.api.v1.routes_system import router as system_router_v1
from src.voicedoc.config import settings
from src.voicedoc.domain.errors import (
    CaptureFailure,
    ImmutableSession,
    InvalidTransition,
    PermissionDenied,
    SaveFailed,
    SessionEngineError,
    StructuringFailed,
    SubmitFailed,
    TranscriptionFailed,
)
from src.voicedoc.services.sessions.registry import session_registry

app = FastAPI(title="Voice Documentation Session Engine API")

# Engine errors -> HTTP status. Remote capability failures surface as 502.
ERROR_STATUS_CODES = {
    PermissionDenied: status.HTTP_403_FORBIDDEN,
    ImmutableSession: status.HTTP_409_CONFLICT,
    InvalidTransition: status.HTTP_409_CONFLICT,
    CaptureFailure: status.HTTP_502_BAD_GATEWAY,
    TranscriptionFailed: status.HTTP_502_BAD_GATEWAY,
    StructuringFailed: status.HTTP_502_BAD_GATEWAY,
    SaveFailed: status.HTTP_502_BAD_GATEWAY,
    SubmitFailed: status.HTTP_502_BAD_GATEWAY,
}


def status_code_for(exc: SessionEngineError) -> int:
    if isinstance(exc, SubmitFailed) and (exc.details or {}).get("reason") == "empty_note":
        return status.HTTP_422_UNPROCESSABLE_ENTITY
    for error_type, code in ERROR_STATUS_CODES.items():
        if isinstance(exc, error_type):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


@app.exception_handler(SessionEngineError)
async def session_engine_error_handler(request: Request, exc: SessionEngineError) -> JSONResponse:
    return JSONResponse(
        status_code=status_code_for(exc),
        content={"error": {"code": exc.code, "message": exc.message, "details": exc.details}},
    )


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"error": {"code": "invalid_value", "message": str(exc), "details": None}},
    )


@app.on_event("shutdown")
async def on_shutdown() -> None:
    """Release capture devices, timers and backend clients held by the registry."""

    await session_registry.shutdown()


# CORS configuration: permissive by default for development. Tighten via
# CORS_ALLOW_ORIGINS in production deployments.
allow_origins = [origin.strip() for origin in settings.cors_allow_origins.split(",") if origin.strip()] or ["*"]
app.add_middleware(
    CORSMiddleware,
    allow_origins=allow_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health", tags=["system"])
async def health_check() -> dict:
    """Basic liveness probe for the API root."""
    return {"status": "ok"}


# Versioned API routers
app.include_router(system_router_v1, prefix="/api/v1")
app.include_router(sessions_router_v1, prefix="/api/v1")
