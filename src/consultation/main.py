import logging

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse

from src.consultation.api.v1.routes_encounters import router as encounters_router_v1
from src.consultation.api.v1.routes_lab_orders import router as lab_orders_router_v1
from src.consultation.api.v1.routes_prescriptions import router as prescriptions_router_v1
from src.consultation.api.v1.routes_system import router as system_router_v1
from src.consultation.config import settings
from src.consultation.security import LoginRequired
from src.consultation.services.records.service import RecordRejected, record_service, seed_demo_data

logger = logging.getLogger("records")

app = FastAPI(title="Consultation Record Service API")


@app.on_event("startup")
async def on_startup() -> None:
    """Application startup hook.

    When SEED_DEMO_DATA is enabled the in-memory record service is loaded with
    a small formulary, lab catalog and two open encounters for local use.
    Tests seed their own data and leave this off.
    """

    if settings.seed_demo_data:
        seed_demo_data(record_service)


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


@app.exception_handler(RecordRejected)
async def record_rejected_handler(request: Request, exc: RecordRejected) -> JSONResponse:
    logger.info("Rejected %s %s: %s (%s)", request.method, request.url.path, exc.message, exc.code)
    return JSONResponse(status_code=exc.status_code, content=exc.to_body())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = {}
    for error in exc.errors():
        field = ".".join(str(part) for part in error.get("loc", ())[1:]) or "body"
        errors.setdefault(field, error.get("msg", "Invalid value"))
    return JSONResponse(
        status_code=422,
        content={"message": "Validation failed", "code": "VALIDATION_ERROR", "errors": errors},
    )


@app.exception_handler(LoginRequired)
async def login_required_handler(request: Request, exc: LoginRequired) -> HTMLResponse:
    # Same answer a lapsed browser session gets: an HTML redirect, not JSON.
    logger.info("Unauthenticated %s %s: %s", request.method, request.url.path, exc.reason)
    return HTMLResponse(
        content=f'<html><body>Redirecting to <a href="{settings.login_url}">login</a></body></html>',
        status_code=status.HTTP_302_FOUND,
        headers={"Location": settings.login_url},
    )


@app.get("/login", response_class=HTMLResponse, include_in_schema=False)
async def login_page() -> str:
    return "<html><body><h1>Sign in</h1></body></html>"


@app.get("/health", tags=["system"])
async def health_check() -> dict:
    """Basic liveness probe for the API root."""
    return {"status": "ok"}


# Versioned API routers
app.include_router(system_router_v1, prefix="/api/v1")
app.include_router(encounters_router_v1, prefix="/api/v1")
app.include_router(prescriptions_router_v1, prefix="/api/v1")
app.include_router(lab_orders_router_v1, prefix="/api/v1")
