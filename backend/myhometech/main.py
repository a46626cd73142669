import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from myhometech.api.v1.service_requests import router as service_requests_router
from myhometech.core.config import get_settings
from myhometech.services.service_request_service import ServiceRequestError
from myhometech.utils.alerting import alert_tracker
from myhometech.utils.rate_limit import get_client_ip, rate_limiter

settings = get_settings()

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="MyHomeTech API",
    version="1.0.0",
    docs_url="/docs" if settings.docs_enabled else None,
    openapi_url="/openapi.json" if settings.openapi_enabled else None,
)


@app.on_event("startup")
async def _startup_jobs():
    current = get_settings()
    errors = current.validate_required_config()
    if not errors:
        return
    if current.is_production:
        raise RuntimeError(f"Configuration validation failed in production environment: {'; '.join(errors)}")
    for error in errors:
        logger.warning("Configuration problem: %s", error)


if settings.cors_allow_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=True,
        allow_methods=settings.cors_allow_methods,
        allow_headers=settings.cors_allow_headers,
    )

app.include_router(service_requests_router, prefix="/api/v1", tags=["service-requests"])


@app.exception_handler(ServiceRequestError)
async def _service_request_error_handler(request: Request, exc: ServiceRequestError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "code": exc.code})


@app.exception_handler(StarletteHTTPException)
async def _http_exception_handler(request: Request, exc: StarletteHTTPException):
    # Hide internal details for 5xx unless explicitly enabled.
    if exc.status_code >= 500 and not settings.expose_error_details:
        return JSONResponse(status_code=exc.status_code, content={"detail": "Internal server error"})
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail}, headers=exc.headers)


@app.exception_handler(Exception)
async def _unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    if settings.expose_error_details:
        return JSONResponse(status_code=500, content={"detail": str(exc)})
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


@app.middleware("http")
async def api_rate_limit_middleware(request: Request, call_next):
    if request.method == "OPTIONS" or not request.url.path.startswith("/api/v1"):
        return await call_next(request)

    current = get_settings()
    if not current.rate_limit_api_enabled:
        return await call_next(request)

    ip = get_client_ip(request) or "unknown"
    if not rate_limiter.hit(f"api:ip:{ip}", current.rate_limit_api_per_min):
        alert_tracker.record("RATE_LIMIT_BLOCKED", {"ip": ip, "path": request.url.path})
        logger.warning("Rate limit exceeded ip=%s path=%s", ip, request.url.path)
        return JSONResponse(status_code=429, content={"detail": "Too Many Requests"})

    return await call_next(request)


@app.middleware("http")
async def security_headers_middleware(request: Request, call_next):
    response = await call_next(request)
    if not settings.security_headers_enabled:
        return response

    headers = response.headers
    headers.setdefault("X-Content-Type-Options", "nosniff")
    headers.setdefault("X-Frame-Options", "DENY")
    headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    headers.setdefault("Cache-Control", "no-store")
    if "Content-Security-Policy" not in headers and not request.url.path.startswith("/docs"):
        headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none'; base-uri 'none'"
    return response


@app.get("/health")
async def health_check():
    return {"status": "ok"}
