"""Main FastAPI application"""
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse, JSONResponse
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from contextlib import asynccontextmanager
import logging
import time
import os
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from stockleague.config import settings
from stockleague import log_config  # noqa: F401  configures loguru/structlog on import
from stockleague.db.session import init_db
from stockleague.feature_flags import feature_flags
from stockleague.utils.errors import StockLeagueError
from api.ratelimit import limiter
from api.routers import leaderboard, stocks, websocket
from api.scheduler import get_runner, start_scheduler, stop_scheduler
from api.utils.metrics import get_metrics_text
from api.schemas.errors import ErrorCode
from api.utils.exceptions import StockLeagueAPIException, from_domain_error

logger = logging.getLogger(__name__)
api_logger = logging.getLogger("api")


def _strip_sensitive_data(event):
    """Remove PII and sensitive data before sending to Sentry"""
    if event.get("request"):
        request = event["request"]
        if request.get("cookies"):
            request["cookies"] = {}
        if request.get("headers"):
            headers = request["headers"]
            for header in ("authorization", "cookie"):
                if header in headers:
                    headers[header] = "REDACTED"

    if event.get("user"):
        event["user"].pop("email", None)
        event["user"].pop("ip_address", None)

    if event.get("extra"):
        extra = event["extra"]
        for key in list(extra.keys()):
            if any(s in key.upper() for s in ("PASSWORD", "TOKEN", "SECRET", "DATABASE_URL")):
                extra[key] = "REDACTED"

    return event


# Initialize Sentry for error monitoring
try:
    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.logging import LoggingIntegration

    sentry_dsn = os.getenv("SENTRY_DSN")
    if sentry_dsn:
        sentry_sdk.init(
            dsn=sentry_dsn,
            environment=os.getenv("SENTRY_ENVIRONMENT", settings.app_env),
            traces_sample_rate=0.2 if settings.is_production else 1.0,
            send_default_pii=False,
            integrations=[
                FastApiIntegration(transaction_style="endpoint"),
                LoggingIntegration(level=logging.INFO, event_level=logging.ERROR),
            ],
            before_send=lambda event, hint: _strip_sensitive_data(event),
        )
        logger.info("Sentry error monitoring initialized")
    else:
        logger.info("Sentry DSN not configured, error monitoring disabled")
except ImportError:
    logger.warning("sentry-sdk not installed, error monitoring disabled")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events"""
    logger.info("Starting Stock League API...")

    init_db()

    from api.websocket.hub import get_hub
    get_hub()
    logger.info("WebSocket hub initialized")

    start_scheduler()

    yield

    logger.info("Shutting down Stock League API...")
    stop_scheduler()


app = FastAPI(
    title=settings.api_title,
    description="Live fantasy stock contest scoring: leaderboards, settlement results and the daily stock screener.",
    version=settings.api_version,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/api/openapi.json",
    lifespan=lifespan,
    openapi_tags=[
        {"name": "leaderboard", "description": "Contest standings and settlement results"},
        {"name": "stocks", "description": "Daily stock screener and score breakdowns"},
        {"name": "websocket", "description": "Live stock updates"},
    ],
)

app.state.limiter = limiter
app.add_middleware(SlowAPIMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "OPTIONS"],
    allow_headers=["content-type"],
)


@app.middleware("http")
async def access_log_middleware(request: Request, call_next):
    """Log all API requests with timing"""
    t0 = time.time()
    response = await call_next(request)
    ms = int((time.time() - t0) * 1000)
    api_logger.info(f"{request.method} {request.url.path} {response.status_code} {ms}ms")
    return response


def _error_response(status_code: int, error_code: str, message: str, details=None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "error_code": error_code,
            "message": message,
            "details": details,
            "status_code": status_code,
        },
    )


@app.exception_handler(StockLeagueAPIException)
async def stock_league_api_exception_handler(request: Request, exc: StockLeagueAPIException):
    """Handle API exceptions with standard format"""
    return _error_response(exc.status_code, exc.error_code, str(exc.detail), exc.details)


@app.exception_handler(StockLeagueError)
async def domain_exception_handler(request: Request, exc: StockLeagueError):
    """Map core exceptions (not found, not settled, ...) to HTTP errors"""
    api_exc = from_domain_error(exc)
    if api_exc.status_code >= 500:
        logger.error(f"{exc.__class__.__name__} on {request.url.path}: {exc.message}")
    return _error_response(api_exc.status_code, api_exc.error_code, str(api_exc.detail), api_exc.details)


@app.exception_handler(RateLimitExceeded)
async def rate_limit_exception_handler(request: Request, exc: RateLimitExceeded):
    return _error_response(
        status.HTTP_429_TOO_MANY_REQUESTS,
        ErrorCode.RATE_LIMIT_EXCEEDED,
        f"Rate limit exceeded: {exc.detail}",
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """Handle HTTPException with standard format"""
    error_code_map = {
        400: ErrorCode.INVALID_INPUT,
        404: ErrorCode.NOT_FOUND,
        409: ErrorCode.CONFLICT,
        429: ErrorCode.RATE_LIMIT_EXCEEDED,
        500: ErrorCode.INTERNAL_ERROR,
    }
    return _error_response(
        exc.status_code,
        error_code_map.get(exc.status_code, "HTTP_ERROR"),
        str(exc.detail),
        getattr(exc, "details", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle Pydantic validation errors"""
    return _error_response(
        status.HTTP_422_UNPROCESSABLE_ENTITY,
        ErrorCode.VALIDATION_ERROR,
        "Validation error",
        {"errors": exc.errors()},
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Catch-all for unexpected errors"""
    logger.exception("Unhandled exception")
    return _error_response(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        ErrorCode.INTERNAL_ERROR,
        "An unexpected error occurred",
    )


app.include_router(leaderboard.router)
app.include_router(stocks.router)
app.include_router(websocket.router)


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "name": settings.api_title,
        "version": settings.api_version,
        "status": "running",
    }


@app.get("/healthz")
async def health_check():
    """Health check endpoint with live loop status"""
    return {"status": "healthy", "live_cycle": get_runner().get_stats()}


@app.get("/features")
async def get_feature_flags():
    """Return current feature flags"""
    return feature_flags.to_dict()


@app.get("/metrics", response_class=PlainTextResponse)
async def metrics():
    """
    Prometheus-style metrics endpoint.

    Exposes counters for scoring cycles, unit failures, team updates,
    settlements, screener updates and websocket traffic.
    """
    return PlainTextResponse(content=get_metrics_text())
