from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
import asyncio
from contextlib import asynccontextmanager
from typing import Callable, Optional
import logging

from models import (
    MatchRegisterRequest, MatchRegisterResponse,
    MatchIdRequest, HeartbeatResponse, UnregisterResponse,
    MatchInfo, MatchListResponse,
    HealthResponse, StatsResponse
)
from config import Settings, settings
from errors import MatchServerError, MatchValidationError, RateLimitExceeded
from rate_limiter import SlidingWindowRateLimiter
from registry import MatchRegistry, MatchView

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

NOT_FOUND_MESSAGE = "Endpoint not found. Check /health or /api/matches/list"

CallerIdentity = Callable[[Request], str]


def get_caller_identity(request: Request) -> str:
    """Rate limit identity from the socket peer address"""
    return request.client.host if request.client else "unknown"


def forwarded_caller_identity(request: Request) -> str:
    """Rate limit identity from X-Forwarded-For, for deployments behind a trusted proxy"""
    forwarded = request.headers.get("X-Forwarded-For", "")
    first_hop = forwarded.split(",")[0].strip()
    return first_hop or get_caller_identity(request)


def error_response(exc: MatchServerError) -> JSONResponse:
    content = {"error": exc.message, "code": exc.code}
    if exc.details:
        content["details"] = exc.details
    return JSONResponse(status_code=exc.status_code, content=content)


class BodySizeLimitMiddleware:
    """Reject request bodies over max_body_bytes with 413.

    The body is counted as it arrives, so chunked requests without a
    Content-Length header are limited too. Accepted bodies are buffered and
    replayed to the wrapped app.
    """

    def __init__(self, app, max_body_bytes: int):
        self.app = app
        self.max_body_bytes = max_body_bytes

    def _too_large(self) -> JSONResponse:
        return JSONResponse(
            status_code=413,
            content={"error": f"Request body exceeds {self.max_body_bytes} bytes"}
        )

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        content_length = dict(scope["headers"]).get(b"content-length")
        if content_length is not None:
            try:
                size = int(content_length)
            except ValueError:
                response = JSONResponse(status_code=400, content={"error": "Invalid Content-Length header"})
                await response(scope, receive, send)
                return
            if size > self.max_body_bytes:
                await self._too_large()(scope, receive, send)
                return

        messages = []
        received = 0
        while True:
            message = await receive()
            messages.append(message)
            if message["type"] != "http.request":
                break
            received += len(message.get("body", b""))
            if received > self.max_body_bytes:
                await self._too_large()(scope, receive, send)
                return
            if not message.get("more_body", False):
                break

        async def replay():
            if messages:
                return messages.pop(0)
            return await receive()

        await self.app(scope, replay, send)


def run_cleanup(registry: MatchRegistry, rate_limiter: SlidingWindowRateLimiter,
                stale_match_ttl: int) -> int:
    """Forget idle rate limit keys and, when enabled, evict stale matches"""
    rate_limiter.sweep()
    if stale_match_ttl <= 0:
        return 0

    removed = registry.remove_stale(stale_match_ttl)
    if removed > 0:
        logger.info(f"Cleaned up {removed} stale match(es)")
    return removed


async def periodic_cleanup(app: FastAPI):
    """Periodically run cleanup against the app's registry and rate limiter"""
    cfg: Settings = app.state.settings
    while True:
        try:
            await asyncio.sleep(cfg.cleanup_interval)
            run_cleanup(app.state.registry, app.state.rate_limiter, cfg.stale_match_ttl)
        except asyncio.CancelledError:
            break
        except Exception as e:
            logger.error(f"Error in cleanup task: {e}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events"""
    cfg: Settings = app.state.settings
    base_url = f"http://{cfg.host}:{cfg.port}"

    # Startup
    logger.info("Starting DopaLAN match server...")
    cleanup_task = None
    if cfg.cleanup_interval > 0:
        cleanup_task = asyncio.create_task(periodic_cleanup(app))

    logger.info(f"Live on {base_url}")
    logger.info(f"Browser: {base_url}/api/matches/list")
    logger.info(f"Health:  {base_url}/health")
    logger.info(f"Stats:   {base_url}/stats")
    logger.info(f"Heartbeat timeout: {cfg.heartbeat_timeout}s")
    if cfg.stale_match_ttl > 0:
        logger.info(f"Stale matches evicted after {cfg.stale_match_ttl}s")

    yield

    # Shutdown
    logger.info("DopaLAN match server shutting down gracefully")
    if cleanup_task:
        cleanup_task.cancel()
        try:
            await cleanup_task
        except asyncio.CancelledError:
            pass


router = APIRouter()


def get_registry(request: Request) -> MatchRegistry:
    return request.app.state.registry


def to_match_info(view: MatchView) -> MatchInfo:
    return MatchInfo(
        id=view.match_id,
        host_name=view.host_name,
        proxy_address=view.proxy_address,
        proxy_port=view.proxy_port,
        proxy_url=view.proxy_url,
        map=view.map,
        max_players=view.max_players,
        players_connected=view.players_connected,
        age=view.age,
        is_recent=view.is_recent
    )


@router.post("/api/matches/register", response_model=MatchRegisterResponse)
async def register_match(
    body: Optional[MatchRegisterRequest] = None,
    registry: MatchRegistry = Depends(get_registry)
):
    """Register a new DopaLAN match"""
    if body is None:
        body = MatchRegisterRequest()
    match = registry.register(
        host_name=body.host_name,
        proxy_address=body.proxy_address,
        proxy_port=body.proxy_port,
        map_name=body.map,
        max_players=body.max_players
    )
    return MatchRegisterResponse(
        id=match.match_id,
        message=f'DopaLAN match "{match.host_name}" registered! Share it!',
        proxy_url=match.proxy_url
    )


@router.post("/api/matches/heartbeat", response_model=HeartbeatResponse)
async def heartbeat(
    body: Optional[MatchIdRequest] = None,
    registry: MatchRegistry = Depends(get_registry)
):
    """Keep a match alive"""
    registry.heartbeat(body.id if body is not None else None)
    return HeartbeatResponse()


@router.get("/api/matches/list", response_model=MatchListResponse)
async def list_matches(registry: MatchRegistry = Depends(get_registry)):
    """List active matches, most recently refreshed first"""
    listing = registry.list_active()
    return MatchListResponse(
        matches=[to_match_info(view) for view in listing.matches],
        total=listing.total,
        timestamp=int(listing.timestamp * 1000)
    )


@router.post("/api/matches/unregister", response_model=UnregisterResponse)
async def unregister_match(
    body: Optional[MatchIdRequest] = None,
    registry: MatchRegistry = Depends(get_registry)
):
    """Remove a match when its host stops"""
    registry.unregister(body.id if body is not None else None)
    return UnregisterResponse()


@router.get("/health", response_model=HealthResponse)
async def health_check(registry: MatchRegistry = Depends(get_registry)):
    """Health check endpoint"""
    stats = registry.stats()
    return HealthResponse(
        status="ok",
        uptime=f"{int(stats.uptime // 60)}min",
        matches=stats.total_stored,
        active=stats.active_count
    )


@router.get("/stats", response_model=StatsResponse)
async def get_stats(registry: MatchRegistry = Depends(get_registry)):
    """Registry counters and raw uptime in seconds"""
    stats = registry.stats()
    return StatsResponse(
        total_matches_ever=stats.total_stored,
        active_matches=stats.active_count,
        uptime=stats.uptime
    )


async def match_server_error_handler(request: Request, exc: MatchServerError):
    logger.warning(f"{exc.code} on {request.method} {request.url.path}: {exc.message}")
    return error_response(exc)


async def request_validation_handler(request: Request, exc: RequestValidationError):
    fields = [".".join(str(part) for part in err["loc"]) for err in exc.errors()]
    return error_response(
        MatchValidationError("Invalid request body", {"invalid_fields": fields})
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    # Unknown paths and wrong methods both surface as an unknown endpoint
    if exc.status_code in (404, 405):
        return JSONResponse(status_code=404, content={"error": NOT_FOUND_MESSAGE})
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail},
        headers=getattr(exc, "headers", None)
    )


async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return JSONResponse(
        status_code=500,
        content={"error": "An unexpected error occurred. Please try again later."}
    )


def create_app(
    app_settings: Settings = settings,
    registry: Optional[MatchRegistry] = None,
    rate_limiter: Optional[SlidingWindowRateLimiter] = None,
    caller_identity: Optional[CallerIdentity] = None
) -> FastAPI:
    """Build the match server app; registry, limiter and identity source are injectable"""
    if 0 < app_settings.stale_match_ttl <= app_settings.heartbeat_timeout:
        raise ValueError("stale_match_ttl must exceed heartbeat_timeout")

    if caller_identity is None:
        caller_identity = (
            forwarded_caller_identity if app_settings.trust_forwarded_for
            else get_caller_identity
        )

    app = FastAPI(
        title="DopaLAN Match Server",
        description="Discovery service for DopaLAN game matches",
        version="1.0.0",
        lifespan=lifespan
    )

    app.state.settings = app_settings
    app.state.registry = registry if registry is not None else MatchRegistry(
        heartbeat_timeout=app_settings.heartbeat_timeout,
        recent_window=app_settings.recent_window,
        max_listed=app_settings.max_listed_matches,
        default_max_players=app_settings.default_max_players
    )
    app.state.rate_limiter = rate_limiter if rate_limiter is not None else SlidingWindowRateLimiter(
        limit=app_settings.rate_limit_requests,
        window_seconds=app_settings.rate_limit_window
    )

    # Rate limiting middleware
    async def rate_limit_middleware(request: Request, call_next):
        """Sliding-window limit per client identity and path"""
        identity = caller_identity(request)
        path = request.url.path
        result = request.app.state.rate_limiter.admit(identity, path)
        if not result.allowed:
            logger.warning(f"Rate limit exceeded for {identity} on {path}")
            response = error_response(RateLimitExceeded(
                "Rate limit exceeded. Slow down!",
                {"retry_after": result.retry_after_seconds}
            ))
            response.headers["Retry-After"] = str(result.retry_after_seconds)
            response.headers["X-RateLimit-Limit"] = str(result.limit)
            response.headers["X-RateLimit-Remaining"] = str(result.remaining)
            return response

        return await call_next(request)

    # The last middleware added runs first; body size is checked before rate limiting
    app.middleware("http")(rate_limit_middleware)
    app.add_middleware(BodySizeLimitMiddleware, max_body_bytes=app_settings.max_body_bytes)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=app_settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.exception_handler(MatchServerError)(match_server_error_handler)
    app.exception_handler(RequestValidationError)(request_validation_handler)
    app.exception_handler(StarletteHTTPException)(http_exception_handler)
    app.exception_handler(Exception)(unhandled_exception_handler)

    app.include_router(router)
    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=False,
        log_level=settings.log_level.lower()
    )
