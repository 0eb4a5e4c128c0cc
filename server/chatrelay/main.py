import logging
from typing import Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from fastapi import APIRouter

from .config import Settings, get_settings

# API routers
from .api.v1.models import router as models_router
from .api.v1.chat import router as chat_router
from .api.v1.chats import router as chats_router
from .core.catalog import ModelCatalog
from .core.changes import ChangeFeed
from .core.logging import setup_logging
from .core.ratelimit import RateLimiter
from .core.tasks import TaskRegistry
from .db.session import Database
from .providers.openrouter import OpenRouterClient
from .services.chats import ChatRepository
from .services.relay import ChatRelay
from .services.sessions import StreamSessionStore
from .services.storage import ObjectStore

logger = logging.getLogger(__name__)


def _validation_message(exc: RequestValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ())[1:])
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return "; ".join(parts) or "Invalid request"


def create_app(settings: Optional[Settings] = None, transport: Optional[httpx.AsyncBaseTransport] = None) -> FastAPI:
    """Build the application and its components.

    `transport` replaces the network for every outbound HTTP call (upstream,
    attachment downloads, object store), which is how tests fake them.
    """
    settings = settings or get_settings()
    # Setup logging early
    setup_logging(settings.log_level)
    app = FastAPI(title="ChatRelay Server", version="0.1.0")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[str(o).rstrip("/") for o in settings.allowed_origins],
        # Robust local dev: allow both localhost and 127.0.0.1 on port 3000 via regex
        allow_origin_regex=r"https?://(localhost|127\.0\.0\.1):3000",
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Explicit context: everything a request needs hangs off app.state
    db = Database(settings.database_url)
    feed = ChangeFeed()
    tasks = TaskRegistry()
    catalog = ModelCatalog.from_settings(settings)
    chats = ChatRepository(db, feed)
    sessions = StreamSessionStore(db, feed)
    upstream = OpenRouterClient(settings, transport=transport)
    app.state.settings = settings
    app.state.db = db
    app.state.feed = feed
    app.state.tasks = tasks
    app.state.catalog = catalog
    app.state.chats = chats
    app.state.sessions = sessions
    app.state.storage = ObjectStore(settings, transport=transport)
    app.state.rate_limiter = RateLimiter(settings.rate_limit, settings.rate_limit_window_seconds)
    app.state.relay = ChatRelay(settings, chats, sessions, upstream, catalog, tasks, transport=transport)

    @app.exception_handler(StarletteHTTPException)
    async def _http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        return JSONResponse({"error": exc.detail}, status_code=exc.status_code, headers=getattr(exc, "headers", None))

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse({"error": _validation_message(exc)}, status_code=400)

    # Mount API v1
    api_v1 = APIRouter()
    api_v1.include_router(models_router, prefix="/v1")
    api_v1.include_router(chat_router, prefix="/v1")
    api_v1.include_router(chats_router, prefix="/v1")
    app.include_router(api_v1, prefix="/api")

    @app.on_event("startup")
    async def _startup() -> None:
        # Ensure tables exist
        await db.init()
        if not upstream.configured:
            logger.warning("OPENROUTER_API_KEY is not set; relay requests will be rejected")

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        # Let in-flight relays finish writing their answers
        await tasks.drain(settings.shutdown_drain_seconds)
        await db.dispose()

    @app.get("/healthz")
    def healthz():
        return {"status": "ok"}

    @app.get("/")
    def root():
        return {"service": "chatrelay", "version": "0.1.0"}

    return app


app = create_app()
