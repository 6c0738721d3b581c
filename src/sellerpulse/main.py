import asyncio
import logging
import sqlite3
from contextlib import asynccontextmanager, suppress
from dataclasses import dataclass
from logging.handlers import RotatingFileHandler
from typing import Any, Dict, List, Optional
from urllib.parse import urlsplit, urlunsplit

import httpx
from fastapi import APIRouter, Depends, FastAPI, Header, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from .agent import ChatOrchestrator, ToolDispatcher, build_registry
from .models import RequestContext
from .services.data_source import DataSourceError, DataSourceManager, init_tenant_database
from .services.inference import (
    InferenceClient,
    InferenceConnectionError,
    InferenceError,
    InferenceTimeoutError,
)
from .services.session_store import (
    InMemorySessionStore,
    SessionAccessDeniedError,
    SessionNotFoundError,
    SessionRepository,
    require_owned_session,
)
from .services.sse import SSE_HEADERS, sse_frames
from .settings import Settings, get_settings


def setup_server_logging(settings: Settings) -> logging.Logger:
    """Configure the package logger once and return the server logger."""
    logs_dir = settings.logs_dir
    logs_dir.mkdir(parents=True, exist_ok=True)

    root = logging.getLogger("sellerpulse")
    if not root.handlers:
        root.setLevel(settings.log_level)
        fmt = logging.Formatter("%(asctime)s %(levelname)s %(name)s - %(message)s")

        ch = logging.StreamHandler()
        ch.setFormatter(fmt)
        root.addHandler(ch)

        fh = RotatingFileHandler(logs_dir / "server.log", maxBytes=5_000_000, backupCount=3)
        fh.setFormatter(fmt)
        root.addHandler(fh)

    return logging.getLogger("sellerpulse.server")


def _cors_origins_list(origins: str) -> list[str]:
    """Parse CORS_ORIGINS into a list."""
    if not origins or origins.strip() == "*":
        return ["*"]
    return [o.strip() for o in origins.split(",") if o.strip()]


LOGGER = setup_server_logging(get_settings())


@dataclass
class AgentServices:
    settings: Settings
    sessions: SessionRepository
    inference: InferenceClient
    dispatcher: ToolDispatcher
    data_sources: DataSourceManager
    orchestrator: ChatOrchestrator


def build_services(
    settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None
) -> AgentServices:
    """Wire the default collaborators; transport overrides the upstream HTTP transport."""
    sessions = InMemorySessionStore()
    inference = InferenceClient(
        settings.ollama_base_url,
        settings.ollama_model,
        timeout=settings.request_timeout_seconds,
        transport=transport,
    )
    dispatcher = ToolDispatcher(build_registry())
    data_sources = DataSourceManager(settings.data_dir)
    orchestrator = ChatOrchestrator(
        sessions=sessions,
        inference=inference,
        dispatcher=dispatcher,
        acquire_data_source=data_sources.acquire,
        settings=settings,
    )
    return AgentServices(settings, sessions, inference, dispatcher, data_sources, orchestrator)


async def _session_sweeper(sessions: SessionRepository, max_age_days: int, interval: int) -> None:
    while True:
        await asyncio.sleep(interval)
        try:
            await sessions.cleanup(max_age_days)
        except Exception as e:
            LOGGER.exception("Session cleanup failed: %s", e)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Seed the demo tenant and start the session sweeper; close the upstream client on shutdown."""
    services: AgentServices = app.state.services
    settings = services.settings

    if settings.seed_demo_tenant:
        try:
            path = services.data_sources.path_for(settings.seed_demo_tenant)
            await asyncio.to_thread(init_tenant_database, path, settings.today())
            LOGGER.info("Demo tenant %s ready at %s", settings.seed_demo_tenant, path)
        except (OSError, sqlite3.Error, DataSourceError) as e:
            LOGGER.exception("Failed to seed demo tenant %s: %s", settings.seed_demo_tenant, e)

    sweeper: Optional[asyncio.Task] = None
    if settings.session_cleanup_interval_seconds > 0:
        sweeper = asyncio.create_task(
            _session_sweeper(
                services.sessions,
                settings.session_max_age_days,
                settings.session_cleanup_interval_seconds,
            )
        )

    yield

    LOGGER.info("Shutting down...")
    if sweeper is not None:
        sweeper.cancel()
        with suppress(asyncio.CancelledError):
            await sweeper
    await services.inference.aclose()


class QueryRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    query: Any = None
    session_id: Optional[str] = Field(None, alias="sessionId")


class ChatStreamRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message: Any = None
    session_id: Optional[str] = Field(None, alias="sessionId")


class TitleUpdateRequest(BaseModel):
    title: str = Field(min_length=1, max_length=200)


def get_services(request: Request) -> AgentServices:
    return request.app.state.services


async def get_request_context(
    x_user_id: Optional[str] = Header(None),
    x_database_name: Optional[str] = Header(None),
) -> RequestContext:
    """Caller identity as forwarded by the authenticating gateway."""
    return RequestContext(
        user_id=x_database_name or x_user_id or "anonymous",
        tenant=x_database_name,
    )


router = APIRouter(prefix="/api/agent")


@router.post("/query")
async def process_query(
    body: QueryRequest,
    ctx: RequestContext = Depends(get_request_context),
    services: AgentServices = Depends(get_services),
) -> Any:
    """Non-streaming tool-calling query."""
    if not isinstance(body.query, str) or not body.query.strip():
        return JSONResponse(
            status_code=400,
            content={
                "success": False,
                "error": "Query is required",
                "message": "Please provide a natural language query in the request body.",
            },
        )
    LOGGER.info("Processing agent query for %s", ctx.user_id)
    return await services.orchestrator.process_query(body.query, ctx, session_id=body.session_id)


@router.get("/tools")
async def list_tools(services: AgentServices = Depends(get_services)) -> Dict[str, Any]:
    return {
        "success": True,
        "message": "Tools retrieved successfully",
        "data": services.dispatcher.registry.describe(),
    }


def _probe_targets(base_url: str) -> List[str]:
    parts = urlsplit(base_url.rstrip("/"))
    port = f":{parts.port}" if parts.port else ""
    targets = [base_url.rstrip("/")]
    for host in ("localhost", "127.0.0.1"):
        candidate = urlunsplit(parts._replace(netloc=f"{host}{port}"))
        if candidate not in targets:
            targets.append(candidate)
    return targets


@router.get("/health")
async def check_health(services: AgentServices = Depends(get_services)) -> Dict[str, Any]:
    """Probe the configured upstream and its localhost variants."""
    settings = services.settings
    results = await asyncio.gather(
        *(
            services.inference.probe(url, settings.health_timeout_seconds)
            for url in _probe_targets(settings.ollama_base_url)
        )
    )
    working = next((r for r in results if r["success"]), None)
    if working is None:
        return {
            "success": False,
            "message": "Inference service is not accessible",
            "data": {
                "running": False,
                "configuredUrl": settings.ollama_base_url,
                "model": settings.ollama_model,
                "allTests": results,
                "suggestions": [
                    "Make sure Ollama is running: ollama serve",
                    "Check that OLLAMA_BASE_URL points at a reachable host",
                    "Verify the service is listening on the expected interface and port",
                ],
            },
        }

    configured_host = urlsplit(settings.ollama_base_url).hostname
    return {
        "success": True,
        "message": "Inference service is accessible",
        "data": {
            "running": True,
            "workingHost": working["host"],
            "workingUrl": working["url"],
            "model": settings.ollama_model,
            "allTests": results,
            "recommendation": (
                f"Update OLLAMA_BASE_URL to: {working['url']}"
                if working["host"] != configured_host
                else "Current configuration is working"
            ),
        },
    }


@router.get("/models")
async def list_models(services: AgentServices = Depends(get_services)) -> Dict[str, Any]:
    settings = services.settings
    try:
        models = await services.inference.list_models()
    except InferenceError as e:
        LOGGER.warning("Failed to list upstream models: %s", e)
        return {"success": False, "message": "Failed to get models", "data": {"error": str(e)}}
    return {
        "success": True,
        "message": "Models retrieved successfully",
        "data": {"models": models, "configuredModel": settings.ollama_model},
    }


@router.post("/chat/stream")
async def chat_stream(
    body: ChatStreamRequest,
    ctx: RequestContext = Depends(get_request_context),
    services: AgentServices = Depends(get_services),
) -> StreamingResponse:
    """Server-Sent Events chat turn."""
    turn = services.orchestrator.stream_chat(body.message, body.session_id, ctx)
    return StreamingResponse(sse_frames(turn), media_type="text/event-stream", headers=SSE_HEADERS)


@router.get("/chat/sessions")
async def list_sessions(
    ctx: RequestContext = Depends(get_request_context),
    services: AgentServices = Depends(get_services),
) -> Dict[str, Any]:
    sessions = await services.sessions.list_sessions(ctx.user_id)
    return {"success": True, "data": [s.summary() for s in sessions]}


@router.get("/chat/sessions/{session_id}")
async def get_session_history(
    session_id: str,
    ctx: RequestContext = Depends(get_request_context),
    services: AgentServices = Depends(get_services),
) -> Dict[str, Any]:
    session = await require_owned_session(services.sessions, session_id, ctx.user_id)
    return {"success": True, "data": session.to_dict()}


@router.patch("/chat/sessions/{session_id}")
async def rename_session(
    session_id: str,
    body: TitleUpdateRequest,
    ctx: RequestContext = Depends(get_request_context),
    services: AgentServices = Depends(get_services),
) -> Dict[str, Any]:
    await require_owned_session(services.sessions, session_id, ctx.user_id)
    await services.sessions.update_title(session_id, body.title)
    return {"success": True, "message": "Session renamed"}


@router.delete("/chat/sessions/{session_id}")
async def delete_session(
    session_id: str,
    ctx: RequestContext = Depends(get_request_context),
    services: AgentServices = Depends(get_services),
) -> Dict[str, Any]:
    await require_owned_session(services.sessions, session_id, ctx.user_id)
    await services.sessions.delete_session(session_id)
    return {"success": True, "message": "Session deleted"}


@router.delete("/chat/sessions")
async def clear_sessions(
    ctx: RequestContext = Depends(get_request_context),
    services: AgentServices = Depends(get_services),
) -> Dict[str, Any]:
    deleted = await services.sessions.clear_sessions(ctx.user_id)
    return {"success": True, "message": f"Deleted {deleted} sessions", "deleted": deleted}


def _inference_status(exc: InferenceError) -> int:
    if isinstance(exc, InferenceTimeoutError):
        return 504
    if isinstance(exc, InferenceConnectionError):
        return 503
    return 502


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(SessionNotFoundError)
    async def session_not_found(request: Request, exc: SessionNotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"success": False, "error": str(exc)})

    @app.exception_handler(SessionAccessDeniedError)
    async def session_access_denied(request: Request, exc: SessionAccessDeniedError) -> JSONResponse:
        return JSONResponse(status_code=403, content={"success": False, "error": str(exc)})

    @app.exception_handler(InferenceError)
    async def inference_failed(request: Request, exc: InferenceError) -> JSONResponse:
        LOGGER.error("Inference failure on %s: %s", request.url.path, exc)
        return JSONResponse(
            status_code=_inference_status(exc),
            content={"success": False, "error": str(exc), "message": "Failed to process query"},
        )


def create_app(services: Optional[AgentServices] = None) -> FastAPI:
    settings = services.settings if services else get_settings()
    app = FastAPI(
        title="SellerPulse Streaming Agent",
        version="0.1.0",
        debug=settings.debug,
        lifespan=lifespan,
    )
    app.state.services = services or build_services(settings)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_cors_origins_list(settings.cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_exception_handlers(app)
    app.include_router(router)

    @app.get("/health")
    async def health() -> Dict[str, Any]:
        """Health check for load balancers and monitoring."""
        return {"status": "ok"}

    return app


app = create_app()


def run() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())
