import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Optional

from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .agent import ChatAgentService, get_agent_service
from .auth import require_auth
from .models import CacheRefreshRequest, ChatRequest
from .services.llm import LLMProviderError
from .services.notifications import close_notification_channel, get_notification_channel, send_result_webhook
from .settings import get_settings


def setup_server_logging() -> logging.Logger:
    """Configure and return the server logger."""
    logs_dir = Path("logs")
    logs_dir.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger("mmassist.server")
    if logger.handlers:
        return logger

    settings = get_settings()
    level = logging.DEBUG if settings.debug else getattr(logging, settings.log_level)
    logger.setLevel(level)
    logging.getLogger("mmassist").setLevel(level)
    fmt = logging.Formatter("%(asctime)s %(levelname)s %(name)s - %(message)s")

    ch = logging.StreamHandler()
    ch.setFormatter(fmt)
    logger.addHandler(ch)

    fh = RotatingFileHandler(logs_dir / "server.log", maxBytes=5_000_000, backupCount=3)
    fh.setFormatter(fmt)
    logger.addHandler(fh)

    return logger


def _cors_origins_list(origins: str) -> list[str]:
    """Parse CORS_ORIGINS into a list."""
    if not origins or origins.strip() == "*":
        return ["*"]
    return [o.strip() for o in origins.split(",") if o.strip()]


def _error(status_code: int, message: str, **extra: Any) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": message, **extra, "timestamp": datetime.now(timezone.utc).isoformat()},
    )


LOGGER = setup_server_logging()
settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Connect to the tool portal and warm the reference cache; close Redis on shutdown."""
    service = get_agent_service()
    LOGGER.info("Connecting to tool providers at startup...")
    try:
        tools = await service.ensure_tools()
        LOGGER.info("Discovered %d tools", len(tools))
        if tools:
            await service.fetcher.refresh_if_needed(tools, service.cache)
    except (OSError, ConnectionError, TimeoutError) as e:
        LOGGER.warning("Tools partially or fully unavailable: %s", e)
    except Exception as e:
        LOGGER.exception("Unexpected error during startup: %s", e)

    await get_notification_channel()

    yield

    LOGGER.info("Shutting down...")
    await close_notification_channel()


app = FastAPI(
    title="Mattermost Assistant Agent",
    version="0.1.0",
    debug=settings.debug,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins_list(settings.cors_origins),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(HTTPException)
async def http_error_handler(request: Request, exc: HTTPException) -> JSONResponse:
    return _error(exc.status_code, str(exc.detail))


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    LOGGER.warning("Invalid request to %s: %s", request.url.path, exc.errors())
    return _error(400, "Invalid request body", details=exc.errors())


@app.get("/health")
async def health(service: ChatAgentService = Depends(get_agent_service)) -> JSONResponse:
    """Aggregate connection status: 200 once tools are discovered, 503 before."""
    try:
        status_code, body = await service.health()
    except Exception as e:
        LOGGER.exception("Health check failed: %s", e)
        return JSONResponse(
            status_code=500,
            content={"status": "error", "error": str(e), "timestamp": datetime.now(timezone.utc).isoformat()},
        )
    return JSONResponse(status_code=status_code, content=body)


@app.get("/tools", dependencies=[Depends(require_auth)])
async def tools(service: ChatAgentService = Depends(get_agent_service)) -> dict[str, Any]:
    return {"status": "success", "tools": service.list_tools()}


@app.post("/chat", dependencies=[Depends(require_auth)])
async def chat(
    body: ChatRequest,
    background_tasks: BackgroundTasks,
    service: ChatAgentService = Depends(get_agent_service),
) -> Any:
    """Run one conversation turn.

    Request Format:
        {
            "messages": [...] or "prompt": str,
            "email": str - acting user,
            "thread_id": str - notification channel suffix,
            "model": str - optional override,
            "webhook_url": str - optional result webhook
        }

    Response Format:
        {"status": "success", "answer": str, "debug": {...metrics}}
    """
    if not body.user_messages():
        return _error(400, "No messages provided")

    LOGGER.info("Chat request thread_id=%s", body.thread_id)
    try:
        outcome = await service.run_chat(body)
    except LLMProviderError as e:
        LOGGER.error("LLM provider error: %s", e.detail)
        return _error(500, str(e))
    except Exception as e:
        LOGGER.exception("Chat request failed: %s", e)
        return _error(500, str(e))

    if body.webhook_url:
        background_tasks.add_task(send_result_webhook, body.webhook_url, outcome.webhook_payload(body.prompt_id))
    return outcome.response_body()


@app.post("/cache/refresh", dependencies=[Depends(require_auth)])
async def cache_refresh(
    body: Optional[CacheRefreshRequest] = None,
    service: ChatAgentService = Depends(get_agent_service),
) -> Any:
    email = body.email if body else None
    try:
        success = await service.refresh_cache(email)
    except Exception as e:
        LOGGER.exception("Cache refresh failed: %s", e)
        return _error(500, "Failed to refresh cache", details=str(e))
    return {
        "status": "success" if success else "partial",
        "message": "Cache refreshed successfully" if success else "Cache partially refreshed",
        "cache": service.cache_stats(),
    }


@app.get("/cache/stats", dependencies=[Depends(require_auth)])
async def cache_stats(service: ChatAgentService = Depends(get_agent_service)) -> dict[str, Any]:
    return {"status": "success", "cache": service.cache_stats()}


@app.post("/cache/clear", dependencies=[Depends(require_auth)])
async def cache_clear(service: ChatAgentService = Depends(get_agent_service)) -> dict[str, Any]:
    service.clear_cache()
    return {"status": "success", "message": "Cache cleared successfully"}
