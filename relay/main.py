"""ScopeStack Relay — FastAPI app proxying OpenRouter and ScopeStack.

Config is built once (config.yaml + environment) and kept on ``app.state``.
Exposes JSON test/proxy endpoints, /api/research for SSE streaming, plus
operational endpoints for health and hot-reload. The scheduler runs
upstream probes on cron schedules.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import os
from collections.abc import Awaitable, Callable
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, TypeVar

import httpx
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ValidationError

from relay.clients.openrouter import OpenRouterClient, extract_text, strip_code_fences
from relay.clients.scopestack import ScopeStackClient
from relay.config import DEFAULT_CONFIG_PATH, RelayConfig, load_config
from relay.errors import RelayError, as_relay_error, log_error, validation_error
from relay.research import execute_research
from relay.resilience import CallObserver
from relay.scheduler import setup_scheduler
from relay.schemas import (
    CompletionRequest,
    CompletionTestResult,
    PushRequest,
    ResearchRequest,
    ScopeStackAuthRequest,
    ScopeStackHealthRequest,
    SuccessEnvelope,
    event_payload,
)
from relay.sse import SSE_HEADERS, encode_event
from relay.validation import RequestContract, validate_body

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

# ---------------------------------------------------------------------------
# Request contracts
# ---------------------------------------------------------------------------

PROMPT_CONTRACT = RequestContract(
    required=("prompt",),
    optional=("model",),
    types={"prompt": "string", "model": "string"},
    predicate=lambda data: isinstance(data["prompt"], str) and bool(data["prompt"].strip()),
)

RESEARCH_CONTRACT = RequestContract(
    required=("input",),
    optional=("models", "prompts"),
    types={"input": "string", "models": "object", "prompts": "object"},
)

SCOPESTACK_AUTH_CONTRACT = RequestContract(
    required=("api_key",),
    optional=("api_url", "account_slug"),
    types={"api_key": "string", "api_url": "string", "account_slug": "string"},
)

SCOPESTACK_HEALTH_CONTRACT = RequestContract(
    required=("url", "token"),
    types={"url": "string", "token": "string"},
)

PUSH_CONTRACT = RequestContract(
    required=("projectName", "clientName", "services"),
    optional=("executiveSummary",),
    types={
        "projectName": "string",
        "clientName": "string",
        "executiveSummary": "string",
        "services": "array",
    },
)


# ---------------------------------------------------------------------------
# Boundary helpers
# ---------------------------------------------------------------------------


async def read_json(request: Request) -> Any:
    try:
        return await request.json()
    except ValueError as e:
        raise validation_error("Invalid JSON in request body") from e


def decode(model: type[M], data: dict[str, Any]) -> M:
    """Validated body → typed request model."""
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise validation_error(
            "Request data failed validation",
            detail={"errors": e.errors(include_url=False, include_context=False)},
        ) from e


def error_response(error: RelayError) -> JSONResponse:
    return JSONResponse(error.to_dict(), status_code=error.http_status)


def with_error_handling(handler: Callable[..., Awaitable[Any]]) -> Callable[..., Awaitable[Any]]:
    """Translate any failure escaping ``handler`` into a JSON error response.

    This is the only place a ``RelayError`` becomes an HTTP response.
    """

    @functools.wraps(handler)
    async def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return await handler(*args, **kwargs)
        except HTTPException:
            raise
        except Exception as e:
            error = as_relay_error(e)
            log_error(error, endpoint=handler.__name__)
            return error_response(error)

    return wrapper


def build_clients(
    config: RelayConfig,
    http: httpx.AsyncClient,
    observer: CallObserver | None,
    sleep: Callable[[float], Awaitable[Any]],
) -> tuple[OpenRouterClient, ScopeStackClient]:
    return (
        OpenRouterClient(config.openrouter, config.retry, http, observer=observer, sleep=sleep),
        ScopeStackClient(config.scopestack, config.retry, http, observer=observer, sleep=sleep),
    )


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------


def get_config(request: Request) -> RelayConfig:
    return request.app.state.config


def get_openrouter(request: Request) -> OpenRouterClient:
    return request.app.state.openrouter


def get_scopestack(request: Request) -> ScopeStackClient:
    return request.app.state.scopestack


async def verify_api_key(request: Request) -> None:
    """Validate X-API-Key header against the configured key.
    If no api_key is set in config, auth is disabled (dev mode).
    """
    config = get_config(request)
    if not config.api_key:
        return  # Auth disabled, no key configured

    key = request.headers.get("X-API-Key")
    if key != config.api_key:
        raise HTTPException(status_code=401, detail="Invalid or missing API key")


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------


def create_app(
    config: RelayConfig | None = None,
    *,
    config_path: str | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
    observer: CallObserver | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> FastAPI:
    """Build the app. ``transport``, ``observer`` and ``sleep`` are seams for tests."""
    config_path = config_path or os.environ.get("RELAY_CONFIG", DEFAULT_CONFIG_PATH)
    if config is None:
        config = load_config(config_path)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Open the shared HTTP client and start the probe scheduler."""
        cfg: RelayConfig = app.state.config
        logging.getLogger().setLevel(cfg.log_level)
        # Upstream clients pass their configured timeout on every request.
        http = httpx.AsyncClient(transport=transport, follow_redirects=True, timeout=None)
        app.state.http = http
        app.state.openrouter, app.state.scopestack = build_clients(cfg, http, observer, sleep)
        scheduler = setup_scheduler(cfg, app.state.openrouter, app.state.scopestack)
        scheduler.start()
        app.state.scheduler = scheduler
        logger.info(
            f"Relay started (origins={cfg.allowed_origins}, "
            f"auth={'enabled' if cfg.api_key else 'disabled'}, "
            f"retry={cfg.retry.max_attempts}x{cfg.retry.backoff}, probes={len(cfg.probes)})"
        )
        yield
        app.state.scheduler.shutdown(wait=False)
        await http.aclose()
        logger.info("Relay shutting down")

    app = FastAPI(title="ScopeStack Relay", version="0.1.0", lifespan=lifespan)
    app.state.config = config
    app.state.config_path = config_path
    app.state.reload_config = lambda: load_config(config_path)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_routes(app, observer, sleep)
    return app


def register_routes(
    app: FastAPI,
    observer: CallObserver | None,
    sleep: Callable[[float], Awaitable[Any]],
) -> None:
    # -----------------------------------------------------------------------
    # OpenRouter
    # -----------------------------------------------------------------------

    @app.post("/api/test-openrouter", dependencies=[Depends(verify_api_key)])
    @with_error_handling
    async def test_openrouter(
        request: Request,
        config: RelayConfig = Depends(get_config),
        openrouter: OpenRouterClient = Depends(get_openrouter),
    ):
        """Round-trip a short prompt and report model, size and usage."""
        body = decode(CompletionRequest, validate_body(await read_json(request), PROMPT_CONTRACT))
        model = body.model or config.openrouter.default_model

        response = await openrouter.complete(
            f"Test prompt: {body.prompt}",
            model=model,
            max_tokens=100,
            temperature=0.1,
            name="OpenRouter test",
        )
        result = CompletionTestResult(
            model=model,
            response_length=len(extract_text(response)),
            usage=response.get("usage"),
            test_time=datetime.now(timezone.utc).isoformat(),
        )
        return SuccessEnvelope(data=result.model_dump(by_alias=True)).model_dump()

    @app.post("/api/generate", dependencies=[Depends(verify_api_key)])
    @with_error_handling
    async def generate(
        request: Request,
        openrouter: OpenRouterClient = Depends(get_openrouter),
    ):
        """Proxy one prompt and return the cleaned completion text."""
        body = decode(CompletionRequest, validate_body(await read_json(request), PROMPT_CONTRACT))
        response = await openrouter.complete(body.prompt, model=body.model, name="OpenRouter generate")
        text = strip_code_fences(extract_text(response))
        logger.info(f"OpenRouter response received, length: {len(text)} characters")
        return {"text": text}

    # -----------------------------------------------------------------------
    # Research stream
    # -----------------------------------------------------------------------

    @app.post("/api/research", dependencies=[Depends(verify_api_key)])
    @with_error_handling
    async def research(
        request: Request,
        config: RelayConfig = Depends(get_config),
        openrouter: OpenRouterClient = Depends(get_openrouter),
    ):
        """Run the research pipeline.

        Streams response as Server-Sent Events (SSE).
        """
        body = decode(ResearchRequest, validate_body(await read_json(request), RESEARCH_CONTRACT))
        config.openrouter.require_api_key()

        async def stream():
            async for event in execute_research(openrouter, body, config.openrouter.default_model):
                yield encode_event(event_payload(event))

        return StreamingResponse(stream(), media_type="text/event-stream", headers=SSE_HEADERS)

    # -----------------------------------------------------------------------
    # ScopeStack
    # -----------------------------------------------------------------------

    @app.post("/api/test-scopestack-auth", dependencies=[Depends(verify_api_key)])
    @with_error_handling
    async def test_scopestack_auth(
        request: Request,
        scopestack: ScopeStackClient = Depends(get_scopestack),
    ):
        """Verify a ScopeStack API key against ``/v1/me``."""
        raw = await read_json(request)
        if isinstance(raw, dict):
            # Both parameter name formats are accepted.
            raw = {
                "api_key": raw.get("apiKey") or raw.get("scopeStackApiKey"),
                "api_url": raw.get("apiUrl") or raw.get("scopeStackApiUrl"),
                "account_slug": raw.get("accountSlug"),
            }
            raw = {k: v for k, v in raw.items() if v is not None}
        body = decode(ScopeStackAuthRequest, validate_body(raw, SCOPESTACK_AUTH_CONTRACT))

        account = await scopestack.get_current_user(body.api_key, body.api_url)
        return {
            "success": True,
            "userName": account.name,
            "accountSlug": account.account_slug,
            "accountId": account.account_id,
            "email": account.email,
        }

    @app.post("/api/test-scopestack", dependencies=[Depends(verify_api_key)])
    @with_error_handling
    async def test_scopestack(
        request: Request,
        scopestack: ScopeStackClient = Depends(get_scopestack),
    ):
        """Check that a ScopeStack instance answers its health endpoint."""
        body = decode(ScopeStackHealthRequest, validate_body(await read_json(request), SCOPESTACK_HEALTH_CONTRACT))
        await scopestack.check_health(body.url, body.token)
        return {"success": True, "message": "ScopeStack connection successful"}

    @app.post("/api/push-to-scopestack", dependencies=[Depends(verify_api_key)])
    @with_error_handling
    async def push_to_scopestack(
        request: Request,
        scopestack: ScopeStackClient = Depends(get_scopestack),
    ):
        """Create a ScopeStack project from generated content.

        Responds 200 with ``success: false`` when only some services failed.
        """
        body = decode(PushRequest, validate_body(await read_json(request), PUSH_CONTRACT))
        result = await scopestack.push_content(body)
        return result.model_dump(by_alias=True)

    @app.get("/api/test-env", dependencies=[Depends(verify_api_key)])
    async def test_env(config: RelayConfig = Depends(get_config)):
        """Report which settings are present, never their values."""
        presence = config.settings_presence()
        return {
            "message": "Environment variable check",
            "environment": {**presence, "timestamp": datetime.now(timezone.utc).isoformat()},
            "hasRequiredVars": (
                presence["SCOPESTACK_API_TOKEN"]
                and presence["SCOPESTACK_API_URL"]
                and presence["SCOPESTACK_ACCOUNT_SLUG"]
            ),
        }

    # -----------------------------------------------------------------------
    # Operational endpoints
    # -----------------------------------------------------------------------

    @app.get("/health")
    async def health(config: RelayConfig = Depends(get_config)):
        """Liveness check."""
        return {
            "status": "healthy",
            "probes": len(config.probes),
            "retry_attempts": config.retry.max_attempts,
        }

    @app.post("/reload", dependencies=[Depends(verify_api_key)])
    async def reload(request: Request):
        """Hot-reload config.yaml without container restart.

        Stops the current scheduler, reloads config, rebuilds the upstream
        clients, and starts a new scheduler.
        """
        state = request.app.state
        try:
            new_config = state.reload_config()
        except Exception as e:
            logger.error(f"Reload failed: {e}", exc_info=True)
            raise HTTPException(status_code=500, detail=f"Reload failed: {e}")

        state.scheduler.shutdown(wait=False)
        state.config = new_config
        state.openrouter, state.scopestack = build_clients(new_config, state.http, observer, sleep)
        new_scheduler = setup_scheduler(new_config, state.openrouter, state.scopestack)
        new_scheduler.start()
        state.scheduler = new_scheduler

        return {"status": "reloaded", "probes": len(new_config.probes)}


app = create_app()
