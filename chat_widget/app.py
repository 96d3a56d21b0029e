from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address

from .chat import ReplyStreamer
from .config import Settings, load_settings
from .content import ContentGenerator
from .errors import GenerationFailure, ModerationFailure, ValidationError, WidgetError
from .extraction import SnapshotUpdater, StructuredExtractor
from .gemini_client import GeminiClient
from .models import (
    ChatMessage,
    ChatRequest,
    ContentRequest,
    CustomerIntentionRequest,
    CustomerProspectRequest,
    ModerationRequest,
    ModerationResult,
    SearchConfig,
    SearchDataRequest,
)
from .moderation import Moderator
from .schemas import CUSTOMER_INTENTION_SCHEMA, CUSTOMER_PROSPECT_SCHEMA, SchemaDescriptor, search_schema_from_config
from .scoring import MatchScorer
from .utils import sanitize_messages, strip_html
from .widget_config import WidgetConfig, WidgetConfigLoader

BASE_DIR = Path(__file__).resolve().parent
ENV_PATH = BASE_DIR / ".env"

logger = logging.getLogger("chat_widget.api")


def configure_logging() -> None:
    log_level_name = os.getenv("LOG_LEVEL", "INFO").upper()
    log_level = getattr(logging, log_level_name, logging.INFO)
    if not logging.getLogger().handlers:
        logging.basicConfig(
            level=log_level,
            format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        )
    logging.getLogger("chat_widget").setLevel(log_level)


@dataclass
class WidgetServices:
    """Everything the HTTP layer calls, built once per app."""
    settings: Settings
    gemini: GeminiClient
    widget_config: WidgetConfig
    moderator: Moderator
    streamer: ReplyStreamer
    updater: SnapshotUpdater
    generator: ContentGenerator
    limiter: Limiter


def build_services(settings: Settings, gemini: Optional[GeminiClient] = None) -> WidgetServices:
    """Purpose: Wire the model client, widget config and every component from settings.
    Inputs/Outputs: Input is Settings and an optional pre-built client; returns
        WidgetServices.
    Side Effects / State: Reads the widget config file; configures the Gemini SDK when
        no client is supplied.
    Dependencies: WidgetConfigLoader, GeminiClient and the component classes.
    Failure Modes: Missing API key, unreadable config or invalid searchData raise.
    If Removed: create_app has nothing to route requests to.
    Testing Notes: Pass a fake client to avoid network access.
    """
    # Extraction-style calls use the client's default model; replies use the chat model.
    widget_config, _meta = WidgetConfigLoader(settings.widget_config_path).load()
    if settings.require_manual_search and not widget_config.require_manual_search:
        widget_config.require_manual_search = True
    client = gemini or GeminiClient(settings)
    extractor = StructuredExtractor(client, settings.prompts_dir, model=settings.gemini_model_extraction)
    scorer = MatchScorer(
        client,
        settings.prompts_dir,
        model=settings.gemini_model_extraction,
        threshold=settings.match_score_threshold,
    )
    return WidgetServices(
        settings=settings,
        gemini=client,
        widget_config=widget_config,
        moderator=Moderator(client, settings.prompts_dir, model=settings.gemini_model_extraction),
        streamer=ReplyStreamer(client, widget_config, settings.prompts_dir, model=settings.gemini_model_chat),
        updater=SnapshotUpdater(extractor),
        generator=ContentGenerator(client, scorer, settings.prompts_dir, model=settings.gemini_model_chat),
        limiter=build_limiter(settings),
    )


def rate_limit_value(settings: Settings) -> str:
    """Render the configured budget in the limits string notation, e.g. "100 per 900 seconds"."""
    return f"{settings.rate_limit} per {settings.rate_limit_window_seconds} seconds"


def build_limiter(settings: Settings) -> Limiter:
    """Purpose: Build the per-client-IP request limiter.
    Inputs/Outputs: Input is Settings; returns a slowapi Limiter.
    Side Effects / State: Counters live in the limits in-memory storage, which expires
        them once their window passes.
    Dependencies: slowapi, limits (moving-window strategy).
    Failure Modes: An unparsable limit string raises at startup.
    If Removed: A single client can exhaust the model quota.
    Testing Notes: A budget of 2 rejects the third request with 429.
    """
    # One shared default limit; health is exempted at the route.
    return Limiter(
        key_func=get_remote_address,
        default_limits=[rate_limit_value(settings)],
        strategy="moving-window",
        storage_uri="memory://",
        headers_enabled=True,
    )


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def _validation_message(exc: RequestValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "Invalid request body"
    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = str(first.get("msg", "invalid value"))
    return f"{location}: {message}" if location else message


def _history(messages: List[ChatMessage]) -> List[Dict[str, Any]]:
    return sanitize_messages([message.model_dump() for message in messages])


def create_app(settings: Optional[Settings] = None, services: Optional[WidgetServices] = None) -> FastAPI:
    """Purpose: Build the FastAPI application for the chat widget backend.
    Inputs/Outputs: Optional Settings and pre-built services; returns a FastAPI app.
    Side Effects / State: Loads .env, configures logging, and builds services when
        none are given.
    Dependencies: build_services, CORSMiddleware, SlowAPIMiddleware.
    Failure Modes: Configuration errors raise at startup rather than per request.
    If Removed: The widget frontend has no backend to call.
    Testing Notes: Inject services built around a fake client and use TestClient.
    """
    # Environment first so load_settings sees values from .env.
    if ENV_PATH.exists():
        load_dotenv(ENV_PATH, override=False)
    configure_logging()
    if services is None:
        services = build_services(settings or load_settings())
    settings = services.settings

    app = FastAPI(title="Chat Widget Backend")
    app.state.services = services
    app.state.limiter = services.limiter

    @app.middleware("http")
    async def unexpected_errors(request: Request, call_next):
        # Inside CORS, so unexpected 500s stay readable by the widget.
        try:
            return await call_next(request)
        except Exception:
            logger.exception("path=%s unhandled_error", request.url.path)
            return _error(500, "Internal server error")

    app.add_middleware(SlowAPIMiddleware)
    # Added last so it wraps the limiter and 429 responses still carry CORS headers.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.allowed_origins),
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type"],
    )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
        return _error(400, _validation_message(exc))

    @app.exception_handler(ValidationError)
    async def handle_validation(request: Request, exc: ValidationError) -> JSONResponse:
        return _error(400, str(exc))

    # Sync on purpose: SlowAPIMiddleware calls this handler directly.
    @app.exception_handler(RateLimitExceeded)
    def handle_rate_limit(request: Request, exc: RateLimitExceeded) -> JSONResponse:
        logger.warning("path=%s rate_limited client=%s limit=%s", request.url.path, get_remote_address(request), exc.detail)
        response = _error(429, "Too many requests, please try again later.")
        return request.app.state.limiter._inject_headers(response, request.state.view_rate_limit)

    @app.exception_handler(GenerationFailure)
    async def handle_generation(request: Request, exc: GenerationFailure) -> JSONResponse:
        logger.error("path=%s generation_failed=%s", request.url.path, exc)
        return _error(500, "Failed to generate content")

    @app.exception_handler(ModerationFailure)
    async def handle_moderation(request: Request, exc: ModerationFailure) -> JSONResponse:
        logger.error("path=%s moderation_failed=%s", request.url.path, exc)
        return _error(500, "Failed to moderate message")

    @app.exception_handler(WidgetError)
    async def handle_widget_error(request: Request, exc: WidgetError) -> JSONResponse:
        logger.error("path=%s widget_error=%s", request.url.path, exc)
        return _error(500, "Internal server error")

    def search_schema(config: Optional[SearchConfig]) -> SchemaDescriptor:
        if config is None:
            return services.widget_config.search_schema()
        return search_schema_from_config(
            {name: field.model_dump(exclude_none=True) for name, field in config.searchData.items()}
        )

    @app.get("/api/health")
    @services.limiter.exempt
    def health():
        """Liveness check; exempt from the request budget."""
        return {"status": "ok", "model": services.gemini.default_model}

    @app.post("/api/chat")
    async def chat(request: ChatRequest) -> StreamingResponse:
        """Purpose: Stream the assistant reply for the conversation so far.
        Inputs/Outputs: Input is ChatRequest; output is a text/plain chunk stream.
        Side Effects / State: One streamed model call; no server-side session state.
        Dependencies: ReplyStreamer.stream_reply.
        Failure Modes: Failures before the first chunk return 500 {error}; failures
            mid-stream are logged and end the stream early.
        If Removed: The widget cannot show assistant replies.
        Testing Notes: Fake stream chunks must arrive concatenated in order.
        """
        # Pull the first chunk eagerly so early model errors still map to a status code.
        history = _history(request.messages)
        if not any(message["role"] == "user" and message["content"] for message in history):
            raise ValidationError("messages must contain at least one user message")
        schema = search_schema(request.searchConfig)
        stream = services.streamer.stream_reply(history, schema, request.currentData)
        try:
            first = await stream.__anext__()
        except StopAsyncIteration:
            first = ""
        except Exception as exc:
            raise GenerationFailure(f"chat stream failed to start: {exc}") from exc

        async def body() -> AsyncIterator[str]:
            if first:
                yield first
            try:
                async for chunk in stream:
                    yield chunk
            except Exception:
                logger.exception("path=/api/chat stream interrupted")

        return StreamingResponse(body(), media_type="text/plain; charset=utf-8")

    @app.post("/api/search-data")
    async def search_data(request: SearchDataRequest) -> Dict[str, Any]:
        """Merge newly extracted search data into currentData; failures return it unchanged."""
        outcome = await services.updater.refresh(
            _history(request.messages), search_schema(request.searchConfig), request.currentData
        )
        return outcome.snapshot

    @app.post("/api/customer-intention")
    async def customer_intention(request: CustomerIntentionRequest) -> Dict[str, Any]:
        outcome = await services.updater.refresh(
            _history(request.messages), CUSTOMER_INTENTION_SCHEMA, request.currentData
        )
        return outcome.snapshot

    @app.post("/api/customer-prospect")
    async def customer_prospect(request: CustomerProspectRequest) -> Dict[str, Any]:
        outcome = await services.updater.refresh(_history(request.messages), CUSTOMER_PROSPECT_SCHEMA, {})
        return outcome.snapshot

    @app.post("/api/moderate-user-message")
    async def moderate_user_message(request: ModerationRequest) -> ModerationResult:
        content = strip_html(request.content)
        if not content:
            raise ValidationError("content is required")
        return await services.moderator.moderate(content)

    @app.post("/api/generate-custom-content")
    async def generate_custom_content(request: ContentRequest) -> Dict[str, Any]:
        result = await services.generator.generate(request)
        return result.model_dump()

    logger.info(
        "app ready origins=%s rate_limit=%s/%ss threshold=%s",
        list(settings.allowed_origins),
        settings.rate_limit,
        settings.rate_limit_window_seconds,
        settings.match_score_threshold,
    )
    return app


def run() -> None:
    """Serve the app with uvicorn; HOST and PORT come from the environment."""
    import uvicorn

    uvicorn.run(
        "chat_widget.app:create_app",
        factory=True,
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "3001")),
    )


if __name__ == "__main__":
    run()
