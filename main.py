# /main.py
# This is the main entry point for the ExplainGithub application. It sets up the FastAPI app, including configuration, logging, routes, services, and error handling.
from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from settings import settings
from utils.errors import AppError
from api.routes import router
from api.schemas import ErrorResponse
from services.chat_service import ChatService
from services.llm_client import LLMClient
from services.oauth_service import OAuthService
from services.provider_factory import ProviderRegistry
from services.token_service import TokenService
from storage.chat_store import ChatStore
from storage.db import Database
from storage.history_store import HistoryStore
from storage.token_store import TokenStore

logging.basicConfig(
    level=settings.log_level.upper(),
    format="[%(asctime)s] %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("explaingithub")


# Optional Django UI mount -- INTERACTIVE interface at /ui for browsing repositories and chatting. Can be disabled in production or if Django setup is not desired.
def mount_django(app: FastAPI) -> None:
    if not settings.enable_django_ui:
        logger.info("Django UI disabled (ENABLE_DJANGO_UI is False)")
        return
    try:
        from django_ui.asgi import get_django_asgi_app
        django_app = get_django_asgi_app()
        app.mount("/ui", django_app) ## GO to localhost:8000/ui to access the Django UI
        logger.info("Django UI mounted at /ui")
    except Exception:
        logger.exception("Django UI failed to mount")


def build_services(app: FastAPI, db: Database | None = None, providers: ProviderRegistry | None = None, llm: LLMClient | None = None) -> None:
    db = db or Database()
    providers = providers or ProviderRegistry()
    llm = llm or LLMClient()

    chat_store = ChatStore(db)
    tokens = TokenService(TokenStore(db), providers)

    app.state.db = db
    app.state.providers = providers
    app.state.chat_store = chat_store
    app.state.history = HistoryStore(db)
    app.state.tokens = tokens
    app.state.oauth = OAuthService(providers, tokens)
    app.state.chat = ChatService(llm, store=chat_store, providers=providers, tokens=tokens)


@asynccontextmanager # For FastAPI lifespan event, to initialize and cleanup resources like HTTP clients and the database engine.
async def lifespan(app: FastAPI):
    if not hasattr(app.state, "chat"):
        build_services(app)
    await app.state.db.init_schema()

    # inject services into Django UI
    if settings.enable_django_ui:
        try:
            import django_ui.views as django_views
            django_views.bind(app.state)
        except ImportError:
            logger.exception("Django UI views could not be bound")

    if not app.state.chat.llm.enabled:
        logger.warning("LLM_API_KEY is not set; chat answers will be fallback messages")

    yield

    await app.state.providers.aclose()
    await app.state.db.aclose()


app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)
app.include_router(router)
mount_django(app)


@app.exception_handler(AppError)
async def app_error_handler(_: Request, exc: AppError):
    return JSONResponse(status_code=exc.status_code, content=ErrorResponse(message=exc.message).model_dump())


@app.exception_handler(RequestValidationError)
async def validation_error_handler(_: Request, exc: RequestValidationError):
    # Force the required error shape
    return JSONResponse(status_code=400, content=ErrorResponse(message="Invalid request body").model_dump())


@app.exception_handler(Exception)
async def unhandled_error_handler(_: Request, exc: Exception):
    logger.error("Unhandled error", exc_info=exc)
    return JSONResponse(status_code=500, content=ErrorResponse(message="Internal server error").model_dump())
