from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from dotenv import load_dotenv
from fastapi import FastAPI, Request
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import (
    BaseHTTPMiddleware,
)
from starlette.responses import PlainTextResponse, Response

from holopush.api.router import api_router
from holopush.config import Settings, get_settings
from holopush.notifications.errors import AuthError, ClientInputError
from holopush.notifications.push import PushDispatcher
from holopush.notifications.store import (
    JsonFileBackend,
    SubscriptionStore,
)
from holopush.notifications.vapid import (
    VapidKeyPair,
    load_or_create_vapid_keys,
)

logger = structlog.get_logger()

load_dotenv()

CORS_ALLOW_METHODS = "POST, OPTIONS"
CORS_ALLOW_HEADERS = "Content-Type, Authorization"

_PREFLIGHT_HEADERS = (
    "origin",
    "access-control-request-method",
    "access-control-request-headers",
)


def _cors_headers(origin: str) -> dict[str, str]:
    return {
        "Access-Control-Allow-Origin": origin,
        "Access-Control-Allow-Methods": CORS_ALLOW_METHODS,
        "Access-Control-Allow-Headers": CORS_ALLOW_HEADERS,
    }


def _resolve_vapid_keys(settings: Settings) -> VapidKeyPair:
    """Configured key pair, or a persisted/generated one if none is set."""
    if settings.vapid_public_key or settings.vapid_private_key:
        return VapidKeyPair(
            public_key=settings.vapid_public_key,
            private_key=settings.vapid_private_key,
        )
    return load_or_create_vapid_keys(settings.state_dir)


def _options_response(request: Request) -> Response:
    """Answer a CORS preflight, or advertise allowed methods."""
    if all(h in request.headers for h in _PREFLIGHT_HEADERS):
        return Response(status_code=204)
    return Response(status_code=204, headers={"Allow": CORS_ALLOW_METHODS})


@asynccontextmanager
async def lifespan(
    app: FastAPI,
) -> AsyncGenerator[None]:
    settings = get_settings()
    logger.info("starting_up", version=settings.app_version)

    push_store = SubscriptionStore(JsonFileBackend(settings.push_subs_path))
    keys = _resolve_vapid_keys(settings)
    app.state.push_store = push_store
    app.state.push_dispatcher = PushDispatcher(
        store=push_store,
        keys=keys,
        contact=settings.vapid_contact,
        ttl=settings.push_ttl,
        concurrency=settings.push_concurrency,
        timeout_s=settings.push_timeout_s,
        encrypt_payload=settings.push_encrypt_payload,
    )
    logger.info(
        "push_dispatch_ready",
        public_key=keys.public_key,
        encrypt_payload=settings.push_encrypt_payload,
    )

    yield

    logger.info("shutting_down")


class _CorsBoundaryMiddleware(BaseHTTPMiddleware):
    """CORS headers on every response; last-resort error handler."""

    async def dispatch(self, request, call_next):  # type: ignore[no-untyped-def]
        if request.method == "OPTIONS":
            response = _options_response(request)
        else:
            try:
                response = await call_next(request)
            except Exception as e:
                logger.exception(
                    "unhandled_error",
                    method=request.method,
                    path=request.url.path,
                )
                response = PlainTextResponse(
                    f"Internal Server Error: {e}",
                    status_code=500,
                )
        response.headers.update(_cors_headers(get_settings().allowed_origin))
        return response


async def _client_input_error(request: Request, exc: Exception) -> Response:
    return PlainTextResponse(str(exc), status_code=400)


async def _auth_error(request: Request, exc: Exception) -> Response:
    return PlainTextResponse(str(exc), status_code=401)


async def _http_error(request: Request, exc: StarletteHTTPException) -> Response:
    # Unknown paths and wrong methods look the same to callers
    if exc.status_code in (404, 405):
        return PlainTextResponse("Not Found", status_code=404)
    return PlainTextResponse(str(exc.detail), status_code=exc.status_code)


def create_app() -> FastAPI:
    """Build and return the FastAPI application."""
    settings = get_settings()
    application = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    application.add_middleware(_CorsBoundaryMiddleware)
    application.add_exception_handler(ClientInputError, _client_input_error)
    application.add_exception_handler(AuthError, _auth_error)
    application.add_exception_handler(StarletteHTTPException, _http_error)
    application.include_router(api_router)
    return application


app = create_app()
