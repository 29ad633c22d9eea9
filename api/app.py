# api/app.py
# NOTE:
# Every error the service reports goes through a ChatProxyError handler,
# so the JSON shape {error, code[, details]} is the same for validation,
# upstream and unexpected failures. FastAPI's default 422 for malformed
# bodies is remapped to 400 to keep that contract.
# NOTE:
# The chat routes answer with JSON by default. With stream=true (body
# field or query string) they answer text/plain: raw text chunks, then a
# "---METADATA---" marker line and a trailing JSON object.

import uuid
import json
import logging
import sys
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request, Response, Query
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from pydantic import BaseModel, ValidationError

import core.metrics as metrics
from agents.chat_service import ChatRequest, ChatService
from core.config import Settings
from core.exceptions import ChatProxyError, ChatValidationError, NotFoundError, error_body
from core.logging_config import setup_logging
from core.rate_limiter import RateLimiter
from core.request_context import set_request_id

logger = logging.getLogger(__name__)


class LicenseRequest(BaseModel):
    key: str


def _service(request: Request) -> ChatService:
    return request.app.state.service


def _verbose(request: Request) -> bool:
    return not request.app.state.settings.is_production


def create_app(service: Optional[ChatService] = None, settings: Optional[Settings] = None) -> FastAPI:
    """
    Build the FastAPI application.

    When no service is given it is created during startup from `settings`
    (or the environment), so a missing API key aborts startup rather than
    import.
    """
    if settings is None:
        settings = service.settings if service is not None else Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(settings.log_level)
        if app.state.service is None:
            try:
                app.state.service = ChatService(settings)
            except ChatProxyError:
                logger.critical("No Gemini API keys configured; set GEMINI_API_KEYS")
                raise
        logger.info(
            "Chat proxy ready",
            extra={"model": settings.model_id, "api_keys_count": len(app.state.service.rotator)},
        )
        yield

    app = FastAPI(title="Gemini Chat Proxy", lifespan=lifespan)
    app.state.settings = settings
    app.state.service = service
    app.state.rate_limiter = RateLimiter(
        max_requests=settings.rate_limit_max_requests,
        window=settings.rate_limit_window_seconds,
    )

    # Middleware registered later wraps the earlier ones
    app.add_middleware(GZipMiddleware, minimum_size=1024)

    @app.middleware("http")
    async def rate_limit(request: Request, call_next):
        """Per-client sliding-window limit on /api/* routes."""
        limiter: RateLimiter = request.app.state.rate_limiter
        if limiter.enabled and request.url.path.startswith("/api/"):
            client_id = request.client.host if request.client else "unknown"
            if not limiter.is_allowed(client_id):
                logger.warning("Rate limit exceeded", extra={"client": client_id})
                return JSONResponse(
                    status_code=429,
                    content={"error": "Too many requests, slow down", "code": "RATE_LIMITED"},
                    headers={"Retry-After": str(limiter.retry_after(client_id))},
                )
        return await call_next(request)

    @app.middleware("http")
    async def limit_body_size(request: Request, call_next):
        """Reject bodies larger than MAX_BODY_BYTES before they are parsed."""
        length = request.headers.get("content-length")
        if length is not None and length.isdigit() and int(length) > settings.max_body_bytes:
            return JSONResponse(
                status_code=413,
                content={"error": "Request body too large", "code": "PAYLOAD_TOO_LARGE"},
            )
        return await call_next(request)

    @app.middleware("http")
    async def add_request_id(request: Request, call_next):
        """Generate a unique request ID and store it in the context."""
        request_id = str(uuid.uuid4())
        set_request_id(request_id)
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response

    # Outermost, so preflights are answered before the rate limiter sees them
    # and short-circuit 413/429 responses still carry CORS headers
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "Retry-After"],
    )

    @app.exception_handler(ChatProxyError)
    async def chat_proxy_error_handler(request: Request, exc: ChatProxyError):
        if exc.status_code >= 500:
            logger.error("Request failed", extra={"code": exc.code, "error": str(exc)})
        else:
            logger.info("Request rejected", extra={"code": exc.code, "error": str(exc)})
        return JSONResponse(status_code=exc.status_code, content=error_body(exc, _verbose(request)))

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        body = {"error": "Invalid request", "code": "INVALID_REQUEST"}
        if _verbose(request):
            body["details"] = jsonable_errors(exc.errors())
        return JSONResponse(status_code=400, content=body)

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error", extra={"path": request.url.path})
        return JSONResponse(status_code=500, content=error_body(ChatProxyError(str(exc)), _verbose(request)))

    # ------------------------------------------------------------------
    # Chat
    # ------------------------------------------------------------------
    async def handle_chat(request: Request, req: ChatRequest, route: str) -> Response:
        service = _service(request)
        try:
            if req.stream:
                stream = await service.stream(req)
                response: Response = StreamingResponse(
                    stream.body(),
                    media_type="text/plain; charset=utf-8",
                    # An explicit encoding keeps GZipMiddleware from buffering chunks
                    headers={"Content-Encoding": "identity", "Cache-Control": "no-cache"},
                )
            else:
                response = JSONResponse(await service.reply(req))
        except ChatProxyError as exc:
            metrics.CHAT_REQUESTS.labels(route=route, status=str(exc.status_code)).inc()
            raise
        except Exception as exc:
            logger.exception("Unexpected error in chat handler")
            metrics.CHAT_REQUESTS.labels(route=route, status="500").inc()
            raise ChatProxyError(str(exc)) from exc

        metrics.CHAT_REQUESTS.labels(route=route, status=str(response.status_code)).inc()
        return response

    def request_from_query(message: Optional[str], history: Optional[str], stream: bool) -> ChatRequest:
        parsed_history = None
        if history:
            try:
                parsed_history = json.loads(history)
            except ValueError as exc:
                raise ChatValidationError(
                    "history must be a URL-encoded JSON array", code="INVALID_HISTORY_JSON"
                ) from exc
        try:
            return ChatRequest.model_validate(
                {"message": message, "history": parsed_history, "stream": stream}
            )
        except ValidationError as exc:
            raise ChatValidationError("history must be a JSON array", code="INVALID_HISTORY") from exc

    @app.post("/api/chat")
    async def chat(request: Request, req: ChatRequest):
        """Chat with Gemini. Set `stream` in the body for a text/plain stream."""
        return await handle_chat(request, req, "/api/chat")

    @app.post("/api/doctor-chat")
    async def doctor_chat(request: Request, req: ChatRequest):
        """Legacy path kept for older clients; same behaviour as /api/chat."""
        return await handle_chat(request, req, "/api/doctor-chat")

    @app.get("/api/chat")
    async def chat_query(
        request: Request,
        message: Optional[str] = None,
        history: Optional[str] = Query(None, description="URL-encoded JSON array of history items"),
        stream: bool = False,
    ):
        return await handle_chat(request, request_from_query(message, history, stream), "/api/chat")

    @app.get("/api/doctor-chat")
    async def doctor_chat_query(
        request: Request,
        message: Optional[str] = None,
        history: Optional[str] = Query(None, description="URL-encoded JSON array of history items"),
        stream: bool = False,
    ):
        return await handle_chat(request, request_from_query(message, history, stream), "/api/doctor-chat")

    # ------------------------------------------------------------------
    # Models
    # ------------------------------------------------------------------
    @app.get("/api/models")
    async def models(request: Request):
        """Models visible to the next key in rotation."""
        return {"models": await _service(request).list_models()}

    # ------------------------------------------------------------------
    # Licenses (runtime key pool, not persisted)
    # ------------------------------------------------------------------
    @app.get("/api/licenses")
    async def list_licenses(request: Request):
        keys = _service(request).list_keys()
        return {"count": len(keys), "keys": keys}

    @app.post("/api/licenses")
    async def add_license(request: Request, req: LicenseRequest):
        service = _service(request)
        added = service.add_key(req.key)
        return JSONResponse(
            status_code=201 if added else 200,
            content={"added": added, "count": len(service.rotator)},
        )

    @app.delete("/api/licenses/{key}")
    async def delete_license(request: Request, key: str):
        service = _service(request)
        if not service.remove_key(key):
            raise NotFoundError("API key not found", code="KEY_NOT_FOUND")
        return {"removed": True, "count": len(service.rotator)}

    # ------------------------------------------------------------------
    # Ops
    # ------------------------------------------------------------------
    @app.get("/health")
    async def health(request: Request):
        return _service(request).health()

    @app.get("/metrics")
    async def metrics_endpoint():
        """Prometheus metrics endpoint."""
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return app


def jsonable_errors(errors) -> list:
    """Pydantic error dicts without the non-JSON `ctx`/`input` payloads."""
    return [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
        for err in errors
    ]


app = create_app()


def main():
    settings = Settings.from_env()
    setup_logging(settings.log_level)
    if not settings.api_keys:
        logger.critical("No Gemini API keys configured; set GEMINI_API_KEYS")
        sys.exit(1)
    logger.info("Starting server", extra={"host": settings.host, "port": settings.port})
    uvicorn.run(create_app(settings=settings), host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
