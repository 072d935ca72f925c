"""HTTP interface (FastAPI).

Routes:
    POST /api/compile          {code, filename}                 -> CompileResponse
    POST /api/review           {code}                           -> {success, suggestions}
    POST /api/analyze-errors   {code, compilationError}         -> {success, suggestions}
    POST /api/autofix          {code}                           -> {success, fixedCode}
    POST /api/generate         {prompt, context}                -> {success, code, explanation}
    GET  /api/health                                            -> status, gate, toolchain

Errors use {"success": false, "error": "..."}: 400 for invalid input,
413 for oversized bodies, 503 for a busy gate or an unconfigured AI backend.
"""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, ConfigDict, Field

from compile_sandbox import constants
from compile_sandbox._logging import get_logger
from compile_sandbox.exceptions import BusyError, InputValidationError, ReviewError, SandboxDependencyError
from compile_sandbox.models import CompileResponse, Suggestion
from compile_sandbox.review import GeminiBackend, ReviewClient
from compile_sandbox.service import CompileService
from compile_sandbox.settings import Settings

logger = get_logger(__name__)

# Non-standard, but widely used for "client closed request"
_CLIENT_CLOSED_REQUEST = 499


class CompileBody(BaseModel):
    code: str
    filename: str | None = None


class CodeBody(BaseModel):
    code: str = Field(min_length=1)
    filename: str | None = None


class AnalyzeBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    code: str = Field(min_length=1)
    compilation_error: str = Field(min_length=1, alias="compilationError")


class GenerateBody(BaseModel):
    prompt: str = Field(min_length=1)
    context: str | None = None


class SuggestionsReply(BaseModel):
    success: bool = True
    suggestions: list[Suggestion]


def _error(status_code: int, message: str, headers: dict[str, str] | None = None) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": message}, headers=headers)


async def run_until_disconnect[T](request: Request, work: Awaitable[T]) -> T | None:
    """Await work, cancelling it if the client goes away first.

    Returns None when the client disconnected (work was cancelled).
    """
    task = asyncio.ensure_future(work)
    try:
        while True:
            done, _ = await asyncio.wait({task}, timeout=constants.DISCONNECT_POLL_INTERVAL_SECONDS)
            if task in done:
                return task.result()
            if await request.is_disconnected():
                logger.info("Client disconnected, cancelling job")
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
                return None
    except asyncio.CancelledError:
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        raise


def _build_review_client(settings: Settings) -> ReviewClient | None:
    if not settings.ai_enabled:
        logger.warning("Gemini API key not configured. AI features are disabled.")
        return None
    assert settings.gemini_api_key is not None
    logger.info("AI features enabled", extra={"model": settings.gemini_model})
    return ReviewClient(GeminiBackend(settings.gemini_api_key.get_secret_value(), settings.gemini_model))


def create_app(
    settings: Settings | None = None,
    *,
    service: CompileService | None = None,
    review_client: ReviewClient | None = None,
) -> FastAPI:
    """Build the FastAPI application.

    Args:
        settings: Deployment settings (read from the environment if None)
        service: Compile service to use (built from settings if None)
        review_client: AI client override; by default built from the API key
            in settings, or disabled when no key is set
    """
    settings = settings or Settings()
    service = service or CompileService(settings.sandbox_config())
    if review_client is None:
        review_client = _build_review_client(settings)

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        await service.start()
        try:
            yield
        finally:
            await service.stop()

    app = FastAPI(title="compile-sandbox", lifespan=lifespan)
    app.state.service = service
    app.state.review = review_client

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def limit_body_size(request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
        length = request.headers.get("content-length")
        if length is not None and length.isdigit() and int(length) > constants.MAX_REQUEST_BODY_BYTES:
            return _error(413, f"Request body too large (limit {constants.MAX_REQUEST_BODY_BYTES} bytes)")
        return await call_next(request)

    @app.exception_handler(RequestValidationError)
    async def _invalid_request(_request: Request, exc: RequestValidationError) -> JSONResponse:
        fields = sorted({str(err["loc"][-1]) for err in exc.errors() if err.get("loc")})
        return _error(400, f"Invalid request: {', '.join(fields) or 'body'} required")

    @app.exception_handler(InputValidationError)
    async def _invalid_input(_request: Request, exc: InputValidationError) -> JSONResponse:
        return _error(400, exc.message)

    @app.exception_handler(BusyError)
    async def _busy(_request: Request, exc: BusyError) -> JSONResponse:
        return _error(503, exc.message, headers={"Retry-After": "1"})

    @app.exception_handler(ReviewError)
    @app.exception_handler(SandboxDependencyError)
    async def _ai_unavailable(_request: Request, exc: ReviewError | SandboxDependencyError) -> JSONResponse:
        return _error(503, exc.message)

    def _require_review() -> ReviewClient:
        client: ReviewClient | None = app.state.review
        if client is None:
            raise ReviewError("AI features are not available. Set COMPILE_SANDBOX_GEMINI_API_KEY to enable them.")
        return client

    @app.post("/api/compile", response_model=CompileResponse)
    async def compile_code(body: CompileBody, request: Request) -> Any:
        svc: CompileService = app.state.service
        svc.validate(body.code)
        response = await run_until_disconnect(request, svc.run(body.code, body.filename))
        if response is None:
            return _error(_CLIENT_CLOSED_REQUEST, "Client disconnected; job aborted")
        return response

    @app.post("/api/review", response_model=SuggestionsReply)
    async def review(body: CodeBody) -> Any:
        return SuggestionsReply(suggestions=await _require_review().review(body.code))

    @app.post("/api/analyze-errors", response_model=SuggestionsReply)
    async def analyze_errors(body: AnalyzeBody) -> Any:
        suggestions = await _require_review().analyze_errors(body.code, body.compilation_error)
        return SuggestionsReply(suggestions=suggestions)

    @app.post("/api/autofix")
    async def autofix(body: CodeBody) -> dict[str, Any]:
        return {"success": True, "fixedCode": await _require_review().autofix(body.code)}

    @app.post("/api/generate")
    async def generate(body: GenerateBody) -> dict[str, Any]:
        generated = await _require_review().generate(body.prompt, body.context)
        return {"success": True, "code": generated.code, "explanation": generated.explanation}

    @app.get("/api/health")
    async def health() -> dict[str, Any]:
        svc: CompileService = app.state.service
        toolchain = await svc.toolchain()
        return {
            "status": "OK",
            "message": "compile-sandbox backend is running",
            "timestamp": datetime.now(UTC).isoformat(),
            "environment": settings.environment,
            "gate": dataclasses.asdict(svc.snapshot()),
            "active_jobs": svc.active_jobs,
            "toolchain": dataclasses.asdict(toolchain),
            "ai_enabled": app.state.review is not None,
        }

    return app
