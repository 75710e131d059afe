import logging
import traceback

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from pipeline.errors import PipelineError

logger = logging.getLogger(__name__)


def error_envelope(exc: Exception, debug: bool = False) -> tuple[int, dict]:
    """Flatten any exception into (status, {success: false, error, ...})."""
    if isinstance(exc, PipelineError):
        status, payload = exc.status_code, exc.to_envelope()
    elif isinstance(exc, RequestValidationError):
        status = 400
        payload = {
            "success": False,
            "error": "; ".join(_describe(err) for err in exc.errors()) or "Invalid request",
            "stage": "validation",
            "errorType": "ValidationError",
            "category": "input",
        }
    elif isinstance(exc, StarletteHTTPException):
        status = exc.status_code
        payload = {
            "success": False,
            "error": str(exc.detail),
            "errorType": "HTTPError",
            "category": "input" if exc.status_code < 500 else "internal",
        }
    else:
        status = 500
        payload = {
            "success": False,
            "error": "Internal server error",
            "errorType": "InternalError",
            "category": "internal",
        }
    if debug:
        payload["traceback"] = "".join(traceback.format_exception(exc))
    return status, payload


def _describe(err: dict) -> str:
    location = ".".join(str(part) for part in err.get("loc", ()) if part != "body")
    return f"{location}: {err.get('msg')}" if location else str(err.get("msg"))


def install_error_handlers(app: FastAPI) -> None:
    """Route every failure through the envelope; ``app.state.debug`` adds tracebacks."""

    async def handle(request: Request, exc: Exception) -> JSONResponse:
        status, payload = error_envelope(exc, debug=getattr(request.app.state, "debug", False))
        if status >= 500 and not isinstance(exc, PipelineError):
            logger.error("Unhandled error on %s %s: %s", request.method, request.url.path, exc, exc_info=exc)
        return JSONResponse(status_code=status, content=payload)

    app.add_exception_handler(PipelineError, handle)
    app.add_exception_handler(RequestValidationError, handle)
    app.add_exception_handler(StarletteHTTPException, handle)
    app.add_exception_handler(Exception, handle)
