import logging
from datetime import datetime, timezone

from fastapi import APIRouter, File, Query, Request, UploadFile
from sse_starlette.sse import EventSourceResponse

from .errors import error_envelope
from .schemas import ComparablesResponse, ConnectionTestResponse, HealthResponse, UploadResponse
from .streaming import sse_error, sse_event, sse_progress
from pipeline.errors import PipelineError
from pipeline.orchestrator import PipelineState, UploadedImage

logger = logging.getLogger(__name__)

router = APIRouter()
health_router = APIRouter()


async def _read_upload(request: Request, drawing: UploadFile | None) -> UploadedImage:
    """Buffer the upload, reading at most one byte past the size ceiling."""
    if drawing is None:
        return UploadedImage(filename=None, content_type=None, data=b"")
    max_bytes = request.app.state.pipeline.preprocessor.max_bytes
    try:
        data = await drawing.read(max_bytes + 1)
    finally:
        await drawing.close()
    return UploadedImage(filename=drawing.filename, content_type=drawing.content_type, data=data)


@router.post("/upload", response_model=UploadResponse)
async def upload(request: Request, drawing: UploadFile | None = File(None)):
    """Analyze one drawing and return specs plus a cost estimate."""
    upload = await _read_upload(request, drawing)
    result = await request.app.state.pipeline.run(upload)
    return UploadResponse.from_result(result)


@router.post("/upload/stream")
async def upload_stream(request: Request, drawing: UploadFile | None = File(None)):
    """Same pipeline as /upload, streamed as SSE progress events."""
    upload = await _read_upload(request, drawing)
    pipeline = request.app.state.pipeline
    debug = getattr(request.app.state, "debug", False)

    async def event_generator():
        try:
            async for event in pipeline.stages(upload):
                yield sse_progress(
                    event.state.value,
                    event.message,
                    event.step,
                    event.total_steps,
                    elapsedMs=event.elapsed_ms,
                    **event.detail,
                )
                if event.state is PipelineState.COMPLETED:
                    response = UploadResponse.from_result(event.result)
                    yield sse_event("analysis_complete", response.model_dump(mode="json", by_alias=True))
        except PipelineError as e:
            yield sse_error(error_envelope(e, debug=debug)[1])
        except Exception as e:
            logger.error("Streaming pipeline error: %s", e, exc_info=True)
            yield sse_error(error_envelope(e, debug=debug)[1])

    return EventSourceResponse(event_generator())


@router.get("/upload/test", response_model=ConnectionTestResponse)
async def test_connection(request: Request):
    """Probe the configured model provider."""
    analyzer = request.app.state.analyzer
    connected = await analyzer.test_connection()
    message = (
        f"Connected to {analyzer.provider} ({analyzer.model})"
        if connected
        else f"Could not reach {analyzer.provider} ({analyzer.model})"
    )
    return ConnectionTestResponse(
        connected=connected,
        provider=analyzer.provider,
        model=analyzer.model,
        message=message,
    )


@router.get("/comparables", response_model=ComparablesResponse)
async def comparables(
    request: Request,
    material: str | None = Query(None),
    limit: int = Query(5, ge=1, le=50),
):
    """Past quotes for a material family, or the most recent ones."""
    lookup = getattr(request.app.state, "comparables", None)
    if lookup is None:
        return ComparablesResponse(comparables=[])
    if material:
        results = await lookup.find_similar(material, limit=limit)
    else:
        results = await lookup.recent(limit=limit)
    return ComparablesResponse(comparables=results)


@health_router.get("/health", response_model=HealthResponse)
async def health():
    """Liveness check. Does not touch the model provider."""
    return HealthResponse(timestamp=datetime.now(timezone.utc).isoformat())
