import json

SSE_EVENT_TYPES = [
    "progress",
    "analysis_complete",
    "error",
]


def sse_event(event_type: str, data: dict) -> dict:
    """Create a typed SSE event dict for EventSourceResponse."""
    return {
        "event": event_type,
        "data": json.dumps(data),
    }


def sse_progress(stage: str, message: str, step: int, total: int, **extra) -> dict:
    """Create a progress SSE event for one completed pipeline stage."""
    return sse_event("progress", {"stage": stage, "message": message, "step": step, "total": total, **extra})


def sse_error(envelope: dict) -> dict:
    """Create an error SSE event carrying the same envelope as the JSON endpoint."""
    return {
        "event": "error",
        "data": json.dumps(envelope),
    }
