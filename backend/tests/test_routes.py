import copy
import json
import re

import pytest
import httpx
from unittest.mock import AsyncMock, patch
from httpx import AsyncClient, ASGITransport

from api.config import Settings
from api.main import create_app
from api.schemas import HistoricalComparable
from conftest import COST_REPLY, SPECS_REPLY, FakeCapability, make_image
from models.analyzer import DrawingAnalyzer
from models.capability import RemoteUnavailableError
from models.gemini import GeminiClient
from pipeline.orchestrator import UploadPipeline
from pipeline.preprocess import ImagePreprocessor


def _make_app(capability=None, comparables=None, preprocessor=None, debug=False, request_timeout=180.0):
    """Create a test app with a scripted model capability instead of a live provider."""
    app = create_app(Settings(gemini_api_key="test-key", debug=debug))
    capability = capability or FakeCapability(copy.deepcopy(SPECS_REPLY), copy.deepcopy(COST_REPLY))
    analyzer = DrawingAnalyzer(capability, retry_base_delay=0)
    app.state.analyzer = analyzer
    app.state.comparables = comparables
    app.state.pipeline = UploadPipeline(
        analyzer,
        preprocessor or ImagePreprocessor(),
        comparables=comparables,
        request_timeout=request_timeout,
    )
    app.state.capability = capability
    return app


def _client(app) -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


def _drawing(name="plate.png", data=None, content_type="image/png"):
    return {"drawing": (name, data if data is not None else make_image("PNG", size=(2400, 1600)), content_type)}


def _parse_sse(text: str) -> list[dict]:
    """Parse raw SSE text into a list of {event, data} dicts."""
    events = []
    current = {}
    for line in text.strip().split("\n"):
        line = line.strip()
        if line.startswith("event:"):
            current["event"] = line[len("event:"):].strip()
        elif line.startswith("data:"):
            current["data"] = line[len("data:"):].strip()
        elif line == "" and current:
            events.append(current)
            current = {}
    if current:
        events.append(current)
    return events


@pytest.mark.asyncio
async def test_health_endpoint():
    async with _client(_make_app()) as client:
        resp = await client.get("/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["success"] is True
    assert data["status"] == "ok"
    assert data["service"] == "quotation-ai-backend"
    assert data["timestamp"]


@pytest.mark.asyncio
async def test_upload_png_returns_quote():
    app = _make_app()
    async with _client(app) as client:
        resp = await client.post("/api/upload", files=_drawing())
    assert resp.status_code == 200
    data = resp.json()
    assert data["success"] is True
    assert re.fullmatch(r"DOC-\d+-[0-9a-f]{8}", data["documentId"])
    assert data["filename"].endswith(".jpg")
    assert data["originalFilename"] == "plate.png"
    assert data["analysis"]["specs"]["material"]["type"] == "Steel"
    assert data["analysis"]["specs"]["manufacturingProcess"] == ["laser cutting", "drilling"]
    assert 0.0 <= data["analysis"]["confidence"] <= 1.0

    costing = data["costing"]
    parts = costing["material"] + costing["labor"] + costing["overhead"]
    assert abs(costing["total"] - parts) <= max(1.0, 0.01 * parts)
    assert costing["total"] > 0
    assert costing["currency"] == "JPY"


@pytest.mark.asyncio
async def test_upload_sends_bounded_jpeg_to_model():
    app = _make_app()
    async with _client(app) as client:
        await client.post("/api/upload", files=_drawing())
    sent = app.state.capability.calls[0]["image"]
    assert sent[:3] == b"\xff\xd8\xff"


@pytest.mark.asyncio
async def test_text_file_rejected_without_model_call():
    app = _make_app()
    async with _client(app) as client:
        resp = await client.post("/api/upload", files=_drawing("notes.txt", b"hello", "text/plain"))
    assert resp.status_code == 400
    data = resp.json()
    assert data["success"] is False
    assert data["stage"] == "validation"
    assert data["errorType"] == "UnsupportedMediaType"
    assert data["category"] == "input"
    assert "traceback" not in data
    assert app.state.capability.calls == []


@pytest.mark.asyncio
async def test_missing_file_rejected():
    app = _make_app()
    async with _client(app) as client:
        resp = await client.post("/api/upload", data={"other": "field"})
    assert resp.status_code == 400
    assert resp.json()["errorType"] == "MissingFile"
    assert app.state.capability.calls == []


@pytest.mark.asyncio
async def test_oversized_file_rejected():
    app = _make_app(preprocessor=ImagePreprocessor(max_bytes=10_000))
    async with _client(app) as client:
        resp = await client.post("/api/upload", files=_drawing(data=b"\x89PNG" + b"\x00" * 20_000))
    assert resp.status_code == 400
    assert resp.json()["errorType"] == "PayloadTooLarge"
    assert app.state.capability.calls == []


@pytest.mark.asyncio
async def test_corrupt_image_rejected():
    async with _client(_make_app()) as client:
        resp = await client.post("/api/upload", files=_drawing("broken.png", b"not really a png"))
    assert resp.status_code == 400
    data = resp.json()
    assert data["stage"] == "preprocessing"
    assert data["errorType"] == "CorruptImage"


@pytest.mark.asyncio
async def test_remote_outage_returns_dependency_error():
    outage = FakeCapability(*[RemoteUnavailableError("503 from provider") for _ in range(3)])
    async with _client(_make_app(capability=outage)) as client:
        resp = await client.post("/api/upload", files=_drawing())
    assert resp.status_code == 502
    data = resp.json()
    assert data["success"] is False
    assert data["stage"] == "analysis"
    assert data["errorType"] == "RemoteUnavailable"
    assert data["category"] == "dependency"


@pytest.mark.asyncio
async def test_bad_credentials_not_retried():
    denied = FakeCapability(RemoteUnavailableError("403", transient=False, status_code=403))
    async with _client(_make_app(capability=denied)) as client:
        resp = await client.post("/api/upload", files=_drawing())
    assert resp.status_code == 502
    assert len(denied.calls) == 1


@pytest.mark.asyncio
async def test_inconsistent_total_reconciled_with_warning():
    cost = copy.deepcopy(COST_REPLY)
    cost["total"]["cost"] = 1
    app = _make_app(capability=FakeCapability(copy.deepcopy(SPECS_REPLY), cost))
    async with _client(app) as client:
        resp = await client.post("/api/upload", files=_drawing())
    data = resp.json()
    assert resp.status_code == 200
    assert data["costing"]["total"] == 48300
    assert data["warnings"]


@pytest.mark.asyncio
async def test_traceback_only_in_debug():
    outage = FakeCapability(RemoteUnavailableError("down", transient=False))
    async with _client(_make_app(capability=outage, debug=True)) as client:
        resp = await client.post("/api/upload", files=_drawing())
    assert "traceback" in resp.json()


@pytest.mark.asyncio
async def test_unknown_route_uses_error_envelope():
    async with _client(_make_app()) as client:
        resp = await client.get("/api/nope")
    assert resp.status_code == 404
    data = resp.json()
    assert data["success"] is False
    assert data["error"]


@pytest.mark.asyncio
async def test_connection_test_endpoint():
    async with _client(_make_app(capability=FakeCapability(healthy=True))) as client:
        resp = await client.get("/api/upload/test")
    assert resp.status_code == 200
    data = resp.json()
    assert data["connected"] is True
    assert data["provider"] == "fake"
    assert data["model"] == "fake-vision-1"


@pytest.mark.asyncio
async def test_connection_test_reports_unreachable():
    async with _client(_make_app(capability=FakeCapability(healthy=False))) as client:
        resp = await client.get("/api/upload/test")
    assert resp.status_code == 200
    assert resp.json()["connected"] is False


@pytest.mark.asyncio
async def test_comparables_endpoint():
    lookup = AsyncMock()
    lookup.find_similar = AsyncMock(return_value=[
        HistoricalComparable(document_id="DOC-1734157425660", quoted_on="2025-12-13", material="Steel SS400", total=69500),
    ])
    async with _client(_make_app(comparables=lookup)) as client:
        resp = await client.get("/api/comparables", params={"material": "Steel"})
    assert resp.status_code == 200
    rows = resp.json()["comparables"]
    assert rows[0]["documentId"] == "DOC-1734157425660"
    lookup.find_similar.assert_awaited_once_with("Steel", limit=5)


@pytest.mark.asyncio
async def test_comparables_without_history_db():
    async with _client(_make_app(comparables=None)) as client:
        resp = await client.get("/api/comparables")
    assert resp.status_code == 200
    assert resp.json()["comparables"] == []


@pytest.mark.asyncio
async def test_upload_stream_emits_progress_then_result():
    async with _client(_make_app()) as client:
        resp = await client.post("/api/upload/stream", files=_drawing())
    assert resp.status_code == 200
    assert "text/event-stream" in resp.headers["content-type"]

    events = _parse_sse(resp.text)
    event_types = [e["event"] for e in events]
    assert event_types.count("progress") == 5
    assert event_types[-1] == "analysis_complete"
    stages = [json.loads(e["data"])["stage"] for e in events if e["event"] == "progress"]
    assert stages == ["validated", "preprocessed", "analyzed", "costed", "completed"]

    complete = json.loads(events[-1]["data"])
    assert complete["success"] is True
    assert complete["documentId"].startswith("DOC-")


@pytest.mark.asyncio
async def test_upload_stream_reports_error_event():
    async with _client(_make_app()) as client:
        resp = await client.post("/api/upload/stream", files=_drawing("notes.txt", b"hello", "text/plain"))
    events = _parse_sse(resp.text)
    assert [e["event"] for e in events] == ["error"]
    data = json.loads(events[0]["data"])
    assert data["errorType"] == "UnsupportedMediaType"
    assert data["stage"] == "validation"


@pytest.mark.asyncio
async def test_small_jpeg_end_to_end():
    jpeg = make_image("JPEG", size=(500, 500))
    assert len(jpeg) < 1024 * 1024
    async with _client(_make_app()) as client:
        resp = await client.post("/api/upload", files=_drawing("part.jpg", jpeg, "image/jpeg"))
    assert resp.status_code == 200
    data = resp.json()
    assert data["success"] is True
    assert data["analysis"]["specs"]["quantity"] >= 1
    assert data["costing"]["total"] >= 0
    assert 0.0 <= data["costing"]["confidence"] <= 1.0


@pytest.mark.asyncio
async def test_invalid_json_from_provider_is_malformed_response():
    gemini = GeminiClient(api_key="test-key")
    garbage = httpx.Response(
        200,
        json={"candidates": [{"content": {"parts": [{"text": "```json\n{material: Steel,,}\n```"}]}}]},
        request=httpx.Request("POST", "https://generativelanguage.googleapis.com"),
    )
    try:
        with patch.object(gemini.client, "post", new_callable=AsyncMock, return_value=garbage):
            async with _client(_make_app(capability=gemini)) as client:
                resp = await client.post("/api/upload", files=_drawing())
    finally:
        await gemini.close()
    assert resp.status_code == 502
    data = resp.json()
    assert data["success"] is False
    assert data["errorType"] == "MalformedResponse"
    assert data["category"] == "dependency"


@pytest.mark.asyncio
async def test_nan_confidence_from_model_is_flagged_not_fatal():
    specs = copy.deepcopy(SPECS_REPLY)
    specs["overallConfidence"] = float("nan")
    specs["material"]["confidence"] = float("nan")
    cost = copy.deepcopy(COST_REPLY)
    cost["confidence"] = float("nan")
    app = _make_app(capability=FakeCapability(specs, cost))
    async with _client(app) as client:
        resp = await client.post("/api/upload", files=_drawing())
    assert resp.status_code == 200
    data = resp.json()
    assert 0.0 <= data["analysis"]["confidence"] <= 1.0
    assert 0.0 <= data["analysis"]["specs"]["material"]["confidence"] <= 1.0
    assert 0.0 <= data["costing"]["confidence"] <= 1.0
    assert len([w for w in data["warnings"] if "not a number" in w]) == 3
