"""Health check script for the Quotation AI API.

Hits every endpoint on the running server and reports status.
Requires: uvicorn running on localhost:8000 (default).

Usage:
    python scripts/healthcheck.py
    python scripts/healthcheck.py --base-url http://localhost:9000
    python scripts/healthcheck.py --verbose --skip-slow
"""

import argparse
import asyncio
import io
import json
import sys
import time

import httpx
from PIL import Image, ImageDraw

DEFAULT_BASE_URL = "http://localhost:8000"

EXPECTED_SSE_EVENTS = ["progress", "analysis_complete"]


def parse_sse(text: str) -> list[dict]:
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


def sample_drawing() -> bytes:
    """A small synthetic part drawing: a plate outline with dimension text."""
    img = Image.new("RGB", (800, 600), "white")
    draw = ImageDraw.Draw(img)
    draw.rectangle((150, 150, 650, 450), outline="black", width=3)
    draw.ellipse((360, 260, 440, 340), outline="black", width=3)
    draw.line((150, 500, 650, 500), fill="black", width=1)
    draw.text((370, 505), "200 mm", fill="black")
    draw.text((660, 290), "100 mm", fill="black")
    draw.text((360, 350), "6 mm", fill="black")
    draw.text((40, 40), "MATERIAL: SS400  QTY: 10  FINISH: Ra 3.2", fill="black")
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


class Check:
    def __init__(self, name: str):
        self.name = name
        self.status = "SKIP"
        self.latency_ms: float = 0.0
        self.detail = ""
        self.errors: list[str] = []

    def pass_(self, detail: str = ""):
        self.status = "PASS"
        self.detail = detail

    def fail(self, error: str):
        self.status = "FAIL"
        self.errors.append(error)

    def warn(self, msg: str):
        if self.status != "FAIL":
            self.status = "WARN"
        self.detail = msg


async def check_health(client: httpx.AsyncClient, base_url: str, verbose: bool) -> Check:
    c = Check("GET /health")
    t0 = time.monotonic()
    try:
        resp = await client.get(f"{base_url}/health")
        c.latency_ms = (time.monotonic() - t0) * 1000
        resp.raise_for_status()
        data = resp.json()
        if verbose:
            print(f"    Response: {json.dumps(data, indent=2)}")
        if data.get("status") == "ok":
            c.pass_(f"service={data.get('service')}")
        else:
            c.fail(f"unexpected status: {data.get('status')}")
    except httpx.ConnectError:
        c.latency_ms = (time.monotonic() - t0) * 1000
        c.fail("server not reachable")
    except httpx.HTTPStatusError as e:
        c.latency_ms = (time.monotonic() - t0) * 1000
        c.fail(f"HTTP {e.response.status_code}")
    return c


async def check_connection(client: httpx.AsyncClient, base_url: str, verbose: bool) -> Check:
    c = Check("GET /api/upload/test")
    t0 = time.monotonic()
    try:
        resp = await client.get(f"{base_url}/api/upload/test", timeout=30.0)
        c.latency_ms = (time.monotonic() - t0) * 1000
        resp.raise_for_status()
        data = resp.json()
        if verbose:
            print(f"    Response: {json.dumps(data, indent=2)}")
        if data.get("connected"):
            c.pass_(f"{data.get('provider')} ({data.get('model')})")
        else:
            c.warn(data.get("message", "model provider not reachable"))
    except httpx.ConnectError:
        c.latency_ms = (time.monotonic() - t0) * 1000
        c.fail("server not reachable")
    except httpx.HTTPStatusError as e:
        c.latency_ms = (time.monotonic() - t0) * 1000
        c.fail(f"HTTP {e.response.status_code}")
    return c


async def check_comparables(client: httpx.AsyncClient, base_url: str, verbose: bool) -> Check:
    c = Check("GET /api/comparables")
    t0 = time.monotonic()
    try:
        resp = await client.get(f"{base_url}/api/comparables", params={"material": "Steel"})
        c.latency_ms = (time.monotonic() - t0) * 1000
        resp.raise_for_status()
        data = resp.json()
        if verbose:
            print(f"    Response: {json.dumps(data, indent=2)[:300]}")
        rows = data.get("comparables", [])
        if rows:
            c.pass_(f"{len(rows)} past quotes")
        else:
            c.warn("0 results (history db may not be seeded)")
    except httpx.ConnectError:
        c.latency_ms = (time.monotonic() - t0) * 1000
        c.fail("server not reachable")
    except httpx.HTTPStatusError as e:
        c.latency_ms = (time.monotonic() - t0) * 1000
        c.fail(f"HTTP {e.response.status_code}")
    return c


async def check_rejects_text(client: httpx.AsyncClient, base_url: str, verbose: bool) -> Check:
    c = Check("POST /api/upload (text file)")
    t0 = time.monotonic()
    try:
        resp = await client.post(
            f"{base_url}/api/upload",
            files={"drawing": ("notes.txt", b"not a drawing", "text/plain")},
        )
        c.latency_ms = (time.monotonic() - t0) * 1000
        data = resp.json()
        if verbose:
            print(f"    Response: {json.dumps(data, indent=2)}")
        if resp.status_code == 400 and data.get("success") is False:
            c.pass_(f"rejected: {data.get('errorType')}")
        else:
            c.fail(f"expected 400 rejection, got HTTP {resp.status_code}")
    except httpx.ConnectError:
        c.latency_ms = (time.monotonic() - t0) * 1000
        c.fail("server not reachable")
    return c


async def check_upload(client: httpx.AsyncClient, base_url: str, verbose: bool) -> Check:
    c = Check("POST /api/upload")
    t0 = time.monotonic()
    try:
        resp = await client.post(
            f"{base_url}/api/upload",
            files={"drawing": ("plate.png", sample_drawing(), "image/png")},
            timeout=200.0,
        )
        c.latency_ms = (time.monotonic() - t0) * 1000
        data = resp.json()
        if verbose:
            print(f"    Response: {json.dumps(data, indent=2)[:800]}")
        if resp.status_code >= 500 and data.get("category") == "dependency":
            # Provider outages are infrastructure, not a broken service
            c.warn(f"infra: {data.get('errorType')}: {data.get('error')}")
            return c
        if resp.status_code != 200 or not data.get("success"):
            c.fail(f"HTTP {resp.status_code}: {data.get('error')}")
            return c

        costing = data.get("costing", {})
        parts = costing.get("material", 0) + costing.get("labor", 0) + costing.get("overhead", 0)
        total = costing.get("total", 0)
        if abs(total - parts) > max(1.0, 0.01 * parts):
            c.fail(f"total {total} != components {parts}")
            return c
        c.pass_(f"{data.get('documentId')} total={total:.0f} {costing.get('currency')}")
    except httpx.ConnectError:
        c.latency_ms = (time.monotonic() - t0) * 1000
        c.fail("server not reachable")
    except httpx.ReadTimeout:
        c.latency_ms = (time.monotonic() - t0) * 1000
        c.fail("request timed out (200s)")
    return c


async def check_upload_stream(client: httpx.AsyncClient, base_url: str, verbose: bool) -> Check:
    c = Check("POST /api/upload/stream (SSE)")
    t0 = time.monotonic()
    try:
        resp = await client.post(
            f"{base_url}/api/upload/stream",
            files={"drawing": ("plate.png", sample_drawing(), "image/png")},
            timeout=200.0,
        )
        c.latency_ms = (time.monotonic() - t0) * 1000
        resp.raise_for_status()
        content_type = resp.headers.get("content-type", "")
        if "text/event-stream" not in content_type:
            c.fail(f"expected text/event-stream, got {content_type}")
            return c

        events = parse_sse(resp.text)
        event_types = [e.get("event") for e in events]
        if verbose:
            for ev in events:
                print(f"      {ev.get('event')}: {ev.get('data', '')[:120]}")

        error_events = [e for e in events if e.get("event") == "error"]
        if error_events:
            error_data = error_events[0].get("data", "")
            try:
                category = json.loads(error_data).get("category", "")
            except (json.JSONDecodeError, AttributeError):
                category = ""
            if category == "dependency":
                c.warn(f"infra: {error_data}")
                return c
            c.fail(f"pipeline error: {error_data}")
            return c

        missing = [e for e in EXPECTED_SSE_EVENTS if e not in event_types]
        if missing:
            c.fail(f"missing SSE events: {missing}")
            return c
        c.pass_(f"{event_types.count('progress')} progress events")
    except httpx.ConnectError:
        c.latency_ms = (time.monotonic() - t0) * 1000
        c.fail("server not reachable")
    except httpx.ReadTimeout:
        c.latency_ms = (time.monotonic() - t0) * 1000
        c.fail("request timed out (200s)")
    except httpx.HTTPStatusError as e:
        c.latency_ms = (time.monotonic() - t0) * 1000
        c.fail(f"HTTP {e.response.status_code}")
    return c


async def run_all(base_url: str, verbose: bool, skip_slow: bool) -> list[Check]:
    async with httpx.AsyncClient() as client:
        # Always run health first -- if server is down, skip the rest
        health = await check_health(client, base_url, verbose)
        results = [health]

        if health.status == "FAIL":
            print(f"\n  Server not reachable at {base_url} -- skipping remaining checks.\n")
            return results

        fast_checks = await asyncio.gather(
            check_connection(client, base_url, verbose),
            check_comparables(client, base_url, verbose),
            check_rejects_text(client, base_url, verbose),
        )
        results.extend(fast_checks)

        # Model inference, run sequentially
        if not skip_slow:
            results.append(await check_upload(client, base_url, verbose))
            results.append(await check_upload_stream(client, base_url, verbose))

        return results


def main() -> None:
    parser = argparse.ArgumentParser(description="Quotation AI API health check")
    parser.add_argument("--base-url", default=DEFAULT_BASE_URL, help="Server base URL")
    parser.add_argument("--verbose", action="store_true", help="Print response bodies")
    parser.add_argument("--skip-slow", action="store_true", help="Skip upload endpoints (model inference)")
    args = parser.parse_args()

    print("Quotation AI Health Check")
    print(f"Target: {args.base_url}\n")

    results = asyncio.run(run_all(args.base_url, args.verbose, args.skip_slow))

    status_icon = {"PASS": "+", "FAIL": "X", "WARN": "~", "SKIP": "-"}
    print(f"{'='*70}")
    print(f"  {'Endpoint':<35} {'Status':<8} {'Latency':>10}  Detail")
    print(f"  {'-'*66}")
    for r in results:
        icon = status_icon.get(r.status, "?")
        detail = r.detail or (r.errors[0] if r.errors else "")
        latency_str = f"{r.latency_ms:.0f} ms" if r.latency_ms > 0 else "--"
        print(f"  [{icon}] {r.name:<32} {r.status:<8} {latency_str:>8}  {detail}")
    print(f"{'='*70}")

    passed = sum(1 for r in results if r.status == "PASS")
    warned = sum(1 for r in results if r.status == "WARN")
    failed = sum(1 for r in results if r.status == "FAIL")

    print(f"\n  {passed}/{len(results)} passed", end="")
    if warned:
        print(f", {warned} warnings", end="")
    if failed:
        print(f", {failed} FAILED", end="")
    print()

    sys.exit(1 if failed else 0)


if __name__ == "__main__":
    main()
