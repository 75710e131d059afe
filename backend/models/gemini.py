import base64
import logging
import time

import httpx

from .capability import MalformedResponseError, RemoteUnavailableError, parse_json_text

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com"
DEFAULT_MODEL = "gemini-2.5-flash"

# Status codes worth a second attempt; everything else is a caller or auth problem.
TRANSIENT_STATUS = {408, 429, 500, 502, 503, 504}


def to_gemini_schema(schema: dict) -> dict:
    """Convert a JSON-schema-style dict into Gemini's OpenAPI subset.

    Gemini expects upper-case type names and ``nullable`` instead of
    ``["number", "null"]`` unions.
    """
    out = {}
    for key, value in schema.items():
        if key == "type":
            if isinstance(value, list):
                non_null = [t for t in value if t != "null"]
                out["type"] = non_null[0].upper()
                if "null" in value:
                    out["nullable"] = True
            else:
                out["type"] = value.upper()
        elif key == "properties":
            out["properties"] = {name: to_gemini_schema(sub) for name, sub in value.items()}
        elif key == "items":
            out["items"] = to_gemini_schema(value)
        elif key in ("required", "enum", "description", "nullable", "format"):
            out[key] = value
    return out


class GeminiClient:
    """Async client for the Google Generative Language REST API."""

    name = "gemini"
    supports_schema = True

    def __init__(
        self,
        api_key: str,
        model: str = DEFAULT_MODEL,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 90.0,
    ):
        if not api_key:
            raise ValueError("GeminiClient requires an API key")
        self.model = model
        self.base_url = base_url
        self.client = httpx.AsyncClient(
            base_url=base_url,
            headers={"x-goog-api-key": api_key},
            timeout=httpx.Timeout(timeout, connect=10.0),
        )

    async def generate(self, parts: list[dict], generation_config: dict | None = None) -> dict:
        """POST models/{model}:generateContent and return the raw response body."""
        payload = {"contents": [{"role": "user", "parts": parts}]}
        if generation_config:
            payload["generationConfig"] = generation_config

        t0 = time.monotonic()
        logger.info("Gemini generateContent request to model=%s", self.model)
        try:
            resp = await self.client.post(
                f"/v1beta/models/{self.model}:generateContent", json=payload
            )
            resp.raise_for_status()
        except httpx.TimeoutException as e:
            logger.error("Gemini timed out after %.1fs for model=%s", time.monotonic() - t0, self.model)
            raise RemoteUnavailableError(f"Gemini timed out on model {self.model}") from e
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            logger.error("Gemini HTTP %d for model=%s", status, self.model)
            raise RemoteUnavailableError(
                f"Gemini returned {status} for model {self.model}",
                transient=status in TRANSIENT_STATUS,
                status_code=status,
            ) from e
        except httpx.TransportError as e:
            logger.error("Gemini connection failed: %s", e)
            raise RemoteUnavailableError(f"Gemini not reachable at {self.base_url}: {e}") from e

        logger.info("Gemini generateContent completed in %.1fs for model=%s", time.monotonic() - t0, self.model)
        return resp.json()

    @staticmethod
    def response_text(body: dict) -> str:
        """Join the text parts of the first candidate."""
        candidates = body.get("candidates") or []
        if not candidates:
            reason = (body.get("promptFeedback") or {}).get("blockReason")
            raise MalformedResponseError(
                f"Gemini returned no candidates{f' (blocked: {reason})' if reason else ''}"
            )
        parts = (candidates[0].get("content") or {}).get("parts") or []
        text = "".join(p.get("text", "") for p in parts if not p.get("thought"))
        if not text.strip():
            finish = candidates[0].get("finishReason", "unknown")
            raise MalformedResponseError(f"Gemini returned an empty response (finishReason={finish})")
        return text

    async def generate_structured(
        self, prompt: str, image: bytes | None = None, schema: dict | None = None
    ) -> dict:
        parts = []
        if image is not None:
            parts.append({
                "inline_data": {
                    "mime_type": "image/jpeg",
                    "data": base64.b64encode(image).decode("ascii"),
                }
            })
        parts.append({"text": prompt})

        generation_config = None
        if schema is not None:
            generation_config = {
                "responseMimeType": "application/json",
                "responseSchema": to_gemini_schema(schema),
            }

        body = await self.generate(parts, generation_config)
        return parse_json_text(self.response_text(body))

    async def health_check(self) -> bool:
        """GET the model resource -- verifies the key and model name without spending tokens."""
        try:
            resp = await self.client.get(f"/v1beta/models/{self.model}")
            resp.raise_for_status()
            logger.info("Gemini health check passed for model=%s", self.model)
            return True
        except httpx.HTTPError as e:
            logger.warning("Gemini health check failed for model=%s: %s", self.model, e)
            return False

    async def close(self):
        await self.client.aclose()
