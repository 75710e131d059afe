import base64
import logging
import time

import httpx

from .capability import MalformedResponseError, RemoteUnavailableError, parse_json_text

logger = logging.getLogger(__name__)

DEFAULT_HOST = "http://localhost:11434"
DEFAULT_MODEL = "gemma3:12b"


class OllamaClient:
    """Async client for a self-hosted Ollama server with a vision-capable model."""

    name = "ollama"
    supports_schema = True

    def __init__(self, base_url: str = DEFAULT_HOST, model: str = DEFAULT_MODEL, timeout: float = 90.0):
        self.base_url = base_url
        self.model = model
        self.client = httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout, connect=5.0),
        )

    async def health_check(self) -> bool:
        """GET /api/tags -- verify Ollama is running and the model is pulled."""
        try:
            resp = await self.client.get("/api/tags")
            resp.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning("Ollama not reachable at %s: %s", self.base_url, e)
            return False
        models = [m.get("name", "") for m in resp.json().get("models", [])]
        available = any(m == self.model or m.split(":")[0] == self.model for m in models)
        if not available:
            logger.warning("Ollama reachable but model=%s not loaded (have %s)", self.model, models)
        return available

    async def chat(
        self,
        messages: list[dict],
        format: str | dict = "json",
        images: list[str] | None = None,
    ) -> dict:
        """Send a chat completion request to Ollama /api/chat."""
        if images:
            messages[-1]["images"] = images

        payload = {
            "model": self.model,
            "messages": messages,
            "format": format,
            "stream": False,
        }

        t0 = time.monotonic()
        logger.info("Ollama /api/chat request to model=%s", self.model)
        try:
            resp = await self.client.post("/api/chat", json=payload)
            resp.raise_for_status()
        except httpx.TimeoutException as e:
            logger.error("Ollama timed out after %.1fs for model=%s", time.monotonic() - t0, self.model)
            raise RemoteUnavailableError(f"Ollama timed out on model {self.model}") from e
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            logger.error("Ollama HTTP %d for model=%s", status, self.model)
            raise RemoteUnavailableError(
                f"Ollama returned {status} for model {self.model}",
                transient=status >= 500,
                status_code=status,
            ) from e
        except httpx.TransportError as e:
            logger.error("Ollama connection failed: %s", e)
            raise RemoteUnavailableError(f"Ollama not reachable at {self.base_url}: {e}") from e

        logger.info("Ollama /api/chat completed in %.1fs for model=%s", time.monotonic() - t0, self.model)
        return resp.json()

    async def generate_structured(
        self, prompt: str, image: bytes | None = None, schema: dict | None = None
    ) -> dict:
        images = [base64.b64encode(image).decode("ascii")] if image is not None else None
        messages = [{"role": "user", "content": prompt}]
        result = await self.chat(messages, format=schema if schema is not None else "json", images=images)
        try:
            content = result["message"]["content"]
        except (KeyError, TypeError) as e:
            raise MalformedResponseError(f"Ollama response missing message content: {str(result)[:200]}") from e
        return parse_json_text(content)

    async def close(self):
        await self.client.aclose()
