import asyncio
import json
import logging
import re
from typing import Awaitable, Callable, Protocol, TypeVar

logger = logging.getLogger(__name__)

SCHEMA_REMINDER = "Return ONLY valid JSON matching the requested schema.\n\n"

T = TypeVar("T")


class RemoteUnavailableError(Exception):
    """Raised when the remote model cannot be reached or refuses the call.

    ``transient`` is True for network failures, timeouts, rate limiting and
    server errors; False for auth and request errors that will not succeed
    on a second attempt.
    """

    error_type = "RemoteUnavailable"

    def __init__(self, message: str, transient: bool = True, status_code: int | None = None):
        super().__init__(message)
        self.transient = transient
        self.status_code = status_code


class MalformedResponseError(Exception):
    """Raised when the remote model returns output that is not the expected JSON."""

    error_type = "MalformedResponse"


class ModelCapability(Protocol):
    """The one outbound dependency: text plus optional image in, JSON out."""

    name: str
    model: str
    supports_schema: bool

    async def generate_structured(
        self, prompt: str, image: bytes | None = None, schema: dict | None = None
    ) -> dict: ...

    async def health_check(self) -> bool: ...

    async def close(self) -> None: ...


def parse_json_text(raw: str) -> dict:
    """Extract a JSON object from raw model output, handling markdown fences."""
    if raw is None:
        raise MalformedResponseError("Model returned no text")
    text = raw.strip()

    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        parsed = None

    if parsed is None:
        fence_match = re.search(r"```(?:json|JSON)?\s*(.*?)\s*```", text, re.DOTALL)
        if fence_match:
            try:
                parsed = json.loads(fence_match.group(1))
            except json.JSONDecodeError:
                pass

    if parsed is None:
        brace_match = re.search(r"\{.*\}", text, re.DOTALL)
        if brace_match:
            try:
                parsed = json.loads(brace_match.group(0))
            except json.JSONDecodeError:
                pass

    if not isinstance(parsed, dict):
        raise MalformedResponseError(f"Cannot extract JSON object from model output: {text[:200]}")
    return parsed


async def with_retry(
    call: Callable[[], Awaitable[T]],
    max_retries: int = 3,
    base_delay: float = 1.0,
    label: str = "remote call",
) -> T:
    """Run ``call``, retrying transient RemoteUnavailableError with exponential backoff.

    MalformedResponseError and non-transient failures propagate immediately.
    """
    attempts = max(1, max_retries)
    for attempt in range(attempts):
        try:
            return await call()
        except RemoteUnavailableError as e:
            if not e.transient or attempt == attempts - 1:
                raise
            wait = (2 ** attempt) * base_delay
            logger.warning(
                "%s failed (attempt %d/%d), retrying in %.1fs: %s",
                label, attempt + 1, attempts, wait, e,
            )
            await asyncio.sleep(wait)
    raise RuntimeError("Unreachable")


async def generate_validated(
    capability: ModelCapability,
    prompt: str,
    decode: Callable[[dict], T],
    schema: dict,
    image: bytes | None = None,
    structured: bool = True,
    max_retries: int = 3,
    retry_base_delay: float = 1.0,
    label: str = "remote call",
) -> T:
    """Call the capability and decode its JSON, preferring schema-constrained output.

    In free-form mode (``structured=False`` or a provider without schema
    support) the reply is fence-stripped and decoded; if that fails and the
    provider can constrain its output, the request is repeated once with the
    schema before giving up.
    """
    use_schema = structured and capability.supports_schema

    async def attempt(with_schema: bool, text: str) -> T:
        data = await with_retry(
            lambda: capability.generate_structured(
                text, image=image, schema=schema if with_schema else None
            ),
            max_retries=max_retries,
            base_delay=retry_base_delay,
            label=label,
        )
        return decode(data)

    if use_schema:
        return await attempt(True, prompt)

    try:
        return await attempt(False, prompt)
    except MalformedResponseError as e:
        if not capability.supports_schema:
            raise
        logger.warning("%s: free-form reply unusable, retrying with response schema: %s", label, e)
        return await attempt(True, SCHEMA_REMINDER + prompt)
