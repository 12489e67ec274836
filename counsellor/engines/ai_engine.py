import asyncio
import time
from typing import Any, Callable, List, Optional, Protocol

from google import genai

from counsellor.config import Config, _env_float, _env_int
from counsellor.core.errors import ModelUnavailable
from counsellor.core.records import Part, Parts, Plain, TextResponse, Wrapped
from counsellor.utils.logging_utils import get_logger

logger = get_logger("ai")

# ============================================================
# ASYNC RESILIENCE CONFIGURATION
# ============================================================

MAX_RETRIES = max(1, _env_int("AI_MAX_RETRIES", 2))
BASE_DELAY = _env_float("AI_BASE_DELAY", 0.5)

CIRCUIT_FAILURE_THRESHOLD = _env_int("AI_CIRCUIT_FAILURE_THRESHOLD", 8)
CIRCUIT_RECOVERY_TIMEOUT = _env_int("AI_CIRCUIT_RECOVERY_TIMEOUT", 8)
CIRCUIT_HALF_OPEN_MAX_CALLS = _env_int("AI_CIRCUIT_HALF_OPEN_MAX_CALLS", 3)

RATE_LIMIT_RPM = _env_int("AI_RATE_LIMIT_RPM", 120)
RATE_LIMIT_TOKENS = _env_int("AI_RATE_LIMIT_TOKENS", max(30, RATE_LIMIT_RPM))
RATE_LIMIT_REFILL_RATE = max(_env_float("AI_RATE_LIMIT_REFILL_RATE", RATE_LIMIT_RPM / 60.0), 0.1)

NO_RESPONSE_TEXT = "⚠️ No response from Counsellor AI."


class LanguageModel(Protocol):
    async def generate(self, prompt: str) -> Any:
        ...


class CircuitBreaker:
    """Stops calling the model after repeated failures.

    CLOSED counts failures and opens at `failure_threshold`. Once
    `recovery_timeout` seconds have passed, an OPEN breaker admits up to
    `half_open_max_calls` trial calls; a success closes it again and a
    failure reopens it.
    """

    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"

    def __init__(
        self,
        failure_threshold: Optional[int] = None,
        recovery_timeout: Optional[float] = None,
        half_open_max_calls: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.failure_threshold = failure_threshold or CIRCUIT_FAILURE_THRESHOLD
        self.recovery_timeout = CIRCUIT_RECOVERY_TIMEOUT if recovery_timeout is None else recovery_timeout
        self.half_open_max_calls = half_open_max_calls or CIRCUIT_HALF_OPEN_MAX_CALLS
        self.clock = clock
        self.state = self.CLOSED
        self.failures = 0
        self.opened_at: Optional[float] = None
        self.trial_calls = 0
        self._lock = asyncio.Lock()

    def _open(self):
        self.state = self.OPEN
        self.opened_at = self.clock()
        logger.warning(f"[AsyncAI] Circuit opened after {self.failures} failures")

    async def allow(self) -> bool:
        async with self._lock:
            if self.state == self.OPEN and self.clock() - self.opened_at >= self.recovery_timeout:
                self.state = self.HALF_OPEN
                self.trial_calls = 0
            if self.state == self.CLOSED:
                return True
            if self.state == self.HALF_OPEN and self.trial_calls < self.half_open_max_calls:
                self.trial_calls += 1
                return True
            return False

    async def record_success(self):
        async with self._lock:
            self.state = self.CLOSED
            self.failures = 0
            self.opened_at = None

    async def record_failure(self):
        async with self._lock:
            self.failures += 1
            if self.state == self.HALF_OPEN or self.failures >= self.failure_threshold:
                self._open()


class TokenBucket:
    """Request limiter refilled continuously at `refill_rate` tokens per second."""

    def __init__(
        self,
        capacity: Optional[float] = None,
        refill_rate: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
        poll_interval: float = 0.1,
    ):
        self.capacity = float(capacity or RATE_LIMIT_TOKENS)
        self.refill_rate = refill_rate or RATE_LIMIT_REFILL_RATE
        self.clock = clock
        self.poll_interval = poll_interval
        self.tokens = self.capacity
        self.updated_at = clock()
        self._lock = asyncio.Lock()

    def _refill(self):
        now = self.clock()
        self.tokens = min(self.capacity, self.tokens + (now - self.updated_at) * self.refill_rate)
        self.updated_at = now

    async def try_acquire(self) -> bool:
        async with self._lock:
            self._refill()
            if self.tokens < 1:
                return False
            self.tokens -= 1
            return True

    async def acquire(self, timeout: float = 10.0) -> bool:
        deadline = self.clock() + timeout
        while not await self.try_acquire():
            if self.clock() >= deadline:
                return False
            await asyncio.sleep(self.poll_interval)
        return True


# ============================================================
# RESPONSE SHAPES
# ============================================================

def _part_from(raw: Any) -> Part:
    if isinstance(raw, dict):
        kind = raw.get("type") or raw.get("kind")
        text = raw.get("text")
    else:
        kind = getattr(raw, "type", None) or getattr(raw, "kind", None)
        text = getattr(raw, "text", None)
    if kind is None and isinstance(text, str):
        kind = "text"
    return Part(kind=str(kind or "unknown"), text=text if isinstance(text, str) else None)


def coerce_response(raw: Any) -> Optional[TextResponse]:
    """Classify a provider response into Plain | Wrapped | Parts.

    Accepts the value itself or an object/dict exposing it as `content`.
    Returns None when the shape is not recognised.
    """
    if isinstance(raw, (Plain, Wrapped, Parts)):
        return raw
    content = raw
    if isinstance(raw, dict) and "content" in raw:
        content = raw["content"]
    elif not isinstance(raw, (str, list, tuple, dict)) and hasattr(raw, "content"):
        content = getattr(raw, "content")

    if isinstance(content, str):
        return Plain(content)
    if isinstance(content, (list, tuple)):
        return Parts([_part_from(item) for item in content])
    if isinstance(content, dict):
        text = content.get("text")
        return Wrapped(text) if isinstance(text, str) else None
    text = getattr(content, "text", None)
    if isinstance(text, str):
        return Wrapped(text)
    return None


def extract_text(response: Optional[TextResponse]) -> str:
    """Plain text of a model response; NO_RESPONSE_TEXT when there is none."""
    if isinstance(response, Plain):
        text = response.text
    elif isinstance(response, Wrapped):
        text = response.text
    elif isinstance(response, Parts):
        textual: List[Part] = [p for p in response.parts if p.kind == "text" and isinstance(p.text, str)]
        text = textual[0].text if textual else ""
    else:
        text = ""
    return text if text and text.strip() else NO_RESPONSE_TEXT


def _gemini_parts(response: Any) -> Optional[Parts]:
    candidates = getattr(response, "candidates", None) or []
    if not candidates:
        return None
    content = getattr(candidates[0], "content", None)
    raw_parts = getattr(content, "parts", None) or []
    parts = []
    for part in raw_parts:
        text = getattr(part, "text", None)
        parts.append(Part(kind="text" if isinstance(text, str) else "other", text=text))
    return Parts(parts)


class GeminiLanguageModel:
    def __init__(self, model_name=None, api_key=None, client=None, circuit_breaker=None, rate_limiter=None):
        self.raw_model_name = model_name or Config.GEMINI_MODEL
        self.model_name = self.raw_model_name.replace("models/", "")
        # Prefer GEMINI_API_KEY, keep GOOGLE_API_KEY as legacy fallback.
        self.api_key = api_key or Config.GEMINI_API_KEY
        self.client = client
        self.circuit_breaker = circuit_breaker or CircuitBreaker()
        self.rate_limiter = rate_limiter or TokenBucket()
        self.acquire_timeout = 10.0

        if self.client is None and self.api_key:
            self.client = genai.Client(api_key=self.api_key, http_options={'api_version': 'v1beta'})
            logger.info(f"[AsyncAI] Initialized with model: {self.model_name}")
        elif self.client is None:
            logger.warning("[AsyncAI] Missing API key. Set GEMINI_API_KEY (or legacy GOOGLE_API_KEY).")

    def _to_text_response(self, response: Any) -> Optional[TextResponse]:
        parts = _gemini_parts(response)
        if parts is not None:
            return parts
        text = getattr(response, "text", None)
        return Plain(text) if isinstance(text, str) else None

    async def generate(self, prompt: str) -> Optional[TextResponse]:
        if not self.client:
            raise ModelUnavailable("AI model not initialized")

        # Resilience Checks
        if not await self.circuit_breaker.allow():
            raise ModelUnavailable("Service paused for recovery")
        if not await self.rate_limiter.acquire(timeout=self.acquire_timeout):
            raise ModelUnavailable("Service busy, rate limited")

        for attempt in range(MAX_RETRIES):
            try:
                response = await self.client.aio.models.generate_content(
                    model=self.model_name,
                    contents=prompt,
                )
                await self.circuit_breaker.record_success()
                return self._to_text_response(response)
            except Exception as e:
                if "resource_exhausted" in str(e).lower() and attempt < (MAX_RETRIES - 1):
                    await asyncio.sleep(BASE_DELAY * (2 ** attempt))
                    continue
                await self.circuit_breaker.record_failure()
                raise ModelUnavailable(f"{type(e).__name__}: {e}") from e
        raise ModelUnavailable("Retries exhausted")
