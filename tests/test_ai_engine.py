from types import SimpleNamespace

import pytest

from counsellor.core.errors import ModelUnavailable
from counsellor.core.records import Parts, Plain
from counsellor.engines import ai_engine
from counsellor.engines.ai_engine import CircuitBreaker, GeminiLanguageModel, TokenBucket, extract_text
from counsellor.engines.counsellor_engine import APOLOGY_REPLY, CounsellorEngine


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def gemini_reply(*texts):
    parts = [SimpleNamespace(text=text) for text in texts]
    return SimpleNamespace(candidates=[SimpleNamespace(content=SimpleNamespace(parts=parts))])


def genai_client(*outcomes):
    """Stand-in for genai.Client; each call consumes the next outcome."""
    calls = []

    async def generate_content(model, contents):
        calls.append(contents)
        outcome = outcomes[min(len(calls), len(outcomes)) - 1]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    client = SimpleNamespace(aio=SimpleNamespace(models=SimpleNamespace(generate_content=generate_content)))
    client.calls = calls
    return client


@pytest.fixture
def fast_retries(monkeypatch):
    monkeypatch.setattr(ai_engine, "BASE_DELAY", 0)
    monkeypatch.setattr(ai_engine, "MAX_RETRIES", 2)


class TestCircuitBreaker:
    @pytest.mark.asyncio
    async def test_opens_at_threshold_and_recovers_through_half_open(self):
        clock = FakeClock()
        breaker = CircuitBreaker(failure_threshold=2, recovery_timeout=5, half_open_max_calls=1, clock=clock)

        await breaker.record_failure()
        assert breaker.state == CircuitBreaker.CLOSED
        assert await breaker.allow()

        await breaker.record_failure()
        assert breaker.state == CircuitBreaker.OPEN
        assert not await breaker.allow()

        clock.advance(5)
        assert await breaker.allow()
        assert breaker.state == CircuitBreaker.HALF_OPEN
        assert not await breaker.allow()

        await breaker.record_success()
        assert breaker.state == CircuitBreaker.CLOSED
        assert breaker.failures == 0

    @pytest.mark.asyncio
    async def test_failed_trial_call_reopens(self):
        clock = FakeClock()
        breaker = CircuitBreaker(failure_threshold=1, recovery_timeout=5, clock=clock)
        await breaker.record_failure()
        clock.advance(6)
        assert await breaker.allow()

        await breaker.record_failure()

        assert breaker.state == CircuitBreaker.OPEN
        assert not await breaker.allow()


class TestTokenBucket:
    @pytest.mark.asyncio
    async def test_exhaustion_and_refill(self):
        clock = FakeClock()
        bucket = TokenBucket(capacity=2, refill_rate=1, clock=clock)

        assert await bucket.try_acquire()
        assert await bucket.try_acquire()
        assert not await bucket.try_acquire()
        assert not await bucket.acquire(timeout=0)

        clock.advance(1)
        assert await bucket.acquire(timeout=0)

    @pytest.mark.asyncio
    async def test_refill_is_capped(self):
        clock = FakeClock()
        bucket = TokenBucket(capacity=1, refill_rate=10, clock=clock)
        clock.advance(60)

        assert await bucket.try_acquire()
        assert not await bucket.try_acquire()


@pytest.mark.asyncio
async def test_candidate_parts_become_parts_response():
    model = GeminiLanguageModel(client=genai_client(gemini_reply(None, "hi", "later")))

    response = await model.generate("Hello")

    assert isinstance(response, Parts)
    assert [p.kind for p in response.parts] == ["other", "text", "text"]
    assert extract_text(response) == "hi"


@pytest.mark.asyncio
async def test_response_without_candidates_uses_text():
    model = GeminiLanguageModel(client=genai_client(SimpleNamespace(candidates=[], text="plain answer")))
    assert await model.generate("Hello") == Plain("plain answer")


@pytest.mark.asyncio
async def test_resource_exhausted_is_retried(fast_retries):
    client = genai_client(RuntimeError("429 RESOURCE_EXHAUSTED: quota"), gemini_reply("ok"))
    model = GeminiLanguageModel(client=client)

    response = await model.generate("Hello")

    assert extract_text(response) == "ok"
    assert len(client.calls) == 2
    assert model.circuit_breaker.failures == 0


@pytest.mark.asyncio
async def test_resource_exhausted_on_every_attempt(fast_retries):
    client = genai_client(RuntimeError("RESOURCE_EXHAUSTED"))
    model = GeminiLanguageModel(client=client)

    with pytest.raises(ModelUnavailable):
        await model.generate("Hello")
    assert len(client.calls) == 2
    assert model.circuit_breaker.failures == 1


@pytest.mark.asyncio
async def test_other_errors_are_not_retried(fast_retries):
    client = genai_client(ValueError("bad request"))
    model = GeminiLanguageModel(client=client)

    with pytest.raises(ModelUnavailable) as exc:
        await model.generate("Hello")
    assert "bad request" in exc.value.message
    assert len(client.calls) == 1
    assert model.circuit_breaker.failures == 1


@pytest.mark.asyncio
async def test_missing_client_is_unavailable():
    model = GeminiLanguageModel(api_key="")
    model.client = None
    with pytest.raises(ModelUnavailable):
        await model.generate("Hello")


@pytest.mark.asyncio
async def test_exhausted_limiter_is_unavailable():
    clock = FakeClock()
    client = genai_client(gemini_reply("ok"))
    model = GeminiLanguageModel(client=client, rate_limiter=TokenBucket(capacity=1, refill_rate=1, clock=clock))
    model.acquire_timeout = 0

    await model.generate("first")
    with pytest.raises(ModelUnavailable):
        await model.generate("second")
    assert len(client.calls) == 1


@pytest.mark.asyncio
async def test_open_breaker_turns_into_apology(store, index_cache, embedder, jane_record):
    clock = FakeClock()
    breaker = CircuitBreaker(failure_threshold=1, recovery_timeout=30, clock=clock)
    await breaker.record_failure()
    client = genai_client(gemini_reply("never sent"))
    model = GeminiLanguageModel(client=client, circuit_breaker=breaker)

    with pytest.raises(ModelUnavailable):
        await model.generate("Hello")

    await store.upsert_student(jane_record)
    counsellor = CounsellorEngine(store, index_cache, embedder, model, top_k=5)
    assert await counsellor.answer("42", "What is my attendance?") == APOLOGY_REPLY
    assert client.calls == []
