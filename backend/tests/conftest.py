"""
Shared fixtures: an in-memory async Redis double, engine settings and
OpenAI-style provider responses served through httpx.MockTransport.
"""
import fnmatch
import json
from typing import Any, Callable, Dict, List, Optional

import httpx
import pytest

from app.services.ai.config import AISettings, ProviderDescriptor, default_tiers
from app.services.ai.schema import Tier


class FakeRedis:
    """Subset of redis.asyncio.Redis (decode_responses=True) used by the engine."""

    def __init__(self):
        self.data: Dict[str, Any] = {}
        self.ttls: Dict[str, int] = {}

    # strings / counters
    async def get(self, key):
        value = self.data.get(key)
        return value if value is None or isinstance(value, str) else str(value)

    async def mget(self, *keys):
        return [await self.get(key) for key in keys]

    async def set(self, key, value, nx=False, ex=None):
        if nx and key in self.data:
            return None
        self.data[key] = str(value)
        if ex:
            self.ttls[key] = ex
        return True

    async def setex(self, key, ttl, value):
        self.data[key] = str(value)
        self.ttls[key] = ttl
        return True

    async def incrby(self, key, amount=1):
        value = int(self.data.get(key, 0)) + amount
        self.data[key] = str(value)
        return value

    async def decrby(self, key, amount=1):
        return await self.incrby(key, -amount)

    async def incrbyfloat(self, key, amount):
        value = float(self.data.get(key, 0)) + amount
        self.data[key] = repr(value)
        return value

    async def expire(self, key, ttl):
        if key not in self.data:
            return False
        self.ttls[key] = ttl
        return True

    async def ttl(self, key):
        return self.ttls.get(key, -1) if key in self.data else -2

    async def delete(self, *keys):
        removed = 0
        for key in keys:
            if key in self.data:
                del self.data[key]
                self.ttls.pop(key, None)
                removed += 1
        return removed

    # hashes
    async def hincrby(self, key, field, amount=1):
        bucket = self.data.setdefault(key, {})
        bucket[field] = str(int(bucket.get(field, 0)) + amount)
        return int(bucket[field])

    async def hgetall(self, key):
        return dict(self.data.get(key, {}))

    # lists
    async def rpush(self, key, *values):
        items = self.data.setdefault(key, [])
        items.extend(values)
        return len(items)

    async def lpush(self, key, *values):
        items = self.data.setdefault(key, [])
        for value in values:
            items.insert(0, value)
        return len(items)

    @staticmethod
    def _slice(items: List[str], start: int, end: int) -> List[str]:
        n = len(items)
        start = start if start >= 0 else max(n + start, 0)
        end = end if end >= 0 else n + end
        return items[start : end + 1]

    async def ltrim(self, key, start, end):
        if key in self.data:
            self.data[key] = self._slice(self.data[key], start, end)
        return True

    async def lrange(self, key, start, end):
        return self._slice(self.data.get(key, []), start, end)

    async def scan_iter(self, match: Optional[str] = None):
        for key in list(self.data):
            if match is None or fnmatch.fnmatchcase(key, match):
                yield key

    async def ping(self):
        return True

    async def aclose(self):
        return None

    def pipeline(self, transaction=True):
        return FakePipeline(self)


class FakePipeline:
    """Buffers commands and runs them back to back in ``execute``."""

    def __init__(self, redis: FakeRedis):
        self.redis = redis
        self.commands = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.commands = []
        return False

    def __getattr__(self, name):
        method = getattr(self.redis, name)

        def queue(*args, **kwargs):
            self.commands.append((method, args, kwargs))
            return self

        return queue

    async def execute(self):
        results = []
        for method, args, kwargs in self.commands:
            results.append(await method(*args, **kwargs))
        self.commands = []
        return results


@pytest.fixture
def fake_redis():
    return FakeRedis()


def make_provider(name: str, rpm: int = 100, tpm: int = 1_000_000, multimodal: bool = True) -> ProviderDescriptor:
    return ProviderDescriptor(
        name=name,
        wire_format="openai",
        api_key=f"{name}-key",
        base_url=f"https://{name}.test/v1",
        models={
            Tier.TIER1: f"{name}-small",
            Tier.TIER2: f"{name}-medium",
            Tier.TIER3: f"{name}-large",
        },
        requests_per_minute=rpm,
        tokens_per_minute=tpm,
        multimodal=multimodal,
    )


def make_settings(provider_names=("alpha", "beta"), **overrides) -> AISettings:
    providers = {name: make_provider(name) for name in provider_names}
    values = dict(
        providers=providers,
        tiers=default_tiers(),
        fallback_order=list(provider_names),
        max_retries=1,
        retry_delay_seconds=0.0,
    )
    values.update(overrides)
    return AISettings(**values)


@pytest.fixture
def settings() -> AISettings:
    return make_settings()


def completion(content: str, prompt_tokens: int = 100, completion_tokens: int = 50) -> Dict[str, Any]:
    return {
        "id": "cmpl-test",
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": content},
                "finish_reason": "stop",
            }
        ],
        "usage": {
            "prompt_tokens": prompt_tokens,
            "completion_tokens": completion_tokens,
            "total_tokens": prompt_tokens + completion_tokens,
        },
    }


def judge_answer(overall: float, confidence: float = 0.9) -> str:
    return json.dumps(
        {
            "accuracy": overall,
            "completeness": overall,
            "clarity": overall,
            "relevance": overall,
            "practicality": overall,
            "overall_score": overall,
            "strengths": ["Direct"],
            "weaknesses": ["Few examples"],
            "improvement_suggestions": ["Add an example"],
            "confidence": confidence,
        }
    )


def request_payload(request: httpx.Request) -> Dict[str, Any]:
    return json.loads(request.content)


def user_text(request: httpx.Request) -> str:
    messages = request_payload(request)["messages"]
    content = messages[-1]["content"]
    if isinstance(content, list):
        return " ".join(part.get("text", "") for part in content)
    return content


def is_judge_call(request: httpx.Request) -> bool:
    return "expert evaluator" in user_text(request)


class RecordingTransport:
    """httpx.MockTransport wrapper keeping every request it served."""

    def __init__(self, handler: Callable[[httpx.Request], httpx.Response]):
        self.requests: List[httpx.Request] = []

        def record(request: httpx.Request) -> httpx.Response:
            self.requests.append(request)
            return handler(request)

        self.transport = httpx.MockTransport(record)

    def calls_to(self, host: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.host == host]

    def content_calls(self) -> List[httpx.Request]:
        return [r for r in self.requests if not is_judge_call(r)]

    def judge_calls(self) -> List[httpx.Request]:
        return [r for r in self.requests if is_judge_call(r)]
