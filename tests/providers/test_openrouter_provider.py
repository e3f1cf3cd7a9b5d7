import json
from http import HTTPStatus

import httpx
import pytest

from devark.core.exceptions import AuthenticationRequiredError
from devark.providers.base import CompletionOptions, Usage
from devark.providers.openrouter import OpenRouterProvider, calculate_cost

ENDPOINT = "https://openrouter.ai/api/v1"


class FakeResponse:
    def __init__(self, status_code: int, payload: dict | None = None, lines: list[str] | None = None) -> None:
        self.status_code = status_code
        self._payload = payload or {}
        self._lines = lines or []

    def json(self) -> dict:
        return self._payload

    @property
    def is_error(self) -> bool:
        return self.status_code >= HTTPStatus.BAD_REQUEST

    @property
    def text(self) -> str:
        return json.dumps(self._payload) if self._payload else ""

    async def aiter_text(self):
        for line in self._lines:
            yield line

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


def _stub_async_client(routes, recorder):
    class _DummyAsyncClient:
        def __init__(self, *args, **kwargs) -> None:
            self.timeout = kwargs.get("timeout")

        async def __aenter__(self):
            return self

        async def __aexit__(self, exc_type, exc, tb):
            return False

        def _answer(self, method, url, json=None, headers=None):
            path = url.removeprefix(ENDPOINT)
            recorder.append({"method": method, "path": path, "json": json, "headers": headers})
            answer = routes[(method, path)]
            if isinstance(answer, Exception):
                raise answer
            return answer

        async def get(self, url, headers=None):
            return self._answer("GET", url, headers=headers)

        async def post(self, url, json=None, headers=None):
            return self._answer("POST", url, json, headers)

        def stream(self, method, url, json=None, headers=None):
            return self._answer(method, url, json, headers)

    return _DummyAsyncClient


@pytest.fixture(autouse=True)
def clear_limits_cache():
    OpenRouterProvider._model_limits_cache.clear()
    yield
    OpenRouterProvider._model_limits_cache.clear()


def _provider(model: str = "anthropic/claude-3.5-sonnet") -> OpenRouterProvider:
    return OpenRouterProvider({"apiKey": "router-key", "model": model})


def test_missing_key_is_rejected():
    with pytest.raises(AuthenticationRequiredError):
        OpenRouterProvider({"model": "x"})


@pytest.mark.asyncio
async def test_free_tier_cap_and_length_error(monkeypatch):
    recorder: list = []
    routes = {
        ("POST", "/chat/completions"): FakeResponse(
            HTTPStatus.OK,
            {
                "model": "meta-llama/llama-3-8b-instruct:free",
                "choices": [{"message": {"content": ""}, "finish_reason": "length"}],
                "usage": {"prompt_tokens": 10, "completion_tokens": 800, "total_tokens": 810},
            },
        )
    }
    monkeypatch.setattr("devark.providers.openrouter.httpx.AsyncClient", _stub_async_client(routes, recorder))
    provider = _provider("meta-llama/llama-3-8b-instruct:free")

    response = await provider.generate_completion(CompletionOptions(prompt="Hi", max_tokens=5000))

    assert recorder[0]["json"]["max_tokens"] == 800
    assert response.text == ""
    assert "output token limit" in response.error
    assert "(800 tokens)" in response.error


@pytest.mark.asyncio
async def test_paid_model_limit_applies_safety_ratio(monkeypatch):
    recorder: list = []
    routes = {
        ("GET", "/models"): FakeResponse(
            HTTPStatus.OK,
            {"data": [{"id": "openai/gpt-4-turbo", "top_provider": {"max_completion_tokens": 2000}}]},
        ),
        ("POST", "/chat/completions"): FakeResponse(
            HTTPStatus.OK,
            {
                "choices": [{"message": {"content": "Hello"}, "finish_reason": "stop"}],
                "usage": {"prompt_tokens": 1000000, "completion_tokens": 0, "total_tokens": 1000000},
            },
        ),
    }
    monkeypatch.setattr("devark.providers.openrouter.httpx.AsyncClient", _stub_async_client(routes, recorder))
    provider = _provider("openai/gpt-4-turbo")

    response = await provider.generate_completion(CompletionOptions(prompt="Hi", max_tokens=5000))
    await provider.generate_completion(CompletionOptions(prompt="Again", max_tokens=5000))

    posts = [call for call in recorder if call["method"] == "POST"]
    assert posts[0]["json"]["max_tokens"] == 1800
    assert [call["method"] for call in recorder].count("GET") == 1
    assert response.text == "Hello"
    assert response.cost.amount == pytest.approx(10.0)
    headers = posts[0]["headers"]
    assert headers["Authorization"] == "Bearer router-key"
    assert headers["X-Title"] == "DevArk"


@pytest.mark.asyncio
async def test_empty_content_error(monkeypatch):
    routes = {
        ("GET", "/models"): FakeResponse(HTTPStatus.OK, {"data": []}),
        ("POST", "/chat/completions"): FakeResponse(
            HTTPStatus.OK, {"choices": [{"message": {"content": ""}, "finish_reason": "stop"}]}
        ),
    }
    monkeypatch.setattr("devark.providers.openrouter.httpx.AsyncClient", _stub_async_client(routes, []))

    response = await _provider().generate_completion(CompletionOptions(prompt="Hi"))

    assert "returned empty response" in response.error


@pytest.mark.asyncio
async def test_unauthorized_is_in_band(monkeypatch):
    routes = {
        ("GET", "/models"): FakeResponse(HTTPStatus.OK, {"data": []}),
        ("POST", "/chat/completions"): FakeResponse(HTTPStatus.UNAUTHORIZED, {"error": {"message": "bad"}}),
    }
    monkeypatch.setattr("devark.providers.openrouter.httpx.AsyncClient", _stub_async_client(routes, []))

    response = await _provider().generate_completion(CompletionOptions(prompt="Hi"))

    assert response.text == ""
    assert "Invalid API key" in response.error


@pytest.mark.asyncio
async def test_local_rate_limit_is_in_band(monkeypatch):
    routes = {
        ("GET", "/models"): FakeResponse(HTTPStatus.OK, {"data": []}),
        ("POST", "/chat/completions"): FakeResponse(
            HTTPStatus.OK, {"choices": [{"message": {"content": "ok"}, "finish_reason": "stop"}]}
        ),
    }
    monkeypatch.setattr("devark.providers.openrouter.httpx.AsyncClient", _stub_async_client(routes, []))
    provider = _provider()

    for _ in range(20):
        assert (await provider.generate_completion(CompletionOptions(prompt="Hi"))).error is None
    blocked = await provider.generate_completion(CompletionOptions(prompt="Hi"))

    assert "Rate limit exceeded for OpenRouter" in blocked.error


@pytest.mark.asyncio
async def test_stream_sse(monkeypatch):
    lines = [
        ": keep-alive\n",
        "data: []\n",
        'data: "x"\n',
        'data: {"choices":["bogus"]}\n',
        'data: {"choices":[{"delta":{"content":"Hel"}}]}\n',
        'data: {"choices":[{"delta":{"content":"lo"}}]}\ndata: {"choices":[{"delta":{},',
        '"finish_reason":"stop"}],"usage":{"prompt_tokens":3,"completion_tokens":2}}\n',
        "data: [DONE]\n",
    ]
    routes = {
        ("GET", "/models"): FakeResponse(HTTPStatus.OK, {"data": []}),
        ("POST", "/chat/completions"): FakeResponse(HTTPStatus.OK, lines=lines),
    }
    monkeypatch.setattr("devark.providers.openrouter.httpx.AsyncClient", _stub_async_client(routes, []))

    chunks = [chunk async for chunk in _provider().stream_completion(CompletionOptions(prompt="Hi"))]

    assert "".join(chunk.text for chunk in chunks) == "Hello"
    assert [chunk.is_complete for chunk in chunks] == [False, False, True]
    assert chunks[-1].usage.total_tokens == 5
    assert chunks[-1].cost is not None


@pytest.mark.asyncio
async def test_connection_errors(monkeypatch):
    routes = {("GET", "/models"): FakeResponse(HTTPStatus.UNAUTHORIZED, {})}
    monkeypatch.setattr("devark.providers.openrouter.httpx.AsyncClient", _stub_async_client(routes, []))
    result = await _provider().test_connection()
    assert result.error == "Invalid API key. Please check your OpenRouter API key."

    routes[("GET", "/models")] = FakeResponse(HTTPStatus.TOO_MANY_REQUESTS, {})
    result = await _provider().test_connection()
    assert result.error == "Rate limit exceeded. Please try again later."

    routes[("GET", "/models")] = httpx.ReadTimeout("slow")
    result = await _provider().test_connection()
    assert result.error == "Connection to OpenRouter timed out. Check your internet connection."

    routes[("GET", "/models")] = FakeResponse(HTTPStatus.OK, {"data": [{"id": "a"}, {"id": "b"}]})
    result = await _provider().test_connection()
    assert result.success is True
    assert result.details == {"models_available": 2, "endpoint": ENDPOINT}


def test_cost_uses_default_pricing_for_unknown_models():
    cost = calculate_cost("unknown/model", Usage(prompt_tokens=1_000_000, completion_tokens=1_000_000))

    assert cost.amount == pytest.approx(3.0)
    assert cost.currency == "USD"
