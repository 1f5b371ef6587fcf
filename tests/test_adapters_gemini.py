import json

import httpx
import pytest

from llm_proxy.adapters import GeminiAdapter
from llm_proxy.contracts import ChatRequest, Message, Role
from llm_proxy.errors import AuthenticationError, InvalidRequestError, RateLimitError, UpstreamProtocolError


def _mock_transport(handler):
    return httpx.MockTransport(handler)


def _adapter(client: httpx.AsyncClient) -> GeminiAdapter:
    return GeminiAdapter(
        api_key="k",
        client=client,
        base_url="https://example.test/v1beta",
        default_model="gemini-1.5-pro",
    )


def _user(text: str = "hi") -> ChatRequest:
    return ChatRequest(messages=(Message(Role.USER, text),))


@pytest.mark.asyncio
async def test_send_success_parses_text_and_usage():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.method == "POST"
        assert request.url.path.endswith("/models/gemini-1.5-pro:generateContent")
        assert request.url.params.get("key") == "k"

        body = json.loads(request.content.decode("utf-8"))
        assert body["contents"][0]["parts"][0]["text"] == "hi"

        return httpx.Response(
            200,
            json={
                "candidates": [{"content": {"parts": [{"text": "hello from gemini"}]}}],
                "usageMetadata": {"promptTokenCount": 3, "candidatesTokenCount": 4, "totalTokenCount": 7},
            },
        )

    async with httpx.AsyncClient(transport=_mock_transport(handler)) as client:
        reply = await _adapter(client).send(_user())

    assert reply.content == "hello from gemini"
    assert reply.model == "gemini-1.5-pro"
    assert reply.input_tokens == 3
    assert reply.output_tokens == 4


@pytest.mark.asyncio
async def test_send_maps_generation_config_and_system_instruction():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path.endswith("/models/gemini-1.5-flash:generateContent")
        body = json.loads(request.content.decode("utf-8"))
        assert body["systemInstruction"]["parts"][0]["text"] == "You are helpful."
        assert body["contents"][0]["role"] == "user"
        assert body["contents"][1]["role"] == "model"
        assert body["generationConfig"]["temperature"] == 0.2
        assert body["generationConfig"]["maxOutputTokens"] == 123
        return httpx.Response(200, json={"candidates": [{"content": {"parts": [{"text": "ok"}]}}]})

    request = ChatRequest(
        messages=(
            Message(Role.SYSTEM, "You are helpful."),
            Message(Role.USER, "hi"),
            Message(Role.ASSISTANT, "hello"),
        ),
        model="gemini-1.5-flash",
        temperature=0.2,
        max_tokens=123,
    )
    async with httpx.AsyncClient(transport=_mock_transport(handler)) as client:
        reply = await _adapter(client).send(request)

    assert reply.content == "ok"
    assert reply.input_tokens is None


@pytest.mark.asyncio
async def test_system_only_conversation_is_invalid():
    async with httpx.AsyncClient(transport=_mock_transport(lambda _: httpx.Response(500))) as client:
        with pytest.raises(InvalidRequestError):
            await _adapter(client).send(ChatRequest(messages=(Message(Role.SYSTEM, "only system"),)))


@pytest.mark.asyncio
async def test_403_raises_authentication_error():
    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(403, json={"error": {"message": "API key not valid"}})

    async with httpx.AsyncClient(transport=_mock_transport(handler)) as client:
        with pytest.raises(AuthenticationError):
            await _adapter(client).send(_user())


@pytest.mark.asyncio
async def test_429_without_retry_after_header():
    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(429, json={"error": {"message": "quota"}})

    async with httpx.AsyncClient(transport=_mock_transport(handler)) as client:
        with pytest.raises(RateLimitError) as exc:
            await _adapter(client).send(_user())
    assert exc.value.retry_after_seconds is None


@pytest.mark.asyncio
async def test_bad_shape_raises_upstream_protocol_error():
    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"candidates": []})

    async with httpx.AsyncClient(transport=_mock_transport(handler)) as client:
        with pytest.raises(UpstreamProtocolError):
            await _adapter(client).send(_user())


@pytest.mark.asyncio
async def test_missing_text_raises_upstream_protocol_error():
    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"candidates": [{"content": {"parts": [{}]}}]})

    async with httpx.AsyncClient(transport=_mock_transport(handler)) as client:
        with pytest.raises(UpstreamProtocolError):
            await _adapter(client).send(_user())


@pytest.mark.asyncio
async def test_model_name_cannot_change_request_path_or_query():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"candidates": [{"content": {"parts": [{"text": "ok"}]}}]})

    request = ChatRequest(messages=(Message(Role.USER, "hi"),), model="a/b?c#d")
    async with httpx.AsyncClient(transport=_mock_transport(handler)) as client:
        await _adapter(client).send(request)

    (sent,) = seen
    assert b"/v1beta/models/a%2Fb%3Fc%23d:generateContent" in sent.url.raw_path
    assert sent.url.query == b"key=k"
    assert sent.url.fragment == ""
