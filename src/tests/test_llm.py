from __future__ import annotations

import json

import httpx
import pytest

from src.rag import llm
from src.rag.llm import LLMError, OllamaGateway, build_llm_gateway, parse_json_object

pytestmark = pytest.mark.anyio


def mock_client(monkeypatch, handler) -> list[httpx.Request]:
    seen: list[httpx.Request] = []
    real_client = httpx.AsyncClient

    def record(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return handler(request)

    def factory(**kwargs):
        return real_client(transport=httpx.MockTransport(record), **kwargs)

    monkeypatch.setattr(llm.httpx, "AsyncClient", factory)
    return seen


def gateway() -> OllamaGateway:
    return OllamaGateway(
        base_url="http://ollama.test",
        model="llama3.1",
        temperature=0.1,
        max_tokens=256,
        timeout=5,
    )


def test_parse_json_object_handles_fences_and_prose() -> None:
    assert parse_json_object('```json\n{"category": "factual"}\n```') == {"category": "factual"}
    assert parse_json_object('Sure! {"score": 0.8} Hope that helps.') == {"score": 0.8}
    assert parse_json_object('{"path": "C:\\docs"}') == {"path": "C:\\docs"}


def test_parse_json_object_rejects_non_objects() -> None:
    with pytest.raises(LLMError):
        parse_json_object("[1, 2, 3]")
    with pytest.raises(LLMError):
        parse_json_object("no json here")


async def test_ollama_generate_sends_system_prompt(monkeypatch) -> None:
    seen = mock_client(
        monkeypatch,
        lambda request: httpx.Response(200, json={"message": {"content": "hello"}}),
    )

    result = await gateway().generate("Hi", system="Be brief")

    assert result == "hello"
    body = json.loads(seen[0].content)
    assert body["messages"][0] == {"role": "system", "content": "Be brief"}
    assert body["options"]["num_predict"] == 256
    assert body["stream"] is False


async def test_ollama_generate_wraps_http_errors(monkeypatch) -> None:
    mock_client(monkeypatch, lambda request: httpx.Response(503, json={"error": "busy"}))

    with pytest.raises(LLMError):
        await gateway().generate("Hi")


async def test_ollama_stream_yields_fragments_until_done(monkeypatch) -> None:
    lines = [
        {"message": {"content": "Hel"}},
        {"message": {"content": "lo"}},
        {"message": {"content": ""}, "done": True},
        {"message": {"content": "ignored"}},
    ]
    body = "\n".join(json.dumps(line) for line in lines)
    mock_client(monkeypatch, lambda request: httpx.Response(200, text=body))

    fragments = [fragment async for fragment in gateway().generate_stream("Hi")]

    assert fragments == ["Hel", "lo"]


def test_build_gateway_requires_openai_credentials() -> None:
    with pytest.raises(LLMError):
        build_llm_gateway(
            "openai",
            api_key_openai=None,
            api_key_gemini=None,
            openai_base_url="https://api.openai.com/v1",
            openai_model="gpt-4o-mini",
            gemini_model=None,
            ollama_base_url="http://localhost:11434",
            ollama_model="llama3.1",
            temperature=0.1,
            max_tokens=256,
            timeout=5,
        )


def test_build_gateway_defaults_to_ollama() -> None:
    result = build_llm_gateway(
        "ollama",
        api_key_openai=None,
        api_key_gemini=None,
        openai_base_url="https://api.openai.com/v1",
        openai_model=None,
        gemini_model=None,
        ollama_base_url="http://localhost:11434",
        ollama_model="llama3.1",
        temperature=0.1,
        max_tokens=256,
        timeout=5,
    )
    assert isinstance(result, OllamaGateway)
