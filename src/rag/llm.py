from __future__ import annotations

"""Generation gateways and tolerant decoding of model output."""

import asyncio
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, AsyncGenerator, AsyncIterator, Protocol

import httpx

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)
_CONTROL_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f-\x9f]")
_BAD_ESCAPE_RE = re.compile(r'\\(?!["\\/bfnrtu])')
_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)


class LLMError(RuntimeError):
    """Raised when a generation call fails or its output cannot be used."""
    pass


class LLMGateway(Protocol):
    """Text generation collaborator."""

    async def generate(self, prompt: str, system: str | None = None) -> str:
        raise NotImplementedError

    def generate_stream(self, prompt: str, system: str | None = None) -> AsyncIterator[str]:
        raise NotImplementedError


def chat_messages(prompt: str, system: str | None) -> list[dict[str, str]]:
    turns = [{"role": "system", "content": system}] if system else []
    turns.append({"role": "user", "content": prompt})
    return turns


async def _post_json(
    url: str, body: dict[str, Any], timeout: float, headers: dict[str, str] | None = None
) -> dict[str, Any]:
    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            reply = await client.post(url, json=body, headers=headers)
            reply.raise_for_status()
            decoded = reply.json()
    except (httpx.HTTPError, ValueError) as exc:
        logger.warning("llm_request_failed", extra={"url": url, "error": str(exc)})
        raise LLMError(str(exc)) from exc
    if not isinstance(decoded, dict):
        raise LLMError("Gateway returned a non-object body")
    return decoded


async def _stream_lines(
    url: str, body: dict[str, Any], timeout: float, headers: dict[str, str] | None = None
) -> AsyncGenerator[str, None]:
    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            async with client.stream("POST", url, json=body, headers=headers) as reply:
                reply.raise_for_status()
                async for line in reply.aiter_lines():
                    if line.strip():
                        yield line
    except httpx.HTTPError as exc:
        logger.warning("llm_stream_failed", extra={"url": url, "error": str(exc)})
        raise LLMError(str(exc)) from exc


def _loads(text: str) -> dict[str, Any] | None:
    try:
        decoded = json.loads(text)
    except json.JSONDecodeError:
        return None
    return decoded if isinstance(decoded, dict) else None


@dataclass(frozen=True)
class OllamaGateway:
    """Gateway for a local Ollama server (/api/chat)."""
    base_url: str
    model: str
    temperature: float
    max_tokens: int
    timeout: float

    @property
    def endpoint(self) -> str:
        return f"{self.base_url.rstrip('/')}/api/chat"

    def _body(self, prompt: str, system: str | None, stream: bool) -> dict[str, Any]:
        return {
            "model": self.model,
            "messages": chat_messages(prompt, system),
            "stream": stream,
            "options": {"temperature": self.temperature, "num_predict": self.max_tokens},
        }

    async def generate(self, prompt: str, system: str | None = None) -> str:
        decoded = await _post_json(
            self.endpoint, self._body(prompt, system, stream=False), self.timeout
        )
        text = (decoded.get("message") or {}).get("content")
        if not isinstance(text, str):
            raise LLMError("Ollama response has no message content")
        return text

    async def generate_stream(
        self, prompt: str, system: str | None = None
    ) -> AsyncIterator[str]:
        lines = _stream_lines(self.endpoint, self._body(prompt, system, stream=True), self.timeout)
        try:
            async for line in lines:
                event = _loads(line)
                if event is None:
                    continue
                piece = (event.get("message") or {}).get("content")
                if isinstance(piece, str) and piece:
                    yield piece
                if event.get("done"):
                    break
        finally:
            await lines.aclose()


@dataclass(frozen=True)
class OpenAIGateway:
    """Gateway for OpenAI-compatible /chat/completions endpoints."""
    api_key: str
    base_url: str
    model: str
    temperature: float
    max_tokens: int
    timeout: float

    @property
    def endpoint(self) -> str:
        return f"{self.base_url.rstrip('/')}/chat/completions"

    @property
    def headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"}

    def _body(self, prompt: str, system: str | None, stream: bool) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": self.model,
            "messages": chat_messages(prompt, system),
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }
        if stream:
            body["stream"] = True
        return body

    async def generate(self, prompt: str, system: str | None = None) -> str:
        decoded = await _post_json(
            self.endpoint,
            self._body(prompt, system, stream=False),
            self.timeout,
            headers=self.headers,
        )
        choices = decoded.get("choices") or []
        text = (choices[0].get("message") or {}).get("content") if choices else None
        if not isinstance(text, str):
            raise LLMError("OpenAI response has no message content")
        return text

    async def generate_stream(
        self, prompt: str, system: str | None = None
    ) -> AsyncIterator[str]:
        lines = _stream_lines(
            self.endpoint,
            self._body(prompt, system, stream=True),
            self.timeout,
            headers=self.headers,
        )
        try:
            async for line in lines:
                if not line.startswith("data:"):
                    continue
                payload = line[5:].strip()
                if payload == "[DONE]":
                    break
                event = _loads(payload)
                choices = (event or {}).get("choices") or []
                if not choices:
                    continue
                piece = (choices[0].get("delta") or {}).get("content")
                if isinstance(piece, str) and piece:
                    yield piece
        finally:
            await lines.aclose()


@dataclass(frozen=True)
class GeminiGateway:
    """Gateway for Gemini through google-generativeai, run in a worker thread."""
    api_key: str
    model: str
    temperature: float
    max_tokens: int
    timeout: float

    def _complete(self, text: str) -> str:
        import google.generativeai as genai

        genai.configure(api_key=self.api_key)
        reply = genai.GenerativeModel(self.model).generate_content(
            text,
            generation_config={
                "temperature": self.temperature,
                "max_output_tokens": self.max_tokens,
            },
        )
        return getattr(reply, "text", "") or ""

    async def generate(self, prompt: str, system: str | None = None) -> str:
        text = f"{system}\n\n{prompt}" if system else prompt
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self._complete, text), timeout=self.timeout
            )
        except ImportError as exc:
            raise LLMError("google-generativeai is required for GeminiGateway") from exc
        except Exception as exc:
            logger.warning("llm_request_failed", extra={"provider": "gemini", "error": str(exc)})
            raise LLMError(str(exc)) from exc

    async def generate_stream(
        self, prompt: str, system: str | None = None
    ) -> AsyncIterator[str]:
        # The SDK call is blocking, so the whole completion arrives as one piece.
        text = await self.generate(prompt, system)
        if text:
            yield text


def strip_code_fences(content: str) -> str:
    return _FENCE_RE.sub("", content.strip()).strip()


def sanitize_json_text(text: str) -> str:
    """Remove control characters and double up backslashes that start no valid escape."""
    text = _CONTROL_RE.sub("", text).replace("\r", " ").replace("\t", " ")
    return _BAD_ESCAPE_RE.sub(r"\\\\", text)


def parse_json_object(content: str) -> dict[str, Any]:
    """Pull a JSON object out of model output.

    Tries the fence-stripped text first, then the outermost ``{...}`` span,
    each as-is and after sanitizing. Raises LLMError when nothing decodes to
    an object.
    """
    body = strip_code_fences(content)
    spans = [body]
    found = _OBJECT_RE.search(body)
    if found and found.group(0) != body:
        spans.append(found.group(0))
    for span in spans:
        for variant in (span, sanitize_json_text(span)):
            try:
                decoded = json.loads(variant, strict=False)
            except json.JSONDecodeError:
                continue
            if isinstance(decoded, dict):
                return decoded
    raise LLMError("LLM response is not valid JSON")


def build_llm_gateway(
    provider: str,
    *,
    api_key_openai: str | None,
    api_key_gemini: str | None,
    openai_base_url: str,
    openai_model: str | None,
    gemini_model: str | None,
    ollama_base_url: str,
    ollama_model: str,
    temperature: float,
    max_tokens: int,
    timeout: float,
) -> OllamaGateway | OpenAIGateway | GeminiGateway:
    """Build the gateway for ``provider``; anything unrecognised uses Ollama."""
    sampling = {"temperature": temperature, "max_tokens": max_tokens, "timeout": timeout}
    name = provider.strip().lower()
    if name == "openai":
        if not (api_key_openai and openai_model):
            raise LLMError("OPENAI_API_KEY and OPENAI_CHAT_MODEL are required for OpenAI")
        return OpenAIGateway(
            api_key=api_key_openai, base_url=openai_base_url, model=openai_model, **sampling
        )
    if name in {"gemini", "google"}:
        if not (api_key_gemini and gemini_model):
            raise LLMError("GEMINI_API_KEY and GEMINI_CHAT_MODEL are required for Gemini")
        return GeminiGateway(api_key=api_key_gemini, model=gemini_model, **sampling)
    return OllamaGateway(base_url=ollama_base_url, model=ollama_model, **sampling)
