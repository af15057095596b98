import json
import logging
import time
from typing import AsyncIterator, Callable, Optional, Sequence

import httpx

from miragecodex.errors import InvalidRequestError, ProviderError, ProviderNotConfiguredError
from miragecodex.settings.config import settings

logger = logging.getLogger(__name__)

ANTHROPIC_VERSION = "2023-06-01"
CONNECT_TIMEOUT = 10.0

Parser = Callable[[str], Optional[str]]


class StreamFinished(Exception):
    """Raised by a parser when the provider signals the end of the stream."""


#----------stream parsers---------------

def _sse_data(line: str) -> Optional[str]:
    line = line.strip()
    if not line.startswith("data:"):
        return None
    data = line[5:].strip()
    if data == "[DONE]":
        raise StreamFinished()
    return data or None


def parse_openai_line(line: str) -> Optional[str]:
    data = _sse_data(line)
    if not data:
        return None
    obj = json.loads(data)
    choices = obj.get("choices") or []
    if not choices:
        return None
    return (choices[0].get("delta") or {}).get("content") or None


def parse_anthropic_line(line: str) -> Optional[str]:
    data = _sse_data(line)
    if not data:
        return None
    obj = json.loads(data)
    kind = obj.get("type")
    if kind == "message_stop":
        raise StreamFinished()
    if kind == "error":
        raise ProviderError("Generation provider reported an error")
    if kind == "content_block_delta":
        return (obj.get("delta") or {}).get("text") or None
    return None


def parse_google_line(line: str) -> Optional[str]:
    data = _sse_data(line)
    if not data:
        return None
    obj = json.loads(data)
    out = []
    for cand in obj.get("candidates") or []:
        for part in (cand.get("content") or {}).get("parts") or []:
            if part.get("text"):
                out.append(part["text"])
    return "".join(out) or None


def parse_ollama_line(line: str) -> Optional[str]:
    line = line.strip()
    if not line:
        return None
    obj = json.loads(line)
    if obj.get("error"):
        raise ProviderError("Generation provider reported an error")
    text = (obj.get("message") or {}).get("content") or None
    if obj.get("done"):
        if text:
            return text
        raise StreamFinished()
    return text


#----------request builders---------------

def _split_system(messages: Sequence[dict]) -> tuple[str, list[dict]]:
    system = "\n\n".join(m["content"] for m in messages if m.get("role") == "system")
    rest = [m for m in messages if m.get("role") != "system"]
    return system, rest


def _build_request(
    domain_code: str,
    model_name: str,
    messages: Sequence[dict],
    temperature: float,
    max_tokens: int,
    api_key: Optional[str],
) -> tuple[str, dict, dict, Parser]:
    if domain_code == "openai":
        key = api_key or settings.OPENAI_API_KEY
        if not key:
            raise ProviderNotConfiguredError()
        return (
            f"{settings.OPENAI_BASE_URL.rstrip('/')}/chat/completions",
            {"Authorization": f"Bearer {key}"},
            {
                "model": model_name,
                "messages": list(messages),
                "temperature": temperature,
                "max_tokens": max_tokens,
                "stream": True,
            },
            parse_openai_line,
        )

    if domain_code == "anthropic":
        key = api_key or settings.ANTHROPIC_API_KEY
        if not key:
            raise ProviderNotConfiguredError()
        system, rest = _split_system(messages)
        payload = {
            "model": model_name,
            "messages": rest,
            "temperature": temperature,
            "max_tokens": max_tokens,
            "stream": True,
        }
        if system:
            payload["system"] = system
        return (
            f"{settings.ANTHROPIC_BASE_URL.rstrip('/')}/messages",
            {"x-api-key": key, "anthropic-version": ANTHROPIC_VERSION},
            payload,
            parse_anthropic_line,
        )

    if domain_code == "google":
        key = api_key or settings.GOOGLE_AI_API_KEY
        if not key:
            raise ProviderNotConfiguredError()
        system, rest = _split_system(messages)
        payload = {
            "contents": [
                {"role": "model" if m["role"] == "assistant" else "user", "parts": [{"text": m["content"]}]}
                for m in rest
            ],
            "generationConfig": {"temperature": temperature, "maxOutputTokens": max_tokens},
        }
        if system:
            payload["systemInstruction"] = {"parts": [{"text": system}]}
        return (
            f"{settings.GOOGLE_AI_BASE_URL.rstrip('/')}/models/{model_name}:streamGenerateContent?alt=sse",
            {"x-goog-api-key": key},
            payload,
            parse_google_line,
        )

    if domain_code == "local":
        return (
            f"{settings.OLLAMA_BASE_URL.rstrip('/')}/api/chat",
            {},
            {
                "model": model_name,
                "messages": list(messages),
                "stream": True,
                "options": {"temperature": temperature, "num_predict": max_tokens},
            },
            parse_ollama_line,
        )

    raise InvalidRequestError(f"Unsupported model provider: {domain_code}")


#----------client---------------

class LLMClient:
    """Streams page text from the configured providers.

    ``stream_page`` connects and checks the status before returning, so a
    provider failure surfaces as ``ProviderError`` ahead of the first token.
    """

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._transport = transport

    async def stream_page(
        self,
        domain_code: str,
        model_name: str,
        messages: Sequence[dict],
        *,
        temperature: float,
        max_tokens: int,
        api_key: Optional[str] = None,
        deadline_seconds: float = 60,
    ) -> AsyncIterator[str]:
        url, headers, payload, parse = _build_request(
            domain_code, model_name, messages, temperature, max_tokens, api_key
        )
        client = httpx.AsyncClient(
            transport=self._transport,
            timeout=httpx.Timeout(deadline_seconds, connect=CONNECT_TIMEOUT),
        )
        logger.info("Streaming page from %s/%s", domain_code, model_name)
        try:
            request = client.build_request("POST", url, headers=headers, json=payload)
            response = await client.send(request, stream=True)
        except httpx.HTTPError as e:
            await client.aclose()
            logger.error("%s request failed: %s", domain_code, e)
            raise ProviderError() from e

        if response.status_code // 100 != 2:
            body = await response.aread()
            await response.aclose()
            await client.aclose()
            logger.error(
                "%s returned %s: %s", domain_code, response.status_code, body[:1000].decode("utf-8", "replace")
            )
            raise ProviderError(f"Generation provider returned {response.status_code}")

        return self._tokens(client, response, parse, domain_code, deadline_seconds)

    async def _tokens(
        self,
        client: httpx.AsyncClient,
        response: httpx.Response,
        parse: Parser,
        domain_code: str,
        deadline_seconds: float,
    ) -> AsyncIterator[str]:
        started = time.monotonic()
        try:
            async for line in response.aiter_lines():
                if time.monotonic() - started > deadline_seconds:
                    logger.warning("%s stream hit the %ss ceiling; aborting", domain_code, deadline_seconds)
                    # a cut-off page must not look finished to the client
                    raise ProviderError("Generation exceeded the duration ceiling")
                try:
                    text = parse(line)
                except StreamFinished:
                    break
                except json.JSONDecodeError:
                    logger.debug("Skipping unparseable %s stream line: %r", domain_code, line[:200])
                    continue
                if text:
                    yield text
        except httpx.HTTPError as e:
            logger.error("%s stream interrupted: %s", domain_code, e)
            raise ProviderError("Generation stream interrupted") from e
        finally:
            await response.aclose()
            await client.aclose()


def get_llm_client() -> LLMClient:
    return LLMClient()
