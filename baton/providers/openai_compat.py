"""OpenAI-compatible chat-completions adapter.

Talks to any server exposing ``POST /v1/chat/completions`` with SSE
streaming. Usage is taken from the final ``usage`` chunk that servers emit
when ``stream_options.include_usage`` is set; if the server never reports it,
usage falls back to the ~4 chars/unit estimate.

HTTP and transport failures are classified into the error kinds the engine
understands (see ``classify_http_failure``).
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from typing import Any

import httpx

from baton.errors import ProviderError, ProviderTransientError
from baton.models.providers import (
    CompletionRecord,
    ProviderChunk,
    ProviderDescriptor,
    estimate_units,
)
from baton.models.task import Usage
from baton.providers.base import RECOVERABLE_KINDS, BaseProvider, extract_file_edits

SYSTEM_PROMPT = """You are a delegated worker inside a multi-provider coding assistant.
Complete exactly the task you are given. When you create or change a file, emit
its full new content in a fenced block whose info string is file:<relative path>:

```file:src/example.py
<entire file content>
```

To delete a file, emit a block for it whose only line is #delete.
Files not mentioned in such blocks are left untouched."""

_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "rate_limit",
    "try again later",
)
_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "temporarily unavailable",
    "temporary failure",
    "overloaded",
    "connection reset",
    "server error",
)
_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "forbidden",
    "invalid api key",
    "authentication",
)


def classify_http_failure(status_code: int | None, message: str = "") -> str:
    """Map an HTTP status and/or error text onto an error kind.

    Status codes win over message patterns. Kinds in RECOVERABLE_KINDS make
    the engine try the next provider; everything else fails the task.
    """
    if status_code == 429:
        return "rate_limit"
    if status_code in (401, 403):
        return "auth"
    if status_code == 404:
        return "not_found"
    if status_code is not None and 500 <= status_code < 600:
        return "transient"

    haystack = message.lower()
    if any(p in haystack for p in _RATE_LIMIT_PATTERNS):
        return "rate_limit"
    if any(p in haystack for p in _AUTH_PATTERNS):
        return "auth"
    if any(p in haystack for p in _TRANSIENT_PATTERNS):
        return "transient"
    return "provider_error"


def _raise_for_kind(kind: str, message: str, provider_id: str) -> None:
    if kind in RECOVERABLE_KINDS:
        raise ProviderTransientError(message, provider_id=provider_id, kind=kind)
    raise ProviderError(message, provider_id=provider_id, kind=kind)


class OpenAICompatibleProvider(BaseProvider):
    """Streaming adapter for OpenAI-compatible HTTP APIs."""

    def __init__(
        self,
        descriptor: ProviderDescriptor,
        base_url: str,
        api_key: str = "",
        temperature: float = 0.2,
        connect_timeout: float = 5.0,
        read_timeout: float = 90.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(descriptor)
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.temperature = temperature
        self.connect_timeout = connect_timeout
        self.read_timeout = read_timeout
        self._transport = transport

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _build_payload(self, prompt: str, context_payload: dict[str, Any]) -> dict[str, Any]:
        messages: list[dict[str, str]] = [{"role": "system", "content": SYSTEM_PROMPT}]
        for turn in context_payload.get("conversation_history", []):
            if turn.get("role") in ("user", "assistant") and turn.get("content"):
                messages.append({"role": turn["role"], "content": turn["content"]})
        messages.append({"role": "user", "content": prompt})
        return {
            "model": self.descriptor.model,
            "messages": messages,
            "temperature": self.temperature,
            "max_tokens": self.descriptor.max_output_units,
            "stream": True,
            "stream_options": {"include_usage": True},
        }

    async def stream(
        self,
        prompt: str,
        context_payload: dict[str, Any],
    ) -> AsyncIterator[ProviderChunk | CompletionRecord]:
        payload = self._build_payload(prompt, context_payload)
        self.log.debug("provider_request", model=self.descriptor.model, prompt_chars=len(prompt))

        output: list[str] = []
        reported: dict[str, int] | None = None

        # One no-keepalive client per stream so cancellation never waits on
        # draining a pooled connection.
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                headers=self._headers(),
                timeout=httpx.Timeout(
                    connect=self.connect_timeout, read=self.read_timeout, write=10.0, pool=5.0
                ),
                limits=httpx.Limits(max_connections=1, max_keepalive_connections=0),
                transport=self._transport,
            ) as client:
                async with client.stream("POST", "/v1/chat/completions", json=payload) as response:
                    if response.status_code >= 400:
                        body = (await response.aread()).decode("utf-8", errors="replace")
                        kind = classify_http_failure(response.status_code, body)
                        _raise_for_kind(
                            kind,
                            f"HTTP {response.status_code} from {self.provider_id}: {body[:300]}",
                            self.provider_id,
                        )

                    async for line in response.aiter_lines():
                        if not line.startswith("data:"):
                            continue
                        data = line[5:].strip()
                        if data == "[DONE]":
                            break
                        try:
                            chunk = json.loads(data)
                        except json.JSONDecodeError:
                            self.log.debug("provider_bad_sse_line", line=data[:120])
                            continue

                        if chunk.get("error"):
                            message = str(chunk["error"].get("message", chunk["error"]))
                            _raise_for_kind(
                                classify_http_failure(None, message), message, self.provider_id
                            )
                        if chunk.get("usage"):
                            reported = chunk["usage"]
                        choices = chunk.get("choices") or []
                        if not choices:
                            continue
                        text = (choices[0].get("delta") or {}).get("content")
                        if text:
                            output.append(text)
                            yield ProviderChunk(text=text)
        except httpx.TimeoutException as exc:
            raise ProviderTransientError(
                f"{self.provider_id} timed out: {exc}", provider_id=self.provider_id, kind="timeout"
            ) from exc
        except httpx.TransportError as exc:
            raise ProviderTransientError(
                f"{self.provider_id} network error: {exc}", provider_id=self.provider_id, kind="network"
            ) from exc

        full = "".join(output)
        if reported:
            input_units = int(reported.get("prompt_tokens", 0))
            output_units = int(reported.get("completion_tokens", 0))
        else:
            input_units = estimate_units(prompt)
            output_units = estimate_units(full)

        yield CompletionRecord(
            success=True,
            usage=Usage(
                input_units=input_units,
                output_units=output_units,
                cost=self.descriptor.cost_of(input_units, output_units),
            ),
            edits=extract_file_edits(full),
        )
