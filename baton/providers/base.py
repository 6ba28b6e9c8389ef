"""BaseProvider — abstract base class for ALL Baton provider adapters.

Every execution backend (HTTP model API, local echo, test fakes) extends this.
Provides deadline enforcement, stream validation, timing, and logging.
"""

from __future__ import annotations

import asyncio
import re
import time
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from typing import Any

from baton.errors import ProviderError, ProviderTransientError
from baton.models.providers import (
    CompletionRecord,
    FileEdit,
    ProviderChunk,
    ProviderDescriptor,
)
from baton.utils import get_logger

logger = get_logger("provider")

# Error kinds that move the engine on to the next provider.
RECOVERABLE_KINDS = frozenset({"timeout", "rate_limit", "network", "transient", "truncated_stream"})

# Bound on how long a cancelled / timed-out stream may take to close.
_ACLOSE_TIMEOUT = 2.0

# ```file:path/to/file.py
# ...content...
# ```
# An empty block whose first line is "#delete" removes the file.
_FILE_BLOCK_RE = re.compile(
    r"^```file:(?P<path>[^\n`]+)\n(?P<body>.*?)^```[ \t]*$",
    re.MULTILINE | re.DOTALL,
)


def extract_file_edits(text: str) -> list[FileEdit]:
    """Pull whole-file edits out of fenced ``file:`` blocks in provider output.

    Later blocks for the same file replace earlier ones.
    """
    edits: dict[str, FileEdit] = {}
    for match in _FILE_BLOCK_RE.finditer(text):
        path = match.group("path").strip()
        body = match.group("body")
        if not path:
            continue
        if body.strip() == "#delete":
            edits[path] = FileEdit(file_id=path, content=None)
        else:
            edits[path] = FileEdit(file_id=path, content=body)
    return list(edits.values())


class BaseProvider(ABC):
    """Base class for all provider adapters.

    Subclasses must:
        1. Pass a ProviderDescriptor to ``__init__``
        2. Implement ``stream(prompt, context_payload)`` yielding ProviderChunk
           items and ending with exactly one CompletionRecord

    The ``invoke()`` method wraps ``stream()`` with:
        - A per-invocation deadline (expiry → ProviderTransientError 'timeout')
        - Conversion of failed CompletionRecords into ProviderError /
          ProviderTransientError
        - Detection of streams that end without a CompletionRecord
        - Timing and logging
    """

    def __init__(self, descriptor: ProviderDescriptor) -> None:
        self.descriptor = descriptor
        self.log = logger.bind(provider_id=descriptor.provider_id)

    @property
    def provider_id(self) -> str:
        return self.descriptor.provider_id

    async def invoke(
        self,
        prompt: str,
        context_payload: dict[str, Any] | None = None,
        deadline: float | None = None,
    ) -> AsyncIterator[ProviderChunk | CompletionRecord]:
        """Stream one invocation, enforcing ``deadline`` seconds end to end.

        This is the public entry point. Do NOT override this — override stream().

        Yields:
            ProviderChunk items as they arrive, then one successful
            CompletionRecord.

        Raises:
            ProviderTransientError: deadline expiry, rate limit, transient
                network failure, or a truncated stream.
            ProviderError: non-recoverable provider failure.
        """
        start = time.perf_counter()
        expires_at = None if deadline is None else time.monotonic() + deadline
        gen = self.stream(prompt, context_payload or {}).__aiter__()
        completion: CompletionRecord | None = None

        try:
            while True:
                remaining = None if expires_at is None else expires_at - time.monotonic()
                if remaining is not None and remaining <= 0:
                    raise asyncio.TimeoutError()
                try:
                    item = await asyncio.wait_for(gen.__anext__(), timeout=remaining)
                except StopAsyncIteration:
                    break

                if isinstance(item, CompletionRecord):
                    completion = item
                    break
                yield item
        except asyncio.TimeoutError:
            self.log.warning("provider_deadline_expired", deadline=deadline)
            raise ProviderTransientError(
                f"{self.provider_id} did not finish within {deadline}s",
                provider_id=self.provider_id,
                kind="timeout",
            ) from None
        finally:
            try:
                await asyncio.wait_for(gen.aclose(), timeout=_ACLOSE_TIMEOUT)
            except (asyncio.TimeoutError, RuntimeError) as exc:
                self.log.debug("provider_stream_close_failed", error=str(exc))

        duration_ms = round((time.perf_counter() - start) * 1000, 2)

        if completion is None:
            raise ProviderTransientError(
                f"{self.provider_id} stream ended without a completion record",
                provider_id=self.provider_id,
                kind="truncated_stream",
            )

        if not completion.success:
            kind = completion.error_kind or "provider_error"
            error_cls = ProviderTransientError if kind in RECOVERABLE_KINDS else ProviderError
            self.log.warning("provider_reported_failure", kind=kind, error=completion.error[:200])
            raise error_cls(
                completion.error or f"{self.provider_id} reported failure",
                provider_id=self.provider_id,
                kind=kind,
            )

        self.log.info(
            "provider_complete",
            duration_ms=duration_ms,
            input_units=completion.usage.input_units,
            output_units=completion.usage.output_units,
            edits=len(completion.edits),
        )
        yield completion

    @abstractmethod
    def stream(
        self,
        prompt: str,
        context_payload: dict[str, Any],
    ) -> AsyncIterator[ProviderChunk | CompletionRecord]:
        """Core streaming call. Subclasses MUST implement this as an async generator.

        Args:
            prompt: Fully composed task prompt.
            context_payload: Task metadata, upstream results, request context.
        """
        ...

    async def close(self) -> None:
        """Release any held resources."""
