"""EchoProvider — deterministic local adapter for dry runs and tests.

Streams the task instructions back word by word and reports usage computed
from the text it saw. Fenced ``file:`` blocks in the instructions become file
edits, so a dry run can exercise the whole checkpoint/undo path offline.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from typing import Any

from baton.models.providers import (
    CompletionRecord,
    ProviderChunk,
    ProviderDescriptor,
    estimate_units,
)
from baton.models.task import Usage
from baton.providers.base import BaseProvider, extract_file_edits


class EchoProvider(BaseProvider):
    """Echoes the prompt's instructions back as streamed output."""

    def __init__(
        self,
        descriptor: ProviderDescriptor,
        chunk_delay: float = 0.0,
        words_per_chunk: int = 8,
    ) -> None:
        super().__init__(descriptor)
        self.chunk_delay = chunk_delay
        self.words_per_chunk = max(1, words_per_chunk)

    async def stream(
        self,
        prompt: str,
        context_payload: dict[str, Any],
    ) -> AsyncIterator[ProviderChunk | CompletionRecord]:
        source = context_payload.get("instructions") or prompt
        words = source.split(" ")
        output: list[str] = []

        for i in range(0, len(words), self.words_per_chunk):
            text = " ".join(words[i:i + self.words_per_chunk])
            if i + self.words_per_chunk < len(words):
                text += " "
            if self.chunk_delay:
                await asyncio.sleep(self.chunk_delay)
            output.append(text)
            yield ProviderChunk(text=text)

        full = "".join(output)
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
