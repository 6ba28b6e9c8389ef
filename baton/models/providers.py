"""Provider models — descriptors, stream items, and configuration entries.

A ProviderDescriptor is the routing-relevant metadata of one execution
backend. It is built once at startup from a ProviderConfig and never mutated;
runtime availability lives in the ProviderRegistry instead.
"""

from __future__ import annotations

import enum
import math

from pydantic import BaseModel, ConfigDict, Field, field_validator

from baton.models.task import Capability, Usage


class ProviderTier(str, enum.Enum):
    """Cost/capability tiers.

    LOW    — cheap and fast; simple edits, classification, boilerplate.
    MEDIUM — balanced default for most work.
    HIGH   — expensive, strongest reasoning; preferred for complex tasks.
    """

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


def estimate_units(text: str) -> int:
    """Rough token estimate: one unit per ~4 characters."""
    return math.ceil(len(text) / 4)


class ProviderDescriptor(BaseModel):
    """Routing metadata for one provider."""

    model_config = ConfigDict(frozen=True)

    provider_id: str
    capabilities: frozenset[Capability]
    tier: ProviderTier = ProviderTier.MEDIUM
    model: str = ""
    input_cost_per_1m: float = 0.0
    output_cost_per_1m: float = 0.0
    cost_per_call: float = 0.0
    max_context_units: int = 128_000
    max_output_units: int = 4096

    @property
    def is_general_purpose(self) -> bool:
        return Capability.GENERAL in self.capabilities

    def declares(self, capability: Capability) -> bool:
        return capability in self.capabilities

    def estimate_cost(self, input_units: int, output_units: int | None = None) -> float:
        """Estimated USD cost of one invocation."""
        out = self.max_output_units if output_units is None else output_units
        return (
            self.cost_per_call
            + (input_units / 1_000_000) * self.input_cost_per_1m
            + (out / 1_000_000) * self.output_cost_per_1m
        )

    def cost_of(self, input_units: int, output_units: int) -> float:
        """Actual cost of reported usage."""
        return self.estimate_cost(input_units, output_units)


class ProviderConfig(BaseModel):
    """One entry of the providers JSON file.

    Example::

        {
          "provider_id": "fast-coder",
          "kind": "openai",
          "base_url": "https://api.example.com",
          "api_key_env": "FAST_CODER_API_KEY",
          "model": "coder-small",
          "capabilities": ["code-edit", "general"],
          "tier": "low",
          "input_cost_per_1m": 0.2,
          "output_cost_per_1m": 0.6
        }
    """

    provider_id: str
    kind: str = Field(default="openai", description="Adapter kind: 'openai' or 'echo'")
    base_url: str = ""
    api_key_env: str = ""
    model: str = ""
    capabilities: list[Capability] = Field(default_factory=lambda: [Capability.GENERAL])
    tier: ProviderTier = ProviderTier.MEDIUM
    input_cost_per_1m: float = 0.0
    output_cost_per_1m: float = 0.0
    cost_per_call: float = 0.0
    max_context_units: int = 128_000
    max_output_units: int = 4096
    enabled: bool = True

    @field_validator("capabilities", mode="before")
    @classmethod
    def _coerce_capabilities(cls, value: list) -> list[Capability]:
        return [Capability.coerce(v) for v in value]

    def to_descriptor(self) -> ProviderDescriptor:
        return ProviderDescriptor(
            provider_id=self.provider_id,
            capabilities=frozenset(self.capabilities),
            tier=self.tier,
            model=self.model,
            input_cost_per_1m=self.input_cost_per_1m,
            output_cost_per_1m=self.output_cost_per_1m,
            cost_per_call=self.cost_per_call,
            max_context_units=self.max_context_units,
            max_output_units=self.max_output_units,
        )


class FileEdit(BaseModel):
    """A whole-file write (or delete) produced by a provider."""

    file_id: str
    content: str | None = Field(default=None, description="New content; None deletes the file")


class ProviderChunk(BaseModel):
    """One fragment of streamed provider output."""

    text: str


class CompletionRecord(BaseModel):
    """Terminal item of every provider stream."""

    success: bool = True
    usage: Usage = Field(default_factory=Usage)
    error: str = ""
    error_kind: str = ""
    edits: list[FileEdit] = Field(default_factory=list)
