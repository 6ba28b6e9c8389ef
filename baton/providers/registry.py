"""ProviderRegistry — provider id → adapter, resolved once at startup.

Registration order is preserved; the router uses it as the final tie-break.
Availability is the only runtime-mutable piece of provider state: a provider
whose credentials are missing (or that an operator disables) stays registered
but is skipped by the router.
"""

from __future__ import annotations

import json
import os
from pathlib import Path

import structlog
from pydantic import TypeAdapter

from baton.models.providers import ProviderConfig, ProviderDescriptor, ProviderTier
from baton.models.task import Capability
from baton.providers.base import BaseProvider
from baton.providers.echo import EchoProvider
from baton.providers.openai_compat import OpenAICompatibleProvider

logger = structlog.get_logger().bind(component="providers.registry")

_CONFIG_LIST = TypeAdapter(list[ProviderConfig])


def load_provider_configs(path: Path) -> list[ProviderConfig]:
    """Read a JSON provider file: either a list or ``{"providers": [...]}``."""
    raw = json.loads(Path(path).read_text(encoding="utf-8"))
    if isinstance(raw, dict):
        raw = raw.get("providers", [])
    return _CONFIG_LIST.validate_python(raw)


class ProviderRegistry:
    """Holds every registered provider adapter plus its availability."""

    def __init__(self) -> None:
        self._providers: dict[str, BaseProvider] = {}
        self._unavailable: dict[str, str] = {}

    def __len__(self) -> int:
        return len(self._providers)

    def __contains__(self, provider_id: str) -> bool:
        return provider_id in self._providers

    def register(self, provider: BaseProvider, available: bool = True, reason: str = "") -> None:
        pid = provider.provider_id
        if pid in self._providers:
            raise ValueError(f"Provider {pid!r} is already registered")
        self._providers[pid] = provider
        if not available:
            self._unavailable[pid] = reason or "unavailable"
        logger.debug("provider_registered", provider_id=pid, available=available, reason=reason)

    def get(self, provider_id: str) -> BaseProvider:
        try:
            return self._providers[provider_id]
        except KeyError:
            raise KeyError(f"Unknown provider: {provider_id}") from None

    def descriptors(self) -> list[ProviderDescriptor]:
        """Every registered descriptor, in registration order."""
        return [p.descriptor for p in self._providers.values()]

    def available_descriptors(self) -> list[ProviderDescriptor]:
        return [
            p.descriptor for pid, p in self._providers.items() if pid not in self._unavailable
        ]

    def is_available(self, provider_id: str) -> bool:
        return provider_id in self._providers and provider_id not in self._unavailable

    def unavailable_reason(self, provider_id: str) -> str:
        return self._unavailable.get(provider_id, "")

    def registration_index(self, provider_id: str) -> int:
        return list(self._providers).index(provider_id)

    def mark_unavailable(self, provider_id: str, reason: str) -> None:
        self.get(provider_id)
        self._unavailable[provider_id] = reason
        logger.warning("provider_marked_unavailable", provider_id=provider_id, reason=reason)

    def mark_available(self, provider_id: str) -> None:
        self.get(provider_id)
        if self._unavailable.pop(provider_id, None) is not None:
            logger.info("provider_marked_available", provider_id=provider_id)

    async def close(self) -> None:
        for provider in self._providers.values():
            await provider.close()

    # ── Construction ─────────────────────────────────────────────────

    @classmethod
    def from_configs(cls, configs: list[ProviderConfig]) -> ProviderRegistry:
        registry = cls()
        for config in configs:
            descriptor = config.to_descriptor()
            available, reason = config.enabled, "" if config.enabled else "disabled"

            if config.kind == "echo":
                provider: BaseProvider = EchoProvider(descriptor)
            elif config.kind == "openai":
                api_key = os.environ.get(config.api_key_env, "") if config.api_key_env else ""
                if config.api_key_env and not api_key and available:
                    available, reason = False, f"missing credential {config.api_key_env}"
                if not config.base_url and available:
                    available, reason = False, "missing base_url"
                provider = OpenAICompatibleProvider(descriptor, config.base_url, api_key=api_key)
            else:
                raise ValueError(f"Unknown provider kind {config.kind!r} for {config.provider_id}")

            registry.register(provider, available=available, reason=reason)

        logger.info(
            "provider_registry_loaded",
            registered=len(registry),
            available=len(registry.available_descriptors()),
        )
        return registry

    @classmethod
    def from_file(cls, path: Path) -> ProviderRegistry:
        return cls.from_configs(load_provider_configs(path))

    @classmethod
    def echo_defaults(cls) -> ProviderRegistry:
        """Offline registry: one echo provider per tier, covering every capability."""
        everything = [c for c in Capability]
        configs = [
            ProviderConfig(
                provider_id=f"echo-{tier.value}",
                kind="echo",
                model=f"echo-{tier.value}",
                capabilities=everything,
                tier=tier,
                input_cost_per_1m=cost,
                output_cost_per_1m=cost * 4,
            )
            for tier, cost in (
                (ProviderTier.LOW, 0.1),
                (ProviderTier.MEDIUM, 1.0),
                (ProviderTier.HIGH, 5.0),
            )
        ]
        return cls.from_configs(configs)
