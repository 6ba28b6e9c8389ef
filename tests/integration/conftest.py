"""Integration-test conftest — live OpenAI-compatible endpoint fixtures.

Integration tests require:
    BATON_TEST_INTEGRATION=1
    BATON_TEST_BASE_URL   e.g. https://api.openai.com or http://localhost:8000
    BATON_TEST_API_KEY    (optional for local servers)
    BATON_TEST_MODEL      model name served by the endpoint

Run with:
    BATON_TEST_INTEGRATION=1 pytest tests/integration/ -v -m integration
"""

from __future__ import annotations

import os

import pytest

from baton.models.providers import ProviderDescriptor, ProviderTier
from baton.models.task import Capability
from baton.providers.openai_compat import OpenAICompatibleProvider


@pytest.fixture
def live_provider() -> OpenAICompatibleProvider:
    if not os.getenv("BATON_TEST_INTEGRATION"):
        pytest.skip("Set BATON_TEST_INTEGRATION=1 to run integration tests")
    base_url = os.getenv("BATON_TEST_BASE_URL")
    if not base_url:
        pytest.skip("Set BATON_TEST_BASE_URL to an OpenAI-compatible endpoint")

    descriptor = ProviderDescriptor(
        provider_id="live",
        capabilities=frozenset(Capability),
        tier=ProviderTier.MEDIUM,
        model=os.getenv("BATON_TEST_MODEL", "gpt-4o-mini"),
        max_output_units=256,
    )
    return OpenAICompatibleProvider(
        descriptor,
        base_url,
        api_key=os.getenv("BATON_TEST_API_KEY", ""),
    )
