"""Root conftest — shared pytest markers.

Markers
-------
unit        fast, no network, pure logic or tmp_path file I/O
integration talks to a real OpenAI-compatible endpoint (set BATON_TEST_INTEGRATION=1)
slow        expected to take > 5 seconds
"""

from __future__ import annotations


def pytest_configure(config):
    config.addinivalue_line("markers", "unit: fast, no network tests")
    config.addinivalue_line("markers", "integration: requires a live provider endpoint")
    config.addinivalue_line("markers", "slow: test is expected to take > 5 s")
