from __future__ import annotations

import pytest

from tests._fixtures.engines import FakeEngines


@pytest.fixture
def fake_engines() -> FakeEngines:
    """Provide fake engines answering with canned results."""
    return FakeEngines()
