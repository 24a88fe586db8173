"""Shared fixtures for weekcal tests."""

from __future__ import annotations

import pytest

from ._test_helpers import FakeGateway


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()
