"""Shared fixtures for the viewer test suite."""

from __future__ import annotations

import pytest

from fakes import FakeEngine, FakeHandle


@pytest.fixture
def fake_engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def fake_handle() -> FakeHandle:
    return FakeHandle()
