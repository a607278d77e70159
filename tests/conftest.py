"""Shared fixtures."""

from __future__ import annotations

import pytest

from fakes import FakeEnvironment, FakeForge


@pytest.fixture
def fake_env():
    return FakeEnvironment()


@pytest.fixture
def fake_forge():
    return FakeForge()
