"""Shared fixtures."""

from unittest import mock

import pytest

from tests.fakes import FakeClock, FakeExchange, make_settings


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def exchange():
    return FakeExchange()


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def dispatcher():
    return mock.MagicMock()
