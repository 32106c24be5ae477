"""
Pytest configuration and fixtures for perptrader tests.

This conftest.py provides shared fixtures and hooks for all tests.
"""
import pytest

from core.positions import PositionBook
from core.risk_profile import PROFILES
from core.trading_mode import TradingModeGate
from infra.state_store import InMemoryCounterStore
from tests.helpers.fakes import FakeAccount


@pytest.fixture(autouse=True)
def reset_singletons():
    """
    Reset singleton instances between tests to ensure test isolation.

    This is applied automatically to all tests (autouse=True).
    """
    from infra.metrics import MetricsRecorder
    MetricsRecorder._reset_for_testing()

    yield

    MetricsRecorder._reset_for_testing()


@pytest.fixture
def moderate():
    return PROFILES["moderate"]


@pytest.fixture
def positions():
    return PositionBook(default_leverage=3)


@pytest.fixture
def account():
    return FakeAccount(account_value=10_000.0)


@pytest.fixture
def mode_gate():
    return TradingModeGate()


@pytest.fixture
def counters():
    return InMemoryCounterStore()
