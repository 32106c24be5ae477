"""Test helpers for perptrader test suite"""

from tests.helpers.fakes import (
    FakeAccount,
    FakeExchange,
    FakeMarketData,
    FakeReadiness,
    make_decision,
)

__all__ = [
    "FakeAccount",
    "FakeExchange",
    "FakeMarketData",
    "FakeReadiness",
    "make_decision",
]
