"""Shared fixtures: a controllable clock plus registry, limiter and app built on it."""

import os
import sys
from unittest.mock import Mock

import pytest

# Project modules live at the repository root
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from fastapi.testclient import TestClient

from config import Settings
from main import create_app
from rate_limiter import SlidingWindowRateLimiter
from registry import MatchRegistry

START_TIME = 1000.0


@pytest.fixture
def clock():
    """Mock clock; tests advance time by assigning clock.return_value."""
    return Mock(return_value=START_TIME)


@pytest.fixture
def registry(clock):
    return MatchRegistry(clock=clock)


@pytest.fixture
def rate_limiter(clock):
    return SlidingWindowRateLimiter(limit=15, window_seconds=60, clock=clock)


@pytest.fixture
def test_settings():
    return Settings(cleanup_interval=0, stale_match_ttl=0, trust_forwarded_for=False)


@pytest.fixture
def app(test_settings, registry, rate_limiter):
    return create_app(test_settings, registry=registry, rate_limiter=rate_limiter)


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def register_payload():
    return {
        "hostName": "Alice",
        "proxyAddress": "10.0.0.5",
        "proxyPort": 7777,
        "map": "de_dust2",
    }
