"""Shared fixtures for the CW trainer tests."""

from __future__ import annotations

import pytest

import routes.morse as morse_routes
from utils.morse_player import MorsePlayer
from utils.tone import OfflineToneGenerator, VirtualClock


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    import app as app_module

    app_module.app.config['TESTING'] = True
    return app_module.app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def clock():
    return VirtualClock(start=100.0)


@pytest.fixture
def generator(clock):
    return OfflineToneGenerator(clock, sample_rate=8000)


@pytest.fixture
def player(generator):
    return MorsePlayer(generator)


@pytest.fixture
def offline_player(monkeypatch, player):
    """Route the HTTP layer to an offline player instead of the sound card."""
    monkeypatch.setattr(morse_routes, 'get_morse_player', lambda: player)
    return player
