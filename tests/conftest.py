"""Shared fixtures for the relay-agent test suite."""

import os
import sys

import pytest

# Ensure project root is on the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


@pytest.fixture
def relay_home(tmp_path, monkeypatch):
    """Point RELAY_HOME at a temp dir so no test touches ~/.relay."""
    home = tmp_path / "relay-home"
    home.mkdir()
    monkeypatch.setenv("RELAY_HOME", str(home))
    return home
