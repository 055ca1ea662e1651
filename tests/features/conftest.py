"""Pytest-bdd configuration and shared fixtures for terminal link feature tests."""

import asyncio

import pytest


@pytest.fixture
def context():
    """Shared test context for scenario state."""
    return {}


@pytest.fixture
def loop():
    """Event loop driving one scenario; leftover tasks are cancelled at teardown."""
    loop = asyncio.new_event_loop()
    yield loop
    pending = asyncio.all_tasks(loop)
    for task in pending:
        task.cancel()
    if pending:
        loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
    loop.close()
