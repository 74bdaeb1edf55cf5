"""
Shared fixtures for integration tests.

Integration tests drive a real ChatSession (registry, throttler, room
aggregator and message log together) over the fake STOMP transport.
Timings use the production read delay so flush windows are realistic.
"""

import pytest

from gptini.session import ChatSession


@pytest.fixture
def integration_session(connector, mock_api):
    """ChatSession with the default 300 ms read flush delay."""
    return ChatSession(
        lambda: ('integration-token', 'wss://chat.test/ws/websocket'),
        api=mock_api,
        stomp_connect=connector,
        reconnect_delay=0.05
    )


@pytest.fixture
async def connected_session(integration_session):
    """Session connected as user 5, torn down after the test."""
    await integration_session.connect(5)
    assert await integration_session.wait_connected(1)
    yield integration_session
    await integration_session.disconnect()
