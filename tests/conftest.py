"""
Shared pytest fixtures for the GPTini test suite.

This file contains fixtures that are available to all test files.
"""
import pytest
import asyncio
import inspect
import itertools
import json
from unittest.mock import Mock, AsyncMock

import aiohttp

from gptini.error import ConnectionClosed, ConnectionFailed
from gptini.session import ChatSession
from gptini.stomp import Frame, Subscription, parse_frames


CONNECTED_FRAME = 'CONNECTED\nversion:1.2\nheart-beat:0,0\n\n\x00'


class FakeWebSocket:
    """In-memory stand-in for aiohttp's ClientWebSocketResponse."""

    def __init__(self):
        self.incoming = asyncio.Queue()
        self.sent = []
        self.closed = False

    def feed(self, text):
        self.incoming.put_nowait(
            aiohttp.WSMessage(aiohttp.WSMsgType.TEXT, text, None)
        )

    def feed_close(self):
        self.incoming.put_nowait(
            aiohttp.WSMessage(aiohttp.WSMsgType.CLOSED, None, None)
        )

    async def receive(self):
        return await self.incoming.get()

    async def send_str(self, data):
        if self.closed:
            raise ConnectionResetError('closed')
        self.sent.append(data)

    async def close(self):
        if not self.closed:
            self.closed = True
            self.feed_close()

    def exception(self):
        return None

    def sent_frames(self):
        """Frames written so far, heart-beats excluded."""
        frames = []
        for data in self.sent:
            frames.extend(parse_frames(data))
        return frames


class FakeStompClient:
    """StompClient double recording subscriptions and publishes."""

    def __init__(self):
        self.connected = True
        self.error = None
        self.subscriptions = {}
        self.published = []
        self.unsubscribed = []
        self._ids = itertools.count()
        self._closed = asyncio.Event()

    @property
    def destinations(self):
        return sorted(sub.destination for sub in self.subscriptions.values())

    def subscribe(self, destination, callback, headers=None):
        if not self.connected:
            raise ConnectionClosed('not connected')
        sub = Subscription(self, 'sub-%d' % next(self._ids), destination, callback)
        self.subscriptions[sub.id] = sub
        return sub

    def unsubscribe(self, subscription):
        if self.subscriptions.pop(subscription.id, None) is not None:
            self.unsubscribed.append(subscription.destination)

    def publish(self, destination, body, headers=None):
        if not self.connected:
            raise ConnectionClosed('not connected')
        self.published.append((destination, body))

    async def deliver(self, destination, payload):
        """Push an inbound MESSAGE to every subscription of a destination."""
        body = payload if isinstance(payload, str) else json.dumps(payload)
        for sub in list(self.subscriptions.values()):
            if sub.destination != destination:
                continue
            frame = Frame(
                'MESSAGE',
                {'destination': destination, 'subscription': sub.id},
                body
            )
            ret = sub.callback(frame)
            if inspect.isawaitable(ret):
                await ret

    def drop(self, error=None):
        """Simulate a lost connection."""
        self.connected = False
        self.error = error or ConnectionClosed('dropped')
        self.subscriptions.clear()
        self._closed.set()

    async def wait_closed(self):
        await self._closed.wait()

    async def close(self):
        self.connected = False
        self.subscriptions.clear()
        self._closed.set()


class FakeConnector:
    """Replacement for StompClient.connect handing out fake clients."""

    def __init__(self):
        self.clients = []
        self.calls = []
        self.failures = 0

    async def __call__(self, url, headers=None, heartbeat=None, timeout=None):
        self.calls.append({
            'url': url,
            'headers': headers,
            'heartbeat': heartbeat,
            'timeout': timeout
        })
        if self.failures:
            self.failures -= 1
            raise ConnectionFailed('connection refused')
        client = FakeStompClient()
        self.clients.append(client)
        return client

    @property
    def client(self):
        return self.clients[-1] if self.clients else None


@pytest.fixture
def ws_factory():
    """
    Factory for empty fake WebSockets.

    Returns:
        type: FakeWebSocket class
    """
    return FakeWebSocket


@pytest.fixture
def fake_ws():
    """
    WebSocket with a CONNECTED frame already queued.

    Returns:
        FakeWebSocket: Socket ready for StompClient.handshake()
    """
    ws = FakeWebSocket()
    ws.feed(CONNECTED_FRAME)
    return ws


@pytest.fixture
def fake_client():
    """
    Connected fake STOMP client.

    Returns:
        FakeStompClient: Client recording subscriptions and publishes
    """
    return FakeStompClient()


@pytest.fixture
def client_factory():
    """
    Factory for connected fake STOMP clients.

    Returns:
        type: FakeStompClient class
    """
    return FakeStompClient


@pytest.fixture
def connector():
    """
    Fake STOMP connect coroutine.

    Returns:
        FakeConnector: Callable recording connection attempts
    """
    return FakeConnector()


@pytest.fixture
def sample_message():
    """
    Sample chat message envelope.

    Returns:
        dict: Message in server wire format
    """
    return {
        'messageId': 100,
        'roomId': 42,
        'senderId': 7,
        'senderNickname': 'alice',
        'type': 'TEXT',
        'content': 'Hello, world!',
        'createdAt': '2024-05-01T10:00:00Z'
    }


@pytest.fixture
def make_message():
    """
    Factory for message envelopes.

    Returns:
        function: (message_id, room_id=42, sender_id=7, **fields) -> dict
    """
    def make(message_id, room_id=42, sender_id=7, **fields):
        data = {
            'messageId': message_id,
            'roomId': room_id,
            'senderId': sender_id,
            'senderNickname': 'user%d' % sender_id,
            'type': 'TEXT',
            'content': 'message %d' % message_id,
            'createdAt': '2024-05-01T10:%02d:00Z' % (message_id % 60)
        }
        data.update(fields)
        return data
    return make


@pytest.fixture
def sample_room_update():
    """
    Sample room update event.

    Returns:
        dict: Room update in server wire format
    """
    return {
        'type': 'ROOM_UPDATE',
        'roomId': 42,
        'lastMessage': 'see you',
        'lastMessageTime': '2024-05-01T10:05:00Z',
        'lastMessageSenderId': 7,
        'lastMessageSenderNickname': 'alice',
        'unreadCount': 3
    }


@pytest.fixture
def sample_rooms():
    """
    Sample room list as returned by the REST API.

    Returns:
        list: Room records
    """
    return [
        {'id': 1, 'name': 'general', 'lastMessage': 'hi', 'unreadCount': 0},
        {'id': 42, 'name': 'random', 'lastMessage': 'yo', 'unreadCount': 1},
        {'id': 3, 'name': 'dev', 'lastMessage': None, 'unreadCount': 0}
    ]


@pytest.fixture
def mock_api(sample_rooms):
    """
    Mock ApiClient instance.

    Returns:
        Mock: API client with async endpoint methods
    """
    api = Mock()
    api.get_messages = AsyncMock(return_value=[])
    api.get_chat_rooms = AsyncMock(return_value=sample_rooms)
    api.login = AsyncMock(return_value={
        'accessToken': 'access', 'refreshToken': 'refresh'
    })
    api.get_me = AsyncMock(return_value={'id': 5, 'nickname': 'me'})
    api.close = Mock()
    return api


@pytest.fixture
def session(connector, mock_api):
    """
    ChatSession wired to the fake transport and mock API.

    Short delays keep timer-driven tests fast.
    """
    return ChatSession(
        lambda: ('token', 'wss://chat.test/ws/websocket'),
        api=mock_api,
        stomp_connect=connector,
        reconnect_delay=0.01,
        read_delay=0.01
    )


# Pytest configuration helpers


def pytest_configure(config):
    """
    Pytest configuration hook.

    Registers custom markers.
    """
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests")
    config.addinivalue_line("markers", "asyncio: Async tests")
    config.addinivalue_line("markers", "slow: Slow tests (>1s)")
