#!/usr/bin/env python3
# -*- coding: utf-8 -*-

import pytest
import asyncio
from unittest.mock import Mock, AsyncMock, patch

from gptini import topics
from gptini.error import ApiError, AuthError
from gptini.session import ChatSession


async def until(condition, timeout=1):
    """Poll until condition() is true"""
    async def poll():
        while not condition():
            await asyncio.sleep(0.005)
    await asyncio.wait_for(poll(), timeout)


@pytest.fixture
async def live(session):
    """Session connected as user 5"""
    await session.connect(5)
    assert await session.wait_connected(1)
    yield session
    await session.disconnect()


class TestInit:
    """Test ChatSession initialization"""

    def test_defaults(self):
        session = ChatSession(lambda: ('t', 'wss://x'))
        assert session.reconnect_delay == 5
        assert session.heartbeat == (4000, 4000)
        assert session.throttler.delay == 0.3
        assert session.client is None
        assert not session.connected
        assert not session.active
        assert session.current_room_id is None


class TestConnect:
    """Test connect()"""

    @pytest.mark.asyncio
    async def test_connect_subscribes_user_rooms(self, live, connector):
        assert live.connected
        assert live.user_id == 5
        assert connector.client.destinations == ['/sub/users/5/rooms']

    @pytest.mark.asyncio
    async def test_connect_credentials(self, live, connector):
        call = connector.calls[0]
        assert call['url'] == 'wss://chat.test/ws/websocket'
        assert call['headers'] == {'Authorization': 'Bearer token'}
        assert call['heartbeat'] == (4000, 4000)

    @pytest.mark.asyncio
    async def test_connect_same_user_noop(self, live, connector):
        await live.connect(5)
        await asyncio.sleep(0.05)
        assert len(connector.clients) == 1
        assert len(connector.client.subscriptions) == 1

    @pytest.mark.asyncio
    async def test_connect_event(self, session):
        handler = Mock()
        session.on('connect', handler)
        await session.connect(5)
        await session.wait_connected(1)
        handler.assert_called_once_with('connect', 5)
        await session.disconnect()

    @pytest.mark.asyncio
    async def test_connect_retries(self, session, connector):
        """Failed establishment is retried after the delay"""
        connector.failures = 2
        await session.connect(5)
        assert await session.wait_connected(1)
        assert len(connector.calls) == 3
        await session.disconnect()

    @pytest.mark.asyncio
    async def test_connect_without_token(self, connector, mock_api):
        session = ChatSession(
            lambda: (None, 'wss://chat.test/ws/websocket'),
            api=mock_api,
            stomp_connect=connector,
            reconnect_delay=0.01
        )
        await session.connect(5)
        assert not await session.wait_connected(0.05)
        assert connector.calls == []
        await session.disconnect()
        assert not session.active

    @pytest.mark.asyncio
    async def test_no_reconnect(self, connector, mock_api):
        """reconnect_delay None stops after the first failure"""
        session = ChatSession(
            lambda: ('t', 'wss://x'),
            stomp_connect=connector,
            reconnect_delay=None
        )
        connector.failures = 1
        await session.connect(5)
        await until(lambda: not session.active)
        assert len(connector.calls) == 1

    @pytest.mark.asyncio
    async def test_connect_socket_error_retries(self, ws_factory, fake_ws):
        """A socket dropping during the handshake is retried"""
        broken = ws_factory()
        broken.closed = True
        http_session = Mock()
        http_session.ws_connect = AsyncMock(side_effect=[broken, fake_ws])
        http_session.close = AsyncMock()
        session = ChatSession(
            lambda: ('t', 'wss://chat.test/ws/websocket'),
            reconnect_delay=0.01
        )
        with patch('gptini.stomp.aiohttp.ClientSession', return_value=http_session):
            await session.connect(5)
            assert await session.wait_connected(1)
        assert session.active
        assert http_session.ws_connect.await_count == 2
        await session.disconnect()

    @pytest.mark.asyncio
    async def test_credentials_error_retries(self, connector):
        """An exception from the credentials provider does not end the task"""
        credentials = Mock(side_effect=[RuntimeError('keyring'), ('t', 'wss://x')])
        session = ChatSession(
            credentials,
            stomp_connect=connector,
            reconnect_delay=0.01
        )
        await session.connect(5)
        assert await session.wait_connected(1)
        assert credentials.call_count == 2
        assert len(connector.calls) == 1
        await session.disconnect()


class TestDisconnect:
    """Test disconnect()"""

    @pytest.mark.asyncio
    async def test_disconnect_resets_state(self, live, connector, make_message,
                                           sample_room_update):
        client = connector.client
        await client.deliver('/sub/users/5/rooms', sample_room_update)
        await live.open_room(42)
        await client.deliver('/sub/chat/rooms/42', make_message(100))

        await live.disconnect()

        assert not live.connected
        assert not live.active
        assert live.client is None
        assert live.user_id is None
        assert live.current_room_id is None
        assert len(live.messages) == 0
        assert len(live.room_updates) == 0
        assert len(live.registry) == 0
        assert live.registry.handlers == {}
        assert live.throttler.cursors == {}
        assert client.subscriptions == {}
        assert not client.connected

    @pytest.mark.asyncio
    async def test_disconnect_flushes_pending(self, live, connector, make_message):
        await live.open_room(42)
        await connector.client.deliver('/sub/chat/rooms/42', make_message(100))
        client = connector.client
        await live.disconnect()
        assert client.published == [('/pub/chat/rooms/42/read', {'messageId': 100})]

    @pytest.mark.asyncio
    async def test_disconnect_event(self, live):
        handler = Mock()
        live.on('disconnect', handler)
        await live.disconnect()
        handler.assert_called_once_with('disconnect', None)

    @pytest.mark.asyncio
    async def test_disconnect_idempotent(self, session):
        await session.disconnect()
        await session.disconnect()
        assert not session.connected

    @pytest.mark.asyncio
    async def test_disconnect_from_handler(self, session, connector):
        """disconnect() inside an event handler does not deadlock"""
        async def on_connect(event, data):
            await session.disconnect()
        session.on('connect', on_connect)
        await session.connect(5)
        await until(lambda: not session.active)
        assert not session.connected
        assert len(connector.clients) == 1


class TestTransportLoss:
    """Test dropped connections"""

    @pytest.mark.asyncio
    async def test_reconnect_after_drop(self, live, connector):
        handler = Mock()
        live.on('disconnect', handler)
        await live.open_room(42)
        first = connector.client

        first.drop()
        await until(lambda: len(connector.clients) == 2 and live.connected)

        handler.assert_called_once()
        assert live.client is connector.client
        assert connector.client.destinations == [
            '/sub/chat/rooms/42',
            '/sub/chat/rooms/42/read',
            '/sub/users/5/rooms'
        ]

    @pytest.mark.asyncio
    async def test_pending_read_sent_after_reconnect(self, connector, mock_api):
        session = ChatSession(
            lambda: ('t', 'wss://x'),
            api=mock_api,
            stomp_connect=connector,
            reconnect_delay=0.1,
            read_delay=0.01
        )
        await session.connect(5)
        await session.wait_connected(1)
        await session.open_room(42)

        connector.client.drop()
        await until(lambda: not session.connected)
        session.mark_seen(42, 200)
        await asyncio.sleep(0.03)
        # timer fired while offline, id kept
        assert session.throttler.pending(42) == 200

        await until(lambda: session.connected)
        assert connector.client.published == [
            ('/pub/chat/rooms/42/read', {'messageId': 200})
        ]
        await session.disconnect()

    @pytest.mark.asyncio
    async def test_publish_while_down(self, live, connector):
        connector.client.drop()
        await until(lambda: not live.connected)
        assert live.send_message(42, 'hello') is False

    @pytest.mark.asyncio
    async def test_rebind_after_connection_stopped(self, connector, mock_api):
        """Binding another user after the task stopped drops the old topics"""
        session = ChatSession(
            lambda: ('t', 'wss://x'),
            api=mock_api,
            stomp_connect=connector,
            reconnect_delay=None
        )
        await session.connect(5)
        assert await session.wait_connected(1)
        await session.open_room(42)

        connector.client.drop()
        await until(lambda: not session.active)
        assert session.user_id == 5

        await session.connect(7)
        assert await session.wait_connected(1)
        assert session.user_id == 7
        assert session.current_room_id is None
        assert connector.client.destinations == ['/sub/users/7/rooms']
        assert list(session.registry.handlers) == ['/sub/users/7/rooms']
        await session.disconnect()


class TestRoomUpdates:
    """Test the user room feed"""

    @pytest.mark.asyncio
    async def test_room_update_event(self, live, connector, sample_room_update):
        handler = Mock()
        live.on('room_update', handler)
        await connector.client.deliver('/sub/users/5/rooms', sample_room_update)
        assert live.room_updates.get_update(42).unread_count == 3
        assert handler.call_args[0][1].room_id == 42

    @pytest.mark.asyncio
    async def test_malformed_update_dropped(self, live, connector, sample_room_update):
        await connector.client.deliver('/sub/users/5/rooms', {'type': 'ROOM_UPDATE'})
        await connector.client.deliver('/sub/users/5/rooms', 'not json')
        assert len(live.room_updates) == 0
        await connector.client.deliver('/sub/users/5/rooms', sample_room_update)
        assert len(live.room_updates) == 1

    @pytest.mark.asyncio
    async def test_load_rooms_merges(self, live, connector, sample_room_update):
        await connector.client.deliver('/sub/users/5/rooms', sample_room_update)
        rooms = await live.load_rooms()
        assert [r.id for r in rooms] == [42, 1, 3]
        assert rooms[0].last_message == 'see you'
        assert live.room_list()[0].unread_count == 3

    @pytest.mark.asyncio
    async def test_load_rooms_without_api(self):
        session = ChatSession(lambda: ('t', 'wss://x'))
        assert await session.load_rooms() is None
        assert session.rooms == []

    @pytest.mark.asyncio
    async def test_open_room_clears_update(self, live, connector, sample_room_update):
        await connector.client.deliver('/sub/users/5/rooms', sample_room_update)
        await live.open_room(42)
        assert live.room_updates.get_update(42) is None


class TestRoom:
    """Test open room state"""

    @pytest.mark.asyncio
    async def test_open_room_subscribes(self, live, connector):
        await live.open_room(42)
        assert live.current_room_id == 42
        assert '/sub/chat/rooms/42' in live.registry
        assert '/sub/chat/rooms/42/read' in live.registry

    @pytest.mark.asyncio
    async def test_open_room_loads_history(self, live, connector, mock_api,
                                           make_message):
        mock_api.get_messages.return_value = [make_message(i) for i in (1, 2, 3)]
        handler = Mock()
        live.on('history', handler)
        await live.open_room(42)
        assert live.messages.ids == [1, 2, 3]
        handler.assert_called_once_with('history', 42)
        await asyncio.sleep(0.05)
        assert connector.client.published == [
            ('/pub/chat/rooms/42/read', {'messageId': 3})
        ]

    @pytest.mark.asyncio
    async def test_history_descending_reversed(self, live, mock_api, make_message):
        mock_api.get_messages.return_value = [make_message(i) for i in (3, 2, 1)]
        await live.open_room(42)
        assert live.messages.ids == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_history_skips_invalid(self, live, mock_api, make_message):
        mock_api.get_messages.return_value = [make_message(1), {'bad': True}]
        await live.open_room(42)
        assert live.messages.ids == [1]

    @pytest.mark.asyncio
    async def test_history_failure(self, live, mock_api):
        mock_api.get_messages.side_effect = ApiError('boom', status=500)
        with pytest.raises(ApiError):
            await live.open_room(42)
        assert not live.loading
        assert len(live.messages) == 0

    @pytest.mark.asyncio
    async def test_history_auth_failure(self, live, mock_api):
        mock_api.get_messages.side_effect = AuthError('expired', status=401)
        with pytest.raises(AuthError):
            await live.open_room(42)
        assert not live.loading

    @pytest.mark.asyncio
    async def test_live_message(self, live, connector, make_message):
        handler = Mock()
        live.on('message', handler)
        await live.open_room(42)
        await connector.client.deliver('/sub/chat/rooms/42', make_message(100))
        await connector.client.deliver('/sub/chat/rooms/42', make_message(100))
        assert live.messages.ids == [100]
        handler.assert_called_once()

    @pytest.mark.asyncio
    async def test_switch_room_discards_log(self, live, connector, make_message):
        await live.open_room(42)
        await connector.client.deliver('/sub/chat/rooms/42', make_message(100))
        await live.open_room(43)
        assert len(live.messages) == 0
        assert '/sub/chat/rooms/42' not in live.registry
        assert '/sub/chat/rooms/43' in live.registry

    @pytest.mark.asyncio
    async def test_stale_history_discarded(self, live, mock_api, make_message):
        await live.open_room(42)
        gate = asyncio.Event()

        async def slow(room_id):
            await gate.wait()
            return [make_message(1)]
        mock_api.get_messages.side_effect = slow

        task = asyncio.create_task(live.load_history(42))
        await asyncio.sleep(0)
        assert live.loading
        live.close_room()
        gate.set()

        assert await task is None
        assert not live.loading
        assert len(live.messages) == 0

    @pytest.mark.asyncio
    async def test_live_message_during_history(self, live, connector, mock_api,
                                               make_message):
        gate = asyncio.Event()

        async def slow(room_id):
            await gate.wait()
            return [make_message(i) for i in (1, 2, 3)]
        mock_api.get_messages.side_effect = slow

        task = asyncio.create_task(live.open_room(42))
        await until(lambda: live.loading)
        await connector.client.deliver('/sub/chat/rooms/42', make_message(4))
        gate.set()
        await task
        assert live.messages.ids == [1, 2, 3, 4]

    @pytest.mark.asyncio
    async def test_send_message(self, live, connector):
        assert live.send_message(42, 'hello') is True
        assert connector.client.published == [
            ('/pub/chat/rooms/42', {'type': 'TEXT', 'content': 'hello'})
        ]

    @pytest.mark.asyncio
    async def test_send_message_invalid(self, live):
        with pytest.raises(ValueError):
            live.send_message(42, '')


class TestReadStatus:
    """Test participant read receipts"""

    @pytest.mark.asyncio
    async def test_readers(self, live, connector):
        handler = Mock()
        live.on('read_status', handler)
        await live.open_room(42)
        await connector.client.deliver(
            '/sub/chat/rooms/42/read', {'userId': 8, 'messageId': 101}
        )
        assert live.readers(100) == [8]
        assert live.readers(101) == [8]
        assert live.readers(102) == []
        handler.assert_called_once()

    @pytest.mark.asyncio
    async def test_own_status_ignored(self, live, connector):
        await live.open_room(42)
        await connector.client.deliver(
            '/sub/chat/rooms/42/read', {'userId': 5, 'messageId': 101}
        )
        assert live.readers(100) == []

    @pytest.mark.asyncio
    async def test_close_room_clears_readers(self, live, connector):
        await live.open_room(42)
        await connector.client.deliver(
            '/sub/chat/rooms/42/read', {'userId': 8, 'messageId': 101}
        )
        live.close_room()
        assert live.throttler.participants(42) == {}
        assert live.readers(100) == []


class TestEvents:
    """Test on/off/trigger"""

    @pytest.mark.asyncio
    async def test_off(self, session):
        handler = Mock()
        session.on('message', handler)
        session.off('message', handler)
        await session.trigger('message', None)
        handler.assert_not_called()

    @pytest.mark.asyncio
    async def test_handler_stops_chain(self, session):
        first = Mock(return_value=True)
        second = Mock()
        session.on('message', first, second)
        await session.trigger('message', 1)
        second.assert_not_called()

    @pytest.mark.asyncio
    async def test_async_handler(self, session):
        handler = AsyncMock(return_value=None)
        session.on('message', handler)
        await session.trigger('message', 1)
        handler.assert_awaited_once_with('message', 1)

    @pytest.mark.asyncio
    async def test_handler_error_reported(self, session):
        error = Mock()
        session.on('message', Mock(side_effect=RuntimeError('boom')))
        session.on('error', error)
        await session.trigger('message', 1)
        data = error.call_args[0][1]
        assert data['event'] == 'message'
        assert isinstance(data['error'], RuntimeError)
