#!/usr/bin/env python3
# -*- coding: utf-8 -*-
import time
import asyncio
import inspect
import logging
import functools
import collections

from . import topics
from .error import TransportError, ConfigError
from .stomp import StompClient
from .messages import TEXT, ChatMessage, ReadStatus, MessageLog, message_request
from .rooms import Room, RoomUpdate, RoomUpdateAggregator
from .subscriptions import SubscriptionRegistry
from .throttle import ReadReceiptThrottler


class ChatSession:
    """Realtime chat session of one logged-in user.

    Owns the single STOMP connection of the user and all session state:
    subscriptions, room updates, the open room and its message log, and
    read cursors. Every mutation completes before the next suspension
    point, so handlers see consistent state.

    Events (see `on`): ``connect`` (user id), ``disconnect`` (error or
    `None`), ``room_update`` (`RoomUpdate`), ``message`` (`ChatMessage`),
    ``read_status`` (`ReadStatus`), ``history`` (room id), ``error``.

    Attributes
    ----------
    credentials : `function` ()
        Returns (bearer token, WebSocket URL).
    api : `None` or `gptini.api.ApiClient`
        REST client for room lists and message history.
    stomp_connect : `function` (url, headers, heartbeat, timeout)
        STOMP connect coroutine.
    reconnect_delay : `None` or `float`
        Delay in seconds before reconnection.
        `None` or < 0 - do not reconnect.
    heartbeat : (`int`, `int`)
        Outgoing and incoming heart-beat in milliseconds.
    client : `None` or `gptini.stomp.StompClient`
    connected : `bool`
    user_id : `None` or `int`
        Bound user.
    registry : `gptini.subscriptions.SubscriptionRegistry`
    throttler : `gptini.throttle.ReadReceiptThrottler`
    room_updates : `gptini.rooms.RoomUpdateAggregator`
    rooms : `list` of `gptini.rooms.Room`
        Room list as fetched.
    current_room_id : `None` or `int`
    messages : `gptini.messages.MessageLog`
        Message log of the open room.
    loading : `bool`
        History fetch in progress.
    handlers : `collections.defaultdict` of (`str`, `list` of `function`)
        Event handlers.
    """
    logger = logging.getLogger(__name__)

    EVENT_LOG_LEVEL = {
        'message': logging.DEBUG,
        'room_update': logging.DEBUG,
        'read_status': logging.DEBUG
    }

    EVENT_LOG_LEVEL_DEFAULT = logging.INFO

    def __init__(self, credentials,
                 api=None,
                 stomp_connect=StompClient.connect,
                 reconnect_delay=5,
                 heartbeat=(4000, 4000),
                 read_delay=ReadReceiptThrottler.DEFAULT_DELAY,
                 connect_timeout=10):
        """
        Parameters
        ----------
        credentials : `function` ()
            Returns (bearer token, WebSocket URL).
        api : `None` or `gptini.api.ApiClient`, optional
        stomp_connect : `function`, optional
            STOMP connect coroutine.
        reconnect_delay : `None` or `float`, optional
        heartbeat : (`int`, `int`), optional
        read_delay : `float`, optional
            Read acknowledgement throttle window in seconds.
        connect_timeout : `float`, optional
            Handshake timeout in seconds.
        """
        self.credentials = credentials
        self.api = api
        self.stomp_connect = stomp_connect
        self.reconnect_delay = reconnect_delay
        self.heartbeat = tuple(heartbeat)
        self.connect_timeout = connect_timeout
        self.client = None
        self.connected = False
        self.user_id = None
        self.connect_time = None
        self.throttler = ReadReceiptThrottler(self._publish_read, read_delay)
        self.registry = SubscriptionRegistry(self.throttler)
        self.room_updates = RoomUpdateAggregator()
        self.rooms = []
        self.current_room_id = None
        self.messages = MessageLog()
        self.loading = False
        self.handlers = collections.defaultdict(list)
        self._task = None
        self._generation = 0
        self._connected_event = asyncio.Event()

    @property
    def active(self):
        """Connection task running (connected or reconnecting)."""
        return self._task is not None and not self._task.done()

    async def connect(self, user_id):
        """Bind the session to a user and start connecting.

        Rebinding to another user tears the current connection and all
        of its state down first, even if the connection task already
        stopped. Connecting the bound user again is a no-op.

        Parameters
        ----------
        user_id : `int`
        """
        if self.user_id is not None and self.user_id != user_id:
            self.logger.info('connect %s: rebinding from %s', user_id, self.user_id)
            await self.disconnect()
        if self.active:
            self.logger.debug('connect %s: already connected', user_id)
            return
        self.logger.info('connect %s', user_id)
        self.user_id = user_id
        self._task = asyncio.create_task(self._run(user_id))

    async def _establish(self):
        token, url = self.credentials()
        if not token:
            raise ConfigError('no access token')
        return await self.stomp_connect(
            url,
            headers={'Authorization': 'Bearer %s' % token},
            heartbeat=self.heartbeat,
            timeout=self.connect_timeout
        )

    async def _run(self, user_id):
        try:
            while self._task is asyncio.current_task():
                try:
                    client = await self._establish()
                except (TransportError, ConfigError) as ex:
                    self.logger.error('connect failed: %r', ex)
                except Exception as ex: # pylint: disable=broad-except
                    self.logger.exception('connect failed: %r', ex)
                else:
                    await self._on_connect(client, user_id)
                    await client.wait_closed()
                    await self._on_disconnect(client)
                if self._task is not asyncio.current_task():
                    break
                if self.reconnect_delay is None or self.reconnect_delay < 0:
                    break
                self.logger.info('reconnect in %ss', self.reconnect_delay)
                await asyncio.sleep(self.reconnect_delay)
        except asyncio.CancelledError:
            self.logger.debug('connection task cancelled')

    async def _on_connect(self, client, user_id):
        self.client = client
        self.connected = True
        self.user_id = user_id
        self.connect_time = time.time()
        self.registry.attach(client)
        self.registry.subscribe(topics.user_rooms(user_id), self._on_room_update)
        if self.current_room_id is not None:
            self.subscribe_room(self.current_room_id)
        sent = self.throttler.flush_pending()
        self.logger.info('connected as %s, %d pending reads sent', user_id, sent)
        self._connected_event.set()
        await self.trigger('connect', user_id)

    async def _on_disconnect(self, client):
        if client is not self.client:
            return
        self.client = None
        self.connected = False
        self._connected_event.clear()
        self.registry.detach()
        self.logger.warning('connection lost: %r', client.error)
        await self.trigger('disconnect', client.error)

    async def wait_connected(self, timeout=None):
        """Wait for the handshake.

        Returns
        -------
        `bool`
            `False` on timeout.
        """
        try:
            await asyncio.wait_for(self._connected_event.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def disconnect(self):
        """Close the connection and reset all session state.

        Pending read acknowledgements are sent first if the connection is
        up. Safe to call when already disconnected.
        """
        if not self.active and self.client is None:
            self.logger.info('already disconnected')
        else:
            self.logger.info('disconnect %s', self.user_id)
        if self.connected:
            self.throttler.flush_pending()
        self.throttler.reset()
        self.registry.unsubscribe_all()
        self.registry.detach()

        task, self._task = self._task, None
        client, self.client = self.client, None
        was_connected = self.connected
        self.connected = False
        self._connected_event.clear()
        self.user_id = None
        self.room_updates.clear()
        self.rooms = []
        self.current_room_id = None
        self.messages.clear()
        self.loading = False
        self._generation += 1

        if task is not None and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if client is not None:
            await client.close()
        if was_connected:
            await self.trigger('disconnect', None)

    def publish(self, destination, body):
        """Publish a message. Dropped while disconnected.

        Returns
        -------
        `bool`
            `True` if the message was queued for sending.
        """
        if not self.connected or self.client is None:
            self.logger.debug('publish %s: not connected, dropped', destination)
            return False
        try:
            self.client.publish(destination, body)
        except TransportError as ex:
            self.logger.warning('publish %s: %r', destination, ex)
            return False
        return True

    def send_message(self, room_id, content=None, type=TEXT,
                     file_url=None, file_name=None):
        """Send a chat message.

        Returns
        -------
        `bool`

        Raises
        ------
        ValueError
            Invalid message type or missing content.
        """
        body = message_request(type, content, file_url, file_name)
        self.logger.info('send %s %s', room_id, type)
        return self.publish(topics.send_message(room_id), body)

    def _publish_read(self, room_id, message_id):
        return self.publish(topics.send_read(room_id), {'messageId': message_id})

    def mark_seen(self, room_id, message_id):
        """Schedule a read acknowledgement."""
        self.throttler.schedule_flush(room_id, message_id)

    async def _on_room_update(self, data):
        update = RoomUpdate.from_dict(data)
        self.room_updates.apply_update(update)
        await self.trigger('room_update', update)

    async def _on_room_message(self, room_id, data):
        message = ChatMessage.from_dict(data)
        if room_id != self.current_room_id:
            self.logger.debug('message for closed room %s dropped', room_id)
            return
        if not self.messages.append(message):
            return
        self.mark_seen(room_id, message.message_id)
        await self.trigger('message', message)

    async def _on_read_status(self, room_id, data):
        status = ReadStatus.from_dict(data)
        if room_id != self.current_room_id or status.user_id == self.user_id:
            return
        self.throttler.update_participant(
            room_id, status.user_id, status.message_id
        )
        await self.trigger('read_status', status)

    def subscribe_room(self, room_id):
        self.registry.subscribe(
            topics.room_messages(room_id),
            functools.partial(self._on_room_message, room_id)
        )
        self.registry.subscribe(
            topics.room_read_status(room_id),
            functools.partial(self._on_read_status, room_id)
        )

    async def open_room(self, room_id):
        """Open a room.

        Subscribes the room's message and read status feeds, clears its
        unread summary and loads its history.

        Raises
        ------
        gptini.error.AuthError
        gptini.error.ApiError
        """
        if self.current_room_id == room_id:
            return
        self.close_room()
        self.logger.info('open room %s', room_id)
        self.current_room_id = room_id
        self.messages.clear()
        self.room_updates.clear_update(room_id)
        self.subscribe_room(room_id)
        if self.api is not None:
            await self.load_history(room_id)

    def close_room(self):
        """Close the open room.

        A pending read acknowledgement is sent before unsubscribing.
        """
        room_id = self.current_room_id
        if room_id is None:
            return
        self.logger.info('close room %s', room_id)
        self.throttler.flush(room_id)
        self.registry.unsubscribe_room(room_id)
        self.current_room_id = None
        self.messages.clear()
        self.loading = False
        self._generation += 1

    def _is_current(self, generation, room_id=None):
        return (
            generation == self._generation
            and (room_id is None or room_id == self.current_room_id)
        )

    async def load_history(self, room_id):
        """Fetch the message history of the open room.

        Live messages received during the fetch are kept after the
        history. Results arriving after the room or the user changed are
        discarded.

        Returns
        -------
        `None` or `list` of `gptini.messages.ChatMessage`
            `None` if the result was discarded.

        Raises
        ------
        gptini.error.AuthError
        gptini.error.ApiError
        """
        generation = self._generation
        self.loading = True
        try:
            data = await self.api.get_messages(room_id)
        finally:
            if self._is_current(generation, room_id):
                self.loading = False

        if not self._is_current(generation, room_id):
            self.logger.info('history of room %s discarded', room_id)
            return None

        history = []
        for item in data or []:
            try:
                history.append(ChatMessage.from_dict(item))
            except (KeyError, TypeError, ValueError) as ex:
                self.logger.warning('history: invalid message %r: %r', item, ex)
        if len(history) > 1 and history[0].message_id > history[-1].message_id:
            history.reverse()

        live = list(self.messages)
        self.messages.set_messages(history)
        for message in live:
            self.messages.append(message)

        last = self.messages.last
        if last is not None:
            self.mark_seen(room_id, last.message_id)
        await self.trigger('history', room_id)
        return list(self.messages)

    async def load_rooms(self):
        """Fetch the room list.

        Returns
        -------
        `None` or `list` of `gptini.rooms.Room`
            Merged room list, `None` without an API client or if the
            session changed meanwhile.

        Raises
        ------
        gptini.error.AuthError
        gptini.error.ApiError
        """
        if self.api is None:
            self.logger.warning('load rooms: no API client')
            return None
        generation = self._generation
        data = await self.api.get_chat_rooms()
        if generation != self._generation:
            self.logger.info('room list discarded')
            return None
        rooms = []
        for item in data or []:
            try:
                rooms.append(Room.from_dict(item))
            except (KeyError, TypeError, ValueError) as ex:
                self.logger.warning('rooms: invalid room %r: %r', item, ex)
        self.rooms = rooms
        return self.room_list()

    def room_list(self):
        return self.room_updates.merge(self.rooms)

    def readers(self, message_id):
        """Participants of the open room who have read a message.

        Returns
        -------
        `list` of `int`
            User ids.
        """
        if self.current_room_id is None:
            return []
        participants = self.throttler.participants(self.current_room_id)
        return sorted(
            user_id for user_id, last_read in participants.items()
            if last_read >= message_id
        )

    def on(self, event, *handlers):
        """Add event handlers.

        Parameters
        ----------
        event : `str`
            Event name.
        handlers : `list` of `function`
            Event handlers.
        """
        ev_handlers = self.handlers[event]
        for handler in handlers:
            if handler not in ev_handlers:
                ev_handlers.append(handler)
                self.logger.debug('on: %s %s', event, handler)
            else:
                self.logger.warning('on: handler exists: %s %s', event, handler)
        return self

    def off(self, event, *handlers):
        """Remove event handlers.

        Parameters
        ----------
        event : `str`
            Event name.
        handlers : `list` of `function`
            Event handlers.
        """
        ev_handlers = self.handlers[event]
        for handler in handlers:
            try:
                ev_handlers.remove(handler)
                self.logger.debug('off: %s %s', event, handler)
            except ValueError:
                self.logger.warning(
                    'off: handler not found: %s %s',
                    event, handler
                )
        return self

    async def trigger(self, event, data):
        """Trigger an event.

        Handler errors are logged and reported as an ``error`` event.

        Parameters
        ----------
        event : `str`
            Event name.
        data : `object`
            Event data.
        """
        level = self.EVENT_LOG_LEVEL.get(event, self.EVENT_LOG_LEVEL_DEFAULT)
        self.logger.log(level, 'trigger: %s %s', event, data)
        try:
            for handler in self.handlers[event]:
                stop = handler(event, data)
                if inspect.isawaitable(stop):
                    stop = await stop
                if stop:
                    break
        except asyncio.CancelledError:
            raise
        except Exception as ex: # pylint: disable=broad-except
            self.logger.error('trigger %s %s: %r', event, data, ex)
            if event != 'error':
                await self.trigger('error', {
                    'event': event,
                    'data': data,
                    'error': ex
                })
