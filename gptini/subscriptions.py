#!/usr/bin/env python3
# -*- coding: utf-8 -*-
import json
import inspect
import logging
import functools

from . import topics
from .error import TransportError


class SubscriptionRegistry:
    """Topic subscriptions of a chat session.

    The first `subscribe` of a topic wins: later calls for the same topic
    neither add a second handle nor replace the handler. Handlers survive
    a dropped transport and are re-subscribed by `attach`.

    Attributes
    ----------
    client : `None` or `gptini.stomp.StompClient`
        Connected transport.
    read_state : `None` or `gptini.throttle.ReadReceiptThrottler`
        Owner of per-room participant read state.
    handlers : `dict` of (`str`, `function`)
        Registered handler per topic.
    handles : `dict` of (`str`, `gptini.stomp.Subscription`)
        Live subscription per topic.
    """
    logger = logging.getLogger(__name__)

    def __init__(self, read_state=None):
        self.client = None
        self.read_state = read_state
        self.handlers = {}
        self.handles = {}

    def __contains__(self, topic):
        return topic in self.handles

    def __len__(self):
        return len(self.handles)

    @property
    def topics(self):
        return list(self.handles)

    @property
    def connected(self):
        return self.client is not None and self.client.connected

    def attach(self, client):
        """Bind a connected transport and restore registered topics.

        Parameters
        ----------
        client : `gptini.stomp.StompClient`
        """
        self.client = client
        self.handles.clear()
        for topic, handler in list(self.handlers.items()):
            self._subscribe(topic, handler)

    def detach(self):
        """Drop the transport, keeping handlers for the next `attach`.
        """
        self.client = None
        self.handles.clear()

    async def _deliver(self, topic, handler, frame):
        try:
            data = json.loads(frame.body)
        except ValueError as ex:
            self.logger.warning('%s: malformed payload: %r', topic, ex)
            return
        try:
            ret = handler(data)
            if inspect.isawaitable(ret):
                await ret
        except (KeyError, TypeError, ValueError) as ex:
            self.logger.warning('%s: invalid event %r: %r', topic, data, ex)

    def _subscribe(self, topic, handler):
        try:
            handle = self.client.subscribe(
                topic,
                functools.partial(self._deliver, topic, handler)
            )
        except TransportError as ex:
            self.logger.warning('subscribe %s: %r', topic, ex)
            return None
        self.handles[topic] = handle
        self.logger.info('subscribed %s', topic)
        return handle

    def subscribe(self, topic, handler):
        """Subscribe to a topic.

        No-op without a connected transport or when the topic already
        has a live subscription.

        Parameters
        ----------
        topic : `str`
        handler : `function` (data)
            Called (or awaited) with each decoded event.

        Returns
        -------
        `None` or `gptini.stomp.Subscription`
        """
        if not self.connected:
            self.logger.debug('subscribe %s: not connected', topic)
            return None
        if topic in self.handles:
            self.logger.debug('subscribe %s: already subscribed', topic)
            return None
        self.handlers[topic] = handler
        return self._subscribe(topic, handler)

    def unsubscribe(self, topic):
        """Unsubscribe from a topic.

        Returns
        -------
        `bool`
            `False` if there was no subscription.
        """
        self.handlers.pop(topic, None)
        handle = self.handles.pop(topic, None)
        if handle is None:
            return False
        handle.unsubscribe()
        self.logger.info('unsubscribed %s', topic)
        return True

    def unsubscribe_room(self, room_id):
        """Unsubscribe room message and read status topics.
        """
        self.unsubscribe(topics.room_messages(room_id))
        self.unsubscribe(topics.room_read_status(room_id))
        if self.read_state is not None:
            self.read_state.clear_participants(room_id)

    def unsubscribe_all(self):
        for topic in list(self.handles):
            self.unsubscribe(topic)
        self.handlers.clear()
        self.handles.clear()
