#!/usr/bin/env python3
# -*- coding: utf-8 -*-
import asyncio
import logging


class ReadCursor:
    """Read state of one room.

    Attributes
    ----------
    last_sent_id : `None` or `int`
        Last message id acknowledged to the server.
    pending_id : `None` or `int`
        Message id waiting for the next flush.
    timer : `None` or `asyncio.TimerHandle`
        Scheduled flush.
    participants : `dict` of (`int`, `int`)
        Last read message id per remote participant.
    """

    def __init__(self):
        self.last_sent_id = None
        self.pending_id = None
        self.timer = None
        self.participants = {}

    def __repr__(self):
        return '<ReadCursor sent=%s pending=%s timer=%s>' % (
            self.last_sent_id, self.pending_id, self.timer is not None
        )

    def cancel_timer(self):
        if self.timer is not None:
            self.timer.cancel()
            self.timer = None


class ReadReceiptThrottler:
    """Coalesces "message seen" events into read acknowledgements.

    At most one acknowledgement is published per room and delay window,
    carrying the latest seen message id. Acknowledgements are monotonic
    per room: an id at or below the last published one is never sent.

    Attributes
    ----------
    publish : `function` (room_id, message_id)
        Sends an acknowledgement, returns `False` if it could not be sent.
    delay : `float`
        Flush delay in seconds.
    cursors : `dict` of (`int`, `gptini.throttle.ReadCursor`)
    """
    logger = logging.getLogger(__name__)

    DEFAULT_DELAY = 0.3

    def __init__(self, publish, delay=DEFAULT_DELAY):
        self.publish = publish
        self.delay = delay
        self.cursors = {}

    def cursor(self, room_id):
        try:
            return self.cursors[room_id]
        except KeyError:
            cursor = self.cursors[room_id] = ReadCursor()
            return cursor

    def last_sent(self, room_id):
        cursor = self.cursors.get(room_id)
        return cursor.last_sent_id if cursor is not None else None

    def pending(self, room_id):
        cursor = self.cursors.get(room_id)
        return cursor.pending_id if cursor is not None else None

    def schedule_flush(self, room_id, message_id):
        """Record a seen message and schedule a flush.

        The pending id is overwritten. A timer is started only if none is
        running for the room; the running one picks up the new id.

        Parameters
        ----------
        room_id : `int`
        message_id : `int`
        """
        cursor = self.cursor(room_id)
        cursor.pending_id = message_id
        if cursor.timer is not None:
            return
        loop = asyncio.get_running_loop()
        cursor.timer = loop.call_later(self.delay, self.flush, room_id)

    def flush(self, room_id):
        """Publish the pending acknowledgement of a room.

        Returns
        -------
        `bool`
            `True` if an acknowledgement was published.
        """
        cursor = self.cursors.get(room_id)
        if cursor is None:
            return False
        cursor.cancel_timer()

        pending = cursor.pending_id
        if pending is None:
            return False
        if cursor.last_sent_id is not None and pending <= cursor.last_sent_id:
            self.logger.debug(
                'flush %s: %s already acknowledged (%s)',
                room_id, pending, cursor.last_sent_id
            )
            cursor.pending_id = None
            return False
        if not self.publish(room_id, pending):
            self.logger.debug('flush %s: not sent, keeping %s', room_id, pending)
            return False

        self.logger.info('read %s: %s', room_id, pending)
        cursor.last_sent_id = pending
        cursor.pending_id = None
        return True

    def flush_pending(self):
        """Flush every room with a pending acknowledgement.

        Returns
        -------
        `int`
            Number of acknowledgements published.
        """
        sent = 0
        for room_id, cursor in list(self.cursors.items()):
            if cursor.pending_id is not None and self.flush(room_id):
                sent += 1
        return sent

    def cancel(self, room_id):
        cursor = self.cursors.get(room_id)
        if cursor is not None:
            cursor.cancel_timer()

    def reset(self):
        """Cancel all timers and forget all read state.
        """
        for cursor in self.cursors.values():
            cursor.cancel_timer()
        self.cursors.clear()

    def update_participant(self, room_id, user_id, message_id):
        """Record a participant's read position.

        Positions only move forward.
        """
        participants = self.cursor(room_id).participants
        current = participants.get(user_id)
        if current is None or message_id > current:
            participants[user_id] = message_id

    def participant_last_read(self, room_id, user_id):
        cursor = self.cursors.get(room_id)
        if cursor is None:
            return None
        return cursor.participants.get(user_id)

    def participants(self, room_id):
        cursor = self.cursors.get(room_id)
        return dict(cursor.participants) if cursor is not None else {}

    def clear_participants(self, room_id):
        cursor = self.cursors.get(room_id)
        if cursor is not None:
            cursor.participants.clear()
