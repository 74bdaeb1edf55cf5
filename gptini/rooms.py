#!/usr/bin/env python3
# -*- coding: utf-8 -*-
import logging

from .util import parse_timestamp


class Room:
    """Chat room list entry.

    Attributes
    ----------
    id : `int`
    name : `str`
    last_message : `None` or `str`
    unread_count : `int`
    last_message_time : `None` or `str`
    """

    def __init__(self, id_, name, last_message=None, unread_count=0,
                 last_message_time=None):
        self.id = int(id_)
        self.name = name
        self.last_message = last_message
        self.unread_count = unread_count or 0
        self.last_message_time = last_message_time

    def __repr__(self):
        return '<Room %d %s unread=%d>' % (self.id, self.name, self.unread_count)

    @classmethod
    def from_dict(cls, data):
        return cls(
            data['id'],
            data.get('name', ''),
            data.get('lastMessage'),
            data.get('unreadCount', 0),
            data.get('lastMessageTime')
        )


class RoomUpdate:
    """Room summary pushed on the user's room feed.

    Attributes
    ----------
    room_id : `int`
    last_message : `str`
    last_message_time : `str`
        ISO-8601 timestamp.
    sender_id : `None` or `int`
    sender_nickname : `None` or `str`
    unread_count : `int`
    """
    TYPE = 'ROOM_UPDATE'

    def __init__(self, room_id, last_message, last_message_time,
                 sender_id=None, sender_nickname=None, unread_count=0):
        self.room_id = int(room_id)
        self.last_message = last_message
        self.last_message_time = last_message_time
        self.sender_id = sender_id
        self.sender_nickname = sender_nickname
        self.unread_count = int(unread_count or 0)

    def __repr__(self):
        return '<RoomUpdate %d unread=%d at %s>' % (
            self.room_id, self.unread_count, self.last_message_time
        )

    @classmethod
    def from_dict(cls, data):
        """Decode a wire record.

        Raises
        ------
        KeyError
        ValueError
        """
        type_ = data.get('type', cls.TYPE)
        if type_ != cls.TYPE:
            raise ValueError('not a room update: %r' % type_)
        return cls(
            data['roomId'],
            data.get('lastMessage', ''),
            data.get('lastMessageTime'),
            data.get('lastMessageSenderId'),
            data.get('lastMessageSenderNickname'),
            data.get('unreadCount', 0)
        )

    @property
    def timestamp(self):
        """POSIX time of the last message, `None` if unknown."""
        value = parse_timestamp(self.last_message_time)
        return value.timestamp() if value is not None else None


class RoomUpdateAggregator:
    """Live room summaries merged into the room list.

    Attributes
    ----------
    updates : `dict` of (`int`, `gptini.rooms.RoomUpdate`)
    """
    logger = logging.getLogger(__name__)

    def __init__(self):
        self.updates = {}

    def __len__(self):
        return len(self.updates)

    def __contains__(self, room_id):
        return room_id in self.updates

    def apply_update(self, update):
        """Store an update, replacing the previous one for the room.
        """
        self.updates[update.room_id] = update
        self.logger.debug('apply %s', update)

    def get_update(self, room_id):
        return self.updates.get(room_id)

    def clear_update(self, room_id):
        self.updates.pop(room_id, None)

    def clear(self):
        self.updates.clear()

    def merge(self, rooms):
        """Overlay updates on a room list.

        Updated rooms come first, most recent first; the others keep
        their order.

        Parameters
        ----------
        rooms : `list` of `gptini.rooms.Room`

        Returns
        -------
        `list` of `gptini.rooms.Room`
        """
        merged = []
        for room in rooms:
            update = self.updates.get(room.id)
            if update is None:
                merged.append((room, None))
                continue
            merged.append((Room(
                room.id,
                room.name,
                update.last_message,
                update.unread_count,
                update.last_message_time
            ), update))

        def key(item):
            update = item[1]
            if update is None:
                return (1, 0.0)
            ts = update.timestamp
            return (0, -ts if ts is not None else float('inf'))

        return [room for room, _ in sorted(merged, key=key)]
