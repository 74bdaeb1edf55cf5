#!/usr/bin/env python3
# -*- coding: utf-8 -*-
import logging

from .util import parse_timestamp


logger = logging.getLogger(__name__)

TEXT = 'TEXT'
IMAGE = 'IMAGE'
FILE = 'FILE'
GIF = 'GIF'

MESSAGE_TYPES = (TEXT, IMAGE, FILE, GIF)


class ChatMessage:
    """Chat message envelope.

    Attributes
    ----------
    message_id : `int`
        Server-assigned, increasing within a room.
    room_id : `int`
    sender_id : `int`
    sender_nickname : `str`
    type : `str`
        One of `MESSAGE_TYPES`.
    content : `None` or `str`
    file_url : `None` or `str`
    file_name : `None` or `str`
    created_at : `str`
        ISO-8601 timestamp.
    """

    def __init__(self, message_id, room_id, sender_id, sender_nickname,
                 type=TEXT, content=None, file_url=None, file_name=None,
                 created_at=None):
        if type not in MESSAGE_TYPES:
            raise ValueError('invalid message type %r' % type)
        self.message_id = int(message_id)
        self.room_id = int(room_id)
        self.sender_id = int(sender_id)
        self.sender_nickname = sender_nickname
        self.type = type
        self.content = content
        self.file_url = file_url
        self.file_name = file_name
        self.created_at = created_at

    def __repr__(self):
        return '<ChatMessage %d room=%d sender=%s %s>' % (
            self.message_id, self.room_id, self.sender_nickname, self.type
        )

    @classmethod
    def from_dict(cls, data):
        """Decode a wire record.

        Raises
        ------
        KeyError
            Missing required field.
        ValueError
            Invalid field value.
        """
        return cls(
            data['messageId'],
            data['roomId'],
            data['senderId'],
            data['senderNickname'],
            data.get('type', TEXT),
            data.get('content'),
            data.get('fileUrl'),
            data.get('fileName'),
            data['createdAt']
        )

    def to_dict(self):
        ret = {
            'messageId': self.message_id,
            'roomId': self.room_id,
            'senderId': self.sender_id,
            'senderNickname': self.sender_nickname,
            'type': self.type,
            'createdAt': self.created_at
        }
        for key, value in (('content', self.content),
                           ('fileUrl', self.file_url),
                           ('fileName', self.file_name)):
            if value is not None:
                ret[key] = value
        return ret

    @property
    def created(self):
        return parse_timestamp(self.created_at)

    @property
    def text(self):
        """Display text."""
        if self.type == TEXT:
            return self.content or ''
        label = '[%s]' % self.type.lower()
        name = self.file_name or self.file_url
        return '%s %s' % (label, name) if name else label


class ReadStatus:
    """Read position of a room participant.

    Attributes
    ----------
    user_id : `int`
    message_id : `int`
    """

    def __init__(self, user_id, message_id):
        self.user_id = int(user_id)
        self.message_id = int(message_id)

    def __repr__(self):
        return '<ReadStatus user=%d message=%d>' % (
            self.user_id, self.message_id
        )

    @classmethod
    def from_dict(cls, data):
        return cls(data['userId'], data['messageId'])


def message_request(type=TEXT, content=None, file_url=None, file_name=None):
    """Build an outgoing message body.

    Parameters
    ----------
    type : `str`, optional
    content : `None` or `str`, optional
        Required for text messages.
    file_url : `None` or `str`, optional
        Required for image, file and animated image messages.
    file_name : `None` or `str`, optional

    Returns
    -------
    `dict`

    Raises
    ------
    ValueError
    """
    if type not in MESSAGE_TYPES:
        raise ValueError('invalid message type %r' % type)
    if type == TEXT and not content:
        raise ValueError('text message without content')
    if type != TEXT and not file_url:
        raise ValueError('%s message without file URL' % type.lower())
    ret = {'type': type}
    if content is not None:
        ret['content'] = content
    if file_url is not None:
        ret['fileUrl'] = file_url
    if file_name is not None:
        ret['fileName'] = file_name
    return ret


class MessageLog:
    """Ordered message log of the open room, oldest first.

    Attributes
    ----------
    messages : `list` of `gptini.messages.ChatMessage`
    """

    def __init__(self, messages=None):
        self.messages = []
        self._ids = set()
        if messages:
            self.set_messages(messages)

    def __len__(self):
        return len(self.messages)

    def __iter__(self):
        return iter(self.messages)

    def __getitem__(self, index):
        return self.messages[index]

    def __contains__(self, message_id):
        return message_id in self._ids

    @property
    def ids(self):
        return [msg.message_id for msg in self.messages]

    @property
    def last(self):
        return self.messages[-1] if self.messages else None

    def set_messages(self, messages):
        """Replace the log.

        Messages with an id already in the list are skipped.
        """
        self.messages = []
        self._ids = set()
        for msg in messages:
            self.append(msg)

    def append(self, message):
        """Append a message.

        Returns
        -------
        `bool`
            `False` if a message with the same id is already logged.
        """
        if message.message_id in self._ids:
            logger.debug('append: duplicate %s', message)
            return False
        self.messages.append(message)
        self._ids.add(message.message_id)
        return True

    def clear(self):
        self.messages = []
        self._ids = set()

    def window(self, size, offset=0):
        """Visible slice of the log.

        Parameters
        ----------
        size : `int`
            Number of messages.
        offset : `int`, optional
            Number of newest messages scrolled past.

        Returns
        -------
        `list` of `gptini.messages.ChatMessage`
        """
        total = len(self.messages)
        offset = max(0, min(offset, total))
        end = total - offset
        start = max(0, end - size)
        return self.messages[start:end]
