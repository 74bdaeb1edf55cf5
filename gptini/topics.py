"""Destination paths on the chat server's STOMP broker."""

USER_ROOMS = '/sub/users/%(user_id)s/rooms'
ROOM_MESSAGES = '/sub/chat/rooms/%(room_id)s'
ROOM_READ_STATUS = '/sub/chat/rooms/%(room_id)s/read'

SEND_MESSAGE = '/pub/chat/rooms/%(room_id)s'
SEND_READ = '/pub/chat/rooms/%(room_id)s/read'


def user_rooms(user_id):
    return USER_ROOMS % {'user_id': user_id}


def room_messages(room_id):
    return ROOM_MESSAGES % {'room_id': room_id}


def room_read_status(room_id):
    return ROOM_READ_STATUS % {'room_id': room_id}


def send_message(room_id):
    return SEND_MESSAGE % {'room_id': room_id}


def send_read(room_id):
    return SEND_READ % {'room_id': room_id}
