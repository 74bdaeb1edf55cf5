#!/usr/bin/env python3
"""GPTini terminal chat client.

Three screens drawn with blessed: login, room list and chat. All chat
state lives in a `gptini.ChatSession`; this module only renders it and
turns keys into session calls.

Usage:
    gptini [--profile NAME] [--log-level debug]

Keybindings:
    - Up/Down: Select room
    - Enter: Open room / send message / next login field
    - r: Refresh room list
    - q: Log out
    - Page Up/Down: Scroll chat history
    - Esc: Back
    - Ctrl+C: Quit
"""

import sys
import asyncio
import logging

from blessed import Terminal

from gptini import ApiClient, ChatSession
from gptini.error import ApiError, AuthError, GptiniError
from gptini.util import parse_timestamp, truncate

from common import get_config


def format_time(created_at):
    """Format a message timestamp as local HH:MM.

    Args:
        created_at: ISO-8601 timestamp string

    Returns:
        str: 'HH:MM' or '--:--' if the timestamp is invalid
    """
    value = parse_timestamp(created_at)
    if value is None:
        return '--:--'
    return value.astimezone().strftime('%H:%M')


class ChatApp:
    """Terminal front end for a chat session.

    Attributes:
        term (Terminal): Blessed terminal instance for rendering
        config (Config): Stored settings and credentials
        api (ApiClient): REST client
        session (ChatSession): Realtime session
        screen (str): 'login', 'rooms' or 'chat'
        input_buffer (str): Current input line being typed
        room_list (list): Merged room list shown on the rooms screen
        selected (int): Selected room index
        scroll_offset (int): Messages scrolled past at the bottom
        error (str): Error line shown under the current screen
    """
    logger = logging.getLogger(__name__)

    PREVIEW_WIDTH = 25

    def __init__(self, config, session_kwargs, term=None, api=None):
        self.term = term or Terminal()
        self.config = config
        self.api = api or ApiClient(config.api_url, config.get_token)
        self.session = ChatSession(api=self.api, **session_kwargs)
        self.session.on('connect', self.handle_connection)
        self.session.on('disconnect', self.handle_connection)
        self.session.on('room_update', self.handle_room_update)
        self.session.on('message', self.handle_chat)
        self.session.on('history', self.handle_chat)
        self.session.on('read_status', self.handle_chat)

        self.screen = 'rooms' if config.is_logged_in() else 'login'
        self.running = False
        self.input_buffer = ''
        self.login_field = 'email'
        self.email = ''
        self.room_list = []
        self.selected = 0
        self.room_name = ''
        self.scroll_offset = 0
        self.loading = False
        self.error = ''

    # Session events

    def handle_connection(self, _, data):
        self.render()

    def handle_room_update(self, _, data):
        if self.screen == 'rooms':
            self.room_list = self.session.room_list()
            self.render()

    def handle_chat(self, _, data):
        if self.screen == 'chat':
            self.render()

    # Actions

    async def start_session(self):
        user_id, _ = self.config.get_user()
        await self.session.connect(user_id)
        await self.refresh_rooms()

    async def refresh_rooms(self):
        self.loading = True
        self.error = ''
        self.render()
        try:
            rooms = await self.session.load_rooms()
        except AuthError:
            await self.logout('Session expired, please log in again')
            return
        except ApiError as e:
            self.logger.error('load rooms: %s', e)
            self.error = 'Could not load the room list'
            rooms = None
        finally:
            self.loading = False
        if rooms is not None:
            self.room_list = rooms
            self.selected = min(self.selected, max(0, len(rooms) - 1))
        self.render()

    async def submit_login(self):
        if self.login_field == 'email':
            if '@' not in self.input_buffer:
                self.error = 'Enter a valid email address'
            else:
                self.email = self.input_buffer.strip()
                self.input_buffer = ''
                self.login_field = 'password'
                self.error = ''
            self.render()
            return

        password = self.input_buffer
        if not password:
            self.error = 'Enter your password'
            self.render()
            return

        self.loading = True
        self.error = ''
        self.render()
        try:
            tokens = await self.api.login(self.email, password)
            self.config.set_tokens(tokens['accessToken'], tokens['refreshToken'])
            user = await self.api.get_me()
            self.config.set_user(user['id'], user['nickname'])
        except (ApiError, KeyError, TypeError) as e:
            self.logger.warning('login failed: %r', e)
            self.error = 'Login failed: check your email and password'
            self.loading = False
            self.render()
            return
        self.loading = False
        self.input_buffer = ''
        self.login_field = 'email'
        self.screen = 'rooms'
        await self.start_session()

    async def logout(self, message=''):
        await self.session.disconnect()
        self.config.clear_auth()
        self.room_list = []
        self.selected = 0
        self.input_buffer = ''
        self.login_field = 'email'
        self.screen = 'login'
        self.error = message
        self.render()

    async def open_selected_room(self):
        if not self.room_list:
            return
        room = self.room_list[self.selected]
        self.screen = 'chat'
        self.room_name = room.name
        self.input_buffer = ''
        self.scroll_offset = 0
        self.error = ''
        self.render()
        try:
            await self.session.open_room(room.id)
        except AuthError:
            await self.logout('Session expired, please log in again')
            return
        except ApiError as e:
            self.logger.error('load messages: %s', e)
            self.error = 'Could not load messages'
        self.render()

    def back_to_rooms(self):
        self.session.close_room()
        self.screen = 'rooms'
        self.input_buffer = ''
        self.error = ''
        self.room_list = self.session.room_list()
        self.render()

    def send_input(self):
        text = self.input_buffer.strip()
        if not text or self.session.current_room_id is None:
            return
        if self.session.send_message(self.session.current_room_id, text):
            self.input_buffer = ''
            self.scroll_offset = 0
            self.error = ''
        else:
            self.error = 'Not connected, message not sent'
        self.render()

    # Rendering

    def render(self):
        if not self.running:
            return
        print(self.term.home + self.term.clear, end='')
        self.render_header()
        if self.screen == 'login':
            self.render_login()
        elif self.screen == 'rooms':
            self.render_rooms()
        else:
            self.render_chat()
        self.render_footer()
        sys.stdout.flush()

    def _line(self, y, text):
        with self.term.location(0, y):
            print(self.term.truncate(text, self.term.width), end='')

    def render_header(self):
        term = self.term
        title = ' GPTini CLI Chat '
        if self.session.connected:
            state = term.green('● connected')
        elif self.session.active:
            state = term.yellow('○ connecting...')
        else:
            state = term.bright_black('○ offline')
        self._line(0, term.bold_magenta(title) + ' ' + state)
        self._line(1, term.bright_black('─' * term.width))

    def render_login(self):
        term = self.term
        self._line(2, term.bold_cyan('Log in'))
        if self.login_field == 'email':
            self._line(4, term.green('Email: ') + self.input_buffer)
            self._line(5, term.bright_black('Password: '))
        else:
            self._line(4, term.bright_black('Email: ') + self.email)
            self._line(5, term.green('Password: ') + '*' * len(self.input_buffer))
        if self.loading:
            self._line(7, term.yellow('Logging in...'))
        if self.error:
            self._line(8, term.red('⚠ ' + self.error))

    def render_rooms(self):
        term = self.term
        _, nickname = self.config.get_user()
        self._line(2, term.bold('Welcome, ') + term.bold_green(nickname or ''))
        self._line(3, term.bold_cyan('Chat rooms') + term.bright_black(
            ' (%d)' % len(self.room_list)))
        if self.loading:
            self._line(5, term.yellow('Loading rooms...'))
        elif self.error:
            self._line(5, term.red('⚠ ' + self.error))
        elif not self.room_list:
            self._line(5, term.bright_black('You are not in any chat room'))
        for i, room in enumerate(self.room_list[:max(0, term.height - 8)]):
            marker = '▶ ' if i == self.selected else '  '
            name = room.name
            if i == self.selected:
                name = term.bold_cyan(name)
            text = marker + name
            if room.unread_count > 0:
                text += term.red(' (%d)' % room.unread_count)
            if room.last_message:
                text += term.bright_black(
                    ' - ' + truncate(room.last_message, self.PREVIEW_WIDTH))
            self._line(5 + i, text)

    def render_chat(self):
        term = self.term
        my_id, _ = self.config.get_user()
        self._line(2, term.bold_cyan('# ' + self.room_name))
        height = max(1, term.height - 7)
        if self.session.loading:
            self._line(4, term.bright_black('Loading messages...'))
        elif not len(self.session.messages):
            self._line(4, term.bright_black('No messages yet, say hello!'))
        visible = self.session.messages.window(height, self.scroll_offset)
        for i, msg in enumerate(visible):
            time_str = term.bright_black(format_time(msg.created_at))
            if msg.sender_id == my_id:
                readers = self.session.readers(msg.message_id)
                receipt = term.bright_black(' ✓%d' % len(readers)) if readers else ''
                text = '%s %s%s' % (time_str, term.cyan('◀ ' + msg.text), receipt)
            else:
                text = '%s %s: %s' % (
                    time_str, term.bold_yellow(msg.sender_nickname), msg.text)
            self._line(3 + i, text)
        self._line(term.height - 3, term.green('❯ ') + self.input_buffer)
        if self.error:
            self._line(term.height - 4, term.red('⚠ ' + self.error))

    def render_footer(self):
        help_text = {
            'login': 'Enter: next | Esc: back | Ctrl+C: quit',
            'rooms': '↑↓: select | Enter: open | r: refresh | q: log out',
            'chat': 'Enter: send | PgUp/PgDn: scroll | Esc: back'
        }[self.screen]
        self._line(self.term.height - 1, self.term.bright_black(help_text))

    # Input

    async def handle_key(self, key):
        if self.screen == 'login':
            await self.handle_login_key(key)
        elif self.screen == 'rooms':
            await self.handle_rooms_key(key)
        else:
            self.handle_chat_key(key)

    def _edit(self, key):
        if key.name in ('KEY_BACKSPACE', 'KEY_DELETE'):
            self.input_buffer = self.input_buffer[:-1]
        elif not key.is_sequence and key.isprintable():
            self.input_buffer += key
        else:
            return
        self.render()

    async def handle_login_key(self, key):
        if self.loading:
            return
        if key.name == 'KEY_ENTER':
            await self.submit_login()
        elif key.name == 'KEY_ESCAPE' and self.login_field == 'password':
            self.login_field = 'email'
            self.input_buffer = self.email
            self.render()
        else:
            self._edit(key)

    async def handle_rooms_key(self, key):
        if self.loading:
            return
        if key.name == 'KEY_UP':
            self.selected = max(0, self.selected - 1)
            self.render()
        elif key.name == 'KEY_DOWN':
            self.selected = min(len(self.room_list) - 1, self.selected + 1)
            self.selected = max(0, self.selected)
            self.render()
        elif key.name == 'KEY_ENTER':
            await self.open_selected_room()
        elif key == 'r':
            await self.refresh_rooms()
        elif key == 'q':
            await self.logout()

    def handle_chat_key(self, key):
        page = max(1, self.term.height - 8)
        if key.name == 'KEY_ESCAPE':
            self.back_to_rooms()
        elif key.name == 'KEY_ENTER':
            self.send_input()
        elif key.name == 'KEY_PGUP':
            limit = max(0, len(self.session.messages) - 1)
            self.scroll_offset = min(limit, self.scroll_offset + page)
            self.render()
        elif key.name == 'KEY_PGDOWN':
            self.scroll_offset = max(0, self.scroll_offset - page)
            self.render()
        else:
            self._edit(key)

    async def run(self):
        """Run the UI until the user quits.
        """
        self.running = True
        try:
            if self.screen == 'rooms':
                await self.start_session()
            self.render()
            with self.term.cbreak():
                while self.running:
                    key = self.term.inkey(timeout=0)
                    if not key:
                        await asyncio.sleep(0.02)
                        continue
                    await self.handle_key(key)
        finally:
            self.running = False
            self.session.close_room()
            await self.session.disconnect()
            self.api.close()


async def run_app():
    config, kwargs = get_config()
    app = ChatApp(config, kwargs)
    with app.term.fullscreen(), app.term.hidden_cursor():
        await app.run()


def main():
    """Main entry point.

    Returns:
        int: Exit code (0 for success, 1 for error)
    """
    try:
        asyncio.run(run_app())
        return 0
    except KeyboardInterrupt:
        return 0
    except GptiniError as e:
        print(f'\nError: {e}', file=sys.stderr)
        return 1


if __name__ == '__main__':
    sys.exit(main())
