#!/usr/bin/env python3
# -*- coding: utf-8 -*-
import json
import asyncio
import inspect
import logging
import itertools

import aiohttp

from .error import (
    TransportError,
    ConnectionFailed, ConnectionClosed, PingTimeout,
    StompError, FrameError
)


EOL = '\n'
NULL = '\x00'

_ESCAPE = (('\\', '\\\\'), ('\r', '\\r'), ('\n', '\\n'), (':', '\\c'))
_UNESCAPE = {'\\\\': '\\', '\\r': '\r', '\\n': '\n', '\\c': ':'}

# STOMP 1.2: header values of these frames are not escaped
RAW_HEADER_COMMANDS = ('CONNECT', 'CONNECTED')


def escape_header(value):
    """Escape a header name or value.

    Examples
    --------
    >>> escape_header('a:b')
    'a\\\\cb'
    """
    for char, escaped in _ESCAPE:
        value = value.replace(char, escaped)
    return value


def unescape_header(value):
    """Undo `escape_header`.

    Raises
    ------
    gptini.error.FrameError
        Undefined escape sequence.
    """
    ret = []
    i = 0
    while i < len(value):
        char = value[i]
        if char == '\\':
            seq = value[i:i + 2]
            try:
                ret.append(_UNESCAPE[seq])
            except KeyError:
                raise FrameError('invalid header escape %r' % seq)
            i += 2
        else:
            ret.append(char)
            i += 1
    return ''.join(ret)


class Frame:
    """STOMP frame.

    Attributes
    ----------
    command : `str`
    headers : `dict` of (`str`, `str`)
    body : `str`
    """

    def __init__(self, command, headers=None, body=''):
        self.command = command
        self.headers = dict(headers or {})
        self.body = body

    def __repr__(self):
        return '<Frame %s %r %r>' % (self.command, self.headers, self.body)

    def encode(self):
        """Serialize the frame.

        Returns
        -------
        `str`
        """
        raw = self.command in RAW_HEADER_COMMANDS
        headers = dict(self.headers)
        if self.body and 'content-length' not in headers:
            headers['content-length'] = len(self.body.encode('utf-8'))
        lines = [self.command]
        for name, value in headers.items():
            name, value = str(name), str(value)
            if not raw:
                name, value = escape_header(name), escape_header(value)
            lines.append('%s:%s' % (name, value))
        return EOL.join(lines) + EOL + EOL + self.body + NULL


def _read_line(data, pos):
    end = data.find(EOL, pos)
    if end < 0:
        raise FrameError('incomplete frame')
    line = data[pos:end]
    if line.endswith('\r'):
        line = line[:-1]
    return line, end + 1


def parse_frames(data):
    """Parse one or more frames from a WebSocket message.

    Heart-beat EOLs between frames are skipped.

    Parameters
    ----------
    data : `str`

    Returns
    -------
    `list` of `Frame`

    Raises
    ------
    gptini.error.FrameError
    """
    frames = []
    pos = 0
    while pos < len(data):
        while pos < len(data) and data[pos] in '\r\n':
            pos += 1
        if pos >= len(data):
            break

        command, pos = _read_line(data, pos)
        raw = command in RAW_HEADER_COMMANDS
        headers = {}
        while True:
            line, pos = _read_line(data, pos)
            if not line:
                break
            name, sep, value = line.partition(':')
            if not sep:
                raise FrameError('invalid header line %r' % line)
            if not raw:
                name, value = unescape_header(name), unescape_header(value)
            # repeated headers: the first one wins
            headers.setdefault(name, value)

        length = headers.get('content-length')
        if length is not None:
            try:
                length = int(length)
            except ValueError:
                raise FrameError('invalid content-length %r' % length)
            rest = data[pos:].encode('utf-8')
            if rest[length:length + 1] != NULL.encode('utf-8'):
                raise FrameError('missing frame terminator')
            try:
                body = rest[:length].decode('utf-8')
            except UnicodeDecodeError as ex:
                raise FrameError(ex)
            pos += len(body) + 1
        else:
            end = data.find(NULL, pos)
            if end < 0:
                raise FrameError('missing frame terminator')
            body = data[pos:end]
            pos = end + 1

        frames.append(Frame(command, headers, body))
    return frames


class Subscription:
    """Live subscription handle.

    Attributes
    ----------
    client : `gptini.stomp.StompClient`
    id : `str`
    destination : `str`
    callback : `function` (frame)
    """

    def __init__(self, client, id_, destination, callback):
        self.client = client
        self.id = id_
        self.destination = destination
        self.callback = callback

    def __repr__(self):
        return '<Subscription %s %s>' % (self.id, self.destination)

    @property
    def active(self):
        return self.client.subscriptions.get(self.id) is self

    def unsubscribe(self):
        self.client.unsubscribe(self)


class StompClient:
    """STOMP over WebSocket connection.

    Outbound frames are queued and written by a background task, so
    `send`, `subscribe` and `publish` never suspend the caller.

    Attributes
    ----------
    ws : `aiohttp.ClientWebSocketResponse`
    session : `None` or `aiohttp.ClientSession`
        Session owned by this connection, closed with it.
    subscriptions : `dict` of (`str`, `gptini.stomp.Subscription`)
    version : `None` or `str`
        Negotiated protocol version.
    heartbeat_out : `float`
        Outgoing heart-beat interval in seconds (0 - disabled).
    heartbeat_in : `float`
        Expected incoming heart-beat interval in seconds (0 - disabled).
    error : `None` or `Exception`
        Reason the connection was closed.
    """
    logger = logging.getLogger(__name__)

    ACCEPT_VERSION = '1.2,1.1,1.0'

    def __init__(self, ws, session=None):
        self.ws = ws
        self.session = session
        self.subscriptions = {}
        self.version = None
        self.heartbeat_out = 0
        self.heartbeat_in = 0
        self.last_received = 0
        self.last_sent = 0
        self.error = None
        self._ids = itertools.count()
        self._outbound = asyncio.Queue()
        self._backlog = []
        self._tasks = []
        self._connected = False
        self._closing = False
        self._closed = asyncio.Event()

    @classmethod
    async def connect(cls, url, headers=None, heartbeat=(4000, 4000),
                      timeout=10):
        """Open a WebSocket and perform the STOMP handshake.

        Parameters
        ----------
        url : `str`
            WebSocket URL.
        headers : `None` or `dict`, optional
            Extra CONNECT headers (e.g. ``Authorization``).
        heartbeat : (`int`, `int`), optional
            Outgoing and incoming heart-beat intervals in milliseconds.
        timeout : `float`, optional
            Handshake timeout in seconds.

        Returns
        -------
        `gptini.stomp.StompClient`

        Raises
        ------
        gptini.error.ConnectionFailed
        gptini.error.StompError
        """
        cls.logger.info('connect %s', url)
        session = aiohttp.ClientSession()
        try:
            ws = await asyncio.wait_for(session.ws_connect(url), timeout)
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as ex:
            await session.close()
            raise ConnectionFailed(ex)
        except BaseException:
            await session.close()
            raise
        client = cls(ws, session)
        try:
            await client.handshake(headers, heartbeat, timeout)
        except (aiohttp.ClientError, OSError) as ex:
            await client.close()
            raise ConnectionFailed(ex)
        except BaseException:
            await client.close()
            raise
        return client

    @property
    def connected(self):
        return self._connected and not self._closing

    @property
    def closed(self):
        return self._closed.is_set()

    async def _receive_text(self):
        msg = await self.ws.receive()
        if msg.type == aiohttp.WSMsgType.TEXT:
            return msg.data
        if msg.type == aiohttp.WSMsgType.BINARY:
            return msg.data.decode('utf-8', 'replace')
        if msg.type == aiohttp.WSMsgType.ERROR:
            raise ConnectionClosed(self.ws.exception())
        if msg.type in (aiohttp.WSMsgType.CLOSE,
                        aiohttp.WSMsgType.CLOSING,
                        aiohttp.WSMsgType.CLOSED):
            raise ConnectionClosed('websocket closed')
        return ''

    async def _receive_frame(self):
        while True:
            frames = parse_frames(await self._receive_text())
            if frames:
                self._backlog.extend(frames[1:])
                return frames[0]

    def _negotiate(self, heartbeat, server_heartbeat):
        try:
            sx, sy = (int(v) for v in server_heartbeat.split(','))
        except ValueError:
            sx, sy = 0, 0
        cx, cy = heartbeat
        self.heartbeat_out = max(cx, sy) / 1000 if cx and sy else 0
        self.heartbeat_in = max(cy, sx) / 1000 if cy and sx else 0
        self.logger.debug(
            'heart-beat out %.1fs in %.1fs',
            self.heartbeat_out, self.heartbeat_in
        )

    async def handshake(self, headers=None, heartbeat=(0, 0), timeout=10):
        """Send CONNECT and wait for CONNECTED.

        Raises
        ------
        gptini.error.ConnectionFailed
        gptini.error.StompError
        """
        connect_headers = {
            'accept-version': self.ACCEPT_VERSION,
            'heart-beat': '%d,%d' % tuple(heartbeat)
        }
        connect_headers.update(headers or {})
        await self.ws.send_str(Frame('CONNECT', connect_headers).encode())
        try:
            frame = await asyncio.wait_for(self._receive_frame(), timeout)
        except asyncio.TimeoutError:
            raise ConnectionFailed('CONNECTED frame timeout')
        if frame.command == 'ERROR':
            raise StompError(frame.headers.get('message') or frame.body)
        if frame.command != 'CONNECTED':
            raise StompError('unexpected frame %s' % frame.command)

        self.version = frame.headers.get('version', '1.0')
        self._negotiate(heartbeat, frame.headers.get('heart-beat', '0,0'))
        self.logger.info(
            'connected: version %s server %s',
            self.version, frame.headers.get('server', '<unknown>')
        )

        loop = asyncio.get_running_loop()
        self.last_received = self.last_sent = loop.time()
        self._connected = True
        self._tasks = [
            asyncio.create_task(self._read_loop()),
            asyncio.create_task(self._write_loop())
        ]
        if self.heartbeat_out or self.heartbeat_in:
            self._tasks.append(asyncio.create_task(self._heartbeat_loop()))

    async def _dispatch(self, frame):
        if frame.command == 'MESSAGE':
            sub = self.subscriptions.get(frame.headers.get('subscription'))
            if sub is None:
                self.logger.debug(
                    'no subscription for %s', frame.headers.get('destination')
                )
                return
            try:
                ret = sub.callback(frame)
                if inspect.isawaitable(ret):
                    await ret
            except asyncio.CancelledError:
                raise
            except Exception as ex: # pylint: disable=broad-except
                self.logger.error('%s: %r', sub, ex)
        elif frame.command == 'ERROR':
            message = frame.headers.get('message', '')
            self.logger.error('error frame: %s %s', message, frame.body)
            raise StompError(message or frame.body)
        elif frame.command == 'RECEIPT':
            self.logger.debug('receipt %s', frame.headers.get('receipt-id'))
        else:
            self.logger.warning('unexpected frame %s', frame.command)

    async def _read_loop(self):
        loop = asyncio.get_running_loop()
        try:
            backlog, self._backlog = self._backlog, []
            for frame in backlog:
                await self._dispatch(frame)
            while True:
                text = await self._receive_text()
                self.last_received = loop.time()
                try:
                    frames = parse_frames(text)
                except FrameError as ex:
                    self.logger.warning('malformed frame: %r', ex)
                    continue
                for frame in frames:
                    await self._dispatch(frame)
        except asyncio.CancelledError:
            raise
        except TransportError as ex:
            self.logger.info('read: %r', ex)
            self.error = ex
        except Exception as ex: # pylint: disable=broad-except
            self.logger.error('read: %r', ex)
            self.error = ConnectionClosed(ex)
        await self.close()

    async def _write_loop(self):
        loop = asyncio.get_running_loop()
        try:
            while True:
                data = await self._outbound.get()
                await self.ws.send_str(data)
                self.last_sent = loop.time()
        except asyncio.CancelledError:
            raise
        except Exception as ex: # pylint: disable=broad-except
            self.logger.error('write: %r', ex)
            self.error = ConnectionClosed(ex)
        await self.close()

    async def _heartbeat_loop(self):
        loop = asyncio.get_running_loop()
        interval = min(v for v in (self.heartbeat_out, self.heartbeat_in) if v)
        try:
            while True:
                await asyncio.sleep(interval)
                now = loop.time()
                if self.heartbeat_out:
                    self._outbound.put_nowait(EOL)
                if (self.heartbeat_in
                        and now - self.last_received > 2 * self.heartbeat_in):
                    raise PingTimeout(
                        'no heart-beat for %.1fs' % (now - self.last_received)
                    )
        except PingTimeout as ex:
            self.logger.warning('%s', ex)
            self.error = ex
        await self.close()

    def send(self, frame):
        """Queue a frame.

        Raises
        ------
        gptini.error.ConnectionClosed
        """
        if not self.connected:
            raise ConnectionClosed('not connected')
        self._outbound.put_nowait(frame.encode())

    def subscribe(self, destination, callback, headers=None):
        """Subscribe to a destination.

        Parameters
        ----------
        destination : `str`
        callback : `function` (frame)
            Called (or awaited) once per MESSAGE frame.
        headers : `None` or `dict`, optional

        Returns
        -------
        `gptini.stomp.Subscription`

        Raises
        ------
        gptini.error.ConnectionClosed
        """
        sub_id = 'sub-%d' % next(self._ids)
        frame_headers = {'id': sub_id, 'destination': destination, 'ack': 'auto'}
        frame_headers.update(headers or {})
        self.send(Frame('SUBSCRIBE', frame_headers))
        sub = Subscription(self, sub_id, destination, callback)
        self.subscriptions[sub_id] = sub
        self.logger.debug('subscribe %s', sub)
        return sub

    def unsubscribe(self, subscription):
        if self.subscriptions.pop(subscription.id, None) is None:
            return
        self.logger.debug('unsubscribe %s', subscription)
        if self.connected:
            self.send(Frame('UNSUBSCRIBE', {'id': subscription.id}))

    def publish(self, destination, body, headers=None):
        """Send a message to a destination.

        Parameters
        ----------
        destination : `str`
        body : `str` or `object`
            Non-string bodies are sent as JSON.
        headers : `None` or `dict`, optional

        Raises
        ------
        gptini.error.ConnectionClosed
        """
        if not isinstance(body, str):
            body = json.dumps(body)
        frame_headers = {
            'destination': destination,
            'content-type': 'application/json'
        }
        frame_headers.update(headers or {})
        self.send(Frame('SEND', frame_headers, body))

    async def wait_closed(self):
        await self._closed.wait()

    async def close(self):
        """Close the connection. Safe to call more than once.
        """
        if self._closing:
            await self._closed.wait()
            return
        self._closing = True
        was_connected = self._connected
        self._connected = False
        self.logger.info('close')

        current = asyncio.current_task()
        tasks = [task for task in self._tasks if task is not current]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        try:
            if was_connected and not self.ws.closed:
                await self.ws.send_str(Frame('DISCONNECT').encode())
            await self.ws.close()
        except (aiohttp.ClientError, OSError, RuntimeError) as ex:
            self.logger.debug('close: %r', ex)
        finally:
            if self.session is not None:
                await self.session.close()
            self.subscriptions.clear()
            self._closed.set()
