#!/usr/bin/env python3
# -*- coding: utf-8 -*-

import asyncio
import logging
import functools
from datetime import datetime, timezone
from urllib.parse import urlsplit, urlunsplit


logger = logging.getLogger(__name__)


def parse_timestamp(value):
    """Parse an ISO-8601 timestamp.

    Naive timestamps are taken as UTC so that values from different
    sources can be compared.

    Parameters
    ----------
    value : `None` or `str` or `datetime.datetime`

    Returns
    -------
    `None` or `datetime.datetime`

    Examples
    --------
    >>> parse_timestamp('2024-05-01T10:00:00Z').isoformat()
    '2024-05-01T10:00:00+00:00'
    >>> parse_timestamp('not a date') is None
    True
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        ret = value
    else:
        text = str(value).strip()
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        try:
            ret = datetime.fromisoformat(text)
        except ValueError:
            logger.debug('parse_timestamp: invalid value %r', value)
            return None
    if ret.tzinfo is None:
        ret = ret.replace(tzinfo=timezone.utc)
    return ret


def websocket_url(url):
    """Convert a SockJS endpoint URL to its raw WebSocket URL.

    Parameters
    ----------
    url : `str`
        ``http(s)://`` or ``ws(s)://`` endpoint URL.

    Returns
    -------
    `str`

    Examples
    --------
    >>> websocket_url('https://api.gptini.org/ws')
    'wss://api.gptini.org/ws/websocket'
    >>> websocket_url('ws://localhost:8080/ws/websocket')
    'ws://localhost:8080/ws/websocket'
    """
    parts = urlsplit(url)
    scheme = {'http': 'ws', 'https': 'wss'}.get(parts.scheme, parts.scheme)
    path = parts.path.rstrip('/')
    if not path.endswith('/websocket'):
        path += '/websocket'
    return urlunsplit((scheme, parts.netloc, path, parts.query, ''))


def truncate(text, width, suffix='...'):
    """Shorten text to `width` characters.

    Examples
    --------
    >>> truncate('hello world', 5)
    'hello...'
    >>> truncate('hi', 5)
    'hi'
    """
    if text is None:
        return ''
    if len(text) <= width:
        return text
    return text[:width] + suffix


async def run_blocking(func, *args, **kwargs):
    """Run a blocking call in the default executor.

    Parameters
    ----------
    func : `function`
        Blocking callable.

    Returns
    -------
    `object`
        Return value of `func`.
    """
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(
        None, functools.partial(func, *args, **kwargs)
    )
