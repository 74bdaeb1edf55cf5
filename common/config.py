#!/usr/bin/env python3
# -*- coding: utf-8 -*-
import os
import json
import logging
import argparse
from pathlib import Path

from gptini.error import ConfigError
from gptini.util import websocket_url


DEFAULT_API_URL = 'https://api.gptini.org'
DEFAULT_WS_URL = 'https://api.gptini.org/ws'
DEFAULT_LOG_FILE = str(Path.home() / 'gptini-debug.log')
LOG_FORMAT = '[%(asctime).19s] [%(name)s] [%(levelname)s] %(message)s'

AUTH_KEYS = ('accessToken', 'refreshToken', 'userId', 'nickname')


class RobustFileHandler(logging.FileHandler):
    """FileHandler that gracefully handles flush errors on Windows"""

    def flush(self):
        """Flush the stream, catching OSError on Windows file handles"""
        try:
            super().flush()
        except OSError as e:
            # EINVAL from a Windows handle in an inconsistent state
            if e.errno != 22:
                raise


def configure_logger(logger,
                     log_file=None,
                     log_format=LOG_FORMAT,
                     log_level=logging.INFO):
    """Configure a logger with a file or stream handler

    Args:
        logger: Logger instance or logger name string
        log_file: File path string or file-like object (None for stderr)
        log_format: Format string for log messages
        log_level: Logging level (e.g., logging.INFO, logging.DEBUG)

    Returns:
        Configured logger instance
    """
    if isinstance(log_file, str):
        handler = RobustFileHandler(
            log_file,
            mode='a',
            encoding='utf-8',
            errors='replace'
        )
    else:
        handler = logging.StreamHandler(log_file)

    formatter = logging.Formatter(log_format)

    if isinstance(logger, str):
        logger = logging.getLogger(logger)

    handler.setFormatter(formatter)
    logger.addHandler(handler)
    logger.setLevel(log_level)

    return logger


def default_config_path(profile=None):
    """Location of the config file of a profile

    Args:
        profile: Profile name, 'default' or None for the default profile

    Returns:
        Path to config.json
    """
    if not profile or profile == 'default':
        name = 'gptini-cli'
    else:
        name = f'gptini-cli-{profile}'
    base = os.environ.get('XDG_CONFIG_HOME') or str(Path.home() / '.config')
    return Path(base) / name / 'config.json'


class Config:
    """Persistent client configuration and stored credentials.

    Values live in a JSON file; GPTINI_API_URL and GPTINI_WS_URL
    environment variables take precedence over the stored URLs.
    """
    logger = logging.getLogger(__name__)

    DEFAULTS = {
        'apiUrl': DEFAULT_API_URL,
        'wsUrl': DEFAULT_WS_URL,
        'theme': 'dark',
        'reconnectDelay': 5,
        'readFlushDelay': 0.3,
        'heartbeat': [4000, 4000]
    }

    def __init__(self, path, environ=None):
        """
        Args:
            path: Config file path
            environ: Environment mapping (defaults to os.environ)
        """
        self.path = Path(path)
        self.environ = os.environ if environ is None else environ
        self.data = dict(self.DEFAULTS)
        self.load()

    def load(self):
        """Load the config file, keeping defaults for missing keys

        Raises:
            ConfigError: The file exists but is not a JSON object
        """
        if not self.path.exists():
            self.logger.info('no config file at %s', self.path)
            return
        try:
            with open(self.path, 'r', encoding='utf-8') as fp:
                data = json.load(fp)
        except (OSError, ValueError) as e:
            raise ConfigError(f'cannot read {self.path}: {e}')
        if not isinstance(data, dict):
            raise ConfigError(f'{self.path}: expected a JSON object')
        self.data.update(data)

    def save(self):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, 'w', encoding='utf-8') as fp:
            json.dump(self.data, fp, indent=2)

    def get(self, key, default=None):
        return self.data.get(key, default)

    def set(self, key, value):
        self.data[key] = value
        self.save()

    def delete(self, *keys):
        for key in keys:
            self.data.pop(key, None)
        self.save()

    def get_token(self):
        return self.data.get('accessToken')

    def set_tokens(self, access_token, refresh_token):
        self.data['accessToken'] = access_token
        self.data['refreshToken'] = refresh_token
        self.save()

    def set_user(self, user_id, nickname):
        self.data['userId'] = user_id
        self.data['nickname'] = nickname
        self.save()

    def get_user(self):
        return self.data.get('userId'), self.data.get('nickname')

    def clear_auth(self):
        self.delete(*AUTH_KEYS)

    def is_logged_in(self):
        return bool(self.get_token())

    @property
    def api_url(self):
        return self.environ.get('GPTINI_API_URL') or self.data['apiUrl']

    @property
    def ws_url(self):
        return self.environ.get('GPTINI_WS_URL') or self.data['wsUrl']

    def credentials(self):
        """Token and WebSocket URL for the realtime connection

        Returns:
            Tuple of (access token or None, WebSocket URL)
        """
        return self.get_token(), websocket_url(self.ws_url)

    def session_kwargs(self):
        """ChatSession parameters from the stored tuning values"""
        return {
            'credentials': self.credentials,
            'reconnect_delay': self.data.get('reconnectDelay', 5),
            'read_delay': self.data.get('readFlushDelay', 0.3),
            'heartbeat': tuple(self.data.get('heartbeat', (4000, 4000)))
        }


def get_config(argv=None, environ=None):
    """Parse command line arguments, load the config and set up logging

    Args:
        argv: Argument list (defaults to sys.argv[1:])
        environ: Environment mapping (defaults to os.environ)

    Returns:
        Tuple of (config, kwargs) where:
            config: Config instance
            kwargs: ChatSession initialization parameters
    """
    environ = os.environ if environ is None else environ
    parser = argparse.ArgumentParser(
        prog='gptini',
        description='GPTini terminal chat client'
    )
    parser.add_argument(
        '--profile',
        default=environ.get('GPTINI_PROFILE', 'default'),
        help='configuration profile (default: $GPTINI_PROFILE or "default")'
    )
    parser.add_argument('--config', help='config file path')
    parser.add_argument(
        '--log-level',
        default='info',
        choices=['debug', 'info', 'warning', 'error']
    )
    parser.add_argument(
        '--log-file',
        default=DEFAULT_LOG_FILE,
        help='debug log file (default: %(default)s)'
    )
    args = parser.parse_args(argv)

    path = args.config or default_config_path(args.profile)
    config = Config(path, environ)

    # The terminal belongs to the UI, so everything goes to the log file
    configure_logger(
        logging.getLogger(),
        log_file=args.log_file,
        log_level=getattr(logging, args.log_level.upper())
    )
    logging.getLogger(__name__).info(
        'profile %s, config %s', args.profile, path
    )

    return config, config.session_kwargs()
