"""
REST client for the chat server.

Blocking `requests` calls run in the default executor so the event loop
stays responsive while a request is in flight.
"""

import logging
from typing import Any, Callable, Dict, List, Optional

import requests

from .error import ApiError, AuthError
from .util import run_blocking


logger = logging.getLogger(__name__)


class ApiClient:
    """Client for the ``/api/v1`` endpoints."""

    AUTH_STATUS = (401, 403)

    def __init__(
        self,
        base_url: str,
        token_provider: Optional[Callable[[], Optional[str]]] = None,
        timeout: float = 10,
        session: Optional[requests.Session] = None
    ):
        """
        Initialize the client.

        Args:
            base_url: Server URL, e.g. https://api.gptini.org
            token_provider: Returns the current access token (or None)
            timeout: Request timeout in seconds
            session: Optional requests session to reuse
        """
        self.base_url = base_url.rstrip('/')
        self.token_provider = token_provider
        self.timeout = timeout
        self.session = session or requests.Session()

    def _headers(self) -> Dict[str, str]:
        headers = {'Accept': 'application/json'}
        token = self.token_provider() if self.token_provider else None
        if token:
            headers['Authorization'] = f'Bearer {token}'
        return headers

    def _request(self, method: str, path: str, **kwargs) -> Any:
        url = f'{self.base_url}{path}'
        logger.debug('%s %s', method, url)
        try:
            resp = self.session.request(
                method,
                url,
                headers=self._headers(),
                timeout=self.timeout,
                **kwargs
            )
        except requests.RequestException as e:
            raise ApiError(f'{method} {path} failed: {e}')

        if resp.status_code in self.AUTH_STATUS:
            logger.warning('%s %s: %d', method, path, resp.status_code)
            raise AuthError(
                f'{method} {path}: not authorized', status=resp.status_code
            )
        if resp.status_code >= 400:
            raise ApiError(
                f'{method} {path}: {resp.status_code} {resp.text[:200]}',
                status=resp.status_code
            )

        try:
            body = resp.json()
        except ValueError:
            raise ApiError(f'{method} {path}: invalid JSON response')
        # Responses are wrapped as {"data": ...}
        if isinstance(body, dict) and 'data' in body:
            return body['data']
        return body

    async def request(self, method: str, path: str, **kwargs) -> Any:
        """
        Send a request and unwrap the response envelope.

        Raises:
            AuthError: 401/403 response
            ApiError: Network error, other HTTP error or invalid body
        """
        return await run_blocking(self._request, method, path, **kwargs)

    async def login(self, email: str, password: str) -> Dict[str, Any]:
        """Log in, returns accessToken and refreshToken."""
        return await self.request(
            'POST', '/api/v1/auth/login',
            json={'email': email, 'password': password}
        )

    async def sign_up(self, email: str, password: str, nickname: str) -> Any:
        return await self.request(
            'POST', '/api/v1/auth/signup',
            json={'email': email, 'password': password, 'nickname': nickname}
        )

    async def get_me(self) -> Dict[str, Any]:
        return await self.request('GET', '/api/v1/users/me')

    async def get_chat_rooms(self) -> List[Dict[str, Any]]:
        return await self.request('GET', '/api/v1/chat/rooms')

    async def get_chat_room(self, room_id: int) -> Dict[str, Any]:
        return await self.request('GET', f'/api/v1/chat/rooms/{room_id}')

    async def get_messages(
        self,
        room_id: int,
        before_id: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        """
        Fetch message history of a room.

        Args:
            room_id: Room id
            before_id: Only messages older than this id

        Returns:
            List of message envelopes
        """
        params = {'beforeId': before_id} if before_id else {}
        return await self.request(
            'GET', f'/api/v1/chat/rooms/{room_id}/messages', params=params
        )

    def close(self):
        self.session.close()
