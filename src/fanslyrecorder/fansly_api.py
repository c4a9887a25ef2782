"""
Fansly API client for the live recorder.
Handles account lookups and streaming channel info fetching.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Dict, Optional

import aiohttp

from .errors import ApiError
from .logger import get_logger


@dataclass(frozen=True)
class StreamData:
    """Stream metadata for an active broadcast."""
    chat_room_id: str
    stream_id: str
    stream_version: str
    history_id: str
    title: str
    playback_url: str


class FanslyAPI:
    """
    Minimal Fansly API client.

    Every request failure is raised as ApiError; callers decide whether the
    failure is worth retrying.
    """

    BASE_URL = "https://apiv3.fansly.com/api/v1"
    ORIGIN = "https://fansly.com"

    def __init__(
        self,
        auth_token: str,
        user_agent: str,
        timeout: float = 30.0
    ):
        """
        Initialize Fansly API client.

        Args:
            auth_token: Account authorization token.
            user_agent: User agent of the browser the token came from.
            timeout: Total timeout per request in seconds.
        """
        self.auth_token = auth_token
        self.user_agent = user_agent
        self.timeout = timeout

        self._session: Optional[aiohttp.ClientSession] = None
        self._logger = get_logger('fansly_api')

    async def connect(self) -> None:
        """Create the HTTP session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            )
            self._logger.debug("HTTP session opened")

    async def disconnect(self) -> None:
        """Close session."""
        if self._session:
            await self._session.close()
            self._session = None

    def _headers(self) -> dict:
        return {
            'Authorization': self.auth_token,
            'User-Agent': self.user_agent,
            'Accept': 'application/json, text/plain, */*',
            'Origin': self.ORIGIN,
            'Referer': f"{self.ORIGIN}/",
        }

    async def _get_json(self, path: str, params: Optional[dict] = None) -> Dict[str, Any]:
        """GET an API path and return the decoded body."""
        if self._session is None or self._session.closed:
            await self.connect()

        url = f"{self.BASE_URL}{path}"
        try:
            async with self._session.get(url, headers=self._headers(), params=params) as resp:
                if resp.status != 200:
                    text = await resp.text()
                    raise ApiError(f"GET {path} returned {resp.status}: {text[:200]}")
                try:
                    data = await resp.json(content_type=None)
                except ValueError as e:
                    raise ApiError(f"GET {path} returned invalid JSON: {e}") from e
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise ApiError(f"GET {path} failed: {e}") from e

        if not isinstance(data, dict) or not data.get('success'):
            raise ApiError(f"GET {path} was not successful")
        return data

    async def get_account_id(self, username: str) -> str:
        """
        Resolve a creator username to an account ID.

        Args:
            username: Creator username.

        Returns:
            The account ID.

        Raises:
            ApiError: If the account does not exist or the request failed.
        """
        data = await self._get_json(
            "/account",
            params={'usernames': username, 'ngsw-bypass': 'true'}
        )
        accounts = data.get('response') or []
        if not accounts or not accounts[0].get('id'):
            raise ApiError(f"No account found for username {username}")
        return str(accounts[0]['id'])

    async def get_stream_channel(self, creator_id: str) -> Dict[str, Any]:
        """
        Fetch the streaming channel object for a creator.

        Args:
            creator_id: Creator account ID.

        Returns:
            The `response` object of the streaming channel endpoint.
        """
        data = await self._get_json(
            f"/streaming/channel/{creator_id}",
            params={'ngsw-bypass': 'true'}
        )
        response = data.get('response')
        if not isinstance(response, dict):
            raise ApiError(f"Streaming channel for {creator_id} has no response body")
        return response

    async def get_stream_data(self, creator_id: str) -> StreamData:
        """
        Fetch fresh metadata for the creator's current broadcast.

        Args:
            creator_id: Creator account ID.

        Returns:
            StreamData with the current playback URL and chat room.
        """
        response = await self.get_stream_channel(creator_id)
        stream = response.get('stream') or {}

        version = stream.get('version')
        if isinstance(version, (int, float)):
            stream_version = f"{version:.0f}"
        else:
            stream_version = str(version or "0")

        return StreamData(
            chat_room_id=str(response.get('chatRoomId') or ""),
            stream_id=str(stream.get('id') or ""),
            stream_version=stream_version,
            history_id=str(stream.get('historyId') or ""),
            title=str(stream.get('title') or ""),
            playback_url=str(stream.get('playbackUrl') or ""),
        )
