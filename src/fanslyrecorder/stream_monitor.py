"""
Stream monitor for Fansly creators.
Probes the streaming channel endpoint and turns poll results into events.
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, Optional

from .errors import ApiError
from .fansly_api import FanslyAPI
from .logger import get_creator_logger

# Channel status value the API reports for an active broadcast
STREAM_STATUS_LIVE = 2


@dataclass(frozen=True)
class LiveStatus:
    """Result of a single liveness probe. Never persisted."""
    is_live: bool
    playback_url: str = ""
    chat_room_id: str = ""
    stream_id: str = ""
    stream_version: str = ""

    @classmethod
    def offline(cls) -> 'LiveStatus':
        return cls(is_live=False)


class StreamEvent(Enum):
    """Events emitted by a creator poller."""
    WENT_LIVE = "went_live"
    LIVE = "live"
    WENT_OFFLINE = "went_offline"


@dataclass
class MonitorEvent:
    """Event from a creator poller."""
    event: StreamEvent
    creator_id: str
    creator_name: str
    status: LiveStatus


class LivenessProber:
    """
    Answers "is this creator broadcasting right now".

    One network round-trip per call and no retries; the poll interval is
    the retry policy.
    """

    def __init__(self, api: FanslyAPI):
        self.api = api

    async def check_live(self, creator_id: str) -> LiveStatus:
        """
        Probe a creator's streaming channel.

        Args:
            creator_id: Creator account ID.

        Returns:
            LiveStatus for this instant.

        Raises:
            ApiError: If the channel could not be fetched.
        """
        response = await self.api.get_stream_channel(creator_id)
        stream = response.get('stream') or {}

        is_live = stream.get('status') == STREAM_STATUS_LIVE and bool(stream.get('access'))
        if not is_live:
            return LiveStatus.offline()

        version = stream.get('version')
        return LiveStatus(
            is_live=True,
            playback_url=str(stream.get('playbackUrl') or ""),
            chat_room_id=str(response.get('chatRoomId') or ""),
            stream_id=str(stream.get('id') or ""),
            stream_version=f"{version:.0f}" if isinstance(version, (int, float)) else str(version or ""),
        )


class CreatorPoller:
    """
    Poll loop for a single creator.

    Keeps the was-live flag in memory only. A failed probe is treated as
    "not live" for that tick and leaves the flag untouched.
    """

    def __init__(
        self,
        prober: LivenessProber,
        creator_id: str,
        creator_name: str,
        check_interval: float = 120
    ):
        """
        Initialize creator poller.

        Args:
            prober: Liveness prober to query.
            creator_id: Creator account ID.
            creator_name: Display name used in logs and events.
            check_interval: Seconds between probes.
        """
        self.prober = prober
        self.creator_id = creator_id
        self.creator_name = creator_name
        self.check_interval = check_interval

        self._logger = get_creator_logger(creator_name, 'poller')
        self._was_live = False

    async def _probe(self) -> Optional[LiveStatus]:
        try:
            return await self.prober.check_live(self.creator_id)
        except ApiError as e:
            self._logger.warning(f"Live check failed: {e}")
        except Exception as e:
            self._logger.error(f"Unexpected live check error: {e}", exc_info=True)
        return None

    async def events(self, stop_event: asyncio.Event) -> AsyncIterator[MonitorEvent]:
        """
        Poll until the stop event is set and yield events.

        Args:
            stop_event: Cancellation token owned by the orchestrator.

        Yields:
            MonitorEvent for every edge and for every live tick.
        """
        while not stop_event.is_set():
            status = await self._probe()

            if status is not None:
                if status.is_live:
                    if not self._was_live:
                        self._was_live = True
                        self._logger.info("🔴 Creator went live")
                        yield MonitorEvent(StreamEvent.WENT_LIVE, self.creator_id, self.creator_name, status)
                        if stop_event.is_set():
                            return
                    yield MonitorEvent(StreamEvent.LIVE, self.creator_id, self.creator_name, status)
                elif self._was_live:
                    self._was_live = False
                    self._logger.info("⚫ Stream ended")
                    yield MonitorEvent(StreamEvent.WENT_OFFLINE, self.creator_id, self.creator_name, status)

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.check_interval)
            except asyncio.TimeoutError:
                pass
