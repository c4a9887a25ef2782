"""
Monitoring service: the watch-list, one poll loop per watched creator and
the recording sessions those loops start.
"""

import asyncio
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, List, Optional

from .chat_recorder import ChatRecorder
from .config import Config
from .errors import WatchListError
from .fansly_api import FanslyAPI
from .locks import RecordingLocks
from .logger import get_creator_logger, get_logger
from .media_store import MediaStore
from .notifications import NotificationService
from .recorder import RecordingResult, RecordingSession
from .registry import Registry
from .stream_monitor import CreatorPoller, LiveStatus, LivenessProber, MonitorEvent, StreamEvent
from .transcoder import Transcoder
from .watchlist import WatchList


POLLER_STOP_TIMEOUT = 5.0


class CreatorStatus(Enum):
    """Per-creator monitoring state."""
    IDLE = "idle"
    POLLING = "polling"
    LIVE_DETECTED = "live_detected"
    RECORDING = "recording"


@dataclass(frozen=True)
class CreatorState:
    """Snapshot of one creator's monitoring state."""
    creator_id: str
    creator_name: str
    status: CreatorStatus = CreatorStatus.IDLE
    is_live: bool = False
    last_check: Optional[datetime] = None
    recording_since: Optional[datetime] = None


SessionFactory = Callable[[str, str, Optional[LiveStatus]], RecordingSession]


class MonitoringService:
    """
    Orchestrates live monitoring.

    Shared maps are Registry objects:
    - pollers: creator_id -> stop Event (the "currently polling" guard)
    - poll_tasks / session_tasks: running asyncio tasks
    - sessions: creator_id -> active RecordingSession
    - states: creator_id -> CreatorState
    """

    def __init__(
        self,
        config: Config,
        api: FanslyAPI,
        watchlist: Optional[WatchList] = None,
        locks: Optional[RecordingLocks] = None,
        transcoder: Optional[Transcoder] = None,
        media_store: Optional[MediaStore] = None,
        notifier: Optional[NotificationService] = None,
        chat_recorder: Optional[ChatRecorder] = None,
        prober: Optional[LivenessProber] = None,
        session_factory: Optional[SessionFactory] = None
    ):
        """
        Initialize monitoring service.

        Collaborators default to the ones described by the config; tests
        pass their own.
        """
        self.config = config
        self.api = api
        self.watchlist = watchlist or WatchList(config.state.watchlist_file)
        self.locks = locks or RecordingLocks(config.state.locks_dir)
        self.transcoder = transcoder or Transcoder(config.live_settings)
        self.media_store = media_store or MediaStore(config.state.media_db)
        self.notifier = notifier or NotificationService(config.notifications)
        self.chat_recorder = chat_recorder or ChatRecorder(
            config.account.auth_token,
            config.account.user_agent,
            config.chat
        )
        self.prober = prober or LivenessProber(api)
        self._session_factory = session_factory or self._create_session

        self._toggle_lock = asyncio.Lock()
        self._pollers: Registry[str, asyncio.Event] = Registry()
        self._poll_tasks: Registry[str, asyncio.Task] = Registry()
        self._sessions: Registry[str, RecordingSession] = Registry()
        self._session_tasks: Registry[str, asyncio.Task] = Registry()
        self._states: Registry[str, CreatorState] = Registry()

        self._rescan_task: Optional[asyncio.Task] = None
        self._running = False
        self._logger = get_logger('monitor')

    # Lifecycle

    async def start(self) -> None:
        """Clean stale locks, load the watch-list and start polling."""
        self._running = True
        self.locks.remove_stale()

        entries = await self.watchlist.load()
        for creator_id, creator_name in entries.items():
            self._spawn_poller(creator_id, creator_name)

        self._rescan_task = asyncio.get_running_loop().create_task(self._rescan_loop())
        self._logger.info(f"Monitoring {len(entries)} creator(s)")

    async def shutdown(self) -> None:
        """
        Stop everything.

        Poll loops are signalled, chat sessions force-stopped, ffmpeg
        processes killed; sessions then get shutdown_grace seconds to
        post-process before they are cancelled.
        """
        if not self._running:
            return
        self._running = False
        self._logger.info("Shutting down monitoring...")

        if self._rescan_task:
            self._rescan_task.cancel()
            await asyncio.wait({self._rescan_task})
            self._rescan_task = None

        for token in self._pollers.snapshot().values():
            token.set()
        await self._wait_tasks(list(self._poll_tasks.snapshot().values()), POLLER_STOP_TIMEOUT)

        await self.chat_recorder.stop_all()

        for session in self._sessions.snapshot().values():
            session.stop()
        await self._wait_tasks(
            list(self._session_tasks.snapshot().values()),
            self.config.state.shutdown_grace
        )

        await self.notifier.close()
        await self.chat_recorder.close()
        self._logger.info("Monitoring stopped")

    async def _wait_tasks(self, tasks: List[asyncio.Task], timeout: float) -> None:
        if not tasks:
            return
        _, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            self._logger.warning(f"Cancelled {len(pending)} task(s) that did not finish in time")
            await asyncio.wait(pending)

    # Watch-list

    async def toggle_monitoring(self, creator_id: str, creator_name: str) -> bool:
        """
        Watch or unwatch a creator.

        A toggle on a service that is not running is persisted but starts no
        poll loop; it takes effect on the next start().

        Returns:
            True if the creator is now watched.

        Raises:
            WatchListError: If the watch-list could not be persisted. The
                in-memory change is rolled back.
        """
        async with self._toggle_lock:
            try:
                self.watchlist.replace(await self.watchlist.read_file())
            except WatchListError as e:
                self._logger.error(f"{e}, toggling against the in-memory watch-list")

            if self.watchlist.contains(creator_id):
                previous_name = self.watchlist.get(creator_id)
                self.watchlist.remove(creator_id)
                try:
                    await self.watchlist.save()
                except WatchListError:
                    self.watchlist.add(creator_id, previous_name)
                    raise

                await self._stop_poller(creator_id)
                await self.chat_recorder.stop_recording(creator_id)
                self._states.remove(creator_id)
                self._logger.info(f"Stopped monitoring {creator_name or previous_name} ({creator_id})")
                return False

            self.watchlist.add(creator_id, creator_name)
            try:
                await self.watchlist.save()
            except WatchListError:
                self.watchlist.remove(creator_id)
                raise

            self._spawn_poller(creator_id, creator_name)
            self._logger.info(f"Started monitoring {creator_name} ({creator_id})")
            return True

    async def rescan(self) -> None:
        """
        Re-read the watch-list file and reconcile poll loops with it.

        An unusable file leaves the in-memory watch-list and poll loops as they are.
        """
        async with self._toggle_lock:
            try:
                entries = await self.watchlist.read_file()
            except WatchListError as e:
                self._logger.error(f"{e}, keeping current watch-list")
                return
            self.watchlist.replace(entries)

            polling = set(self._pollers.snapshot())
            for creator_id, creator_name in entries.items():
                if creator_id not in polling:
                    self._spawn_poller(creator_id, creator_name)

            for creator_id in polling - set(entries):
                await self._stop_poller(creator_id)
                await self.chat_recorder.stop_recording(creator_id)
                self._states.remove(creator_id)

    async def _rescan_loop(self) -> None:
        interval = self.config.live_settings.rescan_interval
        while self._running:
            await asyncio.sleep(interval)
            try:
                await self.rescan()
            except Exception as e:
                self._logger.error(f"Watch-list rescan failed: {e}", exc_info=True)

    # Poll loops

    def _spawn_poller(self, creator_id: str, creator_name: str) -> bool:
        """Start a poll loop unless one is already running for the creator."""
        if not self._running:
            self._logger.warning(f"Service not running, {creator_name} ({creator_id}) will be polled after start")
            return False

        token = asyncio.Event()
        if not self._pollers.add_if_absent(creator_id, token):
            self._logger.debug(f"Already polling {creator_id}")
            return False

        self._set_state(creator_id, creator_name, status=CreatorStatus.POLLING)
        task = asyncio.get_running_loop().create_task(
            self._poll(creator_id, creator_name, token),
            name=f"poll-{creator_id}"
        )
        self._poll_tasks.add(creator_id, task)
        task.add_done_callback(lambda t: self._poller_done(creator_id, token, t))
        return True

    def _poller_done(self, creator_id: str, token: asyncio.Event, task: asyncio.Task) -> None:
        self._pollers.discard(creator_id, token)
        self._poll_tasks.discard(creator_id, task)
        if not task.cancelled() and task.exception() is not None:
            self._logger.error(f"Poll loop for {creator_id} crashed: {task.exception()}")

    async def _stop_poller(self, creator_id: str) -> None:
        token = self._pollers.remove(creator_id)
        if token is not None:
            token.set()
        task = self._poll_tasks.remove(creator_id)
        if task is not None:
            await self._wait_tasks([task], POLLER_STOP_TIMEOUT)

    async def _poll(self, creator_id: str, creator_name: str, token: asyncio.Event) -> None:
        poller = CreatorPoller(
            self.prober,
            creator_id,
            creator_name,
            self.config.live_settings.check_interval
        )
        async for event in poller.events(token):
            try:
                await self._handle_event(event)
            except Exception as e:
                get_creator_logger(creator_name, 'monitor').error(f"Error handling {event.event.value}: {e}", exc_info=True)

    async def _handle_event(self, event: MonitorEvent) -> None:
        now = datetime.now()
        if event.event == StreamEvent.WENT_LIVE:
            self._set_state(
                event.creator_id, event.creator_name,
                status=CreatorStatus.LIVE_DETECTED, is_live=True, last_check=now
            )
            self.notifier.notify_live_start(event.creator_name, event.creator_id)

        elif event.event == StreamEvent.LIVE:
            self._set_state(event.creator_id, event.creator_name, is_live=True, last_check=now)
            self._maybe_start_recording(event.creator_id, event.creator_name, event.status)

        elif event.event == StreamEvent.WENT_OFFLINE:
            self._set_state(event.creator_id, event.creator_name, is_live=False, last_check=now)
            self.notifier.notify_live_end(event.creator_name, event.creator_id)

    def _maybe_start_recording(
        self,
        creator_id: str,
        creator_name: str,
        status: Optional[LiveStatus]
    ) -> Optional[asyncio.Task]:
        logger = get_creator_logger(creator_name, 'monitor')
        if self._sessions.contains(creator_id):
            logger.debug("Recording session already running")
            return None

        if self.locks.is_held(creator_id) and not self.locks.remove_if_stale(creator_id):
            logger.info("Already being recorded, skipping")
            return None

        return self.start_recording(creator_id, creator_name, status)

    # Recording sessions

    def _create_session(
        self,
        creator_id: str,
        creator_name: str,
        status: Optional[LiveStatus]
    ) -> RecordingSession:
        return RecordingSession(
            creator_id=creator_id,
            creator_name=creator_name,
            config=self.config,
            api=self.api,
            locks=self.locks,
            transcoder=self.transcoder,
            media_store=self.media_store,
            notifier=self.notifier,
            chat_recorder=self.chat_recorder if self.config.live_settings.record_chat else None,
            live_status=status,
        )

    def start_recording(
        self,
        creator_id: str,
        creator_name: str,
        status: Optional[LiveStatus] = None
    ) -> Optional[asyncio.Task]:
        """Start a recording session task unless one is already active."""
        session = self._session_factory(creator_id, creator_name, status)
        if not self._sessions.add_if_absent(creator_id, session):
            return None

        self._set_state(
            creator_id, creator_name,
            status=CreatorStatus.RECORDING, recording_since=datetime.now()
        )
        task = asyncio.get_running_loop().create_task(
            self._run_session(session),
            name=f"record-{creator_id}"
        )
        self._session_tasks.add(creator_id, task)
        task.add_done_callback(lambda t: self._session_tasks.discard(creator_id, t))
        return task

    async def _run_session(self, session: RecordingSession) -> Optional[RecordingResult]:
        try:
            return await session.run()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            get_creator_logger(session.creator_name, 'monitor').error(f"Recording session failed: {e}", exc_info=True)
            return None
        finally:
            self._sessions.discard(session.creator_id, session)
            status = CreatorStatus.POLLING if self._pollers.contains(session.creator_id) else CreatorStatus.IDLE
            self._set_state(
                session.creator_id, session.creator_name,
                status=status, recording_since=None
            )

    async def stop_recording(self, creator_id: str) -> bool:
        """Kill an active recording. Post-processing still runs."""
        session = self._sessions.get(creator_id)
        if session is None:
            return False
        session.stop()
        return True

    # State

    def _set_state(self, creator_id: str, creator_name: str, **changes) -> None:
        current = self._states.get(creator_id) or CreatorState(creator_id, creator_name)
        self._states.add(creator_id, replace(current, creator_name=creator_name, **changes))

    def watched(self) -> Dict[str, str]:
        return self.watchlist.snapshot()

    def is_watching(self, creator_id: str) -> bool:
        return self.watchlist.contains(creator_id)

    def polling_ids(self) -> List[str]:
        return sorted(self._pollers.snapshot())

    def is_recording(self, creator_id: str) -> bool:
        return self._sessions.contains(creator_id) or self.locks.is_held(creator_id)

    def active_recordings(self) -> List[str]:
        return sorted(self._sessions.snapshot())

    def creator_states(self) -> Dict[str, CreatorState]:
        return self._states.snapshot()
