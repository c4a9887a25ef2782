"""
Recording session for Fansly livestreams.
Captures one broadcast with ffmpeg, then converts, hashes and registers it.
"""

import asyncio
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional

from .chat_recorder import ChatRecorder
from .config import Config, build_vod_filename, resolve_live_save_path
from .errors import ApiError, ChatError, LockHeldError, ProcessError
from .fansly_api import FanslyAPI
from .locks import RecordingLocks
from .logger import get_creator_logger
from .media_store import FileKind, MediaStore, RecordedFile, hash_file
from .notifications import NotificationService
from .stream_monitor import LiveStatus
from .transcoder import Transcoder


class RecordingStatus(Enum):
    """Recording status enumeration."""
    PENDING = "pending"
    RECORDING = "recording"
    PROCESSING = "processing"
    COMPLETED = "completed"     # ffmpeg exited on its own
    CANCELLED = "cancelled"     # stopped from outside
    FAILED = "failed"           # nothing usable was captured


@dataclass
class RecordingResult:
    """Result of a recording session."""
    creator_id: str
    creator_name: str
    output_path: Path
    status: RecordingStatus
    started_at: datetime
    ended_at: datetime
    exit_code: Optional[int] = None
    final_path: Optional[Path] = None
    contact_sheet: Optional[Path] = None
    chat_file: Optional[Path] = None
    registered: List[RecordedFile] = field(default_factory=list)

    @property
    def duration_seconds(self) -> float:
        return (self.ended_at - self.started_at).total_seconds()

    @property
    def duration_formatted(self) -> str:
        """Get human-readable duration."""
        hours = int(self.duration_seconds // 3600)
        minutes = int((self.duration_seconds % 3600) // 60)
        seconds = int(self.duration_seconds % 60)
        return f"{hours:02d}:{minutes:02d}:{seconds:02d}"


def unique_output_path(directory: Path, filename: str) -> Path:
    """
    Pick a free path for a new capture.

    Appends _1, _2, ... while either the capture or its MP4 conversion
    already exists.
    """
    base = directory / filename
    stem, ext = base.stem, base.suffix
    candidate = base
    counter = 1
    while candidate.exists() or candidate.with_suffix('.mp4').exists():
        candidate = directory / f"{stem}_{counter}{ext}"
        counter += 1
    return candidate


@dataclass
class _Capture:
    output_path: Path
    started_at: datetime
    exit_code: Optional[int]
    stopped: bool
    chat_file: Optional[Path]


class RecordingSession:
    """
    One capture-and-post-process pipeline for one live event.

    The recording lock is held from acquisition until ffmpeg has exited.
    Post-processing runs after the lock is released and never aborts on a
    single failed step.
    """

    def __init__(
        self,
        creator_id: str,
        creator_name: str,
        config: Config,
        api: FanslyAPI,
        locks: RecordingLocks,
        transcoder: Transcoder,
        media_store: MediaStore,
        notifier: NotificationService,
        chat_recorder: Optional[ChatRecorder] = None,
        live_status: Optional[LiveStatus] = None,
        clock: Callable[[], datetime] = datetime.now
    ):
        """
        Initialize recording session.

        Args:
            creator_id: Creator account ID.
            creator_name: Creator username, used for paths and logs.
            config: Configuration snapshot for this session.
            api: API client used to re-fetch stream metadata.
            locks: Recording lock directory.
            transcoder: External process launcher.
            media_store: Registry for finished files.
            notifier: Notification sink.
            chat_recorder: Chat recorder, None disables chat capture.
            live_status: Status from the poll that triggered this session.
            clock: Time source for filenames and results.
        """
        self.creator_id = creator_id
        self.creator_name = creator_name
        self.config = config
        self.api = api
        self.locks = locks
        self.transcoder = transcoder
        self.media_store = media_store
        self.notifier = notifier
        self.chat_recorder = chat_recorder
        self.live_status = live_status
        self._clock = clock

        self.status = RecordingStatus.PENDING
        self.output_path: Optional[Path] = None
        self._stop_event = asyncio.Event()
        self._chat_started = False
        self._logger = get_creator_logger(creator_name, 'recorder')

    def stop(self) -> None:
        """Ask the session to kill ffmpeg. Safe to call repeatedly."""
        if not self._stop_event.is_set():
            self._logger.info("Stop requested for recording")
            self._stop_event.set()

    async def run(self) -> Optional[RecordingResult]:
        """
        Run the whole pipeline.

        Returns:
            RecordingResult, or None when the session did not record
            (lock contention, metadata or path failure, ffmpeg not started).
        """
        try:
            lock = self.locks.acquire(self.creator_id)
        except LockHeldError:
            self._logger.info("Already recording, skipping")
            return None
        except OSError as e:
            self._logger.error(f"Failed to create recording lock: {e}")
            return None

        try:
            capture = await self._capture()
        finally:
            lock.release()

        if capture is None:
            self.status = RecordingStatus.FAILED
            return None

        return await self._post_process(capture)

    def _template_values(self, stream_id: str, stream_version: str, now: datetime) -> dict:
        return {
            'model_username': self.creator_name,
            'date': now.strftime(self.config.live_settings.date_format),
            'streamId': stream_id,
            'streamVersion': stream_version,
        }

    async def _capture(self) -> Optional[_Capture]:
        settings = self.config.live_settings
        polled = self.live_status or LiveStatus.offline()

        try:
            stream = await self.api.get_stream_data(self.creator_id)
        except ApiError as e:
            self._logger.error(f"Failed to fetch stream data: {e}")
            return None

        playback_url = stream.playback_url or polled.playback_url
        if not playback_url:
            self._logger.error("No playback URL available, aborting recording")
            return None

        started_at = self._clock()
        filename = build_vod_filename(
            self.config,
            self._template_values(
                stream.stream_id or polled.stream_id,
                stream.stream_version or polled.stream_version,
                started_at
            )
        )
        try:
            directory = resolve_live_save_path(self.config, self.creator_name)
            directory.mkdir(parents=True, exist_ok=True)
            output_path = unique_output_path(directory, filename)
        except OSError as e:
            self._logger.error(f"Failed to prepare output directory: {e}")
            return None
        self.output_path = output_path

        chat_file = None
        chat_room_id = stream.chat_room_id or polled.chat_room_id
        if settings.record_chat and chat_room_id and self.chat_recorder is not None:
            chat_file = ChatRecorder.chat_filename(output_path)
            try:
                await self.chat_recorder.start_recording(
                    self.creator_id, self.creator_name, chat_room_id, chat_file
                )
                self._chat_started = True
            except ChatError as e:
                self._logger.warning(f"Chat capture not started: {e}")
                chat_file = None

        try:
            process = await self.transcoder.start_capture(playback_url, output_path)
        except ProcessError as e:
            self._logger.error(f"Failed to start recording: {e}")
            await self._stop_chat()
            return None

        self.status = RecordingStatus.RECORDING
        self._logger.info(f"🔴 Recording to {output_path.name}")
        exit_code, stopped = await self._supervise(process)
        self._logger.info(f"Recording ended (exit code {exit_code}{', stopped' if stopped else ''})")

        return _Capture(
            output_path=output_path,
            started_at=started_at,
            exit_code=exit_code,
            stopped=stopped,
            chat_file=chat_file,
        )

    async def _supervise(self, process) -> tuple:
        """
        Wait for ffmpeg to exit or for a stop request, whichever comes first.

        Returns:
            (exit code, True if the process was stopped from outside).
        """
        wait_task = asyncio.ensure_future(process.wait())
        stop_task = asyncio.ensure_future(self._stop_event.wait())
        try:
            done, _ = await asyncio.wait(
                {wait_task, stop_task},
                return_when=asyncio.FIRST_COMPLETED
            )
            if wait_task in done:
                return wait_task.result(), False

            await self._kill(process)
            return process.returncode, True
        except asyncio.CancelledError:
            await self._kill(process)
            raise
        finally:
            for task in (wait_task, stop_task):
                if not task.done():
                    task.cancel()

    async def _kill(self, process) -> None:
        if process.returncode is not None:
            return
        try:
            process.kill()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(process.wait(), timeout=10)
        except asyncio.TimeoutError:
            self._logger.warning("ffmpeg did not exit after kill")

    async def _stop_chat(self) -> None:
        if not self._chat_started or self.chat_recorder is None:
            return
        self._chat_started = False
        try:
            await self.chat_recorder.stop_recording(self.creator_id)
        except Exception as e:
            self._logger.error(f"Error stopping chat capture: {e}")

    async def _register(self, path: Path, kind: FileKind) -> Optional[RecordedFile]:
        """Hash a file and record it in the media store."""
        loop = asyncio.get_running_loop()
        try:
            digest = await loop.run_in_executor(None, hash_file, path)
            record = RecordedFile(
                creator_name=self.creator_name,
                content_hash=digest,
                path=str(path),
                kind=kind,
            )
            await loop.run_in_executor(None, self.media_store.save, record)
        except (OSError, sqlite3.Error) as e:
            self._logger.error(f"Failed to register {path.name}: {e}")
            return None
        return record

    async def _convert(self, source: Path) -> Path:
        """Convert to MP4. Returns the file to keep: the MP4, or the source on failure."""
        target = source.with_suffix('.mp4')
        if await self.transcoder.convert_to_mp4(source, target) and target.exists():
            try:
                source.unlink()
            except OSError as e:
                self._logger.warning(f"Failed to delete original after conversion: {e}")
            self._logger.info(f"Converted to {target.name}")
            return target

        self._logger.warning(f"Conversion failed, keeping {source.name}")
        try:
            target.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            self._logger.warning(f"Failed to delete partial MP4: {e}")
        return source

    async def _post_process(self, capture: _Capture) -> RecordingResult:
        self.status = RecordingStatus.PROCESSING
        settings = self.config.live_settings
        result = RecordingResult(
            creator_id=self.creator_id,
            creator_name=self.creator_name,
            output_path=capture.output_path,
            status=RecordingStatus.CANCELLED if capture.stopped else RecordingStatus.COMPLETED,
            started_at=capture.started_at,
            ended_at=self._clock(),
            exit_code=capture.exit_code,
            chat_file=capture.chat_file,
        )

        try:
            await self._stop_chat()

            if not capture.output_path.exists():
                self._logger.error(f"Captured file not found: {capture.output_path.name}")
                result.status = RecordingStatus.FAILED
                return result

            final_path = capture.output_path
            if settings.ffmpeg_convert and final_path.suffix.lower() != '.mp4':
                final_path = await self._convert(final_path)
            result.final_path = final_path

            record = await self._register(final_path, FileKind.LIVESTREAM)
            if record:
                result.registered.append(record)

            if settings.generate_contact_sheet:
                sheet = await self.transcoder.generate_contact_sheet(final_path)
                if sheet is not None:
                    result.contact_sheet = sheet
                    sheet_record = await self._register(sheet, FileKind.CONTACT_SHEET)
                    if sheet_record:
                        result.registered.append(sheet_record)

            self._logger.info(f"✅ Recording saved: {final_path.name} ({result.duration_formatted})")
            self.notifier.notify_live_end(
                self.creator_name,
                self.creator_id,
                final_path.name,
                str(result.contact_sheet) if result.contact_sheet else None
            )
        except Exception as e:
            self._logger.error(f"Post-processing error: {e}", exc_info=True)
        finally:
            self.status = result.status

        return result
