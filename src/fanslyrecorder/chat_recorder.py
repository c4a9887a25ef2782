"""
Chat capture for live recordings.

One ChatCaptureSession per recording creator keeps a websocket to the chat
service open, buffers chat messages and merges them into a JSON file next
to the video. Sessions reconnect on their own until stopped.
"""

import asyncio
import json
import os
import threading
from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import aiofiles
import aiohttp

from .config import ChatConfig
from .errors import (
    ChatAlreadyRecordingError,
    ChatConnectionError,
    ChatError,
    ChatSessionCrashed,
    ChatStorageError,
)
from .logger import get_creator_logger, get_logger
from .registry import Registry


CHAT_WS_URL = "wss://chatws.fansly.com/?v=3"
CHAT_ORIGIN = "https://fansly.com"

# Frame type codes of the chat protocol
FRAME_PING = 0
FRAME_AUTH = 1
FRAME_AUTH_ACCEPTED = 2
FRAME_CHAT_EVENT = 10000
FRAME_JOIN_ROOM = 46001

CHAT_SERVICE_ID = 46
CHAT_EVENT_TEXT = 10

MESSAGE_TYPE_TEXT = "text_message"
CHAT_FILE_SUFFIX = "_chat.json"

WebSocketFactory = Callable[[], Awaitable[Any]]


class ChatState(Enum):
    """Chat capture session states."""
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    JOINING = "joining"
    STREAMING = "streaming"
    STOPPED = "stopped"


@dataclass
class TierInfo:
    tier_id: str = ""
    tier_color: str = ""
    tier_name: str = ""


@dataclass
class Author:
    id: str
    name: str
    is_creator: bool = False
    is_staff: bool = False
    tier_info: TierInfo = field(default_factory=TierInfo)


@dataclass
class ChatMessage:
    """A single chat message as written to the chat file."""
    message_id: str
    message: str
    message_type: str
    timestamp: int              # createdAt, unix millis
    time_in_seconds: float      # since chat capture started
    time_text: str              # MM:SS
    author: Author
    raw_data: str
    received_at: str

    def to_dict(self) -> dict:
        return asdict(self)


def _compact(obj: Any) -> str:
    return json.dumps(obj, separators=(',', ':'))


def format_elapsed(seconds: float) -> str:
    total = int(seconds)
    return f"{total // 60:02d}:{total % 60:02d}"


def _as_str(value: Any) -> str:
    return "" if value is None else str(value)


def _as_millis(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def _decode_payload(data: Any) -> Optional[Dict[str, Any]]:
    """Chat payloads arrive either as objects or as JSON encoded in a string."""
    if isinstance(data, str):
        data = json.loads(data)
    if isinstance(data, dict):
        return data
    return None


def parse_chat_event(
    data: Union[str, Dict[str, Any]],
    start_time: datetime,
    now: Optional[datetime] = None
) -> Optional[ChatMessage]:
    """
    Parse the payload of a chat event frame.

    Two shapes are understood: the service envelope
    ({"serviceId": 46, "event": "<json>"}) and the flat form
    ({"id", "content", "senderId", "senderName", ...}), optionally nested in
    another {"t": 10000, "d": ...} frame.

    Args:
        data: The frame's "d" field.
        start_time: When chat capture started.
        now: Receive time, defaults to the current time.

    Returns:
        ChatMessage, or None for events that are not chat text.

    Raises:
        ValueError: If the payload is not valid JSON.
    """
    payload = _decode_payload(data)
    if payload is None:
        return None

    raw_data = data if isinstance(data, str) else json.dumps(data, ensure_ascii=False)
    received_at = now or datetime.now().astimezone()
    if (start_time.tzinfo is None) != (received_at.tzinfo is None):
        start_time, received_at = start_time.astimezone(), received_at.astimezone()
    elapsed = max(0.0, (received_at - start_time).total_seconds())

    if 'serviceId' in payload:
        if payload.get('serviceId') != CHAT_SERVICE_ID:
            return None
        event = _decode_payload(payload.get('event'))
        if not event or event.get('type') != CHAT_EVENT_TEXT:
            return None

        room_message = event.get('chatRoomMessage') or {}
        metadata: Dict[str, Any] = {}
        if room_message.get('metadata'):
            try:
                metadata = _decode_payload(room_message['metadata']) or {}
            except ValueError:
                metadata = {}
        subscription = metadata.get('senderSubscription') or {}

        return ChatMessage(
            message_id=_as_str(room_message.get('id')),
            message=_as_str(room_message.get('content')),
            message_type=MESSAGE_TYPE_TEXT,
            timestamp=_as_millis(room_message.get('createdAt')),
            time_in_seconds=elapsed,
            time_text=format_elapsed(elapsed),
            author=Author(
                id=_as_str(room_message.get('senderId')),
                name=_as_str(room_message.get('displayname') or room_message.get('username')),
                is_creator=bool(metadata.get('senderIsCreator')),
                is_staff=bool(metadata.get('senderIsStaff')),
                tier_info=TierInfo(
                    tier_id=_as_str(subscription.get('tierId')),
                    tier_color=_as_str(subscription.get('tierColor')),
                    tier_name=_as_str(subscription.get('tierName')),
                ),
            ),
            raw_data=raw_data,
            received_at=received_at.isoformat(),
        )

    if payload.get('t') == FRAME_CHAT_EVENT and 'd' in payload:
        return parse_chat_event(payload['d'], start_time, received_at)

    if 'content' not in payload:
        return None

    return ChatMessage(
        message_id=_as_str(payload.get('id')),
        message=_as_str(payload.get('content')),
        message_type=MESSAGE_TYPE_TEXT,
        timestamp=_as_millis(payload.get('createdAt')),
        time_in_seconds=elapsed,
        time_text=format_elapsed(elapsed),
        author=Author(
            id=_as_str(payload.get('senderId')),
            name=_as_str(payload.get('senderName')),
            is_creator=bool(payload.get('isCreator')),
            is_staff=bool(payload.get('isStaff')),
            tier_info=TierInfo(
                tier_id=_as_str(payload.get('tierId')),
                tier_color=_as_str(payload.get('tierColor')),
                tier_name=_as_str(payload.get('tierName')),
            ),
        ),
        raw_data=raw_data,
        received_at=received_at.isoformat(),
    )


def dedupe_by_message_id(messages: List[dict]) -> List[dict]:
    """Keep the first occurrence of every message_id. Messages without one are kept."""
    seen = set()
    result = []
    for message in messages:
        message_id = message.get('message_id')
        if message_id:
            if message_id in seen:
                continue
            seen.add(message_id)
        result.append(message)
    return result


class ChatCaptureSession:
    """
    Supervised chat capture for one creator.

    Only the running flag and the pending buffer are shared with other
    tasks; both sit behind a lock.
    """

    def __init__(
        self,
        creator_id: str,
        creator_name: str,
        chat_room_id: str,
        output_file: Union[str, Path],
        auth_token: str,
        ws_factory: WebSocketFactory,
        settings: Optional[ChatConfig] = None
    ):
        """
        Initialize chat capture session.

        Args:
            creator_id: Creator account ID.
            creator_name: Display name for logs.
            chat_room_id: Chat room to join.
            output_file: JSON file messages are merged into.
            auth_token: Account token sent in the auth frame.
            ws_factory: Coroutine function returning a connected websocket.
            settings: Chat timings.
        """
        self.creator_id = creator_id
        self.creator_name = creator_name
        self.chat_room_id = chat_room_id
        self.output_file = Path(output_file)
        self.settings = settings or ChatConfig()

        self._auth_token = auth_token
        self._ws_factory = ws_factory
        self._ws = None

        self._lock = threading.Lock()
        self._running = False
        self._stopped = False
        self._pending: List[ChatMessage] = []

        self._stop_event = asyncio.Event()
        self._save_lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None

        self.state = ChatState.CONNECTING
        self.start_time: Optional[datetime] = None
        self.connect_attempts = 0
        self._logger = get_creator_logger(creator_name, 'chat')

    @property
    def running(self) -> bool:
        with self._lock:
            return self._running

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def start(self) -> None:
        """Start the supervisor task."""
        with self._lock:
            if self._running or self._stopped:
                return
            self._running = True
        self.start_time = datetime.now().astimezone()
        self._task = asyncio.get_running_loop().create_task(self._supervise())
        self._logger.info(f"💬 Chat capture started for room {self.chat_room_id} -> {self.output_file.name}")

    def add_message(self, message: ChatMessage) -> int:
        """Append to the pending buffer. Returns the new buffer size."""
        with self._lock:
            self._pending.append(message)
            return len(self._pending)

    async def _wait_stop(self, timeout: float) -> bool:
        """Sleep up to timeout. Returns True if stop was requested meanwhile."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    async def _supervise(self) -> None:
        while self.running:
            try:
                await self._run_cycle()
            except ChatError as e:
                self._logger.warning(f"Chat connection lost: {e}")
            finally:
                await self._close_connection()

            if not self.running:
                break
            self.state = ChatState.CONNECTING
            self._logger.info(f"Reconnecting to chat in {self.settings.reconnect_wait:g}s")
            if await self._wait_stop(self.settings.reconnect_wait):
                break

        self.state = ChatState.STOPPED

    async def _run_cycle(self) -> None:
        """One connect+stream cycle. Unexpected failures surface as ChatSessionCrashed."""
        try:
            await self._connect()
            await self._stream()
        except (ChatError, asyncio.CancelledError):
            raise
        except Exception as e:
            self._logger.error(f"Chat loop crashed: {e}", exc_info=True)
            raise ChatSessionCrashed(f"chat loop crashed: {e}") from e

    async def _send_frame(self, frame_type: int, data: str) -> None:
        try:
            await self._ws.send_str(_compact({'t': frame_type, 'd': data}))
        except (aiohttp.ClientError, ConnectionError, RuntimeError) as e:
            raise ChatConnectionError(f"failed to send frame {frame_type}: {e}") from e

    async def _receive(self) -> Any:
        try:
            return await self._ws.receive()
        except (aiohttp.ClientError, ConnectionError) as e:
            raise ChatConnectionError(f"read failed: {e}") from e

    async def _connect(self) -> None:
        """Connect, authenticate and join. Any failure closes the socket."""
        self.state = ChatState.CONNECTING
        self.connect_attempts += 1
        try:
            self._ws = await self._ws_factory()
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            raise ChatConnectionError(f"connect failed: {e}") from e

        try:
            self.state = ChatState.AUTHENTICATING
            await self._send_frame(FRAME_AUTH, _compact({'token': self._auth_token, 'v': 3}))

            try:
                msg = await asyncio.wait_for(self._receive(), timeout=self.settings.auth_timeout)
            except asyncio.TimeoutError:
                raise ChatConnectionError("timed out waiting for auth response") from None

            if msg.type != aiohttp.WSMsgType.TEXT:
                raise ChatConnectionError(f"unexpected auth response frame: {msg.type}")
            try:
                reply = json.loads(msg.data)
            except ValueError as e:
                raise ChatConnectionError(f"invalid auth response: {e}") from e
            reply_type = reply.get('t') if isinstance(reply, dict) else None
            if reply_type not in (FRAME_AUTH, FRAME_AUTH_ACCEPTED):
                raise ChatConnectionError(f"authentication failed: response type {reply_type}")

            self.state = ChatState.JOINING
            await self._send_frame(FRAME_JOIN_ROOM, _compact({'chatRoomId': self.chat_room_id}))
        except BaseException:
            await self._close_connection()
            raise

        self._logger.debug(f"Joined chat room {self.chat_room_id}")

    async def _stream(self) -> None:
        """Multiplex stop, ping timer, save timer and inbound frames until stopped."""
        self.state = ChatState.STREAMING
        loop = asyncio.get_running_loop()
        next_ping = loop.time() + self.settings.ping_interval
        next_save = loop.time() + self.settings.save_interval

        stop_waiter = loop.create_task(self._stop_event.wait())
        receiver: Optional[asyncio.Task] = None
        try:
            while self.running:
                if receiver is None:
                    receiver = loop.create_task(self._receive())

                timeout = max(0.0, min(next_ping, next_save) - loop.time())
                done, _ = await asyncio.wait(
                    {stop_waiter, receiver},
                    timeout=timeout,
                    return_when=asyncio.FIRST_COMPLETED
                )

                if stop_waiter in done:
                    return

                if receiver in done:
                    msg = receiver.result()
                    receiver = None
                    await self._handle_frame(msg)

                now = loop.time()
                if now >= next_ping:
                    await self._send_frame(FRAME_PING, "p")
                    next_ping = now + self.settings.ping_interval
                if now >= next_save:
                    if self.pending_count:
                        await self._save_logged()
                    next_save = now + self.settings.save_interval
        finally:
            for task in (stop_waiter, receiver):
                if task is not None and not task.done():
                    task.cancel()

    async def _handle_frame(self, msg: Any) -> None:
        if msg.type in (
            aiohttp.WSMsgType.CLOSE,
            aiohttp.WSMsgType.CLOSING,
            aiohttp.WSMsgType.CLOSED,
            aiohttp.WSMsgType.ERROR,
        ):
            raise ChatConnectionError(f"websocket closed ({msg.type.name})")
        if msg.type != aiohttp.WSMsgType.TEXT:
            return

        try:
            frame = json.loads(msg.data)
        except ValueError:
            self._logger.debug("Ignoring non-JSON chat frame")
            return
        if not isinstance(frame, dict) or frame.get('t') != FRAME_CHAT_EVENT:
            return

        try:
            message = parse_chat_event(frame.get('d'), self.start_time or datetime.now().astimezone())
        except (ValueError, TypeError, AttributeError) as e:
            self._logger.debug(f"Unparseable chat event: {e}")
            return
        if message is None:
            return

        if self.add_message(message) >= self.settings.flush_threshold:
            await self._save_logged()

    async def _save_logged(self) -> None:
        try:
            await self.save_messages()
        except ChatStorageError as e:
            self._logger.error(f"Failed to save chat messages: {e}")

    async def save_messages(self) -> int:
        """
        Merge pending messages into the chat file.

        Reads the existing file, appends the pending batch, sorts by
        timestamp and rewrites the file. A missing file with nothing pending
        is created as an empty array. Duplicates are kept unless
        dedupe_messages is enabled.

        Returns:
            Number of messages in the file afterwards.

        Raises:
            ChatStorageError: If the file could not be read or written. The
                batch is returned to the pending buffer.
        """
        async with self._save_lock:
            with self._lock:
                batch, self._pending = self._pending, []

            try:
                total = await self._merge_into_file(batch)
            except (OSError, ValueError) as e:
                with self._lock:
                    self._pending[:0] = batch
                raise ChatStorageError(f"{self.output_file}: {e}") from e

        if batch:
            self._logger.debug(f"Saved {len(batch)} chat message(s), {total} total")
        return total

    async def _merge_into_file(self, batch: List[ChatMessage]) -> int:
        path = self.output_file
        path.parent.mkdir(parents=True, exist_ok=True)

        existing: List[dict] = []
        if path.exists():
            async with aiofiles.open(path, 'r', encoding='utf-8') as f:
                text = await f.read()
            if text.strip():
                existing = json.loads(text)
                if not isinstance(existing, list):
                    raise ValueError("chat file does not hold a JSON array")
            if not batch:
                return len(existing)
        elif not batch:
            await self._write_file("[]")
            return 0

        combined = existing + [message.to_dict() for message in batch]
        if self.settings.dedupe_messages:
            combined = dedupe_by_message_id(combined)
        combined.sort(key=lambda m: m.get('timestamp') or 0)

        await self._write_file(json.dumps(combined, indent=2, ensure_ascii=False))
        return len(combined)

    async def _write_file(self, text: str) -> None:
        tmp_file = self.output_file.with_suffix(self.output_file.suffix + ".tmp")
        async with aiofiles.open(tmp_file, 'w', encoding='utf-8') as f:
            await f.write(text)
        os.replace(tmp_file, self.output_file)

    async def _close_connection(self) -> None:
        ws, self._ws = self._ws, None
        if ws is not None and not ws.closed:
            try:
                await ws.close()
            except (aiohttp.ClientError, ConnectionError, RuntimeError) as e:
                self._logger.debug(f"Error closing chat socket: {e}")

    async def stop(self) -> None:
        """
        Stop capturing. Safe to call more than once and from any task.

        Waits up to stop_timeout for the loop to exit, then flushes the
        pending buffer and closes the socket regardless.
        """
        with self._lock:
            if self._stopped:
                return
            self._stopped = True
            self._running = False
        self._stop_event.set()

        task = self._task
        if task is not None and not task.done():
            try:
                await asyncio.wait_for(asyncio.shield(task), timeout=self.settings.stop_timeout)
            except asyncio.TimeoutError:
                self._logger.warning("Chat loop did not stop in time, cancelling it")
                task.cancel()
                await asyncio.wait({task})

        await self._save_logged()
        await self._close_connection()
        self.state = ChatState.STOPPED
        self._logger.info("💬 Chat capture stopped")


class ChatRecorder:
    """
    Owns all chat capture sessions, at most one per creator.
    """

    def __init__(
        self,
        auth_token: str,
        user_agent: str,
        settings: Optional[ChatConfig] = None,
        ws_factory: Optional[WebSocketFactory] = None
    ):
        """
        Initialize chat recorder.

        Args:
            auth_token: Account token for the chat service.
            user_agent: User agent sent when dialing.
            settings: Chat timings.
            ws_factory: Override for the websocket dialer.
        """
        self.auth_token = auth_token
        self.user_agent = user_agent
        self.settings = settings or ChatConfig()

        self._ws_factory = ws_factory or self._dial
        self._http: Optional[aiohttp.ClientSession] = None
        self._sessions: Registry[str, ChatCaptureSession] = Registry()
        self._logger = get_logger('chat')

    async def _dial(self):
        if self._http is None or self._http.closed:
            self._http = aiohttp.ClientSession()
        return await self._http.ws_connect(
            CHAT_WS_URL,
            headers={'Origin': CHAT_ORIGIN, 'User-Agent': self.user_agent},
            heartbeat=self.settings.ping_interval + 15,
        )

    @staticmethod
    def chat_filename(vod_path: Union[str, Path]) -> Path:
        vod_path = Path(vod_path)
        return vod_path.with_name(f"{vod_path.stem}{CHAT_FILE_SUFFIX}")

    async def start_recording(
        self,
        creator_id: str,
        creator_name: str,
        chat_room_id: str,
        output_file: Union[str, Path]
    ) -> ChatCaptureSession:
        """
        Start a chat capture session.

        Raises:
            ChatAlreadyRecordingError: If the creator already has one.
        """
        session = ChatCaptureSession(
            creator_id=creator_id,
            creator_name=creator_name,
            chat_room_id=chat_room_id,
            output_file=output_file,
            auth_token=self.auth_token,
            ws_factory=self._ws_factory,
            settings=self.settings,
        )
        if not self._sessions.add_if_absent(creator_id, session):
            raise ChatAlreadyRecordingError(f"chat already recording for {creator_name}")
        session.start()
        return session

    async def stop_recording(self, creator_id: str) -> bool:
        """Stop a creator's session. Returns False if none was active."""
        session = self._sessions.remove(creator_id)
        if session is None:
            return False
        await session.stop()
        return True

    def is_recording(self, creator_id: str) -> bool:
        return self._sessions.contains(creator_id)

    async def stop_all(self) -> None:
        sessions = self._sessions.clear()
        if not sessions:
            return
        self._logger.info(f"Stopping {len(sessions)} chat capture session(s)")
        results = await asyncio.gather(
            *(session.stop() for session in sessions.values()),
            return_exceptions=True
        )
        for result in results:
            if isinstance(result, Exception):
                self._logger.error(f"Error stopping chat session: {result}")

    async def close(self) -> None:
        await self.stop_all()
        if self._http:
            await self._http.close()
            self._http = None
