import asyncio
from pathlib import Path
from typing import List, Optional

import aiohttp

from fanslyrecorder.config import Config, parse_config
from fanslyrecorder.errors import ApiError
from fanslyrecorder.fansly_api import StreamData
from fanslyrecorder.stream_monitor import LiveStatus


def make_config(tmp_path: Path, live: Optional[dict] = None, chat: Optional[dict] = None) -> Config:
    live_settings = {
        'check_interval': 1,
        'record_chat': False,
        'ffmpeg_convert': False,
        'generate_contact_sheet': False,
    }
    live_settings.update(live or {})
    chat_settings = {'reconnect_wait': 0.05, 'stop_timeout': 1}
    chat_settings.update(chat or {})
    return parse_config({
        'account': {'auth_token': 'token', 'user_agent': 'test-agent'},
        'options': {'save_location': str(tmp_path / 'downloads')},
        'live_settings': live_settings,
        'chat': chat_settings,
        'notifications': {'enabled': False},
        'state': {
            'watchlist_file': str(tmp_path / 'data' / 'watchlist.json'),
            'locks_dir': str(tmp_path / 'data' / 'active_recordings'),
            'media_db': str(tmp_path / 'data' / 'media.db'),
            'shutdown_grace': 1,
        },
    })


def live_status(url: str = "https://x/live.m3u8", room: str = "room-1") -> LiveStatus:
    return LiveStatus(is_live=True, playback_url=url, chat_room_id=room, stream_id="s1", stream_version="1")


class FakeAPI:
    def __init__(self, stream: Optional[StreamData] = None, fail: bool = False):
        self.stream = stream or StreamData(
            chat_room_id="room-1",
            stream_id="s1",
            stream_version="1",
            history_id="h1",
            title="title",
            playback_url="https://x/live.m3u8",
        )
        self.fail = fail
        self.stream_data_calls = 0

    async def get_stream_data(self, creator_id: str) -> StreamData:
        self.stream_data_calls += 1
        if self.fail:
            raise ApiError("boom")
        return self.stream

    async def get_stream_channel(self, creator_id: str) -> dict:
        if self.fail:
            raise ApiError("boom")
        return {
            'chatRoomId': self.stream.chat_room_id,
            'stream': {
                'id': self.stream.stream_id,
                'status': 2,
                'access': True,
                'playbackUrl': self.stream.playback_url,
                'version': 1.0,
            },
        }


class FakeProber:
    """Returns scripted results, then offline forever."""

    def __init__(self, script: Optional[list] = None):
        self.script = list(script or [])
        self.calls = 0

    async def check_live(self, creator_id: str) -> LiveStatus:
        self.calls += 1
        if not self.script:
            return LiveStatus.offline()
        result = self.script.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


class FakeProcess:
    def __init__(self):
        self.returncode: Optional[int] = None
        self.killed = False
        self._exited = asyncio.Event()

    def finish(self, code: int = 0) -> None:
        if self.returncode is None:
            self.returncode = code
            self._exited.set()

    def kill(self) -> None:
        self.killed = True
        self.finish(-9)

    async def wait(self) -> int:
        await self._exited.wait()
        return self.returncode


class FakeTranscoder:
    def __init__(
        self,
        auto_exit: bool = True,
        write_output: bool = True,
        convert_ok: bool = True,
        sheet_ok: bool = True,
        capture_delay: float = 0.0
    ):
        self.auto_exit = auto_exit
        self.write_output = write_output
        self.convert_ok = convert_ok
        self.sheet_ok = sheet_ok
        self.capture_delay = capture_delay
        self.captures: List[tuple] = []
        self.conversions: List[tuple] = []
        self.sheets: List[Path] = []
        self.processes: List[FakeProcess] = []

    async def start_capture(self, url: str, output_path: Path) -> FakeProcess:
        self.captures.append((url, output_path))
        if self.write_output:
            output_path.write_bytes(b"captured video")
        process = FakeProcess()
        self.processes.append(process)
        if self.auto_exit:
            loop = asyncio.get_running_loop()
            loop.call_later(self.capture_delay, process.finish, 0)
        return process

    async def convert_to_mp4(self, src: Path, dst: Path) -> bool:
        self.conversions.append((src, dst))
        dst.write_bytes(b"converted video" if self.convert_ok else b"partial")
        return self.convert_ok

    async def generate_contact_sheet(self, video_path: Path) -> Optional[Path]:
        self.sheets.append(video_path)
        if not self.sheet_ok or not video_path.exists():
            return None
        sheet = video_path.with_name(f"{video_path.stem}_contact_sheet.jpg")
        sheet.write_bytes(b"jpeg")
        return sheet


class FakeNotifier:
    def __init__(self):
        self.live_start: List[tuple] = []
        self.live_end: List[tuple] = []

    def notify_live_start(self, creator_name: str, creator_id: str) -> None:
        self.live_start.append((creator_name, creator_id))

    def notify_live_end(self, creator_name, creator_id, final_filename=None, contact_sheet_path=None) -> None:
        self.live_end.append((creator_name, creator_id, final_filename, contact_sheet_path))

    async def close(self, timeout: float = 10.0) -> None:
        pass


def text_message(data: str) -> aiohttp.WSMessage:
    return aiohttp.WSMessage(aiohttp.WSMsgType.TEXT, data, None)


def closed_message() -> aiohttp.WSMessage:
    return aiohttp.WSMessage(aiohttp.WSMsgType.CLOSED, None, None)


class FakeWebSocket:
    """In-memory websocket; frames to deliver are queued with feed()."""

    def __init__(self, auth_reply: Optional[str] = '{"t":1,"d":"{}"}'):
        self.sent: List[str] = []
        self.closed = False
        self._inbox: asyncio.Queue = asyncio.Queue()
        if auth_reply is not None:
            self.feed(text_message(auth_reply))

    def feed(self, message: aiohttp.WSMessage) -> None:
        self._inbox.put_nowait(message)

    async def send_str(self, data: str) -> None:
        if self.closed:
            raise ConnectionResetError("socket closed")
        self.sent.append(data)

    async def receive(self) -> aiohttp.WSMessage:
        return await self._inbox.get()

    async def close(self) -> None:
        self.closed = True


class FakeDialer:
    """ws_factory that hands out prepared sockets and records dial times."""

    def __init__(self, sockets: Optional[List[FakeWebSocket]] = None, make=None):
        self.sockets = list(sockets or [])
        self.make = make
        self.dial_times: List[float] = []

    async def __call__(self):
        self.dial_times.append(asyncio.get_running_loop().time())
        if self.sockets:
            return self.sockets.pop(0)
        if self.make is not None:
            return self.make()
        raise aiohttp.ClientConnectionError("no socket available")
