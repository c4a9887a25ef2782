"""
External media processes for the Fansly live recorder.
Wraps ffmpeg, ffprobe and mt for capture, conversion and contact sheets.
"""

import asyncio
import shlex
from pathlib import Path
from typing import List, Optional

from .config import LiveSettingsConfig
from .errors import ProcessError
from .logger import get_logger


DEFAULT_RECORDING_OPTIONS = [
    '-c', 'copy',
    '-movflags', 'use_metadata_tags',
    '-map_metadata', '0',
    '-timeout', '300',
    '-reconnect', '300',
    '-reconnect_at_eof', '300',
    '-reconnect_streamed', '300',
    '-reconnect_delay_max', '300',
    '-rtmp_live', 'live',
]

DEFAULT_CONVERSION_OPTIONS = ['-c', 'copy']

CONTACT_SHEET_COLUMNS = 4
CONTACT_SHEET_ROWS = 6
CONTACT_SHEET_SUFFIX = "_contact_sheet.jpg"


def contact_sheet_path(video_path: Path) -> Path:
    return video_path.with_name(f"{video_path.stem}{CONTACT_SHEET_SUFFIX}")


class Transcoder:
    """
    Spawns the external processes used by a recording session.

    Success of every one-shot process is decided by its exit status only.
    """

    def __init__(self, settings: LiveSettingsConfig):
        """
        Initialize transcoder.

        Args:
            settings: Live settings snapshot (tool paths and option strings).
        """
        self.settings = settings
        self._logger = get_logger('transcoder')

    def recording_options(self) -> List[str]:
        if self.settings.ffmpeg_recording_options.strip():
            return shlex.split(self.settings.ffmpeg_recording_options)
        return list(DEFAULT_RECORDING_OPTIONS)

    def conversion_options(self) -> List[str]:
        if self.settings.ffmpeg_conversion_options.strip():
            return shlex.split(self.settings.ffmpeg_conversion_options)
        return list(DEFAULT_CONVERSION_OPTIONS)

    def capture_command(self, url: str, output_path: Path) -> List[str]:
        return [self.settings.ffmpeg_path, '-i', url, *self.recording_options(), str(output_path)]

    async def start_capture(self, url: str, output_path: Path) -> asyncio.subprocess.Process:
        """
        Start ffmpeg pulling the live stream into output_path.

        Returns:
            The running process. The caller owns its lifecycle.

        Raises:
            ProcessError: If ffmpeg could not be started.
        """
        cmd = self.capture_command(url, output_path)
        self._logger.debug(f"Starting capture: {' '.join(cmd)}")
        try:
            return await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL
            )
        except OSError as e:
            raise ProcessError(f"Failed to start ffmpeg: {e}") from e

    async def _run(self, cmd: List[str]) -> bytes:
        """Run a one-shot process, returning stdout. Raises ProcessError on failure."""
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE
            )
        except OSError as e:
            raise ProcessError(f"Failed to start {cmd[0]}: {e}") from e

        stdout, stderr = await process.communicate()
        if process.returncode != 0:
            tail = stderr.decode(errors='replace').strip()[-500:]
            raise ProcessError(f"{Path(cmd[0]).name} exited with {process.returncode}: {tail}")
        return stdout

    async def convert_to_mp4(self, src: Path, dst: Path) -> bool:
        """
        Remux a capture into an MP4 container.

        Args:
            src: Captured file.
            dst: MP4 destination.

        Returns:
            True if ffmpeg exited successfully.
        """
        cmd = [self.settings.ffmpeg_path, '-y', '-i', str(src), *self.conversion_options(), str(dst)]
        self._logger.info(f"Converting {src.name} to MP4")
        try:
            await self._run(cmd)
        except ProcessError as e:
            self._logger.error(f"Conversion failed: {e}")
            return False
        return True

    async def probe_duration(self, path: Path) -> float:
        """
        Get video duration in seconds.

        Returns:
            Duration in seconds, 0.0 if it could not be determined.
        """
        try:
            stdout = await self._run([
                self.settings.ffprobe_path,
                '-v', 'error',
                '-show_entries', 'format=duration',
                '-of', 'default=noprint_wrappers=1:nokey=1',
                str(path)
            ])
            return float(stdout.decode().strip())
        except (ProcessError, ValueError) as e:
            self._logger.error(f"Failed to get duration: {e}")
            return 0.0

    async def generate_contact_sheet(self, video_path: Path) -> Optional[Path]:
        """
        Render a thumbnail grid for a finished recording.

        Args:
            video_path: Final video file.

        Returns:
            Path of the sheet, or None on failure.
        """
        sheet = contact_sheet_path(video_path)
        numcaps = CONTACT_SHEET_COLUMNS * CONTACT_SHEET_ROWS

        if self.settings.use_mt_for_contact_sheet:
            cmd = [
                self.settings.mt_path,
                f'--columns={CONTACT_SHEET_COLUMNS}',
                f'--numcaps={numcaps}',
                '--header-meta',
                '--fast',
                f'--output={sheet}',
                str(video_path),
            ]
        else:
            duration = await self.probe_duration(video_path)
            if duration <= 0:
                self._logger.error(f"Cannot build contact sheet for {video_path.name}: unknown duration")
                return None

            interval = duration / numcaps
            video_filter = (
                f"select='if(eq(0,n),1,gte(t-prev_selected_t,{interval:f}))',"
                "setpts=PTS-STARTPTS,scale=640:360,"
                "drawtext=text='%{pts\\:hms}':x=w-tw-5:y=h-th-5:fontsize=14:fontcolor=white:"
                "box=1:boxcolor=black@1.0:boxborderw=5,"
                f"tile={CONTACT_SHEET_COLUMNS}x{CONTACT_SHEET_ROWS}"
            )
            cmd = [
                self.settings.ffmpeg_path, '-y',
                '-i', str(video_path),
                '-vf', video_filter,
                '-frames:v', '1',
                '-q:v', '1',
                str(sheet),
            ]

        try:
            await self._run(cmd)
        except ProcessError as e:
            self._logger.error(f"Contact sheet failed: {e}")
            return None

        if not sheet.exists():
            self._logger.error(f"Contact sheet tool reported success but {sheet.name} is missing")
            return None

        self._logger.info(f"Contact sheet created: {sheet.name}")
        return sheet
