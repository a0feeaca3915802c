"""
Audio extraction stage: video file -> mp3 via ffmpeg.

ffmpeg runs as an asyncio subprocess under a hard wall-clock limit. When the
limit is hit the process is killed and reaped before the stage fails, so no
orphaned encoder keeps running after the job is marked as failed.
"""

import asyncio
import logging
from pathlib import Path
from typing import List, Optional

from .error_handling import PipelineTimeoutError, UpstreamError

logger = logging.getLogger(__name__)


class AudioExtractionError(UpstreamError):
    """ffmpeg failed or produced no usable output."""


class AudioExtractionTimeoutError(PipelineTimeoutError):
    """ffmpeg exceeded the extraction time limit and was killed."""


class AudioExtractor:
    """Extracts the audio track of a video into an mp3 file."""

    def __init__(self, timeout: float = 300.0, ffmpeg_binary: str = "ffmpeg"):
        self.timeout = timeout
        self.ffmpeg_binary = ffmpeg_binary

    def build_command(self, video_path: Path, output_path: Path) -> List[str]:
        return [
            self.ffmpeg_binary,
            '-hide_banner',
            '-loglevel', 'error',
            '-y',
            '-i', str(video_path),
            '-vn',
            '-acodec', 'libmp3lame',
            '-q:a', '4',
            str(output_path),
        ]

    async def extract(self, video_path: Path, output_path: Optional[Path] = None) -> Path:
        """
        Extract audio from ``video_path``.

        Args:
            video_path: Downloaded video file
            output_path: Destination; defaults to the video path with an .mp3 suffix

        Returns:
            Path of the non-empty audio file

        Raises:
            AudioExtractionTimeoutError: ffmpeg ran longer than ``timeout`` seconds
            AudioExtractionError: ffmpeg missing, failed, or wrote nothing
        """
        video_path = Path(video_path)
        output_path = Path(output_path) if output_path else video_path.with_suffix('.mp3')

        if not video_path.exists():
            raise AudioExtractionError(f"Video file not found: {video_path}")

        cmd = self.build_command(video_path, output_path)
        logger.info(f"Extracting audio: {video_path.name} -> {output_path.name}")

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise AudioExtractionError(f"Audio tool not found: {cmd[0]}", cause=e)
        except OSError as e:
            raise AudioExtractionError(f"Could not start audio extraction: {e}", cause=e)

        try:
            _, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            await self._kill(process)
            raise AudioExtractionTimeoutError(
                f"Audio extraction timed out after {self.timeout:g} seconds"
            )
        except asyncio.CancelledError:
            await self._kill(process)
            raise

        if process.returncode != 0:
            detail = (stderr or b'').decode('utf-8', errors='replace').strip()[-500:]
            raise AudioExtractionError(
                f"Audio extraction failed with exit code {process.returncode}: {detail or 'no output'}"
            )

        if not output_path.exists() or output_path.stat().st_size == 0:
            raise AudioExtractionError(f"Audio extraction produced no output at {output_path}")

        logger.info(f"Extracted audio {output_path} ({output_path.stat().st_size} bytes)")
        return output_path

    @staticmethod
    async def _kill(process) -> None:
        if process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass
        await process.wait()
        logger.warning(f"Killed audio extraction process {process.pid}")
