"""
Video download stage, built on yt-dlp.

yt-dlp is synchronous; the download runs in a worker thread so the event loop
keeps serving status streams while a video is fetched.
"""

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import yt_dlp

from .error_handling import UpstreamError
from .models import VideoInfo

logger = logging.getLogger(__name__)

DEFAULT_FORMAT = 'bestvideo[height<=720][ext=mp4]+bestaudio[ext=m4a]/best[ext=mp4]/best'


class DownloadError(UpstreamError):
    """The video could not be fetched."""

    def __init__(self, message: str, error_code: str = 'unknown',
                 cause: Optional[BaseException] = None):
        super().__init__(message, cause)
        self.error_code = error_code


@dataclass
class DownloadResult:
    video_path: Path
    info: VideoInfo


def categorize_error(error: Exception) -> str:
    """Map a yt-dlp error message onto a short error code."""
    error_str = str(error).lower()

    if 'private video' in error_str or 'video unavailable' in error_str:
        return 'unavailable'
    if 'deleted' in error_str or 'removed' in error_str:
        return 'deleted'
    if 'copyright' in error_str:
        return 'copyright'
    if '404' in error_str or 'not found' in error_str:
        return 'not_found'
    if '429' in error_str or 'rate limit' in error_str:
        return 'rate_limit'
    if 'connection' in error_str or 'timed out' in error_str or 'timeout' in error_str:
        return 'network'
    if 'disk' in error_str or 'no space' in error_str:
        return 'disk_full'
    return 'unknown'


def video_info_from_ytdlp(info: Dict[str, Any]) -> VideoInfo:
    """Pick the metadata fields kept on the job from a yt-dlp info dict."""
    return VideoInfo(
        video_id=info.get('id', ''),
        title=info.get('title') or '',
        description=info.get('description') or '',
        duration=info.get('duration'),
        thumbnail=info.get('thumbnail'),
        upload_date=info.get('upload_date'),
        uploader=info.get('uploader'),
        uploader_url=info.get('uploader_url'),
        view_count=info.get('view_count'),
        like_count=info.get('like_count'),
        tags=list(info.get('tags') or []),
    )


class YouTubeDownloader:
    """Downloads a single video into a job's working directory."""

    def __init__(self, format_str: str = DEFAULT_FORMAT, socket_timeout: int = 30):
        self.format_str = format_str
        self.socket_timeout = socket_timeout

    def build_options(self, work_dir: Path, video_id: str) -> Dict[str, Any]:
        return {
            'format': self.format_str,
            'outtmpl': str(work_dir / f'{video_id}.%(ext)s'),
            'merge_output_format': 'mp4',
            'noplaylist': True,
            'quiet': True,
            'no_warnings': True,
            'noprogress': True,
            'socket_timeout': self.socket_timeout,
        }

    def _download_sync(self, url: str, work_dir: Path, video_id: str) -> DownloadResult:
        ydl_opts = self.build_options(work_dir, video_id)

        with yt_dlp.YoutubeDL(ydl_opts) as ydl:
            try:
                info = ydl.extract_info(url, download=True)
            except yt_dlp.utils.DownloadError as e:
                code = categorize_error(e)
                raise DownloadError(f"Download failed ({code}): {e}", error_code=code, cause=e)

            if not info:
                raise DownloadError(f"No video information returned for {url}")

            video_path = self._locate_output(ydl, info, work_dir, video_id)

        if video_path is None:
            raise DownloadError(f"Download finished but no file was produced for {video_id}",
                                error_code='missing_output')

        logger.info(f"Downloaded {video_id} to {video_path}")
        return DownloadResult(video_path=video_path, info=video_info_from_ytdlp(info))

    @staticmethod
    def _locate_output(ydl, info: Dict[str, Any], work_dir: Path, video_id: str) -> Optional[Path]:
        for requested in info.get('requested_downloads') or []:
            filepath = requested.get('filepath')
            if filepath and Path(filepath).exists():
                return Path(filepath)

        prepared = Path(ydl.prepare_filename(info))
        if prepared.exists():
            return prepared

        candidates = sorted(p for p in work_dir.glob(f'{video_id}.*') if not p.name.endswith('.part'))
        return candidates[0] if candidates else None

    async def download(self, url: str, work_dir: Path, video_id: str) -> DownloadResult:
        """
        Download ``url`` into ``work_dir``.

        Raises:
            DownloadError: On any yt-dlp or filesystem failure
        """
        work_dir.mkdir(parents=True, exist_ok=True)
        try:
            return await asyncio.to_thread(self._download_sync, url, work_dir, video_id)
        except DownloadError:
            raise
        except OSError as e:
            raise DownloadError(f"Download failed: {e}", error_code='filesystem', cause=e)
