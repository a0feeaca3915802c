"""
YouTube URL Parser Utility

Identifies submitted video URLs and extracts the 11-character video id:
- youtube.com/watch?v=VIDEO_ID (www, m., music.)
- youtu.be/VIDEO_ID
- youtube.com/embed/VIDEO_ID, /v/VIDEO_ID, /live/VIDEO_ID
- youtube.com/shorts/VIDEO_ID

Channel and playlist URLs are rejected: a job always processes exactly one video.
"""

import re
from enum import Enum
from typing import Any, Dict, Optional, Tuple
from urllib.parse import parse_qs, urlparse

from .error_handling import ValidationError

VIDEO_ID_RE = re.compile(r'^[A-Za-z0-9_-]{11}$')

YOUTUBE_HOSTS = {
    'youtube.com', 'www.youtube.com', 'm.youtube.com', 'music.youtube.com',
    'youtube-nocookie.com', 'www.youtube-nocookie.com',
}
SHORT_HOSTS = {'youtu.be', 'www.youtu.be'}


class URLType(Enum):
    """Types of YouTube URLs"""
    VIDEO = "video"          # youtube.com/watch?v=XXX
    SHORTS = "shorts"        # youtube.com/shorts/XXX
    INVALID = "invalid"


def is_valid_youtube_id(video_id: Optional[str]) -> bool:
    """
    Validate YouTube video ID format.

    >>> is_valid_youtube_id("dQw4w9WgXcQ")
    True
    >>> is_valid_youtube_id("abc")
    False
    """
    if not video_id or not isinstance(video_id, str):
        return False
    return bool(VIDEO_ID_RE.match(video_id))


class YouTubeURLParser:
    """Parses YouTube video URLs."""

    PATH_PATTERNS = [
        (re.compile(r'^/embed/([A-Za-z0-9_-]{11})(?:[/?]|$)'), URLType.VIDEO),
        (re.compile(r'^/v/([A-Za-z0-9_-]{11})(?:[/?]|$)'), URLType.VIDEO),
        (re.compile(r'^/live/([A-Za-z0-9_-]{11})(?:[/?]|$)'), URLType.VIDEO),
        (re.compile(r'^/shorts/([A-Za-z0-9_-]{11})(?:[/?]|$)'), URLType.SHORTS),
    ]

    def parse(self, url: str) -> Tuple[URLType, Optional[str], Dict[str, Any]]:
        """
        Parse a YouTube URL and return its type and video id.

        Returns:
            Tuple of (URLType, video_id, metadata); video_id is None for INVALID
        """
        if not url or not isinstance(url, str):
            return URLType.INVALID, None, {}

        url = url.strip()
        if not url.startswith(('http://', 'https://')):
            url = 'https://' + url

        try:
            parsed = urlparse(url)
        except ValueError:
            return URLType.INVALID, None, {}

        host = (parsed.hostname or '').lower()
        video_id = None
        url_type = URLType.INVALID

        if host in SHORT_HOSTS:
            candidate = parsed.path.lstrip('/').split('/')[0]
            if is_valid_youtube_id(candidate):
                video_id, url_type = candidate, URLType.VIDEO

        elif host in YOUTUBE_HOSTS:
            if parsed.path in ('/watch', '/watch/'):
                candidate = parse_qs(parsed.query).get('v', [None])[0]
                if is_valid_youtube_id(candidate):
                    video_id, url_type = candidate, URLType.VIDEO
            else:
                for pattern, kind in self.PATH_PATTERNS:
                    match = pattern.match(parsed.path)
                    if match:
                        video_id, url_type = match.group(1), kind
                        break

        if video_id is None:
            return URLType.INVALID, None, {}

        return url_type, video_id, {
            'video_id': video_id,
            'url_type': url_type.value,
            'original_url': url,
            'canonical_url': f'https://www.youtube.com/watch?v={video_id}',
        }

    def extract_video_id(self, url: str) -> Optional[str]:
        _, video_id, _ = self.parse(url)
        return video_id


# Convenience functions
_parser = YouTubeURLParser()


def is_valid_video_url(url: str) -> bool:
    return _parser.extract_video_id(url) is not None


def extract_video_id(url: str) -> Optional[str]:
    return _parser.extract_video_id(url)


def require_video_id(url: str) -> str:
    """Return the video id of ``url`` or raise ValidationError."""
    video_id = _parser.extract_video_id(url)
    if video_id is None:
        raise ValidationError(f"Not a supported video URL: {url!r}")
    return video_id
