"""
Plain data carriers passed between pipeline stages.
"""

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from .error_handling import ValidationError


class GuideStyle(Enum):
    DEFAULT = "default"
    CONCISE = "concise"
    DETAILED = "detailed"


class Difficulty(Enum):
    BEGINNER = "beginner"
    INTERMEDIATE = "intermediate"
    ADVANCED = "advanced"


@dataclass
class TranscriptWord:
    """A single timed word; times are milliseconds from the start of the audio."""
    text: str
    start_ms: int
    end_ms: int
    confidence: float = 0.0
    speaker: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        if self.speaker is None:
            data.pop('speaker')
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TranscriptWord":
        return cls(
            text=data['text'],
            start_ms=int(data['start_ms']),
            end_ms=int(data['end_ms']),
            confidence=float(data.get('confidence') or 0.0),
            speaker=data.get('speaker'),
        )


@dataclass
class TranscriptionResult:
    """Final transcript returned by the transcription provider."""
    external_id: str
    text: str
    words: List[TranscriptWord] = field(default_factory=list)

    def words_as_dicts(self) -> List[Dict[str, Any]]:
        return [w.to_dict() for w in self.words]


@dataclass
class VideoInfo:
    """Metadata extracted by the downloader."""
    video_id: str
    title: str = ""
    description: str = ""
    duration: Optional[float] = None
    thumbnail: Optional[str] = None
    upload_date: Optional[str] = None
    uploader: Optional[str] = None
    uploader_url: Optional[str] = None
    view_count: Optional[int] = None
    like_count: Optional[int] = None
    tags: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class GuideConfig:
    """Options controlling guide generation."""
    style: str = GuideStyle.DETAILED.value
    target_audience: str = Difficulty.INTERMEDIATE.value
    max_length: int = 2000
    include_timestamps: bool = False

    def __post_init__(self):
        styles = {s.value for s in GuideStyle}
        audiences = {d.value for d in Difficulty}
        if self.style not in styles:
            raise ValidationError(f"style must be one of {sorted(styles)}, got {self.style!r}")
        if self.target_audience not in audiences:
            raise ValidationError(
                f"target_audience must be one of {sorted(audiences)}, got {self.target_audience!r}"
            )
        if not isinstance(self.max_length, int) or self.max_length <= 0:
            raise ValidationError(f"max_length must be a positive integer, got {self.max_length!r}")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]], defaults: Optional["GuideConfig"] = None) -> "GuideConfig":
        """Build a config from a partial mapping, filling gaps from ``defaults``."""
        base = (defaults or cls()).to_dict()
        if data:
            unknown = set(data) - set(base)
            if unknown:
                raise ValidationError(f"Unknown guide options: {', '.join(sorted(unknown))}")
            base.update({k: v for k, v in data.items() if v is not None})
        return cls(**base)


@dataclass
class GuideSectionContent:
    title: str
    content: str
    start_ms: Optional[int] = None
    end_ms: Optional[int] = None


@dataclass
class GeneratedGuide:
    """Guide produced by the generator, not yet persisted."""
    title: str
    summary: str
    sections: List[GuideSectionContent]
    keywords: List[str]
    difficulty: str
