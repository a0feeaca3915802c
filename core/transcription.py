"""
AssemblyAI speech-to-text client.

Transcription is asynchronous on the provider side: ``submit`` returns an
external handle, ``poll_status`` reads its state once, and
``wait_until_terminal`` polls at a fixed interval until the provider reports
completed or error, or the attempt budget runs out.
"""

import asyncio
import inspect
import logging
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import httpx

from .error_handling import PipelineTimeoutError, UpstreamError
from .models import TranscriptionResult, TranscriptWord

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.assemblyai.com/v2"

QUEUED = "queued"
PROCESSING = "processing"
COMPLETED = "completed"
ERROR = "error"


class TranscriptionError(UpstreamError):
    """Base exception for transcription errors."""


class TranscriptionSubmitError(TranscriptionError):
    """The provider did not accept the audio."""


class TranscriptionStatusError(TranscriptionError):
    """A status request failed."""


class TranscriptionFailedError(TranscriptionError):
    """The provider finished the transcript with an error."""


class TranscriptionTimeoutError(PipelineTimeoutError):
    """Polling budget exhausted before the transcript finished."""


@dataclass
class TranscriptionConfig:
    language_code: str = "en"
    punctuate: bool = True
    format_text: bool = True
    speaker_labels: bool = True
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> Dict[str, Any]:
        payload = asdict(self)
        extra = payload.pop('extra')
        payload.update(extra)
        return payload


@dataclass
class TranscriptionStatus:
    """One observation of a provider-side transcription."""
    external_id: str
    status: str
    text: Optional[str] = None
    words: List[TranscriptWord] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (COMPLETED, ERROR)


StatusCallback = Callable[[TranscriptionStatus], Union[None, Awaitable[None]]]


def _parse_words(raw_words: Optional[List[Dict[str, Any]]]) -> List[TranscriptWord]:
    words = []
    for raw in raw_words or []:
        words.append(TranscriptWord(
            text=raw.get('text', ''),
            start_ms=int(raw.get('start') or 0),
            end_ms=int(raw.get('end') or 0),
            confidence=float(raw.get('confidence') or 0.0),
            speaker=raw.get('speaker'),
        ))
    return words


class AssemblyAIClient:
    """Thin async client over the AssemblyAI REST API."""

    def __init__(
        self,
        api_key: str,
        base_url: str = DEFAULT_BASE_URL,
        request_timeout: float = 60.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        if not api_key:
            raise ValueError("An AssemblyAI API key is required")
        self.api_key = api_key
        self.base_url = base_url.rstrip('/')
        self.request_timeout = request_timeout
        self._sleep = sleep

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.request_timeout,
            headers={
                "authorization": self.api_key,
                "User-Agent": "howtube/1.0",
            },
        )

    async def upload(self, audio_path: Path) -> str:
        """Upload a local audio file and return the provider-hosted URL."""
        audio_path = Path(audio_path)
        try:
            data = audio_path.read_bytes()
        except OSError as e:
            raise TranscriptionSubmitError(f"Cannot read audio file {audio_path}: {e}", cause=e)

        async with self._client() as client:
            try:
                response = await client.post(
                    "/upload",
                    content=data,
                    headers={"content-type": "application/octet-stream"},
                )
                response.raise_for_status()
            except httpx.TimeoutException as e:
                raise TranscriptionSubmitError(
                    f"Audio upload timed out after {self.request_timeout}s", cause=e
                )
            except httpx.HTTPStatusError as e:
                raise TranscriptionSubmitError(
                    f"Audio upload rejected ({e.response.status_code}): {e.response.text[:200]}", cause=e
                )
            except httpx.HTTPError as e:
                raise TranscriptionSubmitError(f"Audio upload failed: {e}", cause=e)

        upload_url = response.json().get('upload_url')
        if not upload_url:
            raise TranscriptionSubmitError("Upload response did not include an upload_url")
        return upload_url

    async def submit(self, audio_location: Union[str, Path],
                     config: Optional[TranscriptionConfig] = None) -> str:
        """
        Start a transcription.

        Args:
            audio_location: Public audio URL, or a local path to upload first
            config: Provider options

        Returns:
            External transcription id

        Raises:
            TranscriptionSubmitError: The audio could not be submitted
        """
        config = config or TranscriptionConfig()
        location = str(audio_location)
        if not location.startswith(('http://', 'https://')):
            location = await self.upload(Path(location))

        payload = {"audio_url": location, **config.to_payload()}

        async with self._client() as client:
            try:
                response = await client.post("/transcript", json=payload)
                response.raise_for_status()
            except httpx.TimeoutException as e:
                raise TranscriptionSubmitError(
                    f"Transcription submit timed out after {self.request_timeout}s", cause=e
                )
            except httpx.HTTPStatusError as e:
                raise TranscriptionSubmitError(
                    f"Transcription submit rejected ({e.response.status_code}): {e.response.text[:200]}",
                    cause=e
                )
            except httpx.HTTPError as e:
                raise TranscriptionSubmitError(f"Transcription submit failed: {e}", cause=e)

        external_id = response.json().get('id')
        if not external_id:
            raise TranscriptionSubmitError("Submit response did not include a transcript id")

        logger.info(f"Submitted transcription {external_id}")
        return external_id

    async def poll_status(self, external_id: str) -> TranscriptionStatus:
        """Read the current provider-side state once."""
        async with self._client() as client:
            try:
                response = await client.get(f"/transcript/{external_id}")
                response.raise_for_status()
            except httpx.TimeoutException as e:
                raise TranscriptionStatusError(
                    f"Status request for {external_id} timed out", cause=e
                )
            except httpx.HTTPStatusError as e:
                raise TranscriptionStatusError(
                    f"Status request for {external_id} failed ({e.response.status_code})", cause=e
                )
            except httpx.HTTPError as e:
                raise TranscriptionStatusError(f"Status request for {external_id} failed: {e}", cause=e)

        body = response.json()
        status = body.get('status')
        if status not in (QUEUED, PROCESSING, COMPLETED, ERROR):
            raise TranscriptionStatusError(f"Unexpected transcription status {status!r}")

        return TranscriptionStatus(
            external_id=external_id,
            status=status,
            text=body.get('text'),
            words=_parse_words(body.get('words')) if status == COMPLETED else [],
            error=body.get('error'),
        )

    async def wait_until_terminal(
        self,
        external_id: str,
        interval_seconds: float = 2.0,
        max_attempts: int = 300,
        on_status_change: Optional[StatusCallback] = None,
    ) -> TranscriptionResult:
        """
        Poll until the transcription completes.

        ``on_status_change`` is called (and awaited if it returns an awaitable)
        only when the observed status differs from the previous poll.

        Raises:
            TranscriptionFailedError: Provider reported an error
            TranscriptionTimeoutError: ``max_attempts`` polls without a terminal status
            TranscriptionStatusError: A status request failed
        """
        last_status = None

        for attempt in range(max_attempts):
            current = await self.poll_status(external_id)

            if current.status != last_status:
                logger.debug(f"Transcription {external_id}: {last_status} -> {current.status}")
                last_status = current.status
                if on_status_change is not None:
                    outcome = on_status_change(current)
                    if inspect.isawaitable(outcome):
                        await outcome

            if current.status == COMPLETED:
                return TranscriptionResult(
                    external_id=external_id,
                    text=current.text or '',
                    words=current.words,
                )
            if current.status == ERROR:
                raise TranscriptionFailedError(
                    f"Transcription failed: {current.error or 'unknown provider error'}"
                )

            if attempt < max_attempts - 1:
                await self._sleep(interval_seconds)

        raise TranscriptionTimeoutError(
            f"Transcription timed out after {max_attempts} status checks"
        )

    async def delete(self, external_id: str) -> bool:
        """Delete a transcript on the provider side. Failures are logged, not raised."""
        async with self._client() as client:
            try:
                response = await client.delete(f"/transcript/{external_id}")
                response.raise_for_status()
            except httpx.HTTPError as e:
                logger.warning(f"Failed to delete remote transcript {external_id}: {e}")
                return False
        logger.info(f"Deleted remote transcript {external_id}")
        return True
