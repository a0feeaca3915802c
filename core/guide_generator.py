"""
Transcript -> guide generation with OpenAI chat completions.

Three kinds of calls are made in order: one structure call (JSON mode) that
returns the title, summary and section titles; one content call per section;
and one keyword extraction call. Any failure aborts the whole guide.
"""

import json
import logging
import re
from typing import Any, Dict, List, Optional, Sequence, Tuple

import jinja2
import openai

from .error_handling import UpstreamError
from .models import GeneratedGuide, GuideConfig, GuideSectionContent, TranscriptWord

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gpt-4-turbo-preview"

_env = jinja2.Environment(
    autoescape=False,
    trim_blocks=True,
    lstrip_blocks=True,
    undefined=jinja2.StrictUndefined,
)

SYSTEM_TEMPLATE = _env.from_string(
    "You are an expert content writer specializing in creating educational guides from video transcripts.\n"
    "Your task is to create a well-structured {{ style }} guide for {{ audience }}-level audience.\n"
    "The guide should be informative, engaging, and easy to follow.\n"
    "Keep the total content within {{ max_length }} characters.\n"
    "{% if include_timestamps %}Include relevant timestamps for each section.\n{% endif %}"
    "Focus on extracting key concepts, steps, and insights from the transcript."
)

STRUCTURE_TEMPLATE = _env.from_string(
    "Please analyze this transcript and create a guide structure. Respond with a JSON object "
    "with the keys \"title\" (string), \"summary\" (string) and \"sections\" "
    "(a list of objects, each with a \"title\").\n"
    "{{ transcript }}"
)

SECTION_TEMPLATE = _env.from_string(
    "{{ system }}\n"
    "Focus on creating detailed content for this section: \"{{ title }}\""
)

KEYWORDS_PROMPT = "Extract 5-10 relevant keywords or key phrases from the transcript."

_SENTENCE_SPLIT = re.compile(r'[.,!?]')
_KEYWORD_SPLIT = re.compile(r'[,\n]')


class GuideGenerationError(UpstreamError):
    """The guide could not be generated."""


class GuideStructureError(GuideGenerationError):
    """The structure response was not valid JSON of the expected shape."""


def content_keywords(content: str) -> List[str]:
    """Lowercased tokens longer than four characters, in order of first appearance."""
    seen = set()
    keywords = []
    for sentence in _SENTENCE_SPLIT.split(content):
        for word in sentence.split():
            word = word.lower()
            if len(word) > 4 and word not in seen:
                seen.add(word)
                keywords.append(word)
    return keywords


def align_timestamps(content: str, words: Sequence[TranscriptWord]) -> Optional[Tuple[int, int]]:
    """
    Find the transcript span a section talks about.

    A transcript word matches when its lowercased text contains any keyword
    of the section content. The span runs from the first match's start to the
    last match's end; None when nothing matches.
    """
    keywords = content_keywords(content)
    if not keywords:
        return None

    matches = [w for w in words if any(k in w.text.lower() for k in keywords)]
    if not matches:
        return None
    return matches[0].start_ms, matches[-1].end_ms


def parse_keywords(raw: Optional[str]) -> List[str]:
    if not raw:
        return []
    return [k.strip() for k in _KEYWORD_SPLIT.split(raw) if k.strip()]


def parse_structure(raw: Optional[str]) -> Dict[str, Any]:
    """Validate the JSON structure response."""
    try:
        structure = json.loads(raw or '')
    except json.JSONDecodeError as e:
        raise GuideStructureError(f"Guide structure is not valid JSON: {e}", cause=e)

    if not isinstance(structure, dict):
        raise GuideStructureError("Guide structure must be a JSON object")

    title = structure.get('title')
    sections = structure.get('sections')
    if not isinstance(title, str) or not title.strip():
        raise GuideStructureError("Guide structure has no title")
    if not isinstance(sections, list) or not sections:
        raise GuideStructureError("Guide structure has no sections")

    titles = []
    for section in sections:
        section_title = section.get('title') if isinstance(section, dict) else section
        if not isinstance(section_title, str) or not section_title.strip():
            raise GuideStructureError("Every guide section needs a title")
        titles.append(section_title.strip())

    summary = structure.get('summary')
    return {
        'title': title.strip(),
        'summary': summary.strip() if isinstance(summary, str) else '',
        'sections': titles,
    }


class GuideGenerator:
    """Generates a structured guide from a transcript."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = DEFAULT_MODEL,
        temperature: float = 0.7,
        keywords_temperature: float = 0.5,
        client: Optional[Any] = None,
    ):
        if client is None:
            if not api_key:
                raise ValueError("An OpenAI API key is required")
            client = openai.AsyncOpenAI(api_key=api_key)
        self.client = client
        self.model = model
        self.temperature = temperature
        self.keywords_temperature = keywords_temperature

    @staticmethod
    def build_system_prompt(config: GuideConfig) -> str:
        return SYSTEM_TEMPLATE.render(
            style=config.style,
            audience=config.target_audience,
            max_length=config.max_length,
            include_timestamps=config.include_timestamps,
        )

    async def _complete(self, messages: List[Dict[str, str]], temperature: float,
                        json_mode: bool = False) -> str:
        kwargs = {
            'model': self.model,
            'messages': messages,
            'temperature': temperature,
        }
        if json_mode:
            kwargs['response_format'] = {'type': 'json_object'}

        response = await self.client.chat.completions.create(**kwargs)
        if not response.choices:
            raise GuideGenerationError("Model returned no choices")
        return response.choices[0].message.content or ''

    async def generate_guide(
        self,
        transcript: str,
        config: Optional[GuideConfig] = None,
        words: Optional[Sequence[TranscriptWord]] = None,
    ) -> GeneratedGuide:
        """
        Generate a guide.

        Args:
            transcript: Full transcript text
            config: Generation options
            words: Timed transcript words, used when timestamps are requested

        Raises:
            GuideStructureError: The structure response could not be used
            GuideGenerationError: Any other failure
        """
        config = config or GuideConfig()
        words = words or []

        if not transcript or not transcript.strip():
            raise GuideGenerationError("Cannot generate a guide from an empty transcript")

        system = self.build_system_prompt(config)

        try:
            raw_structure = await self._complete(
                [
                    {'role': 'system', 'content': system},
                    {'role': 'user', 'content': STRUCTURE_TEMPLATE.render(transcript=transcript)},
                ],
                temperature=self.temperature,
                json_mode=True,
            )
            structure = parse_structure(raw_structure)

            sections = []
            for title in structure['sections']:
                content = await self._complete(
                    [
                        {'role': 'system', 'content': SECTION_TEMPLATE.render(system=system, title=title)},
                        {'role': 'user', 'content': transcript},
                    ],
                    temperature=self.temperature,
                )

                section = GuideSectionContent(title=title, content=content)
                if config.include_timestamps:
                    span = align_timestamps(content, words)
                    if span:
                        section.start_ms, section.end_ms = span
                sections.append(section)

            raw_keywords = await self._complete(
                [
                    {'role': 'system', 'content': KEYWORDS_PROMPT},
                    {'role': 'user', 'content': transcript},
                ],
                temperature=self.keywords_temperature,
            )

        except GuideGenerationError:
            raise
        except openai.OpenAIError as e:
            logger.error(f"OpenAI request failed while generating guide: {e}")
            raise GuideGenerationError(f"Failed to generate guide: {e}", cause=e)
        except Exception as e:
            logger.error(f"Unexpected error while generating guide: {e}")
            raise GuideGenerationError("Failed to generate guide", cause=e)

        guide = GeneratedGuide(
            title=structure['title'],
            summary=structure['summary'],
            sections=sections,
            keywords=parse_keywords(raw_keywords),
            difficulty=config.target_audience,
        )
        logger.info(f"Generated guide '{guide.title}' with {len(sections)} sections")
        return guide
