"""AI tagging through an OpenAI-compatible chat completions API (OpenAI or Ollama)."""
import base64
import json
import logging
from dataclasses import dataclass, field
from typing import Protocol

import httpx

from services.exceptions import PermanentUpstreamError, TransientUpstreamError

logger = logging.getLogger(__name__)

TEXT_PROMPT = """You are a bot that assigns tags to saved bookmarks.
Analyze the content below and suggest between 3 and 5 relevant tags in {language}.
Tags are short lowercase topics (one or two words, e.g. "python", "machine learning").
Also write a one or two sentence summary in {language}.
Ignore cookie banners, navigation and other boilerplate.
Respond only with a JSON object of the form {{"tags": ["..."], "summary": "..."}}.

CONTENT START
{content}
CONTENT END"""

IMAGE_PROMPT = """You are a bot that assigns tags to saved images.
Describe what the image shows using between 3 and 5 relevant tags in {language}.
Tags are short lowercase topics (one or two words).
Also write a one sentence summary in {language}.
Respond only with a JSON object of the form {{"tags": ["..."], "summary": "..."}}."""


@dataclass
class TaggingResult:
    """Tags and optional summary returned by the tagger."""

    tags: list[str] = field(default_factory=list)
    summary: str | None = None


class AITagger(Protocol):
    """Capability that infers tags (and a summary) for bookmark content."""

    async def tag(self, text: str, language: str | None = None) -> TaggingResult:
        """
        Tag text content.

        Raises:
            TransientUpstreamError: Provider unavailable, rate limited or
                returned an unusable response.
            PermanentUpstreamError: Content rejected by the provider.
        """
        ...

    async def tag_image(
        self,
        data: bytes,
        content_type: str,
        language: str | None = None,
    ) -> TaggingResult:
        """Tag an image. Raises like `tag`."""
        ...


def parse_tagging_response(raw: str) -> TaggingResult:
    """
    Parse the model's JSON answer.

    Raises:
        TransientUpstreamError: If the answer is not the expected JSON shape;
            models sometimes produce malformed output, so a retry may succeed.
    """
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise TransientUpstreamError(f"Tagger returned invalid JSON: {e}") from e
    if not isinstance(data, dict) or not isinstance(data.get("tags"), list):
        raise TransientUpstreamError("Tagger response is missing a 'tags' list")

    tags = [t.strip() for t in data["tags"] if isinstance(t, str) and t.strip()]
    summary = data.get("summary")
    if not isinstance(summary, str) or not summary.strip():
        summary = None
    return TaggingResult(tags=tags, summary=summary.strip() if summary else None)


class OpenAITagger:
    """AITagger backed by `/chat/completions` with JSON output."""

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        *,
        text_model: str = "gpt-4o-mini",
        image_model: str = "gpt-4o-mini",
        language: str = "english",
        max_content_chars: int = 6000,
        timeout: float = 60.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.text_model = text_model
        self.image_model = image_model
        self.language = language
        self.max_content_chars = max_content_chars
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._client = client or httpx.AsyncClient(timeout=timeout, headers=headers)

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    async def tag(self, text: str, language: str | None = None) -> TaggingResult:
        """Tag text, truncated to the configured number of characters."""
        prompt = TEXT_PROMPT.format(
            language=language or self.language,
            content=text[: self.max_content_chars],
        )
        return await self._complete(self.text_model, [{"role": "user", "content": prompt}])

    async def tag_image(
        self,
        data: bytes,
        content_type: str,
        language: str | None = None,
    ) -> TaggingResult:
        """Tag an image sent inline as a base64 data URL."""
        encoded = base64.b64encode(data).decode("ascii")
        prompt = IMAGE_PROMPT.format(language=language or self.language)
        messages = [
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": prompt},
                    {
                        "type": "image_url",
                        "image_url": {"url": f"data:{content_type};base64,{encoded}"},
                    },
                ],
            },
        ]
        return await self._complete(self.image_model, messages)

    async def _complete(self, model: str, messages: list[dict]) -> TaggingResult:
        try:
            response = await self._client.post(
                f"{self.base_url}/chat/completions",
                json={
                    "model": model,
                    "messages": messages,
                    "response_format": {"type": "json_object"},
                },
            )
        except httpx.TimeoutException as e:
            raise TransientUpstreamError("Tagger request timed out") from e
        except httpx.RequestError as e:
            raise TransientUpstreamError(f"Tagger request failed: {e}") from e

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientUpstreamError(f"Tagger provider error: HTTP {response.status_code}")
        if response.status_code >= 400:
            # 4xx other than rate limiting: the request itself is rejected
            raise PermanentUpstreamError(
                f"Tagger rejected content: HTTP {response.status_code} {response.text[:200]}",
            )

        try:
            choice = response.json()["choices"][0]
            content = choice["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise TransientUpstreamError("Tagger returned an unexpected response body") from e

        if choice.get("finish_reason") == "content_filter":
            raise PermanentUpstreamError("Tagger refused the content (content filter)")
        if not content:
            raise TransientUpstreamError("Tagger returned an empty answer")

        result = parse_tagging_response(content)
        logger.debug("Tagger (%s) returned %d tag(s)", model, len(result.tags))
        return result
