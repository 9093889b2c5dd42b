"""
LLM Layer: text generation, summaries and ``<think>`` handling.

The backend is an Ollama-compatible ``/api/generate`` endpoint called with
``stream: false``; an optional bearer key is forwarded for hosted services.
Reasoning models wrap their internal monologue in ``<think>...</think>``;
summaries drop it, advanced search returns it separately.
"""

import logging
import os
import re
from dataclasses import dataclass
from typing import Dict, Optional

import httpx

from garden.errors import BackendError, DataShapeError, InputError

logger = logging.getLogger(__name__)

# Config
OLLAMA_API_URL = os.getenv("OLLAMA_API_URL", "http://localhost:11434")
AI_SERVICE_URL = os.getenv("AI_SERVICE_URL", OLLAMA_API_URL)
AI_SERVICE_KEY = os.getenv("AI_SERVICE_KEY", "")
OLLAMA_MODEL = os.getenv("OLLAMA_MODEL", "current-default:latest")
LLM_TIMEOUT = float(os.getenv("LLM_TIMEOUT", "300"))

DEFAULT_SUMMARY_WORDS = 400

SUMMARY_PROMPT = (
    "I have read the following article of url {url}:\n\n\n===\n{content}\n\n===\n"
    "Now, what would be your summary of this article? Please use less than {max_words} words"
)

THINK_SPAN = re.compile(r"<think>(.*?)</think>", re.DOTALL)


@dataclass
class ParsedResponse:
    thinking: str
    answer: str
    full_response: str


def strip_think(text: str) -> str:
    """Remove the first ``<think>`` span and trim."""
    return THINK_SPAN.sub("", text, count=1).strip()


def parse_response(text: str) -> ParsedResponse:
    """Split an LLM response into its thinking and answer parts."""
    match = THINK_SPAN.search(text)
    if match is None:
        return ParsedResponse(thinking="", answer=text.strip(), full_response=text)

    thinking = match.group(1).strip()
    answer = (text[:match.start()] + text[match.end():]).strip()
    if not answer:
        answer = text.strip()
    return ParsedResponse(thinking=thinking, answer=answer, full_response=text)


class LLMClient:
    """Single operation: prompt -> response text."""

    def __init__(
        self,
        base_url: str = AI_SERVICE_URL,
        model: str = OLLAMA_MODEL,
        api_key: str = AI_SERVICE_KEY,
        timeout: float = LLM_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def generate(self, prompt: str) -> str:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            try:
                response = await client.post(
                    f"{self.base_url}/api/generate",
                    json={"model": self.model, "prompt": prompt, "stream": False},
                    headers=self._headers(),
                )
            except httpx.HTTPError as e:
                raise BackendError("llm", str(e) or e.__class__.__name__) from e

        if response.status_code != 200:
            raise BackendError(
                "llm",
                f"status {response.status_code}: {response.text}",
                status=response.status_code,
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise DataShapeError("llm: malformed JSON response") from e

        text = payload.get("response") if isinstance(payload, dict) else None
        if not isinstance(text, str):
            raise DataShapeError("llm: response has no 'response' field")
        return text


class Summarizer:
    def __init__(self, llm: LLMClient):
        self.llm = llm

    @staticmethod
    def build_prompt(content: str, url: str, max_words: int = DEFAULT_SUMMARY_WORDS) -> str:
        return SUMMARY_PROMPT.format(url=url, content=content, max_words=max_words)

    async def summarize(self, content: str, url: str, max_words: int = DEFAULT_SUMMARY_WORDS) -> str:
        if not content:
            raise InputError("content is required")
        if max_words <= 0:
            max_words = DEFAULT_SUMMARY_WORDS
        response = await self.llm.generate(self.build_prompt(content, url, max_words))
        summary = strip_think(response)
        logger.info(f"Summarized {url} in {len(summary.split())} words (limit {max_words})")
        return summary
