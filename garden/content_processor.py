"""
Content Processor: turns a stored HTTP response into plain text.

Two strategies:
- reader: readability main-content extraction, converted to Markdown and
  prefixed with a title line and source attribution
- lynx: dump of the page rendered by the lynx terminal browser
"""

import asyncio
import logging
import os
import tempfile
from dataclasses import dataclass
from typing import Optional, Union
from urllib.parse import urlparse

import html2text
from bs4 import BeautifulSoup
from readability import Document

from garden.errors import ExtractionError

logger = logging.getLogger(__name__)

LYNX_BINARY = os.getenv("LYNX_BINARY", "lynx")
LYNX_USER_AGENT = "Mozilla/5.0"

FALLBACK_BASE_URL = "https://example.com"
NO_TITLE = "[no-title]"

NOT_HTML_MESSAGE = "Content is not HTML and cannot be processed"
PROCESSED_MESSAGE = "Bookmark processed successfully"


@dataclass
class ReaderResult:
    title: str
    content: str


def _as_text(body: Union[bytes, str]) -> str:
    if isinstance(body, bytes):
        return body.decode("utf-8", errors="replace")
    return body


def is_processable(content_type: str) -> bool:
    """Content-type gate: only text or html bodies are extracted."""
    content_type = (content_type or "").lower()
    return "text" in content_type or "html" in content_type


def _base_url(url: Optional[str]) -> str:
    if url:
        parsed = urlparse(url)
        if parsed.scheme and parsed.netloc:
            return url
    return FALLBACK_BASE_URL


def _drop_title_heading(article_html: str, title: str) -> str:
    """Remove a leading heading that repeats the title line we prepend."""
    soup = BeautifulSoup(article_html, "html.parser")
    heading = soup.find(["h1", "h2"])
    if heading is not None and title and heading.get_text(strip=True) == title.strip():
        heading.decompose()
    return str(soup)


def html_to_markdown(article_html: str, base_url: str = "") -> str:
    converter = html2text.HTML2Text(baseurl=base_url)
    converter.body_width = 0
    converter.ignore_images = False
    return converter.handle(article_html).strip()


def format_reader_output(title: str, url: Optional[str], markdown: str) -> str:
    header = f"# {title}\n"
    if url:
        header += f"(extracted from **{url}**)\n"
    return header + "\n" + markdown


def process_with_reader(body: Union[bytes, str], url: Optional[str] = None) -> ReaderResult:
    """Extract the main article and render it as attributed Markdown."""
    html = _as_text(body)

    if url and url.endswith("README.md"):
        return ReaderResult(title="", content=html)

    base_url = _base_url(url)
    try:
        document = Document(html, url=base_url)
        title = document.title()
        article_html = document.summary(html_partial=True)
    except Exception as e:
        raise ExtractionError("could not parse content: Readability failed") from e

    if title == NO_TITLE:
        title = ""
    title = title.strip()

    markdown = html_to_markdown(_drop_title_heading(article_html, title), base_url)
    return ReaderResult(title=title, content=format_reader_output(title, url, markdown))


async def process_with_lynx(body: Union[bytes, str]) -> str:
    """Render the page with lynx and return its text dump."""
    html = _as_text(body)
    handle = tempfile.NamedTemporaryFile(
        mode="w", prefix="bookmark-", suffix=".html", delete=False, encoding="utf-8"
    )
    try:
        with handle:
            handle.write(html)

        try:
            proc = await asyncio.create_subprocess_exec(
                LYNX_BINARY,
                f"-useragent={LYNX_USER_AGENT}",
                "-dump",
                handle.name,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise ExtractionError(f"lynx binary not found: {LYNX_BINARY}") from e

        try:
            stdout, stderr = await proc.communicate()
        except asyncio.CancelledError:
            proc.kill()
            raise

        if proc.returncode != 0:
            detail = stderr.decode("utf-8", errors="replace").strip()
            raise ExtractionError(f"lynx exited with status {proc.returncode}: {detail}")
        return stdout.decode("utf-8", errors="replace")
    finally:
        try:
            os.unlink(handle.name)
        except OSError as e:
            logger.warning(f"Could not remove scratch file {handle.name}: {e}")
