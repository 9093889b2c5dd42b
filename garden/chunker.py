"""
Sentence Chunker for Embedding

Splits long text into chunks of at most ``chunk_size`` characters at sentence
and line boundaries. A single sentence longer than the limit becomes its own
chunk rather than being cut.
"""

import logging
import os
from typing import List

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = int(os.getenv("EMBED_CHUNK_SIZE", "8000"))

SENTENCE_TERMINATORS = ".!?"
BREAK_CHARS = (" ", "\n", "\r")


def split_sentences(text: str) -> List[str]:
    """Split on ``.``/``!``/``?`` followed by whitespace, or on a bare newline."""
    sentences = []
    current: List[str] = []
    length = len(text)

    for i, ch in enumerate(text):
        current.append(ch)
        if ch in SENTENCE_TERMINATORS and i + 1 < length and text[i + 1] in BREAK_CHARS:
            sentence = "".join(current).strip()
            if sentence:
                sentences.append(sentence)
            current = []
        elif ch == "\n" and len(current) > 1:
            sentence = "".join(current).strip()
            if sentence:
                sentences.append(sentence)
            current = []

    if current:
        sentence = "".join(current).strip()
        if sentence:
            sentences.append(sentence)

    return sentences


class SentenceChunker:
    """Greedy sentence packer."""

    def __init__(self, chunk_size: int = DEFAULT_CHUNK_SIZE):
        if chunk_size < 1:
            raise ValueError("chunk_size must be positive")
        self.chunk_size = chunk_size

    def chunk(self, text: str) -> List[str]:
        if not text:
            return []
        if len(text) <= self.chunk_size:
            return [text]

        chunks = []
        current = ""
        for sentence in split_sentences(text):
            if current and len(current) + len(sentence) + 1 > self.chunk_size:
                chunks.append(current.strip())
                current = sentence
            elif current:
                current = f"{current} {sentence}"
            else:
                current = sentence

        if current.strip():
            chunks.append(current.strip())

        logger.debug(f"Chunked {len(text)} chars into {len(chunks)} chunks (size {self.chunk_size})")
        return chunks
