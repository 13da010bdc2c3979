"""Sentence-aware chunking with overlap that never splits fenced code blocks.

Provides:
- chunk_text: split a document into overlapping, size-bounded chunks
- estimate_tokens: rough token estimate (characters / 4)

Algorithm:
1. Replace fenced code blocks with placeholder tokens.
2. Split into sentence-like units ending in . ! or ? (the remainder is one unit).
3. Restore code blocks inside each unit before measuring it.
4. Greedily append units to a buffer; when the next unit would push the buffer past
   ``size`` the trimmed buffer is emitted and the new buffer starts with the last
   ``overlap`` characters of the emitted chunk followed by that unit.
5. The trailing buffer is emitted only if longer than ``min_chunk_size``.

``size`` is a soft target: a single unit longer than ``size`` is still emitted whole.
"""
import math
import re
from typing import List, Optional

from docchat.config import settings

CODE_BLOCK = re.compile(r"```[\s\S]*?```")
PLACEHOLDER = "__CODE_BLOCK_{}__"
PLACEHOLDER_RE = re.compile(r"__CODE_BLOCK_(\d+)__")
# Units tile the input: punctuation-terminated runs, then any unterminated tail
SENTENCE = re.compile(r"[^.!?]*[.!?]+|[^.!?]+")


def estimate_tokens(text: str) -> int:
    """Approximate token count used for the per-document ceiling."""
    return math.ceil(len(text) / 4)


def _split_units(text: str) -> List[str]:
    return SENTENCE.findall(text)


def chunk_text(
    text: str,
    size: Optional[int] = None,
    overlap: Optional[int] = None,
    min_chunk_size: Optional[int] = None,
) -> List[str]:
    """Split text into overlapping chunks while preserving code blocks.

    Args:
        text: Cleaned document text.
        size: Target chunk size in characters (defaults to settings.CHUNK_SIZE).
        overlap: Characters carried from the end of one chunk into the next
            (defaults to settings.CHUNK_OVERLAP).
        min_chunk_size: Trailing chunks at or below this length are dropped
            (defaults to settings.MIN_CHUNK_SIZE).

    Returns:
        List[str]: Ordered, trimmed chunks.
    """
    size = settings.CHUNK_SIZE if size is None else size
    overlap = settings.CHUNK_OVERLAP if overlap is None else overlap
    min_chunk_size = settings.MIN_CHUNK_SIZE if min_chunk_size is None else min_chunk_size
    if not text or not text.strip():
        return []

    code_blocks = CODE_BLOCK.findall(text)
    processed = text
    for i, block in enumerate(code_blocks):
        processed = processed.replace(block, PLACEHOLDER.format(i), 1)

    def restore(unit: str) -> str:
        return PLACEHOLDER_RE.sub(lambda m: code_blocks[int(m.group(1))], unit)

    chunks: List[str] = []
    current = ""
    for unit in _split_units(processed):
        sentence = restore(unit)
        if current and len(current) + len(sentence) > size:
            chunks.append(current.strip())
            tail = current[-overlap:] if overlap > 0 else ""
            current = tail + sentence
        else:
            current += sentence

    if len(current.strip()) > min_chunk_size:
        chunks.append(current.strip())
    return chunks
