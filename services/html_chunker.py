"""
HTML chunker - split a listing page into bounded-size slices for AI extraction.

Chunks are measured in UTF-8 bytes. A chunk preferably ends right after a
block-level closing tag (or line break) found in the last `tolerance` share of
the window, so one listing is rarely cut in half; otherwise it is hard-split
at a character boundary.
"""

from __future__ import annotations

import re
from typing import List, Optional

from bs4 import BeautifulSoup, Comment

from app.models.show_extraction import RawChunk

DEFAULT_MAX_BYTES = 25_000
DEFAULT_TOLERANCE = 0.2
MIN_MAX_BYTES = 16

_NOISE_TAGS = ("script", "style", "noscript", "svg", "iframe", "template", "link", "meta")

_BLOCK_BOUNDARY_RE = re.compile(
    rb"</(?:div|li|tr|p|article|section|table|tbody|ul|ol|dl|dd|h[1-6])\s*>|<br\s*/?>|<hr\s*/?>",
    re.IGNORECASE,
)
_LINE_BOUNDARY_RE = re.compile(rb"\n")
_BLANK_LINES_RE = re.compile(r"\n\s*\n+")
_INLINE_WS_RE = re.compile(r"[ \t\r\f\v]{2,}")


def strip_noise(html: str) -> str:
    """Drop markup that never carries listing content (scripts, styles, comments...)."""
    if not html:
        return ""
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(_NOISE_TAGS):
        tag.decompose()
    for comment in soup.find_all(string=lambda node: isinstance(node, Comment)):
        comment.extract()
    text = str(soup)
    text = _INLINE_WS_RE.sub(" ", text)
    text = _BLANK_LINES_RE.sub("\n", text)
    return text.strip()


def _last_boundary(data: bytes, lo: int, hi: int) -> Optional[int]:
    for pattern in (_BLOCK_BOUNDARY_RE, _LINE_BOUNDARY_RE):
        last_end: Optional[int] = None
        for match in pattern.finditer(data, lo, hi):
            last_end = match.end()
        if last_end is not None and last_end > lo:
            return last_end
    return None


def _char_safe_cut(data: bytes, start: int, end: int) -> int:
    cut = end
    # never start the next chunk on a UTF-8 continuation byte
    while cut > start and cut < len(data) and (data[cut] & 0xC0) == 0x80:
        cut -= 1
    return cut if cut > start else end


def split_bytes(
    text: str,
    max_bytes: int,
    *,
    tolerance: float = DEFAULT_TOLERANCE,
) -> List[str]:
    if max_bytes < MIN_MAX_BYTES:
        raise ValueError(f"max_bytes must be >= {MIN_MAX_BYTES}")
    tolerance = min(max(tolerance, 0.0), 0.99)

    data = text.encode("utf-8")
    pieces: List[str] = []
    start = 0
    total = len(data)
    while start < total:
        end = min(start + max_bytes, total)
        if end < total:
            window_lo = max(start, end - int(max_bytes * tolerance))
            cut = _last_boundary(data, window_lo, end)
            end = cut if cut is not None else _char_safe_cut(data, start, end)
        pieces.append(data[start:end].decode("utf-8"))
        start = end
    return pieces


def chunk_html(
    html: str,
    max_bytes: int = DEFAULT_MAX_BYTES,
    *,
    source_url: str,
    tolerance: float = DEFAULT_TOLERANCE,
    strip: bool = True,
) -> List[RawChunk]:
    """
    Split `html` into ordered chunks of at most `max_bytes` UTF-8 bytes.

    Whitespace-only slices are dropped; sequence_index stays contiguous.
    """
    body = strip_noise(html) if strip else (html or "").strip()
    if not body:
        return []

    chunks: List[RawChunk] = []
    for piece in split_bytes(body, max_bytes, tolerance=tolerance):
        if not piece.strip():
            continue
        chunks.append(
            RawChunk(
                source_url=source_url,
                html_fragment=piece,
                sequence_index=len(chunks),
            )
        )
    return chunks
