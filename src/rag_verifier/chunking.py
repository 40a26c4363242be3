from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Sequence

from .logging import get_logger
from .schema import Chunk, ChunkLevel, PageText, SourceType

logger = get_logger(__name__)

# Sentence boundary candidates: terminal punctuation followed by whitespace,
# an ideographic full stop, or a line break.
_CANDIDATE = re.compile(r"[.!?]+(?=\s)|。|\n")
_TOKEN_BEFORE = re.compile(r"(\S+)$")

_ABBREVIATIONS = frozenset(
    {
        # figure, table and reference markers
        "fig", "figs", "tab", "tbl", "eq", "eqs", "ref", "refs", "ch", "vol", "cat",
        # honorifics
        "dr", "mr", "mrs", "ms", "prof", "sr", "jr",
        # latin and common abbreviations
        "e.g", "i.e", "etc", "vs", "cf", "approx", "ca", "al", "et al", "resp", "incl",
    }
)
_UNITS = frozenset(
    {
        "um", "µm", "μm", "nm", "mm", "cm", "m", "ul", "µl", "μl", "ml", "l", "mg", "ug", "µg",
        "μg", "ng", "g", "kg", "mol", "mmol", "umol", "µmol", "nmol", "pmol", "s", "sec", "min",
        "max", "h", "hr", "hrs", "rpm", "x", "°c", "℃", "v", "kv", "mv", "w", "bp", "kb", "kda", "psi",
    }
)
# Abbreviations that only ever precede a number ("No. 5", "pp. 12-14").
_NUMBERED_ABBREVIATIONS = frozenset({"no", "nos", "p", "pp"})
_INITIAL = re.compile(r"[A-Z]\.(?=\s|$)")
_NUMBER_MARKER = re.compile(r"\d+(?:\.\d+)*")

_MARKDOWN_HEADING = re.compile(r"^#{1,6}\s+\S")
_NUMBERED_HEADING = re.compile(r"^(?:\d+(?:\.\d+)*[.)]?|[IVX]+\.|[A-Z]\))\s+\S")
_KEYWORD_HEADING = re.compile(
    r"^(?:WARNING|CAUTION|DANGER|NOTE|IMPORTANT|PROCEDURE|PROTOCOL|TROUBLESHOOTING"
    r"|주의|경고|참고|절차|안전)\b\s*:?",
    re.IGNORECASE,
)
_MAX_HEADING_CHARS = 80


@dataclass(slots=True)
class _Span:
    start: int
    end: int

    @property
    def length(self) -> int:
        return self.end - self.start


@dataclass(slots=True)
class _Window:
    """Packed window; `first`/`last` index the source spans, None for forced splits."""

    start: int
    end: int
    first: int | None = None
    last: int | None = None


def _trimmed(text: str, start: int, end: int) -> _Span | None:
    while start < end and text[start].isspace():
        start += 1
    while end > start and text[end - 1].isspace():
        end -= 1
    return _Span(start, end) if end > start else None


def _next_visible_char(text: str, position: int) -> str | None:
    for char in text[position:]:
        if not char.isspace():
            return char
    return None


def _in_initials(fragment: str, text: str, punct_end: int) -> bool:
    """True when a single capital sits next to another initial, as in "J. R. Smith"."""
    words = fragment.split()
    if len(words) >= 2 and _INITIAL.fullmatch(words[-2]):
        return True
    return _INITIAL.match(text[punct_end:].lstrip()) is not None


def _inside_brackets(fragment: str) -> bool:
    depth = fragment.count("(") + fragment.count("[") - fragment.count(")") - fragment.count("]")
    return depth > 0


def _is_boundary(text: str, sentence_start: int, punct_start: int, punct_end: int) -> bool:
    punct = text[punct_start:punct_end]
    if punct.startswith(".."):
        return False
    if "." not in punct:
        return True

    fragment = text[sentence_start:punct_start]
    match = _TOKEN_BEFORE.search(fragment)
    token = match.group(1).lstrip("([{\"'") if match else ""
    lowered = token.lower()

    if lowered in _ABBREVIATIONS or lowered.rstrip(".") in _ABBREVIATIONS:
        return False
    if len(token) == 1 and token.isupper() and _in_initials(fragment, text, punct_end):
        return False
    if _NUMBER_MARKER.fullmatch(token) and fragment.strip() == token:
        return False
    if _inside_brackets(fragment):
        return False

    following = _next_visible_char(text, punct_end)
    if following is None:
        return True
    if lowered in _UNITS and (following.islower() or following.isdigit()):
        return False
    if lowered in _NUMBERED_ABBREVIATIONS and following.isdigit():
        return False
    if following.isascii() and following.islower():
        return False
    return True


def _sentence_spans(text: str) -> list[_Span]:
    spans: list[_Span] = []
    start = 0
    for match in _CANDIDATE.finditer(text):
        if match.group() == "\n":
            end = match.start()
        elif _is_boundary(text, start, match.start(), match.end()):
            end = match.end()
        else:
            continue
        span = _trimmed(text, start, end)
        if span is not None:
            spans.append(span)
        start = match.end()
    tail = _trimmed(text, start, len(text))
    if tail is not None:
        spans.append(tail)
    return spans


def split_into_sentences(text: str | None) -> list[str]:
    """Split text into sentences without breaking abbreviations or measurements.

    Boundaries are terminal punctuation followed by whitespace, the ideographic
    full stop, and line breaks. Decimal numbers, unit suffixes, bracketed
    figure references, honorific titles, Latin abbreviations and ellipses are
    never treated as boundaries.

    Args:
        text: Plain document text. `None` and blank text yield no sentences.

    Returns:
        Sentences in document order, stripped of surrounding whitespace.
    """
    if not text or not text.strip():
        return []
    return [text[span.start : span.end] for span in _sentence_spans(text)]


def is_heading(line: str) -> bool:
    """Return True for short heading-like lines.

    Recognised forms are markdown `#` headings, numbered section markers
    (`2.1 Setup`, `3) Wash`), short all-caps lines and safety/procedure
    keywords such as `WARNING:` or `주의`.
    """
    stripped = line.strip()
    if not stripped or len(stripped) > _MAX_HEADING_CHARS or "\n" in stripped:
        return False
    if _MARKDOWN_HEADING.match(stripped):
        return True
    if _KEYWORD_HEADING.match(stripped):
        return True
    if stripped[-1] in ".!?。":
        return False
    if _NUMBERED_HEADING.match(stripped):
        return True
    letters = [char for char in stripped if char.isalpha()]
    return len(letters) >= 3 and all(char.isupper() for char in letters) and len(stripped.split()) <= 8


def _attach_headings(text: str, spans: list[_Span]) -> list[_Span]:
    """Glue each heading to the following sentence so no chunk ends on a heading."""
    merged: list[_Span] = []
    pending_start: int | None = None
    for index, span in enumerate(spans):
        is_last = index == len(spans) - 1
        if not is_last and is_heading(text[span.start : span.end]):
            if pending_start is None:
                pending_start = span.start
            continue
        if pending_start is not None:
            span = _Span(pending_start, span.end)
            pending_start = None
        merged.append(span)
    return merged


def _force_split(text: str, start: int, end: int, size: int) -> list[_Window]:
    windows: list[_Window] = []
    for position in range(start, end, size):
        piece = _trimmed(text, position, min(position + size, end))
        if piece is not None:
            windows.append(_Window(piece.start, piece.end))
    return windows


def _pack(text: str, spans: Sequence[_Span], size: int, overlap: int) -> list[_Window]:
    """Greedily pack consecutive spans into windows of at most `size` characters.

    When a window closes, the next one is seeded with up to `overlap` trailing
    spans of the closed window, as long as the seed still leaves room for the
    next span. Spans longer than `size` are force-split without overlap.
    """
    windows: list[_Window] = []
    index = 0
    while index < len(spans):
        first = spans[index]
        if first.length > size:
            windows.extend(_force_split(text, first.start, first.end, size))
            index += 1
            continue

        stop = index + 1
        while stop < len(spans) and spans[stop].end - first.start <= size:
            stop += 1
        windows.append(_Window(first.start, spans[stop - 1].end, index, stop - 1))
        if stop >= len(spans):
            break

        following = max(index + 1, stop - overlap)
        while following < stop and spans[stop].end - spans[following].start > size:
            following += 1
        index = following
    return windows


def pages_from_texts(page_texts: Sequence[str], start_page: int = 1) -> list[PageText]:
    """Build `PageText` records whose offsets match joining the pages with one space."""
    pages: list[PageText] = []
    offset = 0
    for number, page_text in enumerate(page_texts, start=start_page):
        pages.append(PageText(number, page_text, offset, offset + len(page_text)))
        offset += len(page_text) + 1
    return pages


def resolve_page_range(start: int, end: int, pages: Sequence[PageText]) -> tuple[int | None, int | None]:
    """Return the first and last page numbers covered by `[start, end)`.

    Args:
        start: Chunk start offset in the joined text.
        end: Chunk end offset (exclusive).
        pages: Page segmentation of the joined text.

    Returns:
        `(page_start, page_end)`; both `None` when no page covers the range.
    """
    page_start: int | None = None
    page_end: int | None = None
    for page in pages:
        if page.start_offset <= start < page.end_offset:
            page_start = page.page_number
        if page.start_offset < end <= page.end_offset:
            page_end = page.page_number
    if page_start is None:
        page_start = page_end
    if page_end is None:
        page_end = page_start
    return page_start, page_end


class HierarchicalChunker:
    """Split document text into PARENT context blocks and CHILD retrieval units."""

    def __init__(self, parent_size: int = 1500, child_size: int = 400, overlap_sentences: int = 2):
        """Configure target sizes in characters.

        Args:
            parent_size: Target maximum length of a PARENT chunk.
            child_size: Target maximum length of a CHILD chunk.
            overlap_sentences: Trailing sentences carried into the next parent.
        """
        if child_size <= 0 or parent_size <= 0:
            raise ValueError("chunk sizes must be positive")
        if child_size > parent_size:
            raise ValueError("child_size must not exceed parent_size")
        self.parent_size = parent_size
        self.child_size = child_size
        self.overlap_sentences = max(0, overlap_sentences)

    def chunk(
        self,
        document_id: str,
        content: str | Sequence[PageText],
        source_type: SourceType = SourceType.INQUIRY,
        source_id: str | None = None,
        product_family: str | None = None,
    ) -> list[Chunk]:
        """Chunk one document.

        Args:
            document_id: Owning document id, used as the chunk id prefix.
            content: Plain text, or pages whose texts are joined with a space.
                Page offsets are recomputed from the joined text; only page
                numbers are taken from the input.
            source_type: Source type copied onto every chunk.
            source_id: Source record id; defaults to `document_id`.
            product_family: Optional product family copied onto every chunk.

        Returns:
            Each PARENT followed by its CHILD chunks, in document order.
            Blank input yields an empty list.
        """
        pages: list[PageText] = []
        if isinstance(content, str):
            text = content
        else:
            supplied = list(content)
            joined = pages_from_texts([page.text for page in supplied])
            pages = [
                PageText(page.page_number, page.text, offsets.start_offset, offsets.end_offset)
                for page, offsets in zip(supplied, joined)
            ]
            text = " ".join(page.text for page in pages)

        if not text.strip():
            return []

        spans = _attach_headings(text, _sentence_spans(text))
        parents = _pack(text, spans, self.parent_size, self.overlap_sentences)

        chunks: list[Chunk] = []
        sequence = 0
        for parent_number, parent in enumerate(parents):
            parent_id = f"{document_id}-PAR-{parent_number:03d}"
            chunks.append(
                self._make_chunk(
                    parent_id, document_id, source_type, source_id, ChunkLevel.PARENT, None,
                    sequence, parent, text, pages, product_family,
                )
            )
            sequence += 1

            if parent.first is None:
                children = _force_split(text, parent.start, parent.end, self.child_size)
            else:
                children = _pack(text, spans[parent.first : parent.last + 1], self.child_size, 0)
            for child_number, child in enumerate(children):
                chunks.append(
                    self._make_chunk(
                        f"{parent_id}-CHD-{child_number:02d}", document_id, source_type, source_id,
                        ChunkLevel.CHILD, parent_id, sequence, child, text, pages, product_family,
                    )
                )
                sequence += 1

        logger.debug(
            "chunking.done",
            document_id=document_id,
            parents=len(parents),
            children=len(chunks) - len(parents),
        )
        return chunks

    @staticmethod
    def _make_chunk(
        chunk_id: str,
        document_id: str,
        source_type: SourceType,
        source_id: str | None,
        level: ChunkLevel,
        parent_id: str | None,
        sequence: int,
        window: _Window,
        text: str,
        pages: Sequence[PageText],
        product_family: str | None,
    ) -> Chunk:
        page_start, page_end = resolve_page_range(window.start, window.end, pages) if pages else (None, None)
        return Chunk(
            chunk_id=chunk_id,
            document_id=document_id,
            source_type=source_type,
            source_id=source_id or document_id,
            level=level,
            parent_id=parent_id,
            sequence_index=sequence,
            start_offset=window.start,
            end_offset=window.end,
            content=text[window.start : window.end],
            product_family=product_family,
            page_start=page_start,
            page_end=page_end,
        )
