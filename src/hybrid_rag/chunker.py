"""Document cleaning, token-bounded splitting and temporal metadata extraction."""

import calendar
import logging
import math
import re
from datetime import date
from typing import Callable, Optional, Protocol

from langchain_text_splitters import RecursiveCharacterTextSplitter

from .config import ChunkingSettings, settings
from .models import Chunk, Document, DocumentMetadata

logger = logging.getLogger(__name__)

_NON_ASCII = re.compile(r"[^\x00-\x7F]")
_CONTROL = re.compile(r"[\x00-\x1F\x7F]")
_WHITESPACE = re.compile(r"\s+")

# "03.2019 - 11.2021", "03.2019 – Current"
_DATE_RANGE = re.compile(
    r"\b(0?[1-9]|1[0-2])\.((?:19|20)\d{2})\s*[-–—]+\s*"
    r"(?:(0?[1-9]|1[0-2])\.((?:19|20)\d{2})|(current|present|now|today))\b",
    re.IGNORECASE,
)
_BARE_YEAR = re.compile(r"\b(19[89]\d|20[0-2]\d)\b")


class FileRegistry(Protocol):
    """Anything that can tell whether a file was already ingested."""

    def contains_file(self, file_name: str) -> bool: ...


def clean_text(text: str) -> str:
    """Strip non-ASCII and control characters and collapse whitespace."""
    text = _NON_ASCII.sub(" ", text)
    text = _CONTROL.sub(" ", text)
    return _WHITESPACE.sub(" ", text).strip()


def estimate_tokens(text: str, chars_per_token: int = 4) -> int:
    return math.ceil(len(text) / chars_per_token)


def _month_end(year: int, month: int) -> date:
    return date(year, month, calendar.monthrange(year, month)[1])


def extract_date_range(
    text: str, today: Optional[date] = None
) -> tuple[Optional[str], Optional[str]]:
    """
    Best-effort document date range as ISO strings.

    Looks for "MM.YYYY - MM.YYYY" / "MM.YYYY - Current" ranges first and
    spans the earliest start to the latest end. Without such ranges, falls
    back to the smallest and largest bare year between 1980 and 2029.

    Args:
        text: Raw document text (before cleaning, so dash variants survive).
        today: Date used for open-ended ranges. Defaults to date.today().

    Returns:
        (start_date, end_date), both None when nothing was found.
    """
    starts: list[date] = []
    ends: list[date] = []
    for match in _DATE_RANGE.finditer(text):
        start_month, start_year, end_month, end_year, open_end = match.groups()
        starts.append(date(int(start_year), int(start_month), 1))
        if open_end:
            ends.append(today or date.today())
        else:
            ends.append(_month_end(int(end_year), int(end_month)))

    if starts:
        return min(starts).isoformat(), max(ends).isoformat()

    years = [int(y) for y in _BARE_YEAR.findall(text)]
    if years:
        return date(min(years), 1, 1).isoformat(), date(max(years), 12, 31).isoformat()

    return None, None


class DocumentChunker:
    """Split documents into overlapping, token-bounded chunks.

    Sizes are in estimated tokens (ceil(chars / chars_per_token)); the
    underlying splitter works in characters and breaks on spaces, so the
    overlap carried into chunk i+1 is a whole-word suffix of chunk i.
    """

    def __init__(
        self,
        chunking: Optional[ChunkingSettings] = None,
        registry: Optional[FileRegistry] = None,
        today: Callable[[], date] = date.today,
    ) -> None:
        self.chunking = chunking or settings.chunking
        self.registry = registry
        self._today = today
        cpt = self.chunking.chars_per_token
        self._splitter = RecursiveCharacterTextSplitter(
            chunk_size=self.chunking.chunk_size * cpt,
            chunk_overlap=self.chunking.chunk_overlap * cpt,
            length_function=len,
            separators=[" ", ""],
            keep_separator="end",
        )

    def _tokens(self, text: str) -> int:
        return estimate_tokens(text, self.chunking.chars_per_token)

    def already_ingested(self, file_name: str) -> bool:
        return self.registry is not None and self.registry.contains_file(file_name)

    def split(self, text: str) -> list[str]:
        """Split cleaned text into chunk texts."""
        if not text:
            return []
        pieces = self._splitter.split_text(text)

        # Fold an undersized tail into its predecessor when that stays in bounds.
        if len(pieces) > 1 and self._tokens(pieces[-1]) < self.chunking.min_chunk_tokens:
            merged = _merge_overlapping(pieces[-2], pieces[-1])
            if self._tokens(merged) <= self.chunking.max_chunk_tokens:
                pieces = pieces[:-2] + [merged]
        return pieces

    def chunk_document(self, document: Document) -> list[Chunk]:
        """
        Turn one document into chunks carrying its provenance metadata.

        Returns an empty list for documents that were already ingested or
        that have no text left after cleaning.
        """
        if self.already_ingested(document.file_name):
            logger.info("Skipping %s: already ingested", document.file_name)
            return []

        start_date, end_date = extract_date_range(document.content, today=self._today())
        text = clean_text(document.content)
        if not text:
            logger.warning("No extractable text in %s", document.file_name)
            return []

        metadata = DocumentMetadata(
            category=document.category,
            file_name=document.file_name,
            source=document.source,
            start_date=start_date,
            end_date=end_date,
        ).to_metadata()

        chunks = [
            Chunk(
                chunk_id=f"{document.file_name}-chunk-{i:03d}",
                text=piece,
                metadata=dict(metadata),
            )
            for i, piece in enumerate(self.split(text))
        ]
        logger.debug("Created %d chunks from %s", len(chunks), document.file_name)
        return chunks


def _merge_overlapping(head: str, tail: str) -> str:
    """Join two adjacent chunks, dropping the region they share."""
    for size in range(min(len(head), len(tail)), 0, -1):
        at_word_break = size == len(tail) or tail[size] == " "
        if at_word_break and head.endswith(tail[:size]):
            return head + tail[size:]
    return f"{head} {tail}"
