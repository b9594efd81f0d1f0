"""Semantic search restricted by the document date range attached at ingestion."""

import logging
import re
from datetime import date, datetime
from typing import Any, Optional

from .models import RetrievalCandidate
from .vector_store import FaissVectorStore, MetadataFilter

logger = logging.getLogger(__name__)

_YEAR = re.compile(r"^\d{4}$")
_US_DATE = re.compile(r"^\d{2}-\d{2}-\d{4}$")
_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def _within(start: str, end: str) -> MetadataFilter:
    def predicate(metadata: dict[str, Any]) -> bool:
        chunk_start = metadata.get("start_date")
        chunk_end = metadata.get("end_date")
        if not chunk_start or not chunk_end:
            return False
        return chunk_start >= start and chunk_end <= end

    return predicate


def _covering(day: str) -> MetadataFilter:
    def predicate(metadata: dict[str, Any]) -> bool:
        chunk_start = metadata.get("start_date")
        chunk_end = metadata.get("end_date")
        if not chunk_start or not chunk_end:
            return False
        return chunk_start <= day <= chunk_end

    return predicate


class TemporalQueryService:
    """Date-filtered similarity search over ``start_date`` / ``end_date`` metadata.

    Dates are stored as ISO strings, so lexical comparison is chronological.
    Chunks without a date range never match.
    """

    def __init__(self, vector_store: FaissVectorStore, default_top_k: int = 5) -> None:
        self.vector_store = vector_store
        self.default_top_k = default_top_k

    def _search(
        self, query: str, where: MetadataFilter, top_k: Optional[int]
    ) -> list[RetrievalCandidate]:
        return self.vector_store.similarity_search(
            query, top_k or self.default_top_k, threshold=0.0, where=where
        )

    def find_by_year(
        self, query: str, year: int, top_k: Optional[int] = None
    ) -> list[RetrievalCandidate]:
        """Chunks whose whole date range falls inside ``year``."""
        return self._search(query, _within(f"{year:04d}-01-01", f"{year:04d}-12-31"), top_k)

    def find_by_date_range(
        self, query: str, start: date, end: date, top_k: Optional[int] = None
    ) -> list[RetrievalCandidate]:
        """Chunks whose whole date range falls inside ``[start, end]``."""
        if start > end:
            raise ValueError(f"start {start} is after end {end}")
        return self._search(query, _within(start.isoformat(), end.isoformat()), top_k)

    def find_by_flexible_date(
        self, query: str, date_input: str, top_k: Optional[int] = None
    ) -> list[RetrievalCandidate]:
        """
        Search by a year ("2021") or a specific day ("01-02-2021" or "2021-01-02").

        A year matches chunks dated entirely within it; a day matches chunks
        whose range contains it.

        Raises:
            ValueError: If ``date_input`` is in neither format.
        """
        value = date_input.strip()
        if _YEAR.match(value):
            logger.info("Parsed %r as year", value)
            return self.find_by_year(query, int(value), top_k)

        day: Optional[date] = None
        if _US_DATE.match(value):
            day = datetime.strptime(value, "%m-%d-%Y").date()
        elif _ISO_DATE.match(value):
            day = date.fromisoformat(value)
        if day is None:
            raise ValueError(
                f"Invalid date format: {date_input!r}. Expected 'yyyy' (e.g. 2021), "
                "'MM-dd-yyyy' (e.g. 01-02-2021) or 'yyyy-MM-dd'"
            )

        logger.info("Parsed %r as date %s", value, day)
        return self._search(query, _covering(day.isoformat()), top_k)
