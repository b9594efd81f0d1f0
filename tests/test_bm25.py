"""Tests for the BM25 sparse index."""

import math
import threading
from unittest.mock import patch

import pytest

from hybrid_rag.bm25 import BM25Index, LuceneBM25, parse_query, tokenize
from hybrid_rag.config import BM25Settings
from hybrid_rag.errors import IndexWriteError, QueryParseError
from hybrid_rag.models import Chunk


def make_chunk(chunk_id: str, text: str, **metadata) -> Chunk:
    return Chunk(chunk_id=chunk_id, text=text, metadata=metadata)


class TestTokenizer:
    """Tests for tokenize and parse_query."""

    def test_tokenize_lowercases_and_splits_on_punctuation(self):
        """Test the standard tokenizer."""
        assert tokenize("ACME Corp's Q3 revenue: +20%!") == ["acme", "corp", "s", "q3", "revenue", "20"]

    @pytest.mark.parametrize("query", ["", "   ", "?!*", None, 42])
    def test_parse_query_rejects_unsearchable_input(self, query):
        """Test that empty, punctuation-only and non-string queries fail to parse."""
        with pytest.raises(QueryParseError):
            parse_query(query)


class TestLuceneBM25:
    """Tests for the BM25 scorer."""

    def test_score_matches_formula(self):
        """Test a hand-computed BM25 score with k1=1.2, b=0.75."""
        scorer = LuceneBM25([["a", "b"], ["a", "c", "c"]], k1=1.2, b=0.75)
        scores = scorer.get_scores(["c"])

        idf = math.log(1 + (2 - 1 + 0.5) / (1 + 0.5))
        expected = idf * (2 * 2.2) / (2 + 1.2 * (1 - 0.75 + 0.75 * 3 / 2.5))
        assert scores[0] == 0
        assert scores[1] == pytest.approx(expected)

    def test_idf_stays_positive_for_common_terms(self):
        """Test that a term present in every document still scores above zero."""
        scorer = LuceneBM25([["revenue", "grew"], ["revenue", "fell"]])
        assert all(score > 0 for score in scorer.get_scores(["revenue"]))

    def test_batch_scores_match_full_scores(self):
        """Test get_batch_scores against get_scores."""
        scorer = LuceneBM25([["a", "b"], ["a", "c", "c"], ["d"]])
        full = scorer.get_scores(["a", "c"])
        assert scorer.get_batch_scores(["a", "c"], [2, 1]) == pytest.approx([full[2], full[1]])


class TestBM25Index:
    """Tests for BM25Index indexing and search."""

    def test_search_ranks_matching_chunk_first(self, bm25_index, sample_chunks):
        """Test that the chunk with the query terms ranks first."""
        bm25_index.index_documents(sample_chunks)
        hits = bm25_index.search("ACME revenue", top_k=3)

        assert hits[0].chunk_id == "finance.txt-chunk-000"
        assert all(hit.score > 0 for hit in hits)
        assert [h.score for h in hits] == sorted((h.score for h in hits), reverse=True)

    def test_search_returns_only_matching_chunks(self, bm25_index, sample_chunks):
        """Test that chunks without any query term are not returned."""
        bm25_index.index_documents(sample_chunks)
        hits = bm25_index.search("monsoon", top_k=10)
        assert [h.chunk_id for h in hits] == ["weather.txt-chunk-003"]

    def test_search_respects_top_k(self, bm25_index, sample_chunks):
        """Test that at most top_k hits are returned."""
        bm25_index.index_documents(sample_chunks)
        assert len(bm25_index.search("acme revenue across", top_k=2)) == 2

    @pytest.mark.parametrize("query", ["", "  ", "&&||!"])
    def test_unparseable_query_returns_empty(self, bm25_index, sample_chunks, query):
        """Test that empty or malformed queries give zero results instead of raising."""
        bm25_index.index_documents(sample_chunks)
        assert bm25_index.search(query, top_k=5) == []

    def test_search_on_empty_index(self, bm25_index):
        """Test that searching before any indexing returns nothing."""
        assert bm25_index.search("anything", top_k=5) == []

    def test_indexing_same_ids_twice_is_deduplicated(self, bm25_index, sample_chunks):
        """Test that re-indexing N ids leaves exactly N documents."""
        assert bm25_index.index_documents(sample_chunks) == len(sample_chunks)
        assert bm25_index.index_documents(sample_chunks) == 0
        assert bm25_index.stats()["total_documents"] == len(sample_chunks)

    def test_duplicate_ids_within_one_batch(self, bm25_index):
        """Test that an id repeated inside a batch is indexed once."""
        chunks = [make_chunk("x", "first version"), make_chunk("x", "second version")]
        assert bm25_index.index_documents(chunks) == 1
        assert bm25_index.get("x").text == "first version"

    def test_get_returns_stored_fields(self, bm25_index):
        """Test that stored text and metadata are retrievable by id."""
        bm25_index.index_documents([make_chunk("c1", "Stored text", category="finance")])
        entry = bm25_index.get("c1")
        assert entry.text == "Stored text"
        assert entry.metadata == {"category": "finance"}
        assert entry.tokens == ("stored", "text")
        assert bm25_index.get("missing") is None

    def test_clear_index_resets_dedup_set(self, bm25_index, sample_chunks):
        """Test that clearing removes entries and allows ids to be indexed again."""
        bm25_index.index_documents(sample_chunks)
        bm25_index.clear_index()

        assert bm25_index.stats()["total_documents"] == 0
        assert bm25_index.search("acme", top_k=5) == []
        assert bm25_index.index_documents(sample_chunks) == len(sample_chunks)

    def test_new_documents_visible_after_commit(self, bm25_index, sample_chunks):
        """Test that each indexing call refreshes the reader snapshot."""
        bm25_index.index_documents(sample_chunks[:3])
        assert bm25_index.search("monsoon", top_k=5) == []
        bm25_index.index_documents(sample_chunks[3:])
        assert len(bm25_index.search("monsoon", top_k=5)) == 1

    def test_failed_commit_raises_and_keeps_previous_state(self, bm25_index, sample_chunks):
        """Test that a commit failure surfaces as IndexWriteError without losing data."""
        bm25_index.index_documents(sample_chunks[:3])
        with patch("hybrid_rag.bm25.LuceneBM25", side_effect=MemoryError("boom")):
            with pytest.raises(IndexWriteError):
                bm25_index.index_documents(sample_chunks[3:])

        assert bm25_index.stats()["total_documents"] == 3
        assert bm25_index.search("acme", top_k=5)
        assert bm25_index.index_documents(sample_chunks[3:]) == 3

    def test_concurrent_writers(self, bm25_index):
        """Test that concurrent indexing calls are serialized without losing ids."""

        def writer(offset):
            bm25_index.index_documents(
                [make_chunk(f"doc-{offset}-{i}", f"term{i} shared") for i in range(20)]
            )

        threads = [threading.Thread(target=writer, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert bm25_index.stats()["total_documents"] == 160

    def test_stats_report_parameters(self):
        """Test that stats expose the configured similarity."""
        index = BM25Index(BM25Settings(k1=1.5, b=0.5))
        index.index_documents([make_chunk("a", "alpha beta"), make_chunk("b", "beta gamma")])
        stats = index.stats()

        assert stats["similarity"] == "BM25(k1=1.5, b=0.5)"
        assert stats["vocabulary_size"] == 3
