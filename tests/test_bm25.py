"""Tests for the BM25 ranking shared by the memory-entry search backends."""

from forgegraph.service.bm25 import (
    compute_bm25_scores,
    entry_text,
    rank_entries,
    tokenize_text,
)
from forgegraph.storage.models import MemoryEntry


def entry(entry_id, content, importance=1.0):
    return MemoryEntry(id=entry_id, content=content, importance=importance)


class TestTokenizeText:
    """Tests for the tokenize_text function."""

    def test_tokenize_lowercases(self):
        """Tokenization converts to lowercase for case-insensitive matching."""
        assert tokenize_text("HELLO World HeLLo") == ["hello", "world", "hello"]

    def test_tokenize_handles_punctuation(self):
        """Punctuation is stripped, only word characters kept."""
        assert tokenize_text("CVE-2024, exploited!") == ["cve", "2024", "exploited"]

    def test_tokenize_empty_string(self):
        assert tokenize_text("") == []


class TestEntryText:
    def test_string_content_is_used_as_is(self):
        assert entry_text(entry("1", "plain text")) == "plain text"

    def test_structured_content_is_serialized(self):
        text = entry_text(entry("1", {"indicator": "evil.example", "score": 7}))
        assert "evil.example" in text
        assert "score" in text


class TestComputeBM25Scores:
    """Tests for the compute_bm25_scores function."""

    def test_empty_query_returns_zeros(self):
        assert compute_bm25_scores([], [["a"], ["b"]]) == [0.0, 0.0]

    def test_empty_documents_returns_empty(self):
        assert compute_bm25_scores(["hello"], []) == []

    def test_matching_document_scores_higher(self):
        """A document containing the query term outscores one that does not."""
        scores = compute_bm25_scores(["phishing"], [["phishing", "email"], ["lunch", "menu"]])
        assert scores[0] > 0
        assert scores[1] == 0

    def test_rare_terms_weigh_more(self):
        """IDF favors terms that appear in fewer documents."""
        documents = [["common", "rare"], ["common"], ["common"]]
        rare_score = compute_bm25_scores(["rare"], documents)[0]
        common_score = compute_bm25_scores(["common"], documents)[0]
        assert rare_score > common_score


class TestRankEntries:
    def test_drops_entries_without_overlap(self):
        entries = [entry("1", "ransomware on port 445"), entry("2", "team offsite")]

        ranked = rank_entries("ransomware", entries)

        assert [e.id for e in ranked] == ["1"]

    def test_importance_breaks_ties(self):
        entries = [entry("low", "malware alert", 0.1), entry("high", "malware alert", 0.9)]

        ranked = rank_entries("malware", entries)

        assert [e.id for e in ranked] == ["high", "low"]

    def test_limit(self):
        entries = [entry(str(i), f"botnet sample {i}") for i in range(5)]

        assert len(rank_entries("botnet", entries, limit=2)) == 2

    def test_no_entries(self):
        assert rank_entries("anything", []) == []
