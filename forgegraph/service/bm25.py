"""BM25 ranking for memory-entry search.

Shared by MemoryStore and PostgresStore so both backends order Search
results the same way.
"""

from __future__ import annotations

import json
import math
import re
from collections import Counter
from typing import List, Sequence

from forgegraph.storage.models import MemoryEntry

BM25_K1 = 1.5
BM25_B = 0.75

_TOKEN_RE = re.compile(r"\w+")


def tokenize_text(text: str) -> List[str]:
    return _TOKEN_RE.findall(text.lower())


def entry_text(entry: MemoryEntry) -> str:
    """Flatten an entry's content (any JSON value) to searchable text."""
    content = entry.content
    if isinstance(content, str):
        return content
    try:
        return json.dumps(content, default=str, sort_keys=True)
    except (TypeError, ValueError):
        return str(content)


def compute_bm25_scores(
    query_tokens: Sequence[str],
    documents: List[List[str]],
    k1: float = BM25_K1,
    b: float = BM25_B,
) -> List[float]:
    if not query_tokens or not documents:
        return [0.0 for _ in documents]

    n_docs = len(documents)
    avgdl = sum(len(doc) for doc in documents) / float(n_docs) or 1.0
    doc_freq: Counter[str] = Counter()
    for doc in documents:
        doc_freq.update(set(doc))

    scores: List[float] = []
    for doc in documents:
        tf = Counter(doc)
        norm = k1 * (1 - b + b * (len(doc) / avgdl))
        score = 0.0
        for tok in query_tokens:
            df = doc_freq.get(tok, 0)
            freq = tf.get(tok, 0)
            if not df or not freq:
                continue
            idf = math.log(1 + (n_docs - df + 0.5) / (df + 0.5))
            score += idf * (freq * (k1 + 1)) / (freq + norm)
        scores.append(score)
    return scores


def rank_entries(
    query: str, entries: Sequence[MemoryEntry], limit: int = 10
) -> List[MemoryEntry]:
    """Return entries matching ``query`` ordered by BM25 score, then importance.

    Entries with no lexical overlap are dropped.
    """
    if not entries:
        return []
    query_tokens = tokenize_text(query)
    scores = compute_bm25_scores(
        query_tokens, [tokenize_text(entry_text(e)) for e in entries]
    )
    scored = [(e, s) for e, s in zip(entries, scores) if s > 0]
    scored.sort(key=lambda pair: (pair[1], pair[0].importance), reverse=True)
    return [entry for entry, _ in scored[:limit]]
