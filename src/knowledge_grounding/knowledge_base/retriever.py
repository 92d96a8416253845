"""SQLite FTS5-based full-text index over knowledge items.

FTS5 narrows the owner's items down to keyword candidates; each candidate is
then scored deterministically (exact phrase, token overlap, match position) so
the ranking does not depend on BM25 internals.
"""

from __future__ import annotations

import re
from pathlib import Path

import aiosqlite
from loguru import logger

from .database import connect, decode_timestamp, recency_key
from .models import KnowledgeItem, SearchHit


_FTS5_TOKEN_RE = re.compile(
    r"[A-Za-z0-9_]+|[\u3400-\u4DBF\u4E00-\u9FFF\u3005\u3040-\u30FF\uAC00-\uD7AF\uF900-\uFAFF]+"
)

_CJK_SEP_TOKEN = "__CJK_SEP__"

PHRASE_BASE_SCORE = 0.75
PHRASE_POSITION_WEIGHT = 0.25
OVERLAP_WEIGHT = 0.65
OVERLAP_POSITION_WEIGHT = 0.05


def _is_cjk_token(token: str) -> bool:
    """Return True if the token contains CJK characters."""

    return any(
        (
            "\u3400" <= ch <= "\u4dbf"
            or "\u4e00" <= ch <= "\u9fff"
            or "\uf900" <= ch <= "\ufaff"
            or "\u3040" <= ch <= "\u30ff"
            or "\uac00" <= ch <= "\ud7af"
        )
        for ch in token
    )


def tokenize(text: str) -> list[str]:
    """Lowercased word tokens (CJK runs are kept as single tokens)."""
    return [tok.lower() for tok in _FTS5_TOKEN_RE.findall(text)]


def _unique(tokens: list[str]) -> list[str]:
    seen: set[str] = set()
    out: list[str] = []
    for tok in tokens:
        if tok not in seen:
            seen.add(tok)
            out.append(tok)
    return out


def _build_fts5_match_query(query: str, *, max_terms: int = 24) -> str:
    """Build a safe FTS5 MATCH query: an OR of quoted query tokens.

    Long CJK runs additionally contribute a few sub-phrases, since CJK queries
    usually arrive without spaces.

    Args:
        query: Raw user query.
        max_terms: Maximum number of terms in the MATCH expression.

    Returns:
        A sanitized FTS5 MATCH expression, or an empty string if the query has
        no usable tokens.
    """

    raw_tokens = _FTS5_TOKEN_RE.findall(query.strip())
    tokens = _unique([tok for tok in raw_tokens if tok.strip()])[:max_terms]

    if len(tokens) < max_terms:
        for tok in raw_tokens:
            if len(tokens) >= max_terms:
                break
            if not _is_cjk_token(tok) or len(tok) < 8:
                continue
            for window in (4, 3, 2):
                for i in range(0, len(tok) - window + 1):
                    part = tok[i : i + window]
                    if part not in tokens:
                        tokens.append(part)
                    if len(tokens) >= max_terms:
                        break
                if len(tokens) >= max_terms:
                    break

    if not tokens:
        return ""

    terms = []
    for term in tokens:
        escaped = term.replace('"', '""')
        terms.append(f'"{escaped}"')
    return " OR ".join(terms)


def _cjk_bigrams(token: str) -> list[str]:
    """Overlapping 2-character grams of a CJK token."""

    if len(token) <= 1:
        return [token]
    return [token[i : i + 2] for i in range(len(token) - 1)]


def _build_cjk_bigram_index_text(text: str) -> str:
    """Build the bigram token stream indexed for CJK substring search.

    Runs are separated by a sentinel token so phrases cannot match across
    unrelated runs.
    """

    out: list[str] = []
    for tok in _FTS5_TOKEN_RE.findall(text):
        if _is_cjk_token(tok):
            out.extend(_cjk_bigrams(tok))
        else:
            out.append(tok)
        out.append(_CJK_SEP_TOKEN)
    return " ".join(out)


def _build_fts5_cjk_bigram_phrase_query(query: str, *, max_phrases: int = 6) -> str:
    """Build a MATCH expression over the bigram column for CJK query tokens.

    Returns:
        An expression like `text_ngrams:"粉蒸 蒸排 ..." OR ...`, or an empty
        string when the query has no CJK tokens.
    """

    phrases: list[str] = []
    for tok in _FTS5_TOKEN_RE.findall(query.strip()):
        if not _is_cjk_token(tok):
            continue
        phrase = " ".join(_cjk_bigrams(tok))
        if phrase not in phrases:
            phrases.append(phrase)
        if len(phrases) >= max_phrases:
            break

    parts = []
    for phrase in phrases:
        escaped = phrase.replace('"', '""')
        parts.append(f'text_ngrams:"{escaped}"')
    return " OR ".join(parts)


def _phrase_pattern(query: str) -> re.Pattern | None:
    phrase = " ".join(query.lower().split())
    if not phrase:
        return None
    return re.compile(r"(?<!\w)" + re.escape(phrase) + r"(?!\w)")


def relevance_score(text: str, query: str) -> float:
    """
    Score how well `text` matches `query` lexically.

    An exact phrase (case-insensitive, whole words) scores in [0.75, 1.0],
    higher the earlier it occurs. Otherwise the share of query tokens present
    in the text scores up to 0.65, plus up to 0.05 for an early first match.

    Returns:
        Score in [0, 1]; 0 when no query token occurs in the text.
    """

    if not text.strip() or not query.strip():
        return 0.0

    lower_text = text.lower()
    length = len(lower_text)

    pattern = _phrase_pattern(query)
    if pattern is not None:
        match = pattern.search(lower_text)
        if match:
            return PHRASE_BASE_SCORE + PHRASE_POSITION_WEIGHT * (1.0 - match.start() / length)

    query_tokens = _unique(tokenize(query))
    if not query_tokens:
        return 0.0

    positions: dict[str, int] = {}
    for match in _FTS5_TOKEN_RE.finditer(lower_text):
        positions.setdefault(match.group(0), match.start())

    matched_positions = []
    for tok in query_tokens:
        if tok in positions:
            matched_positions.append(positions[tok])
        elif _is_cjk_token(tok):
            index = lower_text.find(tok)
            if index != -1:
                matched_positions.append(index)

    if not matched_positions:
        return 0.0

    ratio = len(matched_positions) / len(query_tokens)
    first = min(matched_positions)
    return OVERLAP_WEIGHT * ratio + OVERLAP_POSITION_WEIGHT * (1.0 - first / length)


def highlight(text: str, query: str, max_length: int = 200) -> str | None:
    """
    Excerpt of `text` around the first match of `query`.

    Falls back to the first query token, then to the beginning of the text.
    """

    if not text.strip() or not query.strip():
        return None

    lower_text = text.lower()
    index = lower_text.find(" ".join(query.lower().split()))
    if index == -1:
        for tok in tokenize(query):
            index = lower_text.find(tok)
            if index != -1:
                break

    if index == -1:
        return text[:max_length] + "..." if len(text) > max_length else text

    start = max(0, index - max_length // 2)
    length = min(max_length, len(text) - start)
    excerpt = text[start : start + length]

    if start > 0:
        excerpt = "..." + excerpt
    if start + length < len(text):
        excerpt += "..."
    return excerpt


def searchable_text(title: str, content: str, tags: list[str]) -> str:
    return "\n".join(part for part in (title, content, " ".join(tags)) if part)


class FullTextIndex:
    """
    Keyword relevance lookup over knowledge items using SQLite FTS5.

    Shares the knowledge store's database file. Index maintenance runs on the
    store's connection so an item and its FTS row change in one transaction.
    """

    table = "kb_items_fts"

    def __init__(self, db_path: str | Path):
        """
        Initialize the full-text index.

        Args:
            db_path: Path to the SQLite database file shared with the store
        """
        self.db_path = Path(db_path)

    async def create_schema(self, db: aiosqlite.Connection) -> None:
        """Create the FTS5 table if it doesn't exist."""
        await db.execute(
            f"""
            CREATE VIRTUAL TABLE IF NOT EXISTS {self.table} USING fts5(
                item_id UNINDEXED,
                owner_id UNINDEXED,
                title,
                content,
                tags,
                text_ngrams,
                tokenize = 'unicode61'
            )
            """
        )

    async def index_item(self, db: aiosqlite.Connection, item: KnowledgeItem) -> None:
        """Replace the FTS row for `item`. Caller commits."""
        await self.remove_item(db, item.id)
        await db.execute(
            f"""
            INSERT INTO {self.table} (item_id, owner_id, title, content, tags, text_ngrams)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                item.id,
                item.owner_id,
                item.title,
                item.content,
                " ".join(item.tags),
                _build_cjk_bigram_index_text(
                    searchable_text(item.title, item.content, item.tags)
                ),
            ),
        )

    async def remove_item(self, db: aiosqlite.Connection, item_id: str) -> None:
        """Delete the FTS row for `item_id`. Caller commits."""
        await db.execute(f"DELETE FROM {self.table} WHERE item_id = ?", (item_id,))

    async def search(self, owner_id: str, query: str, limit: int = 10) -> list[SearchHit]:
        """
        Search one owner's items by keyword.

        Args:
            owner_id: Owner whose items are searched
            query: Search query text
            limit: Maximum number of hits to return

        Returns:
            Hits ordered by lexical score, then most recent update, then id
        """
        if limit <= 0 or not query.strip():
            return []

        text_query = _build_fts5_match_query(query)
        if not text_query:
            return []
        ngram_query = _build_fts5_cjk_bigram_phrase_query(query)
        match_query = f"({text_query}) OR ({ngram_query})" if ngram_query else text_query

        async with connect(self.db_path) as db:
            cursor = await db.execute(
                f"""
                SELECT f.item_id, f.title, f.content, f.tags, k.updated_at
                FROM {self.table} f
                JOIN knowledge_items k ON k.id = f.item_id
                WHERE {self.table} MATCH ? AND f.owner_id = ? AND k.owner_id = ?
                ORDER BY bm25({self.table})
                LIMIT ?
                """,
                (match_query, owner_id, owner_id, max(limit * 4, 50)),
            )
            rows = await cursor.fetchall()

        hits: list[SearchHit] = []
        for row in rows:
            tags = row["tags"].split() if row["tags"] else []
            score = relevance_score(searchable_text(row["title"], row["content"], tags), query)
            if score <= 0.0:
                continue
            hits.append(
                SearchHit(
                    item_id=row["item_id"],
                    score=min(score, 1.0),
                    lexical_score=min(score, 1.0),
                    highlight=highlight(row["content"] or row["title"], query),
                    updated_at=decode_timestamp(row["updated_at"]),
                )
            )

        hits.sort(key=lambda h: (-h.score, recency_key(h.updated_at), h.item_id))
        hits = hits[:limit]

        logger.debug(
            f"🔍 Full-text search found {len(hits)} hits for query '{query[:50]}' (owner '{owner_id}')"
        )
        return hits
