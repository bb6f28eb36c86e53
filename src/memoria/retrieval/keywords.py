from __future__ import annotations

import re

_PUNCTUATION_RE = re.compile(r"[?.,!;:\"()]")

STOP_WORDS = frozenset(
    {
        "a", "an", "the", "is", "was", "were", "are", "be", "been", "has", "have", "had",
        "do", "does", "did", "will", "would", "could", "should", "can", "may", "might",
        "where", "what", "when", "who", "whom", "how", "why", "which",
        "he", "she", "it", "they", "him", "her", "his", "hers", "its", "them", "their",
        "theirs", "i", "me", "my", "you", "your", "we", "our", "us",
        "this", "that", "these", "those", "there", "here",
        "with", "from", "about", "into", "for", "and", "or", "but", "of", "to", "in", "on",
        "at", "by", "as", "tell", "please",
    }
)  # fmt: skip


def question_tokens(question: str) -> list[str]:
    """Lower-cased tokens with punctuation stripped, in question order."""
    cleaned = _PUNCTUATION_RE.sub(" ", question.lower())
    return [token for token in cleaned.split() if token]


def keyword_tokens(question: str, *, min_length: int = 3) -> list[str]:
    """Tokens that survive stop-word removal, deduplicated, in question order."""
    seen: set[str] = set()
    keywords: list[str] = []
    for token in question_tokens(question):
        if len(token) < min_length or token in STOP_WORDS or token in seen:
            continue
        seen.add(token)
        keywords.append(token)
    return keywords
