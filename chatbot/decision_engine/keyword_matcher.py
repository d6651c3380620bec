"""
Keyword and pattern matching used for message routing.

Matching is case- and accent-insensitive: "Buenos días" and "buenos dias"
are the same text.
"""

import logging
import re
import unicodedata
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any

logger = logging.getLogger(__name__)

GREETING_KEYWORDS = ["hola", "saludos", "buenos", "buenas", "hello", "hi"]


def normalize_text(text: Optional[str]) -> str:
    """Lowercase, strip accents and collapse punctuation and whitespace."""
    if not text:
        return ""
    text = unicodedata.normalize("NFKD", text)
    text = "".join(ch for ch in text if not unicodedata.combining(ch))
    text = re.sub(r"[^\w\s]", " ", text.lower())
    return re.sub(r"\s+", " ", text).strip()


@dataclass
class KeywordMatch:
    """Result of matching one text against a keyword set."""
    matched: bool
    score: float = 0.0
    matched_keywords: List[str] = field(default_factory=list)
    matched_patterns: List[str] = field(default_factory=list)


class KeywordMatcher:
    """Matches whole-word keywords and regular expressions against normalized text."""

    def __init__(self, keywords: Optional[List[str]] = None, patterns: Optional[List[str]] = None):
        self.keywords = [k for k in (normalize_text(k) for k in keywords or []) if k]
        self.patterns = [re.compile(p, re.IGNORECASE) for p in patterns or []]
        self._keyword_regexes = [
            (keyword, re.compile(rf"\b{re.escape(keyword)}\b")) for keyword in self.keywords
        ]

    def match(self, text: str) -> KeywordMatch:
        normalized = normalize_text(text)
        if not normalized:
            return KeywordMatch(matched=False)

        keywords = [k for k, regex in self._keyword_regexes if regex.search(normalized)]
        patterns = [p.pattern for p in self.patterns if p.search(normalized) or p.search(text)]

        total = len(self.keywords) + len(self.patterns)
        score = (len(keywords) + len(patterns)) / total if total else 0.0
        return KeywordMatch(
            matched=bool(keywords or patterns),
            score=score,
            matched_keywords=keywords,
            matched_patterns=patterns,
        )

    def matches(self, text: str) -> bool:
        return self.match(text).matched


class GreetingMatcher(KeywordMatcher):
    """Detects conversation openers such as "hola" or "buenas tardes"."""

    def __init__(self, extra_keywords: Optional[List[str]] = None):
        super().__init__(GREETING_KEYWORDS + list(extra_keywords or []))

    def is_greeting(self, text: str) -> bool:
        return self.matches(text)


def match_route(text: str, routes: List[Dict[str, Any]], default: Optional[str] = None) -> Optional[str]:
    """
    Pick the handle of the route whose keywords best match ``text``.

    Each route is ``{"keywords": [...], "patterns": [...], "handle": "..."}``;
    ties go to the route listed first. Returns ``default`` when nothing matches.
    """
    best_handle = default
    best_score = 0.0

    for index, route in enumerate(routes or []):
        handle = route.get("handle") or route.get("id") or f"route-{index + 1}"
        keywords = route.get("keywords") or []
        if isinstance(keywords, str):
            keywords = [k.strip() for k in keywords.split(",")]

        result = KeywordMatcher(keywords, route.get("patterns")).match(text)
        if result.matched and result.score > best_score:
            best_handle = handle
            best_score = result.score

    logger.debug(f"Routed message to handle {best_handle!r} (score {best_score:.2f})")
    return best_handle


greeting_matcher = GreetingMatcher()
