"""
Decision engine: keyword routing and greeting detection.
"""

from .keyword_matcher import (
    GreetingMatcher,
    KeywordMatch,
    KeywordMatcher,
    greeting_matcher,
    match_route,
    normalize_text,
)

__all__ = [
    'GreetingMatcher',
    'KeywordMatch',
    'KeywordMatcher',
    'greeting_matcher',
    'match_route',
    'normalize_text',
]
