"""Tests for keyword routing and greeting detection."""

from chatbot.decision_engine.keyword_matcher import (
    GreetingMatcher,
    KeywordMatcher,
    match_route,
    normalize_text,
)


def test_normalize_text_strips_accents_and_punctuation():
    assert normalize_text("¡Buenos  Días!") == "buenos dias"
    assert normalize_text(None) == ""


class TestKeywordMatcher:

    def test_whole_word_matching(self):
        matcher = KeywordMatcher(["cita"])

        assert matcher.matches("Quiero una CITA")
        assert not matcher.matches("citación pendiente")

    def test_score_counts_keywords_and_patterns(self):
        matcher = KeywordMatcher(["precio", "costo"], [r"\$\d+"])

        result = matcher.match("¿Cuál es el precio? ¿$500?")

        assert result.matched
        assert result.matched_keywords == ["precio"]
        assert result.score == 2 / 3

    def test_empty_text(self):
        assert not KeywordMatcher(["hola"]).matches("")


class TestGreetingMatcher:

    def test_greetings(self):
        matcher = GreetingMatcher()

        assert matcher.is_greeting("Hola, buenas tardes")
        assert matcher.is_greeting("buenos días")
        assert not matcher.is_greeting("quiero agendar")

    def test_extra_keywords(self):
        assert GreetingMatcher(["qué tal"]).is_greeting("Qué tal")


class TestMatchRoute:

    ROUTES = [
        {"keywords": ["precio", "costo"], "handle": "prices"},
        {"keywords": "cita, agendar", "handle": "booking"},
    ]

    def test_best_route_wins(self):
        assert match_route("quiero agendar una cita", self.ROUTES) == "booking"
        assert match_route("¿qué costo tiene?", self.ROUTES) == "prices"

    def test_default_when_nothing_matches(self):
        assert match_route("hola", self.ROUTES, default="next") == "next"

    def test_route_without_handle_uses_position(self):
        assert match_route("precio", [{"keywords": ["precio"]}]) == "route-1"
