"""Tests for app/core/keywords.py."""

from __future__ import annotations

import pytest

from app.core.keywords import MIN_KEYWORD_LENGTH, STOP_WORDS, extract_keywords


class TestExtractKeywords:
    def test_example_request(self):
        assert extract_keywords("add a subtract function to math.ts") == {
            "add", "subtract", "function", "math",
        }

    def test_lowercases(self):
        assert extract_keywords("Add LOGIN Button") == {"add", "login", "button"}

    def test_punctuation_becomes_whitespace(self):
        assert extract_keywords("fix user-profile/avatar.tsx!") == {"fix", "user", "profile", "avatar", "tsx"}

    def test_underscore_is_a_word_character(self):
        assert extract_keywords("rename get_user_id") == {"rename", "get_user_id"}

    def test_duplicates_collapse(self):
        assert extract_keywords("cache cache CACHE cache.") == {"cache"}

    def test_stop_words_removed(self):
        assert extract_keywords("the and for with from") == set()

    def test_short_tokens_removed(self):
        assert extract_keywords("go to db ui x") == set()

    @pytest.mark.parametrize("text", ["", "   ", "!!!", None])
    def test_empty_inputs(self, text):
        assert extract_keywords(text) == set()

    @pytest.mark.parametrize(
        "text",
        [
            "Add a dark mode toggle to the settings page and persist it in localStorage",
            "fix: the API returns 500 for an empty cart; add validation & tests",
            "refactor the the the a an of of in on at by",
        ],
    )
    def test_properties(self, text):
        keywords = extract_keywords(text)
        assert isinstance(keywords, set)
        assert not keywords & STOP_WORDS
        assert all(len(k) >= MIN_KEYWORD_LENGTH for k in keywords)
        assert extract_keywords(text + " " + text) == keywords
