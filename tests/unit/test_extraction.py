"""Tests for entity/relationship extraction."""

from unittest.mock import patch

import pytest
from openmemory_mcp.graph.extraction import (
    EntityExtractor,
    KeywordEntityExtractor,
    SpaCyEntityExtractor,
    get_extractor,
)


class TestKeywordExtractor:
    def test_subject_verb_object(self):
        result = KeywordEntityExtractor().extract("Bob likes the coffee shop on Main Street.")
        rels = [(r.source, r.relation, r.target) for r in result.relationships]
        assert rels == [("Bob", "LIKES", "coffee shop on Main Street")]
        names = {e.name for e in result.entities}
        assert {"Bob", "Main Street", "coffee"} <= names

    def test_multi_word_verbs_win(self):
        result = KeywordEntityExtractor().extract("Alice works at Acme Corp")
        assert [r.relation for r in result.relationships] == ["WORKS_AT"]

    def test_stop_word_subjects_are_skipped(self):
        result = KeywordEntityExtractor().extract("It is fine.")
        assert result.relationships == []

    def test_empty_text(self):
        assert KeywordEntityExtractor().extract("   ").is_empty

    def test_max_entities(self):
        text = "alpha bravo charlie delta foxtrot hotel india juliet"
        result = KeywordEntityExtractor(max_entities=3).extract(text)
        assert [e.name for e in result.entities] == ["alpha", "bravo", "charlie"]


class TestSpaCyExtractor:
    def test_missing_model_falls_back_to_keywords(self, monkeypatch):
        monkeypatch.setattr(SpaCyEntityExtractor, "_nlp", None)
        monkeypatch.setattr(SpaCyEntityExtractor, "_loaded_model", None)
        extractor = SpaCyEntityExtractor(model_name="not_a_real_model")

        with patch("spacy.load", side_effect=OSError("model not found")) as load:
            first = extractor.extract("Bob likes coffee")
            second = extractor.extract("Bob likes tea")

        load.assert_called_once_with("not_a_real_model")
        assert [r.target for r in first.relationships] == ["coffee"]
        assert [r.target for r in second.relationships] == ["tea"]

    def test_blank_text_skips_model(self):
        with patch("spacy.load") as load:
            assert SpaCyEntityExtractor(model_name="unused").extract("").is_empty
        load.assert_not_called()


class TestGetExtractor:
    def test_keyword_backend(self):
        extractor = get_extractor("keyword", max_entities=4)
        assert isinstance(extractor, KeywordEntityExtractor)
        assert isinstance(extractor, EntityExtractor)

    @pytest.mark.parametrize("backend", ["spacy", "anything-else"])
    def test_spacy_is_the_default(self, backend):
        assert isinstance(get_extractor(backend), SpaCyEntityExtractor)
