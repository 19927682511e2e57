"""
Entity and relationship extraction for the knowledge graph.

Turns memory text into named entities and subject-verb-object relations
using spaCy. Falls back to deterministic keyword rules if the spaCy model
is not installed.

Lazy-loaded model, shared at class level.
"""

from __future__ import annotations

import logging
import re
from typing import Protocol, runtime_checkable

from ..models.graph import ExtractedEntity, ExtractedRelationship, ExtractionResult

logger = logging.getLogger(__name__)

_STOP_WORDS = frozenset(
    {
        "a",
        "an",
        "the",
        "and",
        "or",
        "but",
        "in",
        "on",
        "at",
        "to",
        "for",
        "of",
        "with",
        "by",
        "from",
        "is",
        "are",
        "was",
        "were",
        "be",
        "been",
        "have",
        "has",
        "had",
        "do",
        "does",
        "did",
        "will",
        "would",
        "could",
        "should",
        "can",
        "not",
        "no",
        "this",
        "that",
        "these",
        "those",
        "it",
        "its",
        "my",
        "your",
        "our",
        "their",
        "his",
        "her",
        "what",
        "which",
        "who",
        "how",
        "when",
        "where",
        "why",
        "about",
        "very",
        "just",
        "also",
        "really",
        "some",
        "me",
        "i",
        "we",
        "they",
        "he",
        "she",
        "you",
    }
)
_TOKEN_PATTERN = re.compile(r"[^A-Za-z0-9']+")
_SENTENCE_SPLIT = re.compile(r"(?<=[.!?;])\s+|\n+")
_LEADING_ARTICLES = re.compile(r"^(?:the|a|an|my|our|your|their|his|her)\s+", re.IGNORECASE)

# Verb phrases recognised by the keyword rules, longest first so "works at" beats "works".
_KEYWORD_RELATIONS = (
    "works at",
    "works for",
    "works on",
    "lives in",
    "moved to",
    "is allergic to",
    "is located in",
    "belongs to",
    "is married to",
    "is friends with",
    "likes",
    "loves",
    "prefers",
    "hates",
    "dislikes",
    "enjoys",
    "uses",
    "owns",
    "visits",
    "drinks",
    "eats",
    "knows",
    "manages",
    "studies",
    "teaches",
    "is",
)
_RELATION_PATTERN = re.compile(
    r"^(?P<subj>.+?)\s+(?P<verb>" + "|".join(re.escape(v) for v in _KEYWORD_RELATIONS) + r")\s+(?P<obj>.+?)[.!?]?$",
    re.IGNORECASE,
)
_RELATION_WORDS = frozenset(word for phrase in _KEYWORD_RELATIONS for word in phrase.split())


@runtime_checkable
class EntityExtractor(Protocol):
    """Protocol for pluggable entity/relationship extractors."""

    def extract(self, text: str) -> ExtractionResult:
        """Extract entities and relationships from memory text."""


def _clean_phrase(phrase: str) -> str:
    phrase = _LEADING_ARTICLES.sub("", phrase.strip().strip(",.;:!?\"'"))
    return " ".join(phrase.split())


class _ResultBuilder:
    """Collects entities and relations, de-duplicating by lower-cased name."""

    def __init__(self, max_entities: int):
        self._max_entities = max_entities
        self._entities: dict[str, ExtractedEntity] = {}
        self._relationships: dict[tuple[str, str, str], ExtractedRelationship] = {}

    def entity(self, name: str, entity_type: str = "concept") -> str | None:
        name = _clean_phrase(name)
        key = name.lower()
        if len(name) < 2 or len(name) > 100 or key in _STOP_WORDS:
            return None
        if key not in self._entities:
            if len(self._entities) >= self._max_entities:
                return None
            self._entities[key] = ExtractedEntity(name=name, entity_type=entity_type)
        return self._entities[key].name

    def relation(self, source: str, verb: str, target: str) -> None:
        src = self.entity(source)
        dst = self.entity(target)
        if not src or not dst or src.lower() == dst.lower():
            return
        try:
            rel = ExtractedRelationship(source=src, relation=verb, target=dst)
        except ValueError as e:
            logger.debug("Skipping relation %r: %s", verb, e)
            return
        self._relationships.setdefault((src.lower(), rel.relation, dst.lower()), rel)

    def build(self) -> ExtractionResult:
        return ExtractionResult(entities=list(self._entities.values()), relationships=list(self._relationships.values()))


class KeywordEntityExtractor:
    """
    Deterministic rule-based extractor.

    Each sentence of the form ``<subject> <known verb phrase> <object>``
    yields a relation; capitalised phrases and remaining content words
    become entities.
    """

    def __init__(self, max_entities: int = 16):
        self._max_entities = max_entities

    def extract(self, text: str) -> ExtractionResult:
        builder = _ResultBuilder(self._max_entities)
        for sentence in _SENTENCE_SPLIT.split(text.strip()):
            sentence = sentence.strip()
            if not sentence:
                continue
            match = _RELATION_PATTERN.match(sentence)
            if match:
                builder.relation(match["subj"], match["verb"].lower(), match["obj"])

        # Proper-noun runs ("Main Street Coffee") then leftover content words
        for run in re.findall(r"\b[A-Z][\w']*(?:\s+[A-Z][\w']*)*", text):
            builder.entity(run, "proper_noun")
        for token in _TOKEN_PATTERN.split(text):
            if len(token) > 3 and token.lower() not in _STOP_WORDS and token.lower() not in _RELATION_WORDS:
                builder.entity(token.lower())
        return builder.build()


class SpaCyEntityExtractor:
    """spaCy-based extractor. Lazy-loads model as class-level singleton."""

    _nlp = None
    _loaded_model: str | None = None

    def __init__(self, model_name: str = "en_core_web_sm", max_entities: int = 16):
        self._model_name = model_name
        self._max_entities = max_entities
        self._fallback = KeywordEntityExtractor(max_entities=max_entities)
        self._unavailable = False

    def _ensure_model(self) -> bool:
        """Lazy-load spaCy model. Returns False if model unavailable."""
        if self._unavailable:
            return False
        if SpaCyEntityExtractor._nlp is None or SpaCyEntityExtractor._loaded_model != self._model_name:
            import spacy

            try:
                SpaCyEntityExtractor._nlp = spacy.load(self._model_name)
                SpaCyEntityExtractor._loaded_model = self._model_name
                logger.info("Loaded spaCy model: %s", self._model_name)
            except OSError as e:
                logger.warning("spaCy model '%s' unavailable, using keyword rules: %s", self._model_name, e)
                self._unavailable = True
                return False
        return True

    def extract(self, text: str) -> ExtractionResult:
        text = text.strip()
        if not text:
            return ExtractionResult()
        if not self._ensure_model():
            return self._fallback.extract(text)

        doc = SpaCyEntityExtractor._nlp(text)
        builder = _ResultBuilder(self._max_entities)

        # Phrase for a token: its named entity, else its noun chunk, else itself
        spans: dict[int, str] = {}
        for chunk in doc.noun_chunks:
            for token in chunk:
                spans[token.i] = chunk.text
        for ent in doc.ents:
            for token in ent:
                spans[token.i] = ent.text

        for token in doc:
            if token.dep_ not in ("nsubj", "nsubjpass") or token.head.pos_ not in ("VERB", "AUX"):
                continue
            verb = token.head
            subject = spans.get(token.i, token.text)
            for child in verb.children:
                if child.dep_ in ("dobj", "attr", "oprd"):
                    builder.relation(subject, verb.lemma_, spans.get(child.i, child.text))
                elif child.dep_ == "prep":
                    for obj in child.children:
                        if obj.dep_ == "pobj":
                            builder.relation(subject, f"{verb.lemma_} {child.text}", spans.get(obj.i, obj.text))

        for ent in doc.ents:
            builder.entity(ent.text, ent.label_.lower())
        for chunk in doc.noun_chunks:
            if chunk.root.pos_ != "PRON":
                builder.entity(chunk.text)
        return builder.build()


def get_extractor(backend: str = "spacy", model_name: str = "en_core_web_sm", max_entities: int = 16) -> EntityExtractor:
    """Build the configured extractor."""
    if backend == "keyword":
        logger.info("Entity extraction: using KeywordEntityExtractor")
        return KeywordEntityExtractor(max_entities=max_entities)
    logger.info("Entity extraction: using SpaCyEntityExtractor (%s)", model_name)
    return SpaCyEntityExtractor(model_name=model_name, max_entities=max_entities)
