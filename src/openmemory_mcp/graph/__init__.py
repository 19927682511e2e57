"""
Graph layer for OpenMemory.

Provides the FalkorDB-backed entity/relationship graph:
- Per-record entity nodes tagged with origin id, scope and revision
- Typed relationship edges between entities of the same record
- Text extraction (spaCy or keyword rules) feeding both
"""

from .base import GraphAdapter
from .client import FalkorGraphAdapter
from .extraction import EntityExtractor, KeywordEntityExtractor, SpaCyEntityExtractor, get_extractor

__all__ = [
    "EntityExtractor",
    "FalkorGraphAdapter",
    "GraphAdapter",
    "KeywordEntityExtractor",
    "SpaCyEntityExtractor",
    "get_extractor",
]
