"""Shared Pydantic types and validators for reuse across models.

Centralises scope-dimension naming, memory id constraints, and
relation-label normalisation so every model speaks the same language.
"""

from __future__ import annotations

import re
from typing import Annotated, Any

from pydantic import AfterValidator, BeforeValidator, Field

# ---------------------------------------------------------------------------
# Scope dimensions
# ---------------------------------------------------------------------------

# Dimension names are interpolated into SQLite JSON paths, Qdrant payload keys
# and Cypher property names, so they are restricted to a safe identifier set.
DIMENSION_PATTERN = re.compile(r"^[a-z][a-z0-9_]{0,31}$")


def validate_dimension_name(name: str) -> str:
    """Reject dimension names that are not lowercase identifiers."""
    if not isinstance(name, str) or not DIMENSION_PATTERN.fullmatch(name):
        raise ValueError(f"Invalid scope dimension name: {name!r} (expected {DIMENSION_PATTERN.pattern})")
    return name


def validate_dimension_value(value: Any) -> str:
    """Scope values are non-empty strings; numbers are accepted and stringified."""
    if isinstance(value, bool) or value is None:
        raise ValueError(f"Invalid scope value: {value!r}")
    if isinstance(value, int | float):
        value = str(value)
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"Invalid scope value: {value!r}")
    return value.strip()


DimensionName = Annotated[str, AfterValidator(validate_dimension_name)]
DimensionValue = Annotated[str, BeforeValidator(validate_dimension_value)]


# ---------------------------------------------------------------------------
# Identifiers
# ---------------------------------------------------------------------------

MemoryIdStr = Annotated[str, Field(min_length=1, max_length=128)]
"""Non-empty memory identifier."""

NonNegativeInt = Annotated[int, Field(ge=0)]
"""Integer >= 0, for counts and revisions."""


# ---------------------------------------------------------------------------
# Relation labels
# ---------------------------------------------------------------------------

RELATION_PATTERN = re.compile(r"^[A-Z][A-Z0-9_]{0,63}$")
_NON_LABEL_CHARS = re.compile(r"[^A-Za-z0-9]+")


def normalize_relation(label: Any) -> str:
    """Normalise a free-text relation into an UPPER_SNAKE graph label.

    * ``"works at"`` → ``"WORKS_AT"``
    * ``"prefers"`` → ``"PREFERS"``
    * ``"3d-printing"`` → ``"R_3D_PRINTING"``
    """
    if not isinstance(label, str):
        raise ValueError(f"Relation label must be a string, got {type(label).__name__}")
    normalized = _NON_LABEL_CHARS.sub("_", label.strip()).strip("_").upper()
    if not normalized:
        raise ValueError(f"Empty relation label: {label!r}")
    if not normalized[0].isalpha():
        normalized = f"R_{normalized}"
    normalized = normalized[:64]
    if not RELATION_PATTERN.fullmatch(normalized):
        raise ValueError(f"Invalid relation label: {label!r}")
    return normalized


RelationLabel = Annotated[str, BeforeValidator(normalize_relation)]


# ---------------------------------------------------------------------------
# Tool names
# ---------------------------------------------------------------------------

TOOL_PREFIX_PATTERN = re.compile(r"^[a-z][a-z0-9_]*_$")


def validate_tool_prefix(prefix: str) -> str:
    """Tool prefixes are lowercase identifiers ending in ``_`` (e.g. ``openmemory_``)."""
    if not isinstance(prefix, str) or not TOOL_PREFIX_PATTERN.fullmatch(prefix):
        raise ValueError(f"Invalid tool prefix: {prefix!r} (expected {TOOL_PREFIX_PATTERN.pattern})")
    return prefix
