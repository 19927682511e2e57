"""Filter Spec: the multi-dimensional scope used for both tagging and querying.

A ``FilterSpec`` is attached to every record, vector point and graph item at
write time, and used as a predicate at read/delete time. A candidate matches a
query when every dimension present in the query is present and equal in the
candidate; dimensions the query leaves out are wildcards.

No dimension is special. ``user_id``, ``agent_id``, ``run_id`` and ``app_id``
are only conventional names.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel, ConfigDict, model_validator

from ..errors import ScopeViolation
from .validators import validate_dimension_name, validate_dimension_value


class FilterSpec(BaseModel):
    """Immutable mapping of scope dimension → value."""

    model_config = ConfigDict(frozen=True)

    dimensions: tuple[tuple[str, str], ...] = ()

    @model_validator(mode="before")
    @classmethod
    def coerce_mapping(cls, data: Any) -> Any:
        """Accept a plain ``{dim: value}`` mapping as well as the field form."""
        if isinstance(data, FilterSpec):
            return {"dimensions": data.dimensions}
        if isinstance(data, Mapping):
            if set(data.keys()) == {"dimensions"} and not isinstance(data["dimensions"], str):
                raw = data["dimensions"]
                pairs = raw.items() if isinstance(raw, Mapping) else raw
            else:
                pairs = data.items()
        elif data is None:
            pairs = ()
        else:
            raise ValueError(f"FilterSpec expects a mapping, got {type(data).__name__}")

        cleaned: dict[str, str] = {}
        for pair in pairs:
            name, value = pair
            name = validate_dimension_name(name)
            if name in cleaned:
                raise ValueError(f"Duplicate scope dimension: {name!r}")
            cleaned[name] = validate_dimension_value(value)
        return {"dimensions": tuple(sorted(cleaned.items()))}

    @classmethod
    def of(cls, mapping: Mapping[str, Any] | None = None, **dims: Any) -> FilterSpec:
        """Build a spec from a mapping and/or keyword dimensions."""
        merged = dict(mapping or {})
        merged.update(dims)
        return cls.model_validate(merged)

    # -- mapping-style read access ------------------------------------------

    def as_dict(self) -> dict[str, str]:
        return dict(self.dimensions)

    def keys(self) -> list[str]:
        return [k for k, _ in self.dimensions]

    def items(self) -> list[tuple[str, str]]:
        return list(self.dimensions)

    def get(self, name: str, default: str | None = None) -> str | None:
        for key, value in self.dimensions:
            if key == name:
                return value
        return default

    def __contains__(self, name: object) -> bool:
        return any(key == name for key, _ in self.dimensions)

    def __getitem__(self, name: str) -> str:
        value = self.get(name)
        if value is None:
            raise KeyError(name)
        return value

    def __len__(self) -> int:
        return len(self.dimensions)

    def is_empty(self) -> bool:
        return not self.dimensions

    # -- predicate ----------------------------------------------------------

    def matches(self, query: FilterSpec) -> bool:
        """True iff this (stored) spec satisfies ``query``."""
        return matches(self, query)

    def __str__(self) -> str:
        inner = ", ".join(f"{k}={v}" for k, v in self.dimensions)
        return f"{{{inner}}}"


def matches(candidate: FilterSpec, query: FilterSpec) -> bool:
    """True iff every dimension in ``query`` exists in ``candidate`` with an equal value."""
    stored = candidate.as_dict()
    return all(stored.get(name) == value for name, value in query.dimensions)


def merge_caller_scope(
    server_injected: FilterSpec,
    client_supplied: Mapping[str, Any] | FilterSpec | None,
) -> FilterSpec:
    """Merge a client's partial scope with the server-injected dimensions.

    Server-injected dimensions (at minimum the caller's own identity) always
    win. A client value that would change one of them is an impersonation
    attempt and raises ``ScopeViolation``; restating the same value is fine.

    Raises:
        ScopeViolation: if the client tries to override an injected dimension.
        ValueError: if the client scope is malformed.
    """
    if client_supplied is None:
        return server_injected

    client = client_supplied if isinstance(client_supplied, FilterSpec) else FilterSpec.model_validate(client_supplied)

    merged = client.as_dict()
    for name, value in server_injected.dimensions:
        supplied = merged.get(name)
        if supplied is not None and supplied != value:
            raise ScopeViolation(
                f"Scope dimension '{name}' is set by the server and cannot be overridden",
                dimension=name,
            )
        merged[name] = value
    return FilterSpec.model_validate(merged)
