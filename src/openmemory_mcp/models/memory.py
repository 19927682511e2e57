"""Memory record data models.

Pydantic v2 models for the durable record kept by the record store,
with float/ISO timestamp synchronisation.
"""

import enum
import logging
import time
from datetime import datetime, timezone
from typing import Any, Self

from dateutil import parser as dateutil_parser
from pydantic import BaseModel, ConfigDict, Field, model_validator

from .scope import FilterSpec
from .validators import MemoryIdStr, NonNegativeInt

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Timestamp helpers
# ---------------------------------------------------------------------------


def iso_to_float(iso_str: str) -> float:
    """Convert ISO string to float timestamp, ensuring UTC interpretation."""
    dt = dateutil_parser.isoparse(iso_str)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


def float_to_iso(ts: float) -> str:
    """Convert float timestamp to ISO string (UTC, Z-suffix)."""
    return datetime.fromtimestamp(ts, timezone.utc).isoformat().replace("+00:00", "Z")


def _sync_pair(ts_float: float | None, ts_iso: str | None, now: float, label: str) -> tuple[float, str]:
    """Fill in whichever half of a (float, iso) pair is missing. Float wins on mismatch."""
    if ts_float is not None:
        return ts_float, float_to_iso(ts_float)
    if ts_iso:
        try:
            return iso_to_float(ts_iso), ts_iso
        except (ValueError, OverflowError) as e:
            logger.warning("Invalid %s_iso %r: %s", label, ts_iso, e)
    return now, float_to_iso(now)


# ---------------------------------------------------------------------------
# Memory record
# ---------------------------------------------------------------------------


class MemoryState(str, enum.Enum):
    """Lifecycle state of a record."""

    ACTIVE = "active"
    SUPERSEDED = "superseded"
    DELETED = "deleted"


class MemoryRecord(BaseModel):
    """One version of a remembered unit of text."""

    model_config = ConfigDict(populate_by_name=True)

    id: MemoryIdStr
    text: str = Field(min_length=1)
    scope: FilterSpec
    state: MemoryState = MemoryState.ACTIVE

    # Logical memory: every version shares the chain id of its first version
    chain_id: MemoryIdStr
    supersedes: str | None = None
    superseded_by: str | None = None

    # Store-wide write token, strictly increasing in creation order
    revision: NonNegativeInt = 0

    metadata: dict[str, Any] = Field(default_factory=dict)

    created_at: float | None = None
    created_at_iso: str | None = None
    updated_at: float | None = None
    updated_at_iso: str | None = None

    @model_validator(mode="after")
    def sync_timestamps(self) -> Self:
        now = time.time()
        self.created_at, self.created_at_iso = _sync_pair(self.created_at, self.created_at_iso, now, "created_at")
        self.updated_at, self.updated_at_iso = _sync_pair(self.updated_at, self.updated_at_iso, now, "updated_at")
        return self

    @property
    def is_active(self) -> bool:
        return self.state is MemoryState.ACTIVE

    def to_summary(self) -> dict[str, Any]:
        """Listing shape: id, text and creation time."""
        return {"id": self.id, "text": self.text, "created_at": self.created_at_iso}

    def to_dict(self) -> dict[str, Any]:
        """Full wire shape, used by get/history responses."""
        return {
            "id": self.id,
            "text": self.text,
            "scope": self.scope.as_dict(),
            "state": self.state.value,
            "chain_id": self.chain_id,
            "supersedes": self.supersedes,
            "superseded_by": self.superseded_by,
            "revision": self.revision,
            "metadata": self.metadata,
            "created_at": self.created_at_iso,
            "updated_at": self.updated_at_iso,
        }
