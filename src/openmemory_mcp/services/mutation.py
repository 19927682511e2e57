# Copyright 2024 Heinrich Krupp
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Mutation state tracking and audit trail.

Every engine mutation walks

    PENDING -> APPLYING_RECORD -> APPLYING_VECTOR -> APPLYING_GRAPH -> COMMITTED

and may drop into COMPENSATING -> FAILED from any APPLYING_* state. The
tracker remembers which steps completed so compensation knows what to undo
and ``PartialFailure`` can report it.
"""

import enum
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)


class MutationState(str, enum.Enum):
    PENDING = "pending"
    APPLYING_RECORD = "applying_record"
    APPLYING_VECTOR = "applying_vector"
    APPLYING_GRAPH = "applying_graph"
    COMMITTED = "committed"
    COMPENSATING = "compensating"
    FAILED = "failed"


_APPLYING = frozenset({MutationState.APPLYING_RECORD, MutationState.APPLYING_VECTOR, MutationState.APPLYING_GRAPH})

_TRANSITIONS: dict[MutationState, frozenset[MutationState]] = {
    MutationState.PENDING: frozenset({MutationState.APPLYING_RECORD, MutationState.APPLYING_VECTOR}),
    MutationState.APPLYING_RECORD: frozenset(
        {MutationState.APPLYING_VECTOR, MutationState.APPLYING_GRAPH, MutationState.COMMITTED, MutationState.COMPENSATING}
    ),
    MutationState.APPLYING_VECTOR: frozenset(
        {MutationState.APPLYING_RECORD, MutationState.APPLYING_GRAPH, MutationState.COMMITTED, MutationState.COMPENSATING}
    ),
    MutationState.APPLYING_GRAPH: frozenset(
        {MutationState.APPLYING_RECORD, MutationState.APPLYING_VECTOR, MutationState.COMMITTED, MutationState.COMPENSATING}
    ),
    MutationState.COMPENSATING: frozenset({MutationState.FAILED}),
    MutationState.COMMITTED: frozenset(),
    MutationState.FAILED: frozenset(),
}


@dataclass
class AuditEntry:
    """Represents a single finished mutation for audit trail tracking."""

    operation: str  # add_memory, delete_memory, update_memory, delete_all
    memory_id: str | None
    started_at: float
    finished_at: float
    state: MutationState
    completed_steps: list[str] = field(default_factory=list)
    failed_step: str | None = None
    error: str | None = None
    compensation_errors: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return self.state is MutationState.COMMITTED

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "operation": self.operation,
            "memory_id": self.memory_id,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "state": self.state.value,
            "success": self.success,
            "completed_steps": self.completed_steps,
            "failed_step": self.failed_step,
            "error": self.error,
            "compensation_errors": self.compensation_errors,
            "metadata": self.metadata,
        }


class MutationTracker:
    """State machine for one mutation."""

    def __init__(self, operation: str, memory_id: str | None = None):
        self.operation = operation
        self.memory_id = memory_id
        self.state = MutationState.PENDING
        self.completed_steps: list[str] = []
        self.failed_step: str | None = None
        self.error: str | None = None
        self.compensation_errors: list[str] = []
        self.metadata: dict[str, Any] = {}
        self.started_at = time.time()
        self.finished_at: float | None = None

    def _move(self, new_state: MutationState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"{self.operation}: illegal transition {self.state.value} -> {new_state.value}")
        logger.debug(f"{self.operation}[{self.memory_id}] {self.state.value} -> {new_state.value}")
        self.state = new_state

    def begin(self, state: MutationState) -> None:
        """Enter an APPLYING_* state."""
        if state not in _APPLYING:
            raise ValueError(f"Not an applying state: {state}")
        if state is not self.state:
            self._move(state)

    def step_done(self, step: str) -> None:
        self.completed_steps.append(step)

    def did(self, step: str) -> bool:
        return step in self.completed_steps

    def commit(self) -> None:
        self._move(MutationState.COMMITTED)
        self.finished_at = time.time()

    def compensate(self, failed_step: str, cause: BaseException) -> None:
        self.failed_step = failed_step
        self.error = f"{type(cause).__name__}: {cause}"
        self._move(MutationState.COMPENSATING)

    def compensation_failed(self, step: str, error: BaseException) -> None:
        message = f"{step}: {type(error).__name__}: {error}"
        logger.error(f"{self.operation}[{self.memory_id}] compensation step failed: {message}")
        self.compensation_errors.append(message)

    def fail(self) -> None:
        self._move(MutationState.FAILED)
        self.finished_at = time.time()

    @property
    def compensated(self) -> bool:
        return self.state in (MutationState.COMPENSATING, MutationState.FAILED) and not self.compensation_errors

    def to_audit_entry(self) -> AuditEntry:
        return AuditEntry(
            operation=self.operation,
            memory_id=self.memory_id,
            started_at=self.started_at,
            finished_at=self.finished_at or time.time(),
            state=self.state,
            completed_steps=list(self.completed_steps),
            failed_step=self.failed_step,
            error=self.error,
            compensation_errors=list(self.compensation_errors),
            metadata=dict(self.metadata),
        )


class AuditTrail:
    """Bounded in-memory log of finished mutations, newest last."""

    def __init__(self, max_entries: int = 10_000):
        # max_entries=0 disables the trail
        self._entries: deque[AuditEntry] = deque(maxlen=max_entries)

    def record(self, tracker: MutationTracker) -> None:
        self._entries.append(tracker.to_audit_entry())

    def entries(self, limit: int | None = None, memory_id: str | None = None) -> list[AuditEntry]:
        items = [e for e in self._entries if memory_id is None or e.memory_id == memory_id]
        return items[-limit:] if limit else items

    def __len__(self) -> int:
        return len(self._entries)
