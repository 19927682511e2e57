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
Error taxonomy for the memory service.

Every failure that crosses a component boundary is one of these. The
dispatch layer turns them into ``{"success": False, "error_type": ...}``
payloads; nothing below it returns error strings.
"""

from typing import Any


class MemoryServiceError(Exception):
    """Base class for all typed memory service errors."""

    error_type = "MemoryServiceError"

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        """Wire representation used by the dispatch layer."""
        payload: dict[str, Any] = {
            "success": False,
            "error": self.message,
            "error_type": self.error_type,
        }
        payload.update({k: v for k, v in self.details.items() if v is not None})
        return payload


class ScopeViolation(MemoryServiceError):
    """Caller tried to read or write outside its authorized scope."""

    error_type = "ScopeViolation"


class NotFound(MemoryServiceError):
    """Identity does not resolve to a (suitable) record."""

    error_type = "NotFound"

    def __init__(self, memory_id: str, message: str | None = None):
        super().__init__(message or f"Memory {memory_id} not found", memory_id=memory_id)
        self.memory_id = memory_id


class InvalidArgument(MemoryServiceError):
    """Malformed call arguments."""

    error_type = "InvalidArgument"


class StoreUnavailable(MemoryServiceError):
    """Record store is unreachable or erroring."""

    error_type = "StoreUnavailable"


class IndexUnavailable(MemoryServiceError):
    """Vector index or graph backend is unreachable or erroring."""

    error_type = "IndexUnavailable"

    def __init__(self, message: str, backend: str | None = None, **details: Any):
        super().__init__(message, backend=backend, **details)
        self.backend = backend


class UnknownOperation(MemoryServiceError):
    """Dispatch-level: no tool registered under that name."""

    error_type = "UnknownOperation"

    def __init__(self, name: str):
        super().__init__(f"Unknown operation: {name!r}", operation=name)
        self.name = name


class PartialFailure(MemoryServiceError):
    """A multi-backend mutation failed part-way.

    Compensation has already been attempted. ``compensated`` tells the caller
    whether the partial writes were undone; ``compensation_errors`` lists the
    undo steps that themselves failed and need manual reconciliation.
    """

    error_type = "PartialFailure"

    def __init__(
        self,
        operation: str,
        memory_id: str | None,
        completed_steps: list[str],
        failed_step: str,
        cause: BaseException,
        compensated: bool,
        compensation_errors: list[str] | None = None,
    ):
        super().__init__(
            f"{operation} failed at step '{failed_step}' after {completed_steps or 'no steps'}: {cause}",
            operation=operation,
            memory_id=memory_id,
            completed_steps=list(completed_steps),
            failed_step=failed_step,
            cause_type=type(cause).__name__,
            compensated=compensated,
            compensation_errors=list(compensation_errors or []),
        )
        self.operation = operation
        self.memory_id = memory_id
        self.completed_steps = list(completed_steps)
        self.failed_step = failed_step
        self.cause = cause
        self.compensated = compensated
        self.compensation_errors = list(compensation_errors or [])
