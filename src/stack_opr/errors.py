"""Error taxonomy for the stack engine.

Structural errors (ValidationError, CycleError) abort before any backend
call. BackendError is raised per operation and isolated by the executor.
StateConflictError signals out-of-band drift between stored state and the
live backend.
"""

from typing import Optional


class EngineError(Exception):
    """Base exception for engine errors."""

    def __init__(self, code: str, message: str):
        self.code = code
        self.message = message
        super().__init__(f"{code}: {message}")


class ValidationError(EngineError):
    """Stack declaration is invalid.

    Carries every violation found, not just the first.
    """

    def __init__(self, violations: list[str]):
        self.violations = list(violations)
        count = len(self.violations)
        summary = f"{count} validation error{'s' if count != 1 else ''}"
        details = '\n'.join(f"  - {v}" for v in self.violations)
        super().__init__("E100", f"{summary}\n{details}" if details else summary)


class CycleError(EngineError):
    """Dependency graph contains a cycle."""

    def __init__(self, cycle: list[str]):
        self.cycle = list(cycle)
        super().__init__("E110", f"Dependency cycle: {' -> '.join(self.cycle)}")


class BackendError(EngineError):
    """A provisioning backend call failed for one node."""

    def __init__(self, node_id: Optional[str], message: str, retryable: bool = False):
        self.node_id = node_id
        self.retryable = retryable
        prefix = f"Node '{node_id}': " if node_id else ''
        super().__init__("E200", f"{prefix}{message}")


class StateConflictError(EngineError):
    """Stored state disagrees with what the backend reports as live."""

    def __init__(self, node_ids: list[str]):
        self.node_ids = list(node_ids)
        super().__init__(
            "E300",
            f"Live infrastructure drifted from stored state for: {', '.join(self.node_ids)}",
        )


class StateLockError(EngineError):
    """State for a stack is locked by another apply."""

    def __init__(self, stack_id: str, holder: str = ''):
        self.stack_id = stack_id
        self.holder = holder
        held_by = f" (held by {holder})" if holder else ''
        super().__init__("E310", f"State for stack '{stack_id}' is locked{held_by}")


class StalePlanError(EngineError):
    """Plan fingerprint does not match the one the caller approved."""

    def __init__(self, expected: str, actual: str):
        self.expected = expected
        self.actual = actual
        super().__init__(
            "E320",
            f"Plan changed since it was reviewed (expected {expected[:12]}, got {actual[:12]})",
        )
