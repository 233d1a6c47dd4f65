"""
Failure taxonomy for lifecycle operations.

Every failure is scoped to the entity being mutated; none is process-fatal.
"""
from typing import Any, Dict, List, Optional


class CaseError(Exception):
    """Base class for lifecycle failures."""

    def __init__(self, message: str, entity_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.entity_id = entity_id


class ValidationError(CaseError):
    """A guarded transition's precondition failed. Never hits the network."""


class NetworkError(CaseError):
    """The call failed before the backend answered."""


class BackendError(CaseError):
    """The backend answered with ``{error: ...}``; message is kept verbatim."""

    def __init__(self, message: str, entity_id: Optional[str] = None, status_code: int = 400):
        super().__init__(message, entity_id)
        self.status_code = status_code


class ConflictError(BackendError):
    """Entity state changed underneath the client; re-fetch, do not retry."""

    def __init__(self, message: str, entity_id: Optional[str] = None):
        super().__init__(message, entity_id, status_code=409)


class ProjectProvisioningError(CaseError):
    """Deal is won at the backend but its delivery Project is missing."""

    def __init__(self, message: str, deal_id: str, project_id: Optional[str] = None):
        super().__init__(message, deal_id)
        self.deal_id = deal_id
        self.project_id = project_id


class BatchResult:
    """Outcome counts of a bulk operation."""

    def __init__(self):
        self.succeeded: List[str] = []
        self.failed: Dict[str, str] = {}
        self.skipped: List[str] = []

    def ok(self, entity_id: str) -> None:
        self.succeeded.append(entity_id)

    def fail(self, entity_id: str, message: str) -> None:
        self.failed[entity_id] = message

    def skip(self, entity_id: str) -> None:
        self.skipped.append(entity_id)

    @property
    def success_count(self) -> int:
        return len(self.succeeded)

    @property
    def failure_count(self) -> int:
        return len(self.failed)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "succeeded": self.success_count,
            "failed": self.failure_count,
            "skipped": len(self.skipped),
            "errors": dict(self.failed),
        }


class PartialBatchError(CaseError):
    """A bulk operation finished with at least one failure."""

    def __init__(self, operation: str, result: BatchResult):
        super().__init__(
            f"{operation}: {result.success_count} succeeded, {result.failure_count} failed"
        )
        self.operation = operation
        self.result = result


def raise_for_batch(operation: str, result: BatchResult) -> BatchResult:
    if result.failed:
        raise PartialBatchError(operation, result)
    return result
