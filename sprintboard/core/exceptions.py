from __future__ import annotations

from typing import Any, Dict, Optional


class ServiceError(Exception):
    """Base exception for all domain failures raised by the services."""

    status_code: int = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "message": self.message,
            "error": type(self).__name__,
        }
        if self.details:
            payload.update(self.details)
        return payload


class NotFoundError(ServiceError):
    status_code = 404


class ValidationError(ServiceError):
    status_code = 400


class ConflictError(ServiceError):
    status_code = 409


class ForbiddenError(ServiceError):
    status_code = 403


class BacklogItemNotFoundError(NotFoundError):
    def __init__(self, item_id: int) -> None:
        super().__init__(f"Backlog item {item_id} not found")
        self.item_id = item_id


class SprintNotFoundError(NotFoundError):
    def __init__(self, sprint_id: int) -> None:
        super().__init__(f"Sprint {sprint_id} not found")
        self.sprint_id = sprint_id


class ProjectNotFoundError(NotFoundError):
    def __init__(self, project_id: int) -> None:
        super().__init__(f"Project {project_id} not found")
        self.project_id = project_id


class InvalidStatusTransitionError(ConflictError):
    def __init__(self, current: str, new: str) -> None:
        super().__init__(f"Invalid transition from {current} to {new}")
        self.current = current
        self.new = new


class StaleItemError(ConflictError):
    """Raised when a write targets a row version the caller has not seen."""

    def __init__(self, item_id: int, expected: Optional[int] = None, actual: Optional[int] = None) -> None:
        super().__init__(
            f"Backlog item {item_id} was modified concurrently; reload and retry",
            {"expected_version": expected, "current_version": actual} if expected is not None else None,
        )
        self.item_id = item_id
