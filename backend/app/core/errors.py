"""Engine errors.

Every failure the engine reports inherits from EngineError. Each class carries
a stable ``code`` for clients and the HTTP status the API layer answers with.
Validation and eligibility errors are raised before any state is written.
"""

from typing import Any, Optional
import uuid


class EngineError(Exception):
    """Base error for the deliberation engine."""

    code = "engine_error"
    status_code = 400
    retryable = False

    def __init__(self, message: str, **context: Any) -> None:
        self.message = message
        self.context = context
        super().__init__(message)

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "detail": self.message,
            "code": self.code,
            "retryable": self.retryable,
        }
        if self.context:
            payload["context"] = {k: _jsonable(v) for k, v in self.context.items()}
        return payload


def _jsonable(value: Any) -> Any:
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, (list, tuple, set)):
        return [_jsonable(v) for v in value]
    return value


# Structural


class NotFound(EngineError):
    code = "not_found"
    status_code = 404


class DeliberationNotFound(NotFound):
    code = "deliberation_not_found"

    def __init__(self, deliberation_id: uuid.UUID) -> None:
        super().__init__(f"Deliberation not found: {deliberation_id}", deliberation_id=deliberation_id)


class CellNotFound(NotFound):
    code = "cell_not_found"

    def __init__(self, cell_id: uuid.UUID) -> None:
        super().__init__(f"Cell not found: {cell_id}", cell_id=cell_id)


class IdeaNotFound(NotFound):
    code = "idea_not_found"

    def __init__(self, idea_id: uuid.UUID) -> None:
        super().__init__(f"Idea not found: {idea_id}", idea_id=idea_id)


class CommentNotFound(NotFound):
    code = "comment_not_found"

    def __init__(self, comment_id: uuid.UUID) -> None:
        super().__init__(f"Comment not found: {comment_id}", comment_id=comment_id)


# Validation


class InvalidInput(EngineError):
    code = "invalid_input"
    status_code = 422


# Allocation shape


class AllocationError(EngineError):
    code = "invalid_allocation"
    status_code = 422


class InvalidAllocationSum(AllocationError):
    code = "invalid_allocation_sum"

    def __init__(self, total: int, expected: int) -> None:
        super().__init__(
            f"Allocations must sum to exactly {expected} points (got {total})",
            total=total,
            expected=expected,
        )


class InvalidPoints(AllocationError):
    """A single allocation entry is not a positive integer."""

    code = "invalid_allocation_sum"

    def __init__(self, idea_id: uuid.UUID, points: Any) -> None:
        super().__init__(
            f"Each allocation must be a positive whole number of points (idea {idea_id} got {points!r})",
            idea_id=idea_id,
            points=points,
        )


class DuplicateIdea(AllocationError):
    code = "duplicate_idea"

    def __init__(self, idea_id: uuid.UUID) -> None:
        super().__init__(f"Idea {idea_id} appears more than once in the allocation", idea_id=idea_id)


class IdeaNotInCell(AllocationError):
    code = "idea_not_in_cell"

    def __init__(self, idea_id: uuid.UUID, cell_id: uuid.UUID) -> None:
        super().__init__(f"Idea {idea_id} is not in cell {cell_id}", idea_id=idea_id, cell_id=cell_id)


class EmptyAllocation(AllocationError):
    code = "empty_allocation"

    def __init__(self) -> None:
        super().__init__("allocations required: [{idea_id, points}]")


# Eligibility


class NotAParticipant(EngineError):
    code = "not_a_participant"
    status_code = 403

    def __init__(self, participant_id: uuid.UUID, cell_id: uuid.UUID) -> None:
        super().__init__(
            f"Participant {participant_id} does not hold a seat in cell {cell_id}",
            participant_id=participant_id,
            cell_id=cell_id,
        )


class NotEligible(EngineError):
    code = "not_eligible"
    status_code = 403


class CellFull(EngineError):
    code = "cell_full"
    status_code = 409

    def __init__(self, cell_id: uuid.UUID) -> None:
        super().__init__(f"Cell {cell_id} has no open seats", cell_id=cell_id)


# Timing


class DeadlinePassed(EngineError):
    code = "deadline_passed"
    status_code = 409

    def __init__(self, cell_id: uuid.UUID, reason: str = "Voting deadline has passed") -> None:
        super().__init__(reason, cell_id=cell_id)


# Contention


class Conflict(EngineError):
    """Concurrent write lost the race; nothing was applied and the caller should retry."""

    code = "conflict"
    status_code = 409
    retryable = True


# Submission and lifecycle


class DuplicateSubmission(EngineError):
    code = "duplicate_submission"
    status_code = 409

    def __init__(self, author_id: uuid.UUID) -> None:
        super().__init__("Author already submitted an idea to this deliberation", author_id=author_id)


class CapacityExceeded(EngineError):
    code = "capacity_exceeded"
    status_code = 409

    def __init__(self, cap: int) -> None:
        super().__init__(f"Idea cap of {cap} reached", cap=cap)


class SubmissionClosed(EngineError):
    code = "submission_closed"
    status_code = 409


class InvalidPhase(EngineError):
    code = "invalid_phase"
    status_code = 409

    def __init__(self, expected: str, actual: str) -> None:
        super().__init__(f"Deliberation is in phase {actual}, expected {expected}", expected=expected, actual=actual)


class InvalidTransition(EngineError):
    """An idea was asked to move along an edge the lifecycle does not allow."""

    code = "invalid_transition"
    status_code = 500

    def __init__(self, idea_id: Optional[uuid.UUID], current: str, target: str) -> None:
        super().__init__(
            f"Idea {idea_id} cannot move from {current} to {target}",
            idea_id=idea_id,
            current=current,
            target=target,
        )
