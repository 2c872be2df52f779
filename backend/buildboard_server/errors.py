"""
Error types for Buildboard Server.

This module defines every exception raised by the consistency layer:
- BuildboardError: Base exception
- ValidationError: A precondition failed (self request, duplicate like, ...)
- NotFoundError: The relationship, mark or build does not exist
- TransientStoreError: The backing store failed mid-operation
- ConsistencyViolation: Divergence found by the Reconciler

Invariants:
    - All errors inherit from BuildboardError
    - Errors carry a stable code for programmatic handling
    - ConsistencyViolation is logged and repaired, never shown to members
"""

from __future__ import annotations

from typing import Any


class BuildboardError(Exception):
    """Base exception for all Buildboard errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "BUILDBOARD_ERROR"
        self.details = details or {}


class ValidationError(BuildboardError):
    """A precondition of the operation does not hold."""

    def __init__(
        self,
        message: str,
        code: str = "VALIDATION_ERROR",
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, code=code, details=details)


class SelfRequestError(ValidationError):
    """A member tried to befriend themselves."""

    def __init__(self, member: str) -> None:
        super().__init__(
            "Cannot send a friend request to yourself",
            code="SELF_REQUEST",
            details={"member": member},
        )


class AlreadyFriendsError(ValidationError):
    """The two members are already friends."""

    def __init__(self, owner: str, counterpart: str) -> None:
        super().__init__(
            f"{owner} and {counterpart} are already friends",
            code="ALREADY_FRIENDS",
            details={"owner": owner, "counterpart": counterpart},
        )


class NotPendingError(ValidationError):
    """The request was already decided."""

    def __init__(self, owner: str, counterpart: str, status: str) -> None:
        super().__init__(
            f"Friend request between {owner} and {counterpart} is {status}, not pending",
            code="NOT_PENDING",
            details={"owner": owner, "counterpart": counterpart, "status": status},
        )


class AlreadyLikedError(ValidationError):
    """The member already likes the build."""

    def __init__(self, content: str, member: str) -> None:
        super().__init__(
            "Already liked this build",
            code="ALREADY_LIKED",
            details={"content": content, "member": member},
        )


class NotFoundError(BuildboardError):
    """The addressed record does not exist."""

    def __init__(
        self,
        message: str,
        code: str = "NOT_FOUND",
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, code=code, details=details)


class NoSuchRequestError(NotFoundError):
    """No friend request exists between the two members."""

    def __init__(self, owner: str, counterpart: str) -> None:
        super().__init__(
            f"No friend request between {owner} and {counterpart}",
            code="NO_SUCH_REQUEST",
            details={"owner": owner, "counterpart": counterpart},
        )


class NotLikedError(NotFoundError):
    """The member does not like the build."""

    def __init__(self, content: str, member: str) -> None:
        super().__init__(
            "Build is not liked by this member",
            code="NOT_LIKED",
            details={"content": content, "member": member},
        )


class TransientStoreError(BuildboardError):
    """The backing store failed; the operation may be retried.

    Attributes:
        retryable: Always True, retries are idempotent
    """

    retryable = True

    def __init__(self, message: str, operation: str | None = None) -> None:
        super().__init__(
            message,
            code="TRANSIENT_STORE_ERROR",
            details={"operation": operation},
        )
        self.operation = operation


class ConsistencyViolation(BuildboardError):
    """Divergence between a projection and its ground truth.

    Attributes:
        kind: What diverged (relationship, edge, popularity, score)
        key: The pair, content id or member concerned
        found: Observed state
        expected: State after repair
    """

    def __init__(self, kind: str, key: str, found: Any, expected: Any) -> None:
        super().__init__(
            f"{kind} mismatch for {key}: found {found!r}, expected {expected!r}",
            code="CONSISTENCY_VIOLATION",
            details={"kind": kind, "key": key, "found": found, "expected": expected},
        )
        self.kind = kind
        self.key = key
        self.found = found
        self.expected = expected
