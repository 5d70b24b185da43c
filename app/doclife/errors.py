"""
Error taxonomy for the document lifecycle core.

Conflict-class errors are retryable by the caller (re-read state, then retry or
supersede). Validation errors are not.
"""

from __future__ import annotations

from sqlalchemy.exc import OperationalError


class DocumentLifecycleError(Exception):
    retryable = False


class ValidationError(DocumentLifecycleError, ValueError):
    """Malformed owner/type/file reference or a forbidden transition."""


class NotFound(DocumentLifecycleError, LookupError):
    pass


class DuplicateActiveDocument(DocumentLifecycleError):
    """The (owner, type) slot already has, or just gained, an active document."""

    retryable = True

    def __init__(self, message: str, *, document_id: int | None = None, holder_id: int | None = None):
        super().__init__(message)
        self.document_id = document_id
        self.holder_id = holder_id


class RelationConflict(DocumentLifecycleError):
    retryable = True


class ChainTraversalError(DocumentLifecycleError):
    def __init__(self, message: str, *, document_id: int | None = None):
        super().__init__(message)
        self.document_id = document_id


class ChainCycleDetected(ChainTraversalError):
    pass


class ChainDepthExceeded(ChainTraversalError):
    def __init__(self, message: str, *, document_id: int | None = None, max_depth: int | None = None):
        super().__init__(message, document_id=document_id)
        self.max_depth = max_depth


class TransactionAborted(DocumentLifecycleError):
    """A step of a multi-step operation failed; the whole transaction was rolled back."""

    def __init__(self, operation: str, cause: BaseException):
        super().__init__(f"{operation} aborted: {cause}")
        self.operation = operation
        self.cause = cause

    @property
    def retryable(self) -> bool:  # type: ignore[override]
        if isinstance(self.cause, OperationalError):
            return True
        return bool(getattr(self.cause, "retryable", False))
