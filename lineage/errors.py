"""
Typed errors raised by the tree engine.

Five families, so callers can tell "fix your input" apart from "retry later":

- ValidationError: bad input shape, rejected before any write
- IntegrityError: would break a tree invariant, rejected before commit
- ConcurrencyError: retryable (a row lock could not be taken right away)
- NotFoundError: an id or path does not resolve to a live node
- PermissionDenied: the actor may not perform this action on this node
"""

from typing import Any, Optional


class TreeError(Exception):
    code = "tree_error"
    retryable = False

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


# ============================================================
# VALIDATION
# ============================================================

class ValidationError(TreeError):
    code = "validation_error"


class InvalidDepth(ValidationError):
    code = "invalid_depth"


class InvalidLimit(ValidationError):
    code = "invalid_limit"


class FieldValidation(ValidationError):
    code = "field_validation"


class SiblingIndexOutOfRange(ValidationError):
    code = "sibling_index_out_of_range"


class GroupedEntry(ValidationError):
    code = "grouped_entry"


class CascadeTooLarge(ValidationError):
    code = "cascade_too_large"


# ============================================================
# INTEGRITY
# ============================================================

class IntegrityError(TreeError):
    code = "integrity_error"


class CycleDetected(IntegrityError):
    code = "cycle_detected"


class ParentTombstoned(IntegrityError):
    code = "parent_tombstoned"


class ParentGone(IntegrityError):
    code = "parent_gone"


class HasLiveChildren(IntegrityError):
    code = "has_live_children"


class RootExists(IntegrityError):
    code = "root_exists"


class UndoConflict(IntegrityError):
    code = "undo_conflict"


class AlreadyUndone(IntegrityError):
    code = "already_undone"


class UndoNotAllowed(IntegrityError):
    code = "undo_not_allowed"


class VersionConflict(IntegrityError):
    code = "version_conflict"


# ============================================================
# CONCURRENCY
# ============================================================

class ConcurrencyError(TreeError):
    code = "concurrency_error"
    retryable = True


class ResourceBusy(ConcurrencyError):
    code = "resource_busy"


# ============================================================
# NOT FOUND
# ============================================================

class NotFoundError(TreeError):
    code = "not_found"


class NotFound(NotFoundError):
    code = "not_found"


class ParentNotFound(NotFoundError):
    code = "parent_not_found"


# ============================================================
# PERMISSION
# ============================================================

class PermissionDenied(TreeError):
    code = "permission_denied"


def describe(exc: Optional[BaseException]) -> str:
    """Short string for per-item failure reports."""
    if exc is None:
        return ""
    if isinstance(exc, TreeError):
        return f"{exc.code}: {exc.message}"
    return f"{type(exc).__name__}: {exc}"
