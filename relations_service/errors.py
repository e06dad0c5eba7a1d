"""
Relation error taxonomy
"""
from typing import Optional


class RelationError(Exception):
    """Base class for all relation errors"""

    code = "relation_error"

    def __init__(self, message: str = "", *, cause: Optional[BaseException] = None):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.cause = cause


class NotAuthenticated(RelationError):
    """Mutation attempted without an actor"""

    code = "not_authenticated"


class InvalidTarget(RelationError):
    """Actor and target are the same user"""

    code = "invalid_target"


class NotFound(RelationError):
    """Request or friendship row is missing"""

    code = "not_found"


class DuplicateIgnored(RelationError):
    """Uniqueness violation; callers treat it as success"""

    code = "duplicate_ignored"


class PermissionDenied(RelationError):
    """Backend authorization rejected the write"""

    code = "permission_denied"


class Unexpected(RelationError):
    """Network or backend fault"""

    code = "unexpected"


class ReconciliationFailed(Unexpected):
    """Both mirrored friendship writes failed"""

    code = "reconciliation_failed"


def is_tolerable(error: Optional[BaseException]) -> bool:
    """Duplicate and permission errors are tolerated inside mirrored writes"""
    return error is None or isinstance(error, (DuplicateIgnored, PermissionDenied))
