"""
Acceptance reconciler - turns an accepted request into mirrored friendship rows
"""
from dataclasses import dataclass
from typing import Any, Optional, Tuple
import logging

from .errors import (
    DuplicateIgnored,
    PermissionDenied,
    ReconciliationFailed,
    RelationError,
    is_tolerable,
)
from .store import RelationStore

logger = logging.getLogger(__name__)


@dataclass
class MirroredWriteResult:
    """Outcome of the two directed writes of a friendship"""
    forward_error: Optional[RelationError] = None   # requester=B, receiver=A
    backward_error: Optional[RelationError] = None  # requester=A, receiver=B
    removed: int = 0  # rows deleted by dissolve

    @property
    def forward_ok(self) -> bool:
        return self.forward_error is None or isinstance(self.forward_error, DuplicateIgnored)

    @property
    def backward_ok(self) -> bool:
        return self.backward_error is None or isinstance(self.backward_error, DuplicateIgnored)

    @property
    def is_complete(self) -> bool:
        """Both directions are known to exist"""
        return self.forward_ok and self.backward_ok

    @property
    def is_hard_failure(self) -> bool:
        return not is_tolerable(self.forward_error) and not is_tolerable(self.backward_error)


async def _attempt(write) -> Tuple[Any, Optional[RelationError]]:
    """Run one directed write, capturing relation errors instead of raising"""
    try:
        return await write, None
    except RelationError as e:
        return None, e


class AcceptanceReconciler:
    """
    Writes both directions of a friendship.

    The two upserts are independent: backend row policies commonly allow a
    user to write only rows where they are the requester, so one direction
    may be rejected while the other lands. Duplicate and permission errors
    are tolerated per direction; only two non-tolerable failures raise.
    """

    def __init__(self, store: RelationStore):
        self.store = store

    async def reconcile(
        self, actor_id: str, from_user: str, to_user: str
    ) -> MirroredWriteResult:
        """
        Create the friendship for accepted request (from_user -> to_user)

        Raises:
            ReconciliationFailed: If both writes failed with backend errors
        """
        _, forward_error = await _attempt(
            self.store.upsert_friendship(actor_id, to_user, from_user)
        )
        _, backward_error = await _attempt(
            self.store.upsert_friendship(actor_id, from_user, to_user)
        )
        result = MirroredWriteResult(forward_error, backward_error)
        return self._check(result, "create", from_user, to_user)

    async def dissolve(self, actor_id: str, user_id: str, other_id: str) -> MirroredWriteResult:
        """Delete both directions of a friendship with the same tolerance"""
        forward_removed, forward_error = await _attempt(
            self.store.delete_friendship(actor_id, other_id, user_id)
        )
        backward_removed, backward_error = await _attempt(
            self.store.delete_friendship(actor_id, user_id, other_id)
        )
        result = MirroredWriteResult(
            forward_error,
            backward_error,
            removed=(forward_removed or 0) + (backward_removed or 0),
        )
        return self._check(result, "delete", user_id, other_id)

    def _check(
        self, result: MirroredWriteResult, action: str, user_id: str, other_id: str
    ) -> MirroredWriteResult:
        if result.is_hard_failure:
            logger.error(
                f"Failed to {action} friendship {user_id} <-> {other_id}: "
                f"{result.forward_error}; {result.backward_error}"
            )
            raise ReconciliationFailed(
                f"Could not {action} friendship",
                cause=result.backward_error,
            )

        for error in (result.forward_error, result.backward_error):
            if isinstance(error, PermissionDenied):
                logger.warning(
                    f"Friendship {action} {user_id} <-> {other_id} is one-sided: {error}"
                )
            elif error is not None and not isinstance(error, DuplicateIgnored):
                logger.warning(
                    f"Friendship {action} {user_id} <-> {other_id} partially failed: {error}"
                )
        return result
