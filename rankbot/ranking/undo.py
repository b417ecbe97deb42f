"""
Undo Cache — memory of the most recent successful rank change.

One slot per scope, overwritten by every successful change and never
stacked. All callers share the ``DEFAULT_SCOPE`` slot unless they pass
their own scope (the API uses the ``X-Operator-ID`` header for this), so
two operators working under the default scope overwrite each other's slot.
"""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING, Any, Callable

from rankbot.errors import NoActionToUndoError
from rankbot.schema import ByNumber, ById, LastAction, RankAction, RankChangeResult

if TYPE_CHECKING:
    from rankbot.ranking.policy import RankPolicy

logger = logging.getLogger(__name__)

DEFAULT_SCOPE = "default"
DEFAULT_EXPIRY_SECONDS = 300.0


class UndoCache:
    def __init__(
        self,
        expiry_seconds: float = DEFAULT_EXPIRY_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.expiry_seconds = expiry_seconds
        self._clock = clock
        self._slots: dict[str, LastAction] = {}

    def record(
        self,
        action: RankAction,
        result: RankChangeResult,
        scope: str = DEFAULT_SCOPE,
    ) -> LastAction:
        last = LastAction(
            type=action,
            user_id=result.user_id,
            username=result.username,
            old_rank=result.old_rank,
            old_rank_name=result.old_rank_name,
            new_rank=result.new_rank,
            new_rank_name=result.new_rank_name,
            timestamp=self._clock(),
        )
        self._slots[scope] = last
        return last

    def get(self, scope: str = DEFAULT_SCOPE) -> LastAction | None:
        """The live slot for ``scope``; an expired slot is cleared and None returned."""
        last = self._slots.get(scope)
        if last is None:
            return None
        if self._clock() - last.timestamp > self.expiry_seconds:
            del self._slots[scope]
            return None
        return last

    def clear(self, scope: str = DEFAULT_SCOPE) -> None:
        self._slots.pop(scope, None)

    async def undo(
        self,
        policy: RankPolicy,
        scope: str = DEFAULT_SCOPE,
        source_ip: str | None = None,
    ) -> dict[str, Any]:
        """
        Revert the last change in ``scope`` to its prior rank.

        The slot is cleared whether or not the revert succeeds.

        Raises:
            NoActionToUndoError: nothing live to undo.
        """
        last = self.get(scope)
        if last is None:
            raise NoActionToUndoError(
                "There is no recent action to undo. Actions expire after "
                f"{self.expiry_seconds / 60:g} minutes."
            )

        try:
            result = await policy.set_rank(
                ById(last.user_id),
                ByNumber(last.old_rank),
                source_ip=source_ip,
                action=RankAction.UNDO,
                record_undo=False,
            )
        finally:
            self.clear(scope)

        logger.info(
            "Undid %s for user %s: %s -> %s",
            last.type.value,
            last.user_id,
            last.new_rank_name,
            last.old_rank_name,
        )
        return {
            **result.to_wire(),
            "undoneAction": last.type.value,
            "revertedFrom": last.new_rank_name,
            "revertedTo": last.old_rank_name,
        }
