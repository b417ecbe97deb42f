"""
Rank Policy — permission-bounded rank transitions.

Every mutation follows the same path:

    resolve target role → check bounds → read current rank from the platform
    → compare → write (only if different) → audit → remember for undo

Input is validated and the target checked against the bot's ceiling and the
configured ``[min_rank, max_rank]`` window before any network call. The
current rank is always re-read from the platform; there is no locking across
read/compare/write, so concurrent changes to one user race at the platform
(last writer wins).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Sequence

from rankbot.audit.log import AuditLog
from rankbot.errors import (
    DirectoryIntegrityError,
    NotFoundError,
    PermissionDeniedError,
    RankBotError,
    ValidationError,
)
from rankbot.integrations.roblox_client import GroupPlatform
from rankbot.ranking.directory import RoleDirectory
from rankbot.ranking.undo import DEFAULT_SCOPE, UndoCache
from rankbot.ranking.validation import parse_bulk_item
from rankbot.schema import (
    BulkItemResult,
    BulkRankResult,
    ByName,
    ByNumber,
    ById,
    ByUsername,
    PlatformUser,
    RankAction,
    RankChangeResult,
    RankTarget,
    Role,
    UserRef,
)

logger = logging.getLogger(__name__)


@dataclass
class _Attempt:
    """What is known about a mutation so far, for its audit entry."""

    action: RankAction
    source_ip: str | None
    user_id: int | None = None
    username: str | None = None
    target_rank: int | None = None
    old_rank: int | None = None

    @classmethod
    def start(cls, action: RankAction, user: UserRef, source_ip: str | None) -> "_Attempt":
        attempt = cls(action=action, source_ip=source_ip)
        if isinstance(user, ById):
            attempt.user_id = user.user_id
        else:
            attempt.username = user.username
        return attempt


@dataclass(frozen=True)
class Member:
    user: PlatformUser
    rank: int
    rank_name: str

    def to_wire(self) -> dict[str, Any]:
        return {
            "userId": self.user.user_id,
            "username": self.user.username,
            "displayName": self.user.display_name,
            "rank": self.rank,
            "rankName": self.rank_name,
            "inGroup": self.rank > 0,
        }


class RankPolicy:
    """
    Encodes the rank transition rules for one group.

    Usage:
        policy = RankPolicy(directory, platform, audit_log, undo_cache)
        result = await policy.set_rank(ByUsername("builderman"), ByName("Member"))
        if not result.changed:
            ...  # already held; no write was issued
    """

    def __init__(
        self,
        directory: RoleDirectory,
        platform: GroupPlatform,
        audit_log: AuditLog,
        undo_cache: UndoCache | None = None,
        min_rank: int = 1,
        max_rank: int = 255,
        bulk_max_items: int = 50,
    ) -> None:
        self.directory = directory
        self.platform = platform
        self.audit_log = audit_log
        self.undo_cache = undo_cache
        self.min_rank = min_rank
        self.max_rank = max_rank
        self.bulk_max_items = bulk_max_items

    # ── Reads ──────────────────────────────────────────────────

    async def lookup(self, user: UserRef) -> Member:
        """Resolve a user and read their current rank."""
        account = await self._resolve_user(user)
        rank = await self.platform.get_user_rank(account.user_id)
        return Member(user=account, rank=rank, rank_name=self.directory.name_for_rank(rank))

    def resolve_target(self, target: RankTarget) -> Role:
        if isinstance(target, ByNumber):
            return self.directory.get_by_rank(target.rank)
        if isinstance(target, ByName):
            return self.directory.get_by_name(target.name)
        raise ValidationError(f"Unsupported rank target: {target!r}")

    def check_assignable(self, role: Role) -> None:
        """
        Raises:
            PermissionDeniedError: the bot may not assign ``role``.
        """
        bot_rank = self.directory.bot_rank
        if role.rank >= bot_rank:
            raise PermissionDeniedError(
                f"Cannot assign '{role.name}' (rank {role.rank}): it is at or above "
                f"the bot's own rank ({bot_rank})"
            )
        if not role.can_assign:
            raise PermissionDeniedError(f"Role '{role.name}' (rank {role.rank}) cannot be assigned")
        if role.rank < self.min_rank or role.rank > self.max_rank:
            raise PermissionDeniedError(
                f"Rank {role.rank} is outside the allowed range "
                f"{self.min_rank}-{self.max_rank}"
            )

    # ── Mutations ──────────────────────────────────────────────

    async def set_rank(
        self,
        user: UserRef,
        target: RankTarget,
        *,
        source_ip: str | None = None,
        action: RankAction = RankAction.RANK,
        record_undo: bool = True,
        undo_scope: str = DEFAULT_SCOPE,
    ) -> RankChangeResult:
        """
        Move ``user`` to ``target``. A no-op when the rank is already held.

        Raises:
            ValidationError, PermissionDeniedError, NotFoundError: never retried.
            PlatformConnectionError, RateLimitedError: platform unavailable.
        """
        attempt = _Attempt.start(action, user, source_ip)
        try:
            self._require_directory()
            role = self.resolve_target(target)
            attempt.target_rank = role.rank
            self.check_assignable(role)
            member = await self._load_member(user, attempt)
            result = await self._apply(member, role)
        except Exception as exc:
            self._audit(attempt, error=exc)
            raise

        self._audit(attempt, result=result)
        self._remember(action, result, record_undo, undo_scope)
        return result

    async def promote(
        self,
        user: UserRef,
        *,
        source_ip: str | None = None,
        undo_scope: str = DEFAULT_SCOPE,
    ) -> RankChangeResult:
        """Move ``user`` to the next assignable role above their current one."""
        return await self._step(user, RankAction.PROMOTE, source_ip, undo_scope)

    async def demote(
        self,
        user: UserRef,
        *,
        source_ip: str | None = None,
        undo_scope: str = DEFAULT_SCOPE,
    ) -> RankChangeResult:
        """Move ``user`` to the next assignable role below their current one."""
        return await self._step(user, RankAction.DEMOTE, source_ip, undo_scope)

    async def bulk_rank(
        self,
        items: Sequence[Any],
        *,
        source_ip: str | None = None,
    ) -> BulkRankResult:
        """
        Apply a list of ``{userId|username, rank|rankName}`` requests.

        Items run one after another and fail independently: a malformed or
        rejected item is reported in its own row and never stops the rest.
        Bulk changes are not recorded for undo.
        """
        if not items:
            raise ValidationError("users must contain at least one entry")
        if len(items) > self.bulk_max_items:
            raise ValidationError(f"maximum {self.bulk_max_items} users allowed per bulk request")

        rows: list[BulkItemResult] = []
        for index, item in enumerate(items):
            user_id, username = _identity_hint(item)
            try:
                user, target = parse_bulk_item(item)
            except ValidationError as exc:
                self.audit_log.add(
                    action=RankAction.BULK_RANK.value,
                    success=False,
                    user_id=user_id,
                    username=username,
                    error=exc.message,
                    ip=source_ip,
                )
                rows.append(_failed_row(index, exc.message, user_id, username))
                continue

            try:
                result = await self.set_rank(
                    user,
                    target,
                    source_ip=source_ip,
                    action=RankAction.BULK_RANK,
                    record_undo=False,
                )
            except RankBotError as exc:
                rows.append(_failed_row(index, exc.message, user_id, username))
            except Exception:
                logger.exception("Unexpected error on bulk item %d", index)
                rows.append(_failed_row(index, "Internal error", user_id, username))
            else:
                rows.append(BulkItemResult(success=True, index=index, result=result))

        succeeded = sum(1 for row in rows if row.success)
        logger.info("Bulk rank finished: %d succeeded, %d failed", succeeded, len(rows) - succeeded)
        return BulkRankResult(
            results=rows,
            total=len(rows),
            succeeded=succeeded,
            failed=len(rows) - succeeded,
        )

    # ── Internals ──────────────────────────────────────────────

    async def _step(
        self,
        user: UserRef,
        action: RankAction,
        source_ip: str | None,
        undo_scope: str,
    ) -> RankChangeResult:
        attempt = _Attempt.start(action, user, source_ip)
        try:
            self._require_directory()
            member = await self._load_member(user, attempt)
            if action is RankAction.PROMOTE:
                role = self.directory.next_assignable_above(member.rank)
                edge = "highest"
            else:
                role = self.directory.next_assignable_below(member.rank)
                edge = "lowest"
            # Neighbours outside [min_rank, max_rank] are never step targets.
            if role is not None and not self.min_rank <= role.rank <= self.max_rank:
                role = None

            if role is None:
                result = self._unchanged(
                    member, f"{member.user.username} is already at the {edge} assignable rank"
                )
            else:
                attempt.target_rank = role.rank
                result = await self._apply(member, role)
        except Exception as exc:
            self._audit(attempt, error=exc)
            raise

        self._audit(attempt, result=result)
        self._remember(action, result, True, undo_scope)
        return result

    def _require_directory(self) -> None:
        if not self.directory.loaded:
            raise DirectoryIntegrityError("Role directory is not loaded yet; retry shortly")

    async def _resolve_user(self, user: UserRef) -> PlatformUser:
        if isinstance(user, ById):
            return await self.platform.get_user(user.user_id)
        if isinstance(user, ByUsername):
            return await self.platform.resolve_username(user.username)
        raise ValidationError(f"Unsupported user reference: {user!r}")

    async def _load_member(self, user: UserRef, attempt: _Attempt) -> Member:
        member = await self.lookup(user)
        attempt.user_id = member.user.user_id
        attempt.username = member.user.username
        attempt.old_rank = member.rank

        if member.rank == 0:
            raise NotFoundError(f"{member.user.username} is not a member of the group")
        if member.rank >= self.directory.bot_rank:
            raise PermissionDeniedError(
                f"Cannot change {member.user.username}: their rank ({member.rank}) is at "
                f"or above the bot's own rank ({self.directory.bot_rank})"
            )
        return member

    async def _apply(self, member: Member, role: Role) -> RankChangeResult:
        if member.rank == role.rank:
            return self._unchanged(member, f"{member.user.username} already holds {role.name}")

        await self.platform.set_user_role(member.user.user_id, role.id)
        logger.info(
            "Ranked %s (%s): %s -> %s",
            member.user.username,
            member.user.user_id,
            member.rank,
            role.rank,
        )
        return RankChangeResult(
            user_id=member.user.user_id,
            username=member.user.username,
            old_rank=member.rank,
            old_rank_name=self.directory.name_for_rank(member.rank),
            new_rank=role.rank,
            new_rank_name=self.directory.name_for_rank(role.rank),
            changed=True,
        )

    def _unchanged(self, member: Member, message: str) -> RankChangeResult:
        return RankChangeResult(
            user_id=member.user.user_id,
            username=member.user.username,
            old_rank=member.rank,
            old_rank_name=member.rank_name,
            new_rank=member.rank,
            new_rank_name=member.rank_name,
            changed=False,
            message=message,
        )

    def _audit(
        self,
        attempt: _Attempt,
        result: RankChangeResult | None = None,
        error: Exception | None = None,
    ) -> None:
        self.audit_log.add(
            action=attempt.action.value,
            success=error is None,
            user_id=attempt.user_id,
            username=attempt.username,
            target_rank=attempt.target_rank,
            old_rank=result.old_rank if result else attempt.old_rank,
            new_rank=result.new_rank if result else None,
            error=_error_text(error) if error else None,
            ip=attempt.source_ip,
        )

    def _remember(
        self,
        action: RankAction,
        result: RankChangeResult,
        record_undo: bool,
        scope: str,
    ) -> None:
        if result.changed and record_undo and self.undo_cache is not None:
            self.undo_cache.record(action, result, scope=scope)


def _error_text(error: Exception) -> str:
    if isinstance(error, RankBotError):
        return error.message
    return f"{type(error).__name__}: {error}"


def _identity_hint(item: Any) -> tuple[int | None, str | None]:
    if not isinstance(item, dict):
        return None, None
    raw_id = item.get("userId")
    user_id = raw_id if isinstance(raw_id, int) and not isinstance(raw_id, bool) else None
    if user_id is None and isinstance(raw_id, str) and raw_id.strip().isdigit():
        user_id = int(raw_id.strip())
    username = item.get("username") if isinstance(item.get("username"), str) else None
    return user_id, username


def _failed_row(
    index: int, message: str, user_id: int | None, username: str | None
) -> BulkItemResult:
    return BulkItemResult(
        success=False, index=index, error=message, user_id=user_id, username=username
    )
