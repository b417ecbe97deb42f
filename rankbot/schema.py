"""
RankBot Schema — Pydantic models shared by the ranking core and the API.

Wire names are camelCase (``userId``, ``oldRankName``) because the chat bot
and the game client already speak that dialect; Python code uses the
snake_case attribute names.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class WireModel(BaseModel):
    """Base model: immutable, camelCase on the wire."""

    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


# ════════════════════════════════════════════════════════════════
# Roles
# ════════════════════════════════════════════════════════════════


class Role(WireModel):
    """A named tier in the group hierarchy."""

    id: int
    rank: int = Field(ge=0, le=255)
    name: str
    member_count: int = 0
    can_assign: bool = False


class RankAction(str, enum.Enum):
    """Kinds of rank mutation recorded in the audit log and undo slot."""

    RANK = "rank"
    PROMOTE = "promote"
    DEMOTE = "demote"
    BULK_RANK = "bulk_rank"
    UNDO = "undo"


# ════════════════════════════════════════════════════════════════
# Tagged request variants
# ════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class ById:
    user_id: int


@dataclass(frozen=True)
class ByUsername:
    username: str


UserRef = Union[ById, ByUsername]


@dataclass(frozen=True)
class ByNumber:
    rank: int


@dataclass(frozen=True)
class ByName:
    name: str


RankTarget = Union[ByNumber, ByName]


# ════════════════════════════════════════════════════════════════
# Results
# ════════════════════════════════════════════════════════════════


class RankChangeResult(WireModel):
    """Outcome of a set/promote/demote. ``changed=False`` is not an error."""

    user_id: int
    username: str
    old_rank: int
    old_rank_name: str
    new_rank: int
    new_rank_name: str
    changed: bool
    message: str = ""


class BulkItemResult(WireModel):
    """One row of a bulk request: either a change result or an error."""

    success: bool
    index: int
    result: RankChangeResult | None = None
    error: str | None = None
    user_id: int | None = None
    username: str | None = None

    def to_wire(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"success": self.success, "index": self.index}
        if self.result is not None:
            payload.update(self.result.to_wire())
        else:
            payload["error"] = self.error
            if self.user_id is not None:
                payload["userId"] = self.user_id
            if self.username is not None:
                payload["username"] = self.username
        return payload


class BulkRankResult(WireModel):
    results: list[BulkItemResult]
    total: int
    succeeded: int
    failed: int

    def to_wire(self) -> dict[str, Any]:
        return {
            "results": [item.to_wire() for item in self.results],
            "total": self.total,
            "succeeded": self.succeeded,
            "failed": self.failed,
        }


class PlatformUser(WireModel):
    """A user account on the platform."""

    user_id: int
    username: str
    display_name: str = ""


# ════════════════════════════════════════════════════════════════
# Audit & undo records
# ════════════════════════════════════════════════════════════════


class AuditEntry(WireModel):
    """Immutable record of one attempted mutation, successful or not."""

    id: str
    timestamp: datetime
    action: str
    user_id: int | None = None
    username: str | None = None
    target_rank: int | None = None
    old_rank: int | None = None
    new_rank: int | None = None
    success: bool
    error: str | None = None
    masked_ip: str | None = None


class LastAction(WireModel):
    """The single most recent reversible change."""

    type: RankAction
    user_id: int
    username: str
    old_rank: int
    old_rank_name: str
    new_rank: int
    new_rank_name: str
    timestamp: float
