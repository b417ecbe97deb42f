"""
Input validation — turns raw request values into tagged variants.

Identifiers and rank targets are resolved exactly once, here, at the request
boundary. Nothing deeper in the call chain re-inspects raw strings.
"""

from __future__ import annotations

import re
from typing import Any

from rankbot.errors import ValidationError
from rankbot.schema import ById, ByName, ByNumber, ByUsername, RankTarget, UserRef

USERNAME_PATTERN = re.compile(r"^[A-Za-z0-9_]{3,20}$")
DIGITS_PATTERN = re.compile(r"^\d+$")

MAX_USER_ID = 10_000_000_000
MIN_RANK = 0
MAX_RANK = 255
MAX_RANK_NAME_LENGTH = 100


def validate_user_id(value: Any) -> int:
    """Parse a positive user id from an int or digit string."""
    if value is None or value == "" or isinstance(value, bool):
        raise ValidationError("userId is required")
    if isinstance(value, int):
        parsed = value
    elif isinstance(value, str) and DIGITS_PATTERN.match(value.strip()):
        parsed = int(value.strip())
    else:
        raise ValidationError("userId must be a positive number")

    if parsed <= 0:
        raise ValidationError("userId must be a positive number")
    if parsed > MAX_USER_ID:
        raise ValidationError("userId is out of range")
    return parsed


def validate_username(value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError("username is required")
    trimmed = value.strip()
    if len(trimmed) < 3:
        raise ValidationError("username must be at least 3 characters")
    if len(trimmed) > 20:
        raise ValidationError("username cannot exceed 20 characters")
    if not USERNAME_PATTERN.match(trimmed):
        raise ValidationError("username can only contain letters, numbers, and underscores")
    return trimmed


def validate_rank_number(value: Any) -> int:
    if value is None or value == "" or isinstance(value, bool):
        raise ValidationError("rank is required")
    if isinstance(value, int):
        parsed = value
    elif isinstance(value, str) and DIGITS_PATTERN.match(value.strip()):
        parsed = int(value.strip())
    else:
        raise ValidationError(f"rank must be a number between {MIN_RANK} and {MAX_RANK}")

    if parsed < MIN_RANK or parsed > MAX_RANK:
        raise ValidationError(f"rank must be a number between {MIN_RANK} and {MAX_RANK}")
    return parsed


def parse_user_identifier(raw: Any) -> UserRef:
    """
    Classify a free-form identifier as a user id or a username.

    Integers and all-digit strings are ids; anything else must satisfy the
    username rules.
    """
    if isinstance(raw, int) and not isinstance(raw, bool):
        return ById(validate_user_id(raw))
    if not isinstance(raw, str) or not raw.strip():
        raise ValidationError("username or userId is required")
    trimmed = raw.strip()
    if DIGITS_PATTERN.match(trimmed):
        return ById(validate_user_id(trimmed))
    return ByUsername(validate_username(trimmed))


def parse_rank_target(rank: Any = None, rank_name: Any = None) -> RankTarget:
    """
    Resolve ``rank`` / ``rankName`` request fields into ``ByNumber`` or ``ByName``.

    A digit string given as ``rank`` counts as a number; any other string
    given as ``rank`` is treated as a role name.
    """
    if rank is not None and rank != "":
        if isinstance(rank, str) and not DIGITS_PATTERN.match(rank.strip()):
            return _rank_name(rank)
        return ByNumber(validate_rank_number(rank))
    if rank_name is not None:
        return _rank_name(rank_name)
    raise ValidationError("rank or rankName is required")


def _rank_name(value: Any) -> ByName:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError("rankName must be a non-empty string")
    trimmed = value.strip()
    if len(trimmed) > MAX_RANK_NAME_LENGTH:
        raise ValidationError("rankName is too long")
    return ByName(trimmed)


def parse_bulk_item(item: Any) -> tuple[UserRef, RankTarget]:
    """Validate one ``{userId|username, rank|rankName}`` bulk entry."""
    if not isinstance(item, dict):
        raise ValidationError("each bulk entry must be an object")
    if item.get("userId") is not None:
        user: UserRef = ById(validate_user_id(item["userId"]))
    elif item.get("username") is not None:
        user = ByUsername(validate_username(item["username"]))
    else:
        raise ValidationError("each bulk entry needs userId or username")
    return user, parse_rank_target(item.get("rank"), item.get("rankName"))


def parse_id_list(raw: str, max_items: int) -> list[int]:
    items = [part.strip() for part in raw.split(",") if part.strip()]
    _check_list_size(items, max_items)
    return [validate_user_id(item) for item in items]


def parse_username_list(raw: str, max_items: int) -> list[str]:
    items = [part.strip() for part in raw.split(",") if part.strip()]
    _check_list_size(items, max_items)
    return [validate_username(item) for item in items]


def _check_list_size(items: list[Any], max_items: int) -> None:
    if not items:
        raise ValidationError("at least one user is required")
    if len(items) > max_items:
        raise ValidationError(f"maximum {max_items} users allowed")
