"""
Tests for request validation at the API boundary.
"""

from __future__ import annotations

import pytest

from rankbot.errors import ValidationError
from rankbot.ranking.validation import (
    parse_bulk_item,
    parse_id_list,
    parse_rank_target,
    parse_user_identifier,
    parse_username_list,
    validate_rank_number,
    validate_user_id,
    validate_username,
)
from rankbot.schema import ByName, ByNumber, ById, ByUsername


class TestIdentifiers:
    def test_user_id_from_int_or_digits(self):
        assert validate_user_id(42) == 42
        assert validate_user_id(" 42 ") == 42

    @pytest.mark.parametrize("value", [None, "", 0, -5, "4x2", 10_000_000_001, True, 4.5])
    def test_bad_user_ids(self, value):
        with pytest.raises(ValidationError):
            validate_user_id(value)

    def test_username_rules(self):
        assert validate_username("  builder_man ") == "builder_man"
        for bad in ("ab", "a" * 21, "has space", "dash-ed", None):
            with pytest.raises(ValidationError):
                validate_username(bad)

    def test_identifier_classification(self):
        assert parse_user_identifier("12345") == ById(12345)
        assert parse_user_identifier(12345) == ById(12345)
        assert parse_user_identifier("Roblox") == ByUsername("Roblox")


class TestRankTargets:
    def test_numbers_and_names(self):
        assert parse_rank_target(rank=10) == ByNumber(10)
        assert parse_rank_target(rank="10") == ByNumber(10)
        assert parse_rank_target(rank="Officer") == ByName("Officer")
        assert parse_rank_target(rank_name=" Member ") == ByName("Member")

    def test_rank_takes_precedence_over_name(self):
        assert parse_rank_target(rank=5, rank_name="Member") == ByNumber(5)

    def test_out_of_range_and_missing(self):
        with pytest.raises(ValidationError):
            validate_rank_number(256)
        with pytest.raises(ValidationError):
            parse_rank_target(rank=-1)
        with pytest.raises(ValidationError):
            parse_rank_target()
        with pytest.raises(ValidationError):
            parse_rank_target(rank_name="x" * 101)


class TestBulkAndLists:
    def test_bulk_item(self):
        assert parse_bulk_item({"username": "rookie", "rankName": "Member"}) == (
            ByUsername("rookie"),
            ByName("Member"),
        )
        assert parse_bulk_item({"userId": "7", "rank": 1}) == (ById(7), ByNumber(1))

    def test_bulk_item_needs_identity(self):
        with pytest.raises(ValidationError):
            parse_bulk_item({"rank": 1})
        with pytest.raises(ValidationError):
            parse_bulk_item(["userId", 1])

    def test_comma_lists(self):
        assert parse_id_list("1, 2,3,", max_items=5) == [1, 2, 3]
        assert parse_username_list("alpha,beta_2", max_items=5) == ["alpha", "beta_2"]
        with pytest.raises(ValidationError):
            parse_id_list("", max_items=5)
        with pytest.raises(ValidationError):
            parse_id_list("1,2,3", max_items=2)
