from __future__ import annotations

import pytest

from app.reactions import LegacyCount, MemberSet, ReactionKind, ReactionSetType, decode, encode, parse_reaction_kind


def test_legacy_numeric_value_keeps_count_without_members():
    value = decode("5")
    assert value == LegacyCount(5)
    assert value.count == 5
    assert value.members == ()


def test_json_array_decodes_to_member_set():
    value = decode('["alice","bob"]')
    assert isinstance(value, MemberSet)
    assert value.count == 2
    assert set(value.members) == {"alice", "bob"}


@pytest.mark.parametrize("raw", [None, "", "   ", "not json", '{"a": 1}', "true"])
def test_unusable_values_decode_to_empty_set(raw):
    assert decode(raw) == MemberSet()


def test_duplicates_in_stored_array_are_collapsed():
    assert decode('["alice","alice","bob"]').members == ("alice", "bob")


def test_toggle_adds_then_removes():
    start = MemberSet(("alice",))
    added, was_added = start.toggle("bob")
    assert was_added is True
    assert added.members == ("alice", "bob")

    removed, was_added = added.toggle("bob")
    assert was_added is False
    assert removed == start


def test_toggle_on_legacy_count_starts_a_member_set():
    value, added = LegacyCount(7).toggle("alice")
    assert added is True
    assert value == MemberSet(("alice",))


def test_replace_renames_member_without_duplicating():
    value = MemberSet(("alice", "bob", "carol"))
    assert value.replace("bob", "robert").members == ("alice", "robert", "carol")
    assert value.replace("bob", "alice").members == ("alice", "carol")
    assert LegacyCount(3).replace("bob", "robert") == LegacyCount(3)


def test_encode_is_compact_json_and_legacy_is_preserved():
    assert encode(MemberSet(("alice", "bob"))) == '["alice","bob"]'
    assert encode(MemberSet()) == "[]"
    assert encode(LegacyCount(5)) == "5"


def test_column_type_round_trips_through_bind_and_result():
    column_type = ReactionSetType()
    stored = column_type.process_bind_param(MemberSet(("alice",)), None)
    assert column_type.process_result_value(stored, None) == MemberSet(("alice",))
    assert column_type.process_bind_param(None, None) == "[]"
    assert column_type.process_bind_param(["bob", "bob"], None) == '["bob"]'
    assert column_type.process_result_value("12", None) == LegacyCount(12)


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("like", ReactionKind.like),
        ("confused", ReactionKind.confused),
        ("omg", ReactionKind.omg),
        ("god", ReactionKind.omg),
        (" LIKE ", ReactionKind.like),
        ("love", None),
        ("", None),
        (None, None),
    ],
)
def test_parse_reaction_kind(raw, expected):
    assert parse_reaction_kind(raw) == expected
