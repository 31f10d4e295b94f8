"""Tests for the friend-graph codec and the FriendList ordered set."""

import pytest

from socialgate.service.friends import (
    Friend,
    FriendList,
    add_friend,
    decode,
    encode,
    remove_friend,
)


class TestDecode:
    def test_empty_string_decodes_to_empty_list(self):
        assert len(decode("")) == 0
        assert len(decode(None)) == 0

    def test_splits_entries_and_fields(self):
        friends = decode("USA;Kitzmiller,Trevor|Canada;Quin,Tegan")
        assert friends.pairs() == [("USA", "Kitzmiller,Trevor"), ("Canada", "Quin,Tegan")]

    def test_splits_on_first_field_separator_only(self):
        friends = decode("USA;Smith;Jr")
        assert list(friends) == [Friend("USA", "Smith;Jr")]

    def test_entry_without_separator_has_empty_country(self):
        assert list(decode("Loner")) == [Friend("", "Loner")]

    def test_empty_elements_are_ignored(self):
        friends = decode("|USA;A||Canada;B|")
        assert friends.pairs() == [("USA", "A"), ("Canada", "B")]


class TestRoundTrip:
    @pytest.mark.parametrize(
        "entries",
        [
            [],
            [("USA", "Franklin,Aretha")],
            [("USA", "Kitzmiller,Trevor"), ("Canada", "Quin,Tegan"), ("UK", "Bowie,David")],
        ],
    )
    def test_decode_encode_preserves_sequence(self, entries):
        friends = FriendList(Friend(c, n) for c, n in entries)
        assert decode(encode(friends)).pairs() == entries


class TestAddFriend:
    def test_add_to_empty(self):
        assert add_friend("", "USA", "Kitzmiller,Trevor") == "USA;Kitzmiller,Trevor"

    def test_add_appends(self):
        raw = add_friend("USA;Kitzmiller,Trevor", "Canada", "Quin,Tegan")
        assert raw == "USA;Kitzmiller,Trevor|Canada;Quin,Tegan"

    def test_add_is_idempotent(self):
        once = add_friend("", "USA", "A")
        twice = add_friend(once, "USA", "A")
        assert once == twice

    def test_membership_is_exact_not_substring(self):
        raw = "USA;Quin,Tegan Sara"
        assert add_friend(raw, "USA", "Quin,Tegan") == "USA;Quin,Tegan Sara|USA;Quin,Tegan"

    def test_same_name_different_country_is_distinct(self):
        assert add_friend("USA;A", "Canada", "A") == "USA;A|Canada;A"


class TestRemoveFriend:
    RAW = "USA;A|Canada;B|UK;C"

    @pytest.mark.parametrize(
        "country,name,expected",
        [
            ("USA", "A", "Canada;B|UK;C"),
            ("Canada", "B", "USA;A|UK;C"),
            ("UK", "C", "USA;A|Canada;B"),
        ],
    )
    def test_remove_any_position(self, country, name, expected):
        assert remove_friend(self.RAW, country, name) == expected

    def test_remove_sole_entry(self):
        assert remove_friend("USA;A", "USA", "A") == ""

    def test_remove_absent_returns_input_unchanged(self):
        assert remove_friend(self.RAW, "USA", "Z") == self.RAW
        assert remove_friend("", "USA", "A") == ""

    def test_remove_does_not_touch_superstring_names(self):
        raw = "USA;Quin,Tegan Sara|USA;Quin,Tegan"
        assert remove_friend(raw, "USA", "Quin,Tegan") == "USA;Quin,Tegan Sara"


class TestFriendList:
    def test_constructor_drops_duplicates(self):
        friends = FriendList([Friend("USA", "A"), Friend("USA", "A")])
        assert len(friends) == 1

    def test_add_and_remove_report_change(self):
        friends = FriendList()
        assert friends.add(Friend("USA", "A")) is True
        assert friends.add(Friend("USA", "A")) is False
        assert Friend("USA", "A") in friends
        assert friends.remove(Friend("USA", "A")) is True
        assert friends.remove(Friend("USA", "A")) is False

    def test_equality(self):
        assert FriendList([Friend("USA", "A")]) == decode("USA;A")
        assert FriendList([Friend("USA", "A")]) != decode("Canada;A")

    def test_encodable(self):
        assert Friend("USA", "Smith;Jr").is_encodable()
        assert not Friend("US;A", "Smith").is_encodable()
        assert not Friend("USA", "A|B").is_encodable()
