from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Iterator, List, Tuple

ENTRY_SEPARATOR = "|"
FIELD_SEPARATOR = ";"


@dataclass(frozen=True)
class Friend:
    country: str
    name: str

    def encode(self) -> str:
        return f"{self.country}{FIELD_SEPARATOR}{self.name}"

    def is_encodable(self) -> bool:
        """False when a field holds a delimiter that would break decoding."""
        if ENTRY_SEPARATOR in self.country or ENTRY_SEPARATOR in self.name:
            return False
        return FIELD_SEPARATOR not in self.country

    @classmethod
    def parse(cls, entry: str) -> "Friend":
        country, sep, name = entry.partition(FIELD_SEPARATOR)
        if not sep:
            return cls(country="", name=entry)
        return cls(country=country, name=name)


class FriendList:
    """Ordered, duplicate-free sequence of friends.

    Graph logic works on this structure; the ``"country;name|..."`` text form
    only exists at the profile-store edge via :func:`decode` and :func:`encode`.
    """

    def __init__(self, friends: Iterable[Friend] = ()) -> None:
        self._items: List[Friend] = []
        for friend in friends:
            self.add(friend)

    def add(self, friend: Friend) -> bool:
        """Append ``friend`` unless already present; True when the list changed."""
        if friend in self._items:
            return False
        self._items.append(friend)
        return True

    def remove(self, friend: Friend) -> bool:
        """Drop ``friend`` wherever it sits; True when the list changed."""
        try:
            self._items.remove(friend)
        except ValueError:
            return False
        return True

    def __contains__(self, friend: object) -> bool:
        return friend in self._items

    def __iter__(self) -> Iterator[Friend]:
        return iter(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, FriendList):
            return self._items == other._items
        return NotImplemented

    def __repr__(self) -> str:
        return f"FriendList({self._items!r})"

    def pairs(self) -> List[Tuple[str, str]]:
        return [(f.country, f.name) for f in self._items]


def decode(raw: str | None) -> FriendList:
    """Parse a stored ``Friends`` value; empty elements are ignored."""
    if not raw:
        return FriendList()
    return FriendList(
        Friend.parse(entry) for entry in raw.split(ENTRY_SEPARATOR) if entry
    )


def encode(friends: Iterable[Friend]) -> str:
    return ENTRY_SEPARATOR.join(friend.encode() for friend in friends)


def add_friend(raw: str, country: str, name: str) -> str:
    friends = decode(raw)
    if not friends.add(Friend(country, name)):
        return raw
    return encode(friends)


def remove_friend(raw: str, country: str, name: str) -> str:
    friends = decode(raw)
    if not friends.remove(Friend(country, name)):
        return raw
    return encode(friends)
