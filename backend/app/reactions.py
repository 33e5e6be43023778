"""Reaction and like sets.

A tweet stores one set of user identifiers per reaction kind, and a comment
stores one for its likes. Two stored forms coexist across rows:

* a compact JSON array of identifiers (``["alice","bob"]``), the normal form;
* a plain integer string (``"5"``) written by releases that only kept counts. The
  reacting identities are gone, so it decodes to an empty member list whose
  ``count`` still reports the stored number.

Values are decoded once, by :class:`ReactionSetType`, when a row is loaded.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from enum import StrEnum

from sqlalchemy import Text
from sqlalchemy.types import TypeDecorator

logger = logging.getLogger(__name__)


class ReactionKind(StrEnum):
    like = "like"
    confused = "confused"
    omg = "omg"


# Older clients send "god" for omg.
REACTION_ALIASES = {"god": ReactionKind.omg}


def parse_reaction_kind(value: str | None) -> ReactionKind | None:
    if not value:
        return None
    value = value.strip().lower()
    if value in REACTION_ALIASES:
        return REACTION_ALIASES[value]
    try:
        return ReactionKind(value)
    except ValueError:
        return None


@dataclass(frozen=True)
class MemberSet:
    members: tuple[str, ...] = ()

    @property
    def count(self) -> int:
        return len(self.members)

    def toggle(self, uid: str) -> tuple[MemberSet, bool]:
        """Remove ``uid`` if present, append it otherwise. Returns (new set, added)."""
        if uid in self.members:
            return MemberSet(tuple(m for m in self.members if m != uid)), False
        return MemberSet(self.members + (uid,)), True

    def replace(self, old: str, new: str) -> MemberSet:
        if old not in self.members:
            return self
        renamed: list[str] = []
        for m in self.members:
            m = new if m == old else m
            if m not in renamed:
                renamed.append(m)
        return MemberSet(tuple(renamed))

    def discard(self, uid: str) -> MemberSet:
        if uid not in self.members:
            return self
        return MemberSet(tuple(m for m in self.members if m != uid))


@dataclass(frozen=True)
class LegacyCount:
    count: int

    @property
    def members(self) -> tuple[str, ...]:
        return ()

    def toggle(self, uid: str) -> tuple[MemberSet, bool]:
        # Identities behind a legacy count are unrecoverable; start a real set.
        return MemberSet((uid,)), True

    def replace(self, old: str, new: str) -> LegacyCount:
        return self

    def discard(self, uid: str) -> LegacyCount:
        return self


ReactionValue = MemberSet | LegacyCount


def decode(raw: str | int | None) -> ReactionValue:
    if raw is None:
        return MemberSet()
    if isinstance(raw, int) and not isinstance(raw, bool):
        return LegacyCount(raw)
    text = str(raw).strip()
    if not text:
        return MemberSet()
    try:
        parsed = json.loads(text)
    except ValueError:
        logger.warning("Unreadable reaction value %r, treating it as empty", text[:64])
        return MemberSet()
    if isinstance(parsed, bool):
        return MemberSet()
    if isinstance(parsed, int):
        return LegacyCount(parsed)
    if isinstance(parsed, float) and parsed.is_integer():
        return LegacyCount(int(parsed))
    if isinstance(parsed, list):
        members: list[str] = []
        for item in parsed:
            item = str(item)
            if item not in members:
                members.append(item)
        return MemberSet(tuple(members))
    logger.warning("Unexpected reaction value %r, treating it as empty", text[:64])
    return MemberSet()


def encode(value: ReactionValue) -> str:
    if isinstance(value, LegacyCount):
        return str(value.count)
    return json.dumps(list(value.members), ensure_ascii=False, separators=(",", ":"))


class ReactionSetType(TypeDecorator):
    """Text column holding an encoded reaction set."""

    impl = Text
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return encode(MemberSet())
        if isinstance(value, (MemberSet, LegacyCount)):
            return encode(value)
        if isinstance(value, (str, int)):
            return encode(decode(value))
        # Plain iterables of identifiers are accepted for convenience.
        return encode(MemberSet(tuple(dict.fromkeys(str(v) for v in value))))

    def process_result_value(self, value, dialect):
        return decode(value)
