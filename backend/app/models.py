from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import JSON, DateTime, ForeignKey, Integer, String, Text, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from app.reactions import MemberSet, ReactionSetType, ReactionValue

VISITOR_PREFIX = "visitor_"


def _empty_set() -> MemberSet:
    return MemberSet()


def _now_utc() -> datetime:
    return datetime.now(tz=timezone.utc)


class Base(DeclarativeBase):
    pass


class User(Base):
    __tablename__ = "users"

    nickname: Mapped[str] = mapped_column(String(30), primary_key=True)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    bio: Mapped[str | None] = mapped_column(Text, nullable=True)
    avatar: Mapped[str | None] = mapped_column(String(2048), nullable=True)
    banner: Mapped[str | None] = mapped_column(String(2048), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now_utc, server_default=func.now())


class Tweet(Base):
    __tablename__ = "tweets"

    # String of a millisecond creation counter, sortable and visible to clients.
    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    # Nickname or visitor identifier, so not a foreign key.
    author: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    content: Mapped[str] = mapped_column(Text, nullable=False, default="")
    media: Mapped[list[dict]] = mapped_column(JSON, nullable=False, default=list)
    tags: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    timestamp: Mapped[str] = mapped_column(String(64), nullable=False)

    likes: Mapped[ReactionValue] = mapped_column(ReactionSetType, nullable=False, default=_empty_set)
    confused: Mapped[ReactionValue] = mapped_column(ReactionSetType, nullable=False, default=_empty_set)
    omg: Mapped[ReactionValue] = mapped_column(ReactionSetType, nullable=False, default=_empty_set)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now_utc, server_default=func.now(), index=True)
    revision: Mapped[int] = mapped_column(Integer, nullable=False)

    comments: Mapped[list["Comment"]] = relationship(back_populates="tweet", cascade="all, delete-orphan", passive_deletes=True)

    __mapper_args__ = {"version_id_col": revision}


class Comment(Base):
    __tablename__ = "comments"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    tweet_id: Mapped[str] = mapped_column(String(32), ForeignKey("tweets.id", ondelete="CASCADE"), nullable=False, index=True)
    author: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    text: Mapped[str] = mapped_column(Text, nullable=False)
    timestamp: Mapped[str] = mapped_column(String(64), nullable=False)
    parent_id: Mapped[str | None] = mapped_column(String(32), ForeignKey("comments.id", ondelete="CASCADE"), nullable=True)
    likes: Mapped[ReactionValue] = mapped_column(ReactionSetType, nullable=False, default=_empty_set)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now_utc, server_default=func.now())
    revision: Mapped[int] = mapped_column(Integer, nullable=False)

    tweet: Mapped[Tweet] = relationship(back_populates="comments")

    __mapper_args__ = {"version_id_col": revision}


class Bookmark(Base):
    __tablename__ = "bookmarks"

    user_nickname: Mapped[str] = mapped_column(
        String(30), ForeignKey("users.nickname", ondelete="CASCADE", onupdate="CASCADE"), primary_key=True
    )
    tweet_id: Mapped[str] = mapped_column(String(32), ForeignKey("tweets.id", ondelete="CASCADE"), primary_key=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now_utc)
