"""Persistence operations for users, tweets, comments and bookmarks.

Every operation runs on the request's ``AsyncSession`` and commits its own
unit of work. Errors are raised from :mod:`app.errors` and mapped to HTTP
responses by the route layer.
"""

from __future__ import annotations

import json
import logging
import re
import threading
import time
from collections.abc import Callable
from datetime import datetime

from sqlalchemy import Text, delete, desc, or_, select, type_coerce, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from app.errors import AuthenticationFailed, Conflict, Forbidden, NotFound, ValidationFailed
from app.models import VISITOR_PREFIX, Bookmark, Comment, Tweet, User
from app.reactions import MemberSet, ReactionKind, ReactionValue
from app.security import hash_password, verify_password
from app.settings import settings

logger = logging.getLogger(__name__)

NICKNAME_RE = re.compile(r"^[A-Za-z0-9_-]{1,30}$")

REACTION_COLUMNS = {
    ReactionKind.like: "likes",
    ReactionKind.confused: "confused",
    ReactionKind.omg: "omg",
}

TweetRow = tuple[Tweet, User | None]
CommentRow = tuple[Comment, User | None]

_id_lock = threading.Lock()
_last_id = 0


def new_id() -> str:
    """Millisecond counter, bumped when two ids land in the same millisecond."""
    global _last_id
    with _id_lock:
        ms = int(time.time() * 1000)
        _last_id = ms if ms > _last_id else _last_id + 1
        return str(_last_id)


def display_time() -> str:
    return datetime.now().strftime("%Y/%m/%d %H:%M:%S")


def is_visitor_id(uid: str | None) -> bool:
    return bool(uid) and uid.startswith(VISITOR_PREFIX)


def is_valid_nickname(nickname: str | None) -> bool:
    return bool(nickname) and NICKNAME_RE.match(nickname) is not None and not is_visitor_id(nickname)


def validate_nickname(nickname: str | None) -> str:
    nickname = (nickname or "").strip()
    if not nickname:
        raise ValidationFailed("nickname is required")
    if is_visitor_id(nickname):
        raise ValidationFailed(f"Nicknames may not start with {VISITOR_PREFIX}")
    if not NICKNAME_RE.match(nickname):
        raise ValidationFailed("Nickname may only contain letters, digits, underscore and hyphen (max 30)")
    return nickname


def media_urls(tweets: list[Tweet]) -> list[str]:
    return [item.get("url") for t in tweets for item in (t.media or []) if item.get("url")]


class FeedStore:
    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    # -- users ---------------------------------------------------------------

    async def get_user(self, nickname: str | None) -> User | None:
        if not nickname:
            return None
        return await self.db.get(User, nickname)

    async def require_user(self, nickname: str) -> User:
        user = await self.get_user(nickname)
        if user is None:
            raise NotFound("User not found")
        return user

    async def is_nickname_available(self, nickname: str | None) -> bool:
        if not is_valid_nickname(nickname):
            return False
        return await self.get_user(nickname) is None

    async def create_user(self, nickname: str, password: str) -> User:
        nickname = validate_nickname(nickname)
        if not password:
            raise ValidationFailed("password is required")
        if await self.get_user(nickname) is not None:
            raise Conflict("Nickname already taken")

        user = User(nickname=nickname, password_hash=hash_password(password), bio=settings.default_bio)
        self.db.add(user)
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            raise Conflict("Nickname already taken")
        logger.info("Registered user %s", nickname)
        return user

    async def authenticate_user(self, nickname: str, password: str) -> User:
        user = await self.get_user((nickname or "").strip())
        if user is None or not password or not verify_password(password, user.password_hash):
            raise AuthenticationFailed("Invalid nickname or password")
        return user

    async def transfer_visitor_content(self, visitor_id: str | None, nickname: str) -> int:
        """Reassign every tweet and comment written under ``visitor_id`` to ``nickname``."""
        if not is_visitor_id(visitor_id):
            return 0
        tweets = await self.db.execute(
            update(Tweet).where(Tweet.author == visitor_id).values(author=nickname).execution_options(synchronize_session=False)
        )
        comments = await self.db.execute(
            update(Comment).where(Comment.author == visitor_id).values(author=nickname).execution_options(synchronize_session=False)
        )
        await self.db.commit()
        moved = (tweets.rowcount or 0) + (comments.rowcount or 0)
        if moved:
            logger.info("Moved %d tweets and %d comments from %s to %s", tweets.rowcount, comments.rowcount, visitor_id, nickname)
        return moved

    async def update_profile(
        self,
        nickname: str,
        *,
        new_nickname: str | None = None,
        bio: str | None = None,
        avatar: str | None = None,
        banner: str | None = None,
    ) -> tuple[User, list[str]]:
        """Partial profile update. Returns the user and media URLs that were replaced."""
        user = await self.require_user(nickname)
        replaced: list[str] = []

        if new_nickname is not None and new_nickname.strip() and new_nickname.strip() != nickname:
            new_nickname = validate_nickname(new_nickname)
            if await self.get_user(new_nickname) is not None:
                raise Conflict("Nickname already taken")
            await self._rename(nickname, new_nickname)
            self.db.expunge(user)
            user = await self.require_user(new_nickname)

        if bio is not None:
            user.bio = bio
        if avatar is not None:
            if user.avatar:
                replaced.append(user.avatar)
            user.avatar = avatar
        if banner is not None:
            if user.banner:
                replaced.append(user.banner)
            user.banner = banner

        try:
            await self.db.commit()
        except (IntegrityError, StaleDataError):
            await self.db.rollback()
            raise Conflict("Profile changed concurrently, try again")
        return user, replaced

    async def _rename(self, old: str, new: str) -> None:
        no_sync = {"synchronize_session": False}
        await self.db.execute(update(User).where(User.nickname == old).values(nickname=new).execution_options(**no_sync))
        # Bookmarks follow through ON UPDATE CASCADE where the backend enforces it.
        await self.db.execute(
            update(Bookmark).where(Bookmark.user_nickname == old).values(user_nickname=new).execution_options(**no_sync)
        )
        await self.db.execute(update(Tweet).where(Tweet.author == old).values(author=new).execution_options(**no_sync))
        await self.db.execute(update(Comment).where(Comment.author == old).values(author=new).execution_options(**no_sync))
        await self._rewrite_member_sets(old, lambda value: value.replace(old, new))
        logger.info("Renamed user %s to %s", old, new)

    async def _rewrite_member_sets(self, nickname: str, change: Callable[[ReactionValue], ReactionValue]) -> None:
        needle = json.dumps(nickname, ensure_ascii=False)
        for attr in REACTION_COLUMNS.values():
            column = getattr(Tweet, attr)
            result = await self.db.scalars(select(Tweet).where(type_coerce(column, Text).contains(needle, autoescape=True)))
            for tweet in result.all():
                setattr(tweet, attr, change(getattr(tweet, attr)))
        result = await self.db.scalars(select(Comment).where(type_coerce(Comment.likes, Text).contains(needle, autoescape=True)))
        for comment in result.all():
            comment.likes = change(comment.likes)

    async def delete_user(self, nickname: str) -> list[str]:
        """Delete a user with their tweets, comments and bookmarks. Returns media URLs to remove."""
        user = await self.require_user(nickname)
        no_sync = {"synchronize_session": False}

        tweets = list((await self.db.scalars(select(Tweet).where(Tweet.author == nickname))).all())
        tweet_ids = [t.id for t in tweets]
        urls = media_urls(tweets) + [u for u in (user.avatar, user.banner) if u]

        if tweet_ids:
            await self.db.execute(delete(Bookmark).where(Bookmark.tweet_id.in_(tweet_ids)).execution_options(**no_sync))
            await self.db.execute(delete(Comment).where(Comment.tweet_id.in_(tweet_ids)).execution_options(**no_sync))
            await self.db.execute(delete(Tweet).where(Tweet.id.in_(tweet_ids)).execution_options(**no_sync))

        own_comments = select(Comment.id).where(Comment.author == nickname).scalar_subquery()
        await self.db.execute(delete(Comment).where(Comment.parent_id.in_(own_comments)).execution_options(**no_sync))
        await self.db.execute(delete(Comment).where(Comment.author == nickname).execution_options(**no_sync))
        await self.db.execute(delete(Bookmark).where(Bookmark.user_nickname == nickname).execution_options(**no_sync))

        self.db.expunge_all()
        await self._rewrite_member_sets(nickname, lambda value: value.discard(nickname))
        await self.db.execute(delete(User).where(User.nickname == nickname).execution_options(**no_sync))
        await self.db.commit()
        logger.info("Deleted user %s with %d tweets", nickname, len(tweet_ids))
        return urls

    # -- tweets --------------------------------------------------------------

    async def insert_tweet(self, author: str, content: str, tags: list[str], media: list[dict]) -> Tweet:
        tweet = Tweet(
            id=new_id(),
            author=author,
            content=content,
            tags=tags,
            media=media,
            timestamp=display_time(),
            likes=MemberSet(),
            confused=MemberSet(),
            omg=MemberSet(),
        )
        self.db.add(tweet)
        await self.db.commit()
        return tweet

    def _tweet_rows(self):
        return select(Tweet, User).outerjoin(User, User.nickname == Tweet.author)

    async def list_tweets(self, search: str | None = None) -> list[TweetRow]:
        q = self._tweet_rows().order_by(desc(Tweet.id))
        search = (search or "").strip()
        if search:
            q = q.where(
                or_(
                    Tweet.content.icontains(search, autoescape=True),
                    Tweet.author.icontains(search, autoescape=True),
                )
            )
        result = await self.db.execute(q)
        return [(row[0], row[1]) for row in result.all()]

    async def get_tweet(self, tweet_id: str, *, fresh: bool = False) -> Tweet:
        tweet = await self.db.get(Tweet, tweet_id, populate_existing=fresh)
        if tweet is None:
            raise NotFound("Tweet not found")
        return tweet

    async def get_tweet_row(self, tweet_id: str) -> TweetRow:
        result = await self.db.execute(self._tweet_rows().where(Tweet.id == tweet_id))
        row = result.first()
        if row is None:
            raise NotFound("Tweet not found")
        return row[0], row[1]

    def _check_owner(self, tweet: Tweet, uid: str | None) -> None:
        if not uid:
            raise AuthenticationFailed("uid is required")
        if tweet.author != uid:
            raise Forbidden("You can only change your own tweets")

    async def update_tweet(
        self,
        tweet_id: str,
        uid: str | None,
        *,
        content: str,
        tags: list[str],
        media: list[dict] | None = None,
        clear_media: bool = False,
    ) -> tuple[Tweet, list[str]]:
        """Replace content and tags; replace media when new items are given. Returns replaced media URLs."""
        tweet = await self.get_tweet(tweet_id)
        self._check_owner(tweet, uid)

        replaced: list[str] = []
        if media or clear_media:
            replaced = media_urls([tweet])
            tweet.media = list(media or [])
        tweet.content = content
        tweet.tags = tags
        tweet.timestamp = f"{display_time()} {settings.edited_marker}"
        try:
            await self.db.commit()
        except StaleDataError:
            await self.db.rollback()
            raise Conflict("Tweet changed concurrently, try again")
        return tweet, replaced

    async def delete_tweet(self, tweet_id: str, uid: str | None) -> list[str]:
        """Delete a tweet with its comments and bookmarks. Returns its media URLs."""
        tweet = await self.get_tweet(tweet_id)
        self._check_owner(tweet, uid)
        urls = media_urls([tweet])
        no_sync = {"synchronize_session": False}

        await self.db.execute(delete(Bookmark).where(Bookmark.tweet_id == tweet_id).execution_options(**no_sync))
        await self.db.execute(delete(Comment).where(Comment.tweet_id == tweet_id).execution_options(**no_sync))
        await self.db.execute(delete(Tweet).where(Tweet.id == tweet_id).execution_options(**no_sync))
        self.db.expunge(tweet)
        await self.db.commit()
        logger.info("Deleted tweet %s", tweet_id)
        return urls

    async def toggle_reaction(self, tweet_id: str, kind: ReactionKind, uid: str) -> bool:
        """Flip ``uid`` in the tweet's ``kind`` set. Returns True when it was added."""
        attr = REACTION_COLUMNS[kind]
        for attempt in range(1, settings.toggle_retries + 1):
            tweet = await self.get_tweet(tweet_id, fresh=True)
            updated, added = getattr(tweet, attr).toggle(uid)
            setattr(tweet, attr, updated)
            try:
                await self.db.commit()
                return added
            except StaleDataError:
                await self.db.rollback()
                logger.info("Concurrent update on tweet %s, retrying %s toggle (attempt %d)", tweet_id, kind, attempt)
        raise Conflict("Tweet is busy, try again")

    # -- comments ------------------------------------------------------------

    async def insert_comment(self, tweet_id: str, author: str, text: str, parent_id: str | None = None) -> Comment:
        await self.get_tweet(tweet_id)
        if parent_id:
            parent = await self.db.get(Comment, parent_id)
            if parent is None:
                raise NotFound("Parent comment not found")
            if parent.tweet_id != tweet_id:
                raise ValidationFailed("Parent comment belongs to another tweet")
            # One level of nesting: a reply to a reply joins the root thread.
            parent_id = parent.parent_id or parent.id

        comment = Comment(
            id=new_id(),
            tweet_id=tweet_id,
            author=author,
            text=text,
            timestamp=display_time(),
            parent_id=parent_id or None,
            likes=MemberSet(),
        )
        self.db.add(comment)
        await self.db.commit()
        return comment

    async def toggle_comment_like(self, comment_id: str, uid: str) -> tuple[Comment, bool]:
        for attempt in range(1, settings.toggle_retries + 1):
            comment = await self.db.get(Comment, comment_id, populate_existing=True)
            if comment is None:
                raise NotFound("Comment not found")
            comment.likes, added = comment.likes.toggle(uid)
            try:
                await self.db.commit()
                return comment, added
            except StaleDataError:
                await self.db.rollback()
                logger.info("Concurrent update on comment %s, retrying like toggle (attempt %d)", comment_id, attempt)
        raise Conflict("Comment is busy, try again")

    async def load_comments(self, tweet_ids: list[str]) -> dict[str, list[CommentRow]]:
        grouped: dict[str, list[CommentRow]] = {tid: [] for tid in tweet_ids}
        if not tweet_ids:
            return grouped
        result = await self.db.execute(
            select(Comment, User)
            .outerjoin(User, User.nickname == Comment.author)
            .where(Comment.tweet_id.in_(tweet_ids))
            .order_by(Comment.id.asc())
        )
        for comment, user in result.all():
            grouped.setdefault(comment.tweet_id, []).append((comment, user))
        return grouped

    # -- bookmarks -----------------------------------------------------------

    async def toggle_bookmark(self, uid: str, tweet_id: str) -> bool:
        """Returns True when the tweet is bookmarked after the call."""
        await self.get_tweet(tweet_id)
        existing = await self.db.get(Bookmark, (uid, tweet_id))
        if existing is not None:
            await self.db.delete(existing)
            await self.db.commit()
            return False

        self.db.add(Bookmark(user_nickname=uid, tweet_id=tweet_id))
        try:
            await self.db.commit()
        except IntegrityError:
            # A concurrent request bookmarked it first.
            await self.db.rollback()
        return True

    async def list_bookmarks(self, uid: str) -> list[tuple[Tweet, User | None, datetime]]:
        result = await self.db.execute(
            select(Tweet, User, Bookmark.created_at)
            .join(Bookmark, Bookmark.tweet_id == Tweet.id)
            .outerjoin(User, User.nickname == Tweet.author)
            .where(Bookmark.user_nickname == uid)
            .order_by(desc(Bookmark.created_at), desc(Tweet.id))
        )
        return [(row[0], row[1], row[2]) for row in result.all()]
