"""Build API representations of tweets from stored rows.

A tweet row arrives left-joined with its author's current user row, and each
comment with its commenter's, so renamed or deleted accounts are reflected
at read time rather than copied into the rows.
"""

from __future__ import annotations

from datetime import datetime

from app.models import VISITOR_PREFIX, Comment, Tweet, User
from app.schemas import CommentResponse, MediaItem, ReactionCounts, ReactionUsers, TweetResponse
from app.settings import settings
from app.store import REACTION_COLUMNS, CommentRow


def display_name(author: str, user: User | None) -> str:
    if user is not None:
        return user.nickname
    if author.startswith(VISITOR_PREFIX):
        return settings.guest_label
    return author


def _creation_order(comment: Comment) -> tuple[int, str]:
    return len(comment.id), comment.id


def _comment(comment: Comment, user: User | None) -> CommentResponse:
    return CommentResponse(
        id=comment.id,
        user=display_name(comment.author, user),
        uid=comment.author,
        avatar=user.avatar if user is not None else None,
        text=comment.text,
        timestamp=comment.timestamp,
        parent_id=comment.parent_id,
        likes_count=comment.likes.count,
        likes_users=list(comment.likes.members),
    )


def comment_tree(rows: list[CommentRow]) -> list[CommentResponse]:
    """Top-level comments newest first, each carrying its replies oldest first."""
    rows = sorted(rows, key=lambda row: _creation_order(row[0]))
    top = [_comment(c, u) for c, u in rows if not c.parent_id]
    by_id = {c.id: c for c in top}
    for c, u in rows:
        if c.parent_id and c.parent_id in by_id:
            by_id[c.parent_id].replies.append(_comment(c, u))
    top.reverse()
    return top


def format_tweet(
    tweet: Tweet,
    author: User | None,
    comments: list[CommentRow] | None = None,
    bookmark_time: datetime | None = None,
) -> TweetResponse:
    media = [MediaItem(url=item["url"], type=item.get("type") or "image") for item in tweet.media or [] if item.get("url")]
    first = media[0] if media else None
    sets = {kind: getattr(tweet, attr) for kind, attr in REACTION_COLUMNS.items()}
    return TweetResponse(
        id=tweet.id,
        user=display_name(tweet.author, author),
        uid=tweet.author,
        user_avatar=author.avatar if author is not None else None,
        content=tweet.content or "",
        media_url=first.url if first else None,
        media_type=first.type if first else None,
        media=media,
        tags=list(tweet.tags or []),
        timestamp=tweet.timestamp,
        reactions=ReactionCounts(**{kind.value: value.count for kind, value in sets.items()}),
        reaction_users=ReactionUsers(**{kind.value: list(value.members) for kind, value in sets.items()}),
        comments=comment_tree(comments or []),
        bookmark_time=bookmark_time,
    )
