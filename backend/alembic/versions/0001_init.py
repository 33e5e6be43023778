"""init tables

Revision ID: 0001_init
Revises:
Create Date: 2026-10-18

"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op

revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("nickname", sa.String(length=30), primary_key=True, nullable=False),
        sa.Column("password_hash", sa.String(length=255), nullable=False),
        sa.Column("bio", sa.Text(), nullable=True),
        sa.Column("avatar", sa.String(length=2048), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    op.create_table(
        "tweets",
        sa.Column("id", sa.String(length=32), primary_key=True, nullable=False),
        sa.Column("author", sa.String(length=64), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("media", sa.JSON(), nullable=False),
        sa.Column("tags", sa.JSON(), nullable=False),
        sa.Column("timestamp", sa.String(length=64), nullable=False),
        sa.Column("likes", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("confused", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("omg", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("revision", sa.Integer(), nullable=False, server_default="1"),
    )
    op.create_index("ix_tweets_author", "tweets", ["author"], unique=False)
    op.create_index("ix_tweets_created_at", "tweets", ["created_at"], unique=False)

    op.create_table(
        "comments",
        sa.Column("id", sa.String(length=32), primary_key=True, nullable=False),
        sa.Column("tweet_id", sa.String(length=32), sa.ForeignKey("tweets.id", ondelete="CASCADE"), nullable=False),
        sa.Column("author", sa.String(length=64), nullable=False),
        sa.Column("text", sa.Text(), nullable=False),
        sa.Column("timestamp", sa.String(length=64), nullable=False),
        sa.Column("parent_id", sa.String(length=32), sa.ForeignKey("comments.id", ondelete="CASCADE"), nullable=True),
        sa.Column("likes", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("revision", sa.Integer(), nullable=False, server_default="1"),
    )
    op.create_index("ix_comments_tweet_id", "comments", ["tweet_id"], unique=False)
    op.create_index("ix_comments_author", "comments", ["author"], unique=False)

    op.create_table(
        "bookmarks",
        sa.Column(
            "user_nickname",
            sa.String(length=30),
            sa.ForeignKey("users.nickname", ondelete="CASCADE", onupdate="CASCADE"),
            primary_key=True,
            nullable=False,
        ),
        sa.Column("tweet_id", sa.String(length=32), sa.ForeignKey("tweets.id", ondelete="CASCADE"), primary_key=True, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_bookmarks_tweet_id", "bookmarks", ["tweet_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_bookmarks_tweet_id", table_name="bookmarks")
    op.drop_table("bookmarks")

    op.drop_index("ix_comments_author", table_name="comments")
    op.drop_index("ix_comments_tweet_id", table_name="comments")
    op.drop_table("comments")

    op.drop_index("ix_tweets_created_at", table_name="tweets")
    op.drop_index("ix_tweets_author", table_name="tweets")
    op.drop_table("tweets")

    op.drop_table("users")
