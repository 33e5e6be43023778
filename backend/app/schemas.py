from __future__ import annotations

from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field


class MediaType(StrEnum):
    image = "image"
    video = "video"


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class AuthRegisterRequest(_CamelModel):
    nickname: str
    password: str
    visitor_id: str | None = Field(default=None, alias="visitorId")


class AuthLoginRequest(_CamelModel):
    nickname: str
    password: str
    visitor_id: str | None = Field(default=None, alias="visitorId")


class ProfileResponse(_CamelModel):
    nickname: str
    bio: str | None = None
    avatar: str | None = None
    banner: str | None = None
    logged_in: bool = Field(default=True, alias="loggedIn")
    token: str | None = None


class AuthRegisterResponse(BaseModel):
    success: bool = True
    nickname: str
    token: str
    migrated: int = 0


class AuthLoginResponse(BaseModel):
    success: bool = True
    user: ProfileResponse
    token: str
    migrated: int = 0


class NicknameAvailability(BaseModel):
    available: bool


class SuccessResponse(BaseModel):
    success: bool = True


class ReactRequest(BaseModel):
    uid: str | None = None
    type: str | None = None


class CommentCreateRequest(BaseModel):
    uid: str | None = None
    text: str | None = Field(default=None, max_length=5000)
    parent_id: str | None = None


class UidRequest(BaseModel):
    uid: str | None = None


class MediaItem(BaseModel):
    url: str
    type: MediaType


class CommentResponse(_CamelModel):
    id: str
    user: str
    uid: str
    avatar: str | None = None
    text: str
    timestamp: str
    parent_id: str | None = None
    likes_count: int = Field(default=0, alias="likesCount")
    likes_users: list[str] = Field(default_factory=list, alias="likesUsers")
    replies: list[CommentResponse] = Field(default_factory=list)


class ReactionCounts(BaseModel):
    like: int = 0
    confused: int = 0
    omg: int = 0


class ReactionUsers(BaseModel):
    like: list[str] = Field(default_factory=list)
    confused: list[str] = Field(default_factory=list)
    omg: list[str] = Field(default_factory=list)


class TweetResponse(_CamelModel):
    id: str
    user: str
    uid: str
    user_avatar: str | None = Field(default=None, alias="userAvatar")
    content: str
    media_url: str | None = Field(default=None, alias="mediaUrl")
    media_type: MediaType | None = Field(default=None, alias="mediaType")
    media: list[MediaItem] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    timestamp: str
    reactions: ReactionCounts
    reaction_users: ReactionUsers = Field(alias="reactionUsers")
    comments: list[CommentResponse] = Field(default_factory=list)
    bookmark_time: datetime | None = None


class CommentLikeResponse(_CamelModel):
    success: bool = True
    action: str
    likes_count: int = Field(alias="likesCount")
    likes_users: list[str] = Field(alias="likesUsers")


class BookmarkToggleResponse(BaseModel):
    success: bool = True
    bookmarked: bool
