from __future__ import annotations

import logging
import re
from datetime import datetime, timezone

from fastapi import Depends, FastAPI, File, Form, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordBearer
from fastapi.staticfiles import StaticFiles
from prometheus_fastapi_instrumentator import Instrumentator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqladmin import Admin, ModelView
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.db import engine, get_db, init_db
from app.errors import AuthenticationFailed, FeedError, Forbidden, ValidationFailed
from app.formatting import format_tweet
from app.logging_config import setup_logging
from app.media import UPLOAD_PREFIX, present, remove_media, save_uploads, upload_root
from app.models import Bookmark, Comment, Tweet, User
from app.reactions import parse_reaction_kind
from app.schemas import (
    AuthLoginRequest,
    AuthLoginResponse,
    AuthRegisterRequest,
    AuthRegisterResponse,
    BookmarkToggleResponse,
    CommentCreateRequest,
    CommentLikeResponse,
    NicknameAvailability,
    ProfileResponse,
    ReactRequest,
    SuccessResponse,
    TweetResponse,
    UidRequest,
)
from app.security import create_access_token, resolve_uid, token_subject
from app.settings import settings
from app.store import FeedStore, TweetRow, is_visitor_id

logger = logging.getLogger(__name__)

app = FastAPI(title=settings.app_name)

if settings.otel_enabled:
    from opentelemetry import trace
    from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
    from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
    from opentelemetry.sdk.resources import Resource
    from opentelemetry.sdk.trace import TracerProvider
    from opentelemetry.sdk.trace.export import BatchSpanProcessor

    resource = Resource.create({"service.name": "tweetboard-api"})
    trace_provider = TracerProvider(resource=resource)
    trace_provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter()))
    trace.set_tracer_provider(trace_provider)
    FastAPIInstrumentor.instrument_app(app, tracer_provider=trace_provider)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.mount(UPLOAD_PREFIX, StaticFiles(directory=upload_root(), check_dir=False), name="uploads")

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/login", auto_error=False)


class UserAdmin(ModelView, model=User):
    column_list = [User.nickname, User.bio, User.created_at]
    column_details_exclude_list = [User.password_hash]
    column_searchable_list = [User.nickname]
    column_sortable_list = [User.created_at]
    can_create = False
    can_edit = False
    can_delete = False


class TweetAdmin(ModelView, model=Tweet):
    column_list = [Tweet.id, Tweet.author, Tweet.content, Tweet.timestamp]
    column_searchable_list = [Tweet.content, Tweet.author]
    column_sortable_list = [Tweet.id]
    can_create = False
    can_edit = False
    can_delete = False


class CommentAdmin(ModelView, model=Comment):
    column_list = [Comment.id, Comment.tweet_id, Comment.author, Comment.text, Comment.parent_id]
    column_searchable_list = [Comment.text]
    column_sortable_list = [Comment.id]
    can_create = False
    can_edit = False
    can_delete = False


class BookmarkAdmin(ModelView, model=Bookmark):
    column_list = [Bookmark.user_nickname, Bookmark.tweet_id, Bookmark.created_at]
    column_sortable_list = [Bookmark.created_at]
    can_create = False
    can_edit = False
    can_delete = False


admin = Admin(app, engine)
admin.add_view(UserAdmin)
admin.add_view(TweetAdmin)
admin.add_view(CommentAdmin)
admin.add_view(BookmarkAdmin)

if settings.metrics_enabled:
    # Prometheus metrics at /metrics
    Instrumentator().instrument(app).expose(app, include_in_schema=False)


def _now_utc() -> datetime:
    return datetime.now(tz=timezone.utc)


def get_store(db: AsyncSession = Depends(get_db)) -> FeedStore:
    return FeedStore(db)


async def get_token_subject(token: str | None = Depends(oauth2_scheme)) -> str | None:
    return token_subject(token)


@app.exception_handler(FeedError)
async def _feed_error(request: Request, exc: FeedError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


@app.exception_handler(StarletteHTTPException)
async def _http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"error": str(exc.detail)}, headers=exc.headers)


@app.exception_handler(RequestValidationError)
async def _request_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    if errors:
        field = ".".join(str(p) for p in errors[0].get("loc", ()) if p not in ("body", "query", "path"))
        message = f"{field}: {errors[0].get('msg')}" if field else str(errors[0].get("msg"))
    else:
        message = "Invalid request"
    return JSONResponse(status_code=400, content={"error": message})


@app.exception_handler(SQLAlchemyError)
async def _storage_error(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    logger.exception("Storage failure on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


def _split_tags(raw: str | None) -> list[str]:
    if not raw:
        return []
    return [t.strip() for t in re.split(r"[,，]", raw) if t.strip()]


def _profile(user: User, token: str | None = None) -> ProfileResponse:
    return ProfileResponse(nickname=user.nickname, bio=user.bio, avatar=user.avatar, banner=user.banner, token=token)


def _anonymous_profile() -> ProfileResponse:
    return ProfileResponse(nickname=settings.anonymous_nickname, bio=settings.default_bio, logged_in=False)


async def _render(store: FeedStore, rows: list[TweetRow]) -> list[TweetResponse]:
    comments = await store.load_comments([tweet.id for tweet, _ in rows])
    return [format_tweet(tweet, author, comments.get(tweet.id)) for tweet, author in rows]


async def _render_one(store: FeedStore, tweet_id: str) -> TweetResponse:
    row = await store.get_tweet_row(tweet_id)
    return (await _render(store, [row]))[0]


async def _save_single(upload: UploadFile | None) -> str | None:
    saved = await save_uploads(present([upload]))
    return saved[0]["url"] if saved else None


async def _registered(store: FeedStore, uid: str | None) -> User:
    """Reactions, comment likes and bookmarks need a real account."""
    if not uid or is_visitor_id(uid):
        raise AuthenticationFailed("Please log in first")
    user = await store.get_user(uid)
    if user is None:
        raise AuthenticationFailed("Please log in first")
    return user


async def _author(store: FeedStore, uid: str | None) -> str:
    """Posting identity: a visitor id or a registered nickname."""
    if not uid:
        raise AuthenticationFailed("uid is required")
    if not is_visitor_id(uid) and await store.get_user(uid) is None:
        raise AuthenticationFailed("Unknown user, please log in again")
    return uid


@app.get("/healthz")
async def healthz() -> dict:
    return {"ok": True, "ts": _now_utc().isoformat()}


@app.on_event("startup")
async def _startup() -> None:
    setup_logging()
    upload_root()
    await init_db()


@app.post("/api/register", response_model=AuthRegisterResponse, status_code=201)
async def register(payload: AuthRegisterRequest, store: FeedStore = Depends(get_store)) -> AuthRegisterResponse:
    user = await store.create_user(payload.nickname, payload.password)
    migrated = await store.transfer_visitor_content(payload.visitor_id, user.nickname)
    return AuthRegisterResponse(nickname=user.nickname, token=create_access_token(user.nickname), migrated=migrated)


@app.post("/api/login", response_model=AuthLoginResponse)
async def login(payload: AuthLoginRequest, store: FeedStore = Depends(get_store)) -> AuthLoginResponse:
    user = await store.authenticate_user(payload.nickname, payload.password)
    migrated = await store.transfer_visitor_content(payload.visitor_id, user.nickname)
    return AuthLoginResponse(user=_profile(user), token=create_access_token(user.nickname), migrated=migrated)


@app.get("/api/check-nickname", response_model=NicknameAvailability)
async def check_nickname(nickname: str = "", store: FeedStore = Depends(get_store)) -> NicknameAvailability:
    return NicknameAvailability(available=await store.is_nickname_available(nickname.strip()))


@app.get("/api/profile", response_model=ProfileResponse)
async def read_profile(
    uid: str | None = None,
    subject: str | None = Depends(get_token_subject),
    store: FeedStore = Depends(get_store),
) -> ProfileResponse:
    user = await store.get_user(subject or uid)
    return _profile(user) if user is not None else _anonymous_profile()


@app.post("/api/profile", response_model=ProfileResponse)
async def update_profile(
    uid: str | None = Form(None),
    bio: str | None = Form(None),
    new_nickname: str | None = Form(None, alias="newNickname"),
    avatar: UploadFile | None = File(None),
    banner: UploadFile | None = File(None),
    subject: str | None = Depends(get_token_subject),
    store: FeedStore = Depends(get_store),
) -> ProfileResponse:
    uid = resolve_uid(uid, subject)
    if not uid:
        raise AuthenticationFailed("Please log in first")
    if is_visitor_id(uid) or await store.get_user(uid) is None:
        raise Forbidden("Only registered users have a profile")

    avatar_url = await _save_single(avatar)
    banner_url = await _save_single(banner)
    uploaded = [u for u in (avatar_url, banner_url) if u]
    try:
        user, replaced = await store.update_profile(
            uid,
            new_nickname=new_nickname,
            bio=bio,
            avatar=avatar_url,
            banner=banner_url,
        )
    except FeedError:
        remove_media(uploaded)
        raise
    remove_media(replaced)
    token = create_access_token(user.nickname) if user.nickname != uid else None
    return _profile(user, token=token)


@app.delete("/api/profile", response_model=SuccessResponse)
async def delete_profile(
    uid: str | None = None,
    subject: str | None = Depends(get_token_subject),
    store: FeedStore = Depends(get_store),
) -> SuccessResponse:
    uid = resolve_uid(uid, subject)
    if not uid:
        raise AuthenticationFailed("Please log in first")
    urls = await store.delete_user(uid)
    remove_media(urls)
    return SuccessResponse()


@app.get("/api/tweets", response_model=list[TweetResponse])
async def list_tweets(search: str | None = None, store: FeedStore = Depends(get_store)) -> list[TweetResponse]:
    return await _render(store, await store.list_tweets(search))


@app.post("/api/tweets", response_model=TweetResponse, status_code=201)
async def create_tweet(
    uid: str | None = Form(None),
    content: str = Form(""),
    tags: str | None = Form(None),
    files: list[UploadFile] = File(default=[]),
    file: UploadFile | None = File(None),
    subject: str | None = Depends(get_token_subject),
    store: FeedStore = Depends(get_store),
) -> TweetResponse:
    author = await _author(store, resolve_uid(uid, subject))
    uploads = present([*files, file])
    if not content.strip() and not uploads:
        raise ValidationFailed("content or media is required")

    media = await save_uploads(uploads)
    try:
        tweet = await store.insert_tweet(author, content, _split_tags(tags), media)
    except SQLAlchemyError:
        remove_media(item["url"] for item in media)
        raise
    return await _render_one(store, tweet.id)


@app.get("/api/tweets/{tweet_id}", response_model=TweetResponse)
async def get_tweet(tweet_id: str, store: FeedStore = Depends(get_store)) -> TweetResponse:
    return await _render_one(store, tweet_id)


@app.put("/api/tweets/{tweet_id}", response_model=TweetResponse)
async def update_tweet(
    tweet_id: str,
    uid: str | None = Form(None),
    content: str = Form(""),
    tags: str | None = Form(None),
    files: list[UploadFile] = File(default=[]),
    remove_media_flag: bool = Form(False, alias="removeMedia"),
    subject: str | None = Depends(get_token_subject),
    store: FeedStore = Depends(get_store),
) -> TweetResponse:
    uid = resolve_uid(uid, subject)
    if not uid:
        raise AuthenticationFailed("uid is required")
    # Ownership is checked before anything touches the upload directory.
    tweet = await store.get_tweet(tweet_id)
    if tweet.author != uid:
        raise Forbidden("You can only change your own tweets")
    uploads = present(files)
    keeps_media = bool(tweet.media) and not remove_media_flag
    if not content.strip() and not uploads and not keeps_media:
        raise ValidationFailed("content or media is required")

    media = await save_uploads(uploads)
    try:
        _, replaced = await store.update_tweet(
            tweet_id,
            uid,
            content=content,
            tags=_split_tags(tags),
            media=media or None,
            clear_media=remove_media_flag,
        )
    except FeedError:
        remove_media(item["url"] for item in media)
        raise
    remove_media(replaced)
    return await _render_one(store, tweet_id)


@app.delete("/api/tweets/{tweet_id}", response_model=SuccessResponse)
async def delete_tweet(
    tweet_id: str,
    uid: str | None = None,
    subject: str | None = Depends(get_token_subject),
    store: FeedStore = Depends(get_store),
) -> SuccessResponse:
    urls = await store.delete_tweet(tweet_id, resolve_uid(uid, subject))
    remove_media(urls)
    return SuccessResponse()


@app.post("/api/tweets/{tweet_id}/react", response_model=TweetResponse)
async def react(
    tweet_id: str,
    payload: ReactRequest,
    subject: str | None = Depends(get_token_subject),
    store: FeedStore = Depends(get_store),
) -> TweetResponse:
    user = await _registered(store, resolve_uid(payload.uid, subject))
    kind = parse_reaction_kind(payload.type)
    if kind is None:
        raise ValidationFailed(f"Unknown reaction type: {payload.type}")
    await store.toggle_reaction(tweet_id, kind, user.nickname)
    return await _render_one(store, tweet_id)


@app.post("/api/tweets/{tweet_id}/comment", response_model=TweetResponse)
async def comment(
    tweet_id: str,
    payload: CommentCreateRequest,
    subject: str | None = Depends(get_token_subject),
    store: FeedStore = Depends(get_store),
) -> TweetResponse:
    uid = resolve_uid(payload.uid, subject)
    if not uid:
        raise ValidationFailed("uid is required")
    text = (payload.text or "").strip()
    if not text:
        raise ValidationFailed("text is required")
    author = await _author(store, uid)
    await store.insert_comment(tweet_id, author, text, payload.parent_id)
    return await _render_one(store, tweet_id)


@app.post("/api/comments/{comment_id}/like", response_model=CommentLikeResponse)
async def like_comment(
    comment_id: str,
    payload: UidRequest,
    subject: str | None = Depends(get_token_subject),
    store: FeedStore = Depends(get_store),
) -> CommentLikeResponse:
    user = await _registered(store, resolve_uid(payload.uid, subject))
    comment, added = await store.toggle_comment_like(comment_id, user.nickname)
    return CommentLikeResponse(
        action="liked" if added else "unliked",
        likes_count=comment.likes.count,
        likes_users=list(comment.likes.members),
    )


@app.post("/api/tweets/{tweet_id}/bookmark", response_model=BookmarkToggleResponse)
async def bookmark(
    tweet_id: str,
    payload: UidRequest,
    subject: str | None = Depends(get_token_subject),
    store: FeedStore = Depends(get_store),
) -> BookmarkToggleResponse:
    user = await _registered(store, resolve_uid(payload.uid, subject))
    return BookmarkToggleResponse(bookmarked=await store.toggle_bookmark(user.nickname, tweet_id))


@app.get("/api/bookmarks", response_model=list[TweetResponse])
async def list_bookmarks(
    uid: str | None = None,
    subject: str | None = Depends(get_token_subject),
    store: FeedStore = Depends(get_store),
) -> list[TweetResponse]:
    user = await _registered(store, resolve_uid(uid, subject))
    rows = await store.list_bookmarks(user.nickname)
    comments = await store.load_comments([tweet.id for tweet, _, _ in rows])
    return [format_tweet(tweet, author, comments.get(tweet.id), bookmark_time=at) for tweet, author, at in rows]


@app.middleware("http")
async def add_app_header(request: Request, call_next):
    response = await call_next(request)
    response.headers["x-app"] = "tweetboard"
    return response
