from __future__ import annotations

from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt
from passlib.context import CryptContext

from app.errors import Forbidden
from app.settings import settings

pwd_context = CryptContext(schemes=["argon2"], deprecated="auto")


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return pwd_context.verify(password, password_hash)
    except ValueError:
        # Unrecognised hash format.
        return False


def create_access_token(nickname: str) -> str:
    now = datetime.now(tz=timezone.utc)
    exp = now + timedelta(minutes=settings.jwt_access_token_expires_minutes)
    payload = {"sub": nickname, "iat": int(now.timestamp()), "exp": int(exp.timestamp())}
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except JWTError as e:
        raise ValueError("Invalid token") from e


def token_subject(token: str | None) -> str | None:
    if not token:
        return None
    try:
        return decode_token(token).get("sub") or None
    except ValueError:
        return None


def resolve_uid(uid: str | None, subject: str | None) -> str | None:
    """Acting identity: the token subject when a valid token was sent, else ``uid``."""
    uid = (uid or "").strip() or None
    if subject is None:
        return uid
    if uid is not None and uid != subject:
        raise Forbidden("uid does not match the signed-in user")
    return subject
